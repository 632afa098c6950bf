import asyncio
from typing import List, Optional

from loguru import logger

from hangjegyzet.schemas.transcription import JobEvent


class EventBus:
    """
    In-process fan-out of job events

    Every subscriber owns a bounded queue. A subscriber that falls behind
    loses events rather than blocking the publisher.
    """

    def __init__(self, maxsize: int = 1000):
        self.maxsize = maxsize
        self.subscribers: List[asyncio.Queue] = []

    def subscribe(self, maxsize: Optional[int] = None) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize or self.maxsize)
        self.subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self.subscribers:
            self.subscribers.remove(queue)

    async def publish(self, event: JobEvent) -> int:
        """
        Deliver an event to every subscriber

        Returns:
            Number of subscribers that received it
        """
        delivered = 0
        for queue in list(self.subscribers):
            try:
                queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(f"Event subscriber queue full, dropping {event.type.value} for job {event.job_id}")
        logger.debug(f"Published {event.type.value} for job {event.job_id} to {delivered} subscriber(s)")
        return delivered

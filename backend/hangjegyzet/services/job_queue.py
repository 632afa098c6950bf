import asyncio
import itertools
from typing import Dict, Set, Tuple

from loguru import logger

from hangjegyzet.core.modes import PRIORITY_RANK
from hangjegyzet.models.models import JobPriority, TranscriptionMode


class JobQueue:
    """
    Per-mode priority queues of job IDs

    Within a mode, jobs are served by business priority and then in
    submission order. Delayed entries (retries waiting out their backoff)
    are held by timer tasks until due.
    """

    def __init__(self):
        self.queues: Dict[TranscriptionMode, asyncio.PriorityQueue] = {
            mode: asyncio.PriorityQueue() for mode in TranscriptionMode
        }
        self.sequence = itertools.count()
        self.delayed: Set[asyncio.Task] = set()

    def put(self, job_id: str, mode: TranscriptionMode, priority: JobPriority = JobPriority.NORMAL) -> None:
        entry: Tuple[int, int, str] = (PRIORITY_RANK[JobPriority(priority)], next(self.sequence), job_id)
        self.queues[TranscriptionMode(mode)].put_nowait(entry)

    def put_later(
        self,
        job_id: str,
        mode: TranscriptionMode,
        priority: JobPriority = JobPriority.NORMAL,
        delay: float = 0.0,
    ) -> None:
        """Enqueue after delay seconds"""
        if delay <= 0:
            self.put(job_id, mode, priority)
            return

        async def _enqueue():
            await asyncio.sleep(delay)
            self.put(job_id, mode, priority)
            logger.debug(f"Job {job_id} re-queued after {delay:.1f}s backoff")

        task = asyncio.create_task(_enqueue())
        self.delayed.add(task)
        task.add_done_callback(self.delayed.discard)

    async def get(self, mode: TranscriptionMode) -> str:
        _, _, job_id = await self.queues[TranscriptionMode(mode)].get()
        return job_id

    def task_done(self, mode: TranscriptionMode) -> None:
        self.queues[TranscriptionMode(mode)].task_done()

    def qsize(self, mode: TranscriptionMode) -> int:
        return self.queues[TranscriptionMode(mode)].qsize()

    async def close(self) -> None:
        """Cancel pending delayed entries"""
        for task in list(self.delayed):
            task.cancel()
        if self.delayed:
            await asyncio.gather(*self.delayed, return_exceptions=True)
        self.delayed.clear()

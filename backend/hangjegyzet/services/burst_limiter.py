"""
Burst and concurrency limiting for admissions

Two independent limits per organization and mode: a fixed-window request
count and a number of in-flight (admitted, not yet terminal) jobs. Both
checks and both increments happen in one atomic step.
"""
import asyncio
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Tuple

import redis.asyncio as redis
from loguru import logger
from redis.exceptions import RedisError
from pydantic import BaseModel

from hangjegyzet.core.config import Settings, settings as default_settings
from hangjegyzet.core.exceptions import QuotaStoreUnavailableError
from hangjegyzet.models.models import TranscriptionMode
from hangjegyzet.schemas.transcription import AdmissionRejectReason


class BurstCheck(BaseModel):
    """Result of a burst limiter acquisition"""
    allowed: bool
    reason: Optional[AdmissionRejectReason] = None
    retry_after_seconds: Optional[int] = None


class BurstLimiter(ABC):
    """Base class for burst limiters"""

    def __init__(self, config: Optional[Settings] = None, clock: Callable[[], float] = time.time):
        self.config = config or default_settings
        self.clock = clock

    def limits(self, mode: TranscriptionMode) -> Tuple[int, int]:
        """(requests per window, concurrent slots) for a mode"""
        limits = self.config.BURST_LIMITS[TranscriptionMode(mode).value]
        return int(limits["per_window"]), int(limits["concurrent"])

    def window(self) -> Tuple[int, int]:
        """Current window index and seconds until it ends"""
        now = self.clock()
        size = self.config.BURST_WINDOW_SECONDS
        index = int(now // size)
        retry_after = max(1, int((index + 1) * size - now + 0.999))
        return index, retry_after

    def rejected(self, reason: AdmissionRejectReason, retry_after: int) -> BurstCheck:
        return BurstCheck(allowed=False, reason=reason, retry_after_seconds=retry_after)

    @abstractmethod
    async def acquire(self, organization_id: str, mode: TranscriptionMode) -> BurstCheck:
        """Count one request and take one in-flight slot, or reject"""

    @abstractmethod
    async def release(self, organization_id: str, mode: TranscriptionMode) -> None:
        """Give back an in-flight slot"""


class InMemoryBurstLimiter(BurstLimiter):
    """
    Process-local burst limiter

    Suitable for a single API process and for tests.
    """

    def __init__(self, config: Optional[Settings] = None, clock: Callable[[], float] = time.time):
        super().__init__(config, clock)
        self.windows: Dict[Tuple[str, str], Tuple[int, int]] = {}  # {key: (window_index, count)}
        self.in_flight: Dict[Tuple[str, str], int] = {}
        self.lock = asyncio.Lock()

    async def acquire(self, organization_id: str, mode: TranscriptionMode) -> BurstCheck:
        if not self.config.BURST_LIMIT_ENABLED:
            return BurstCheck(allowed=True)

        key = (organization_id, TranscriptionMode(mode).value)
        per_window, concurrent = self.limits(mode)

        async with self.lock:
            index, retry_after = self.window()
            window_index, count = self.windows.get(key, (index, 0))
            if window_index != index:
                count = 0

            if count >= per_window:
                logger.warning(f"Burst limit reached for {key[0]} ({key[1]}), retry after {retry_after}s")
                return self.rejected(AdmissionRejectReason.BURST_LIMIT_EXCEEDED, retry_after)

            if self.in_flight.get(key, 0) >= concurrent:
                logger.warning(f"Concurrency limit reached for {key[0]} ({key[1]})")
                return self.rejected(AdmissionRejectReason.CONCURRENCY_LIMIT_EXCEEDED, retry_after)

            self.windows[key] = (index, count + 1)
            self.in_flight[key] = self.in_flight.get(key, 0) + 1
            return BurstCheck(allowed=True)

    async def release(self, organization_id: str, mode: TranscriptionMode) -> None:
        if not self.config.BURST_LIMIT_ENABLED:
            return
        key = (organization_id, TranscriptionMode(mode).value)
        async with self.lock:
            self.in_flight[key] = max(0, self.in_flight.get(key, 0) - 1)


# KEYS[1] window counter, KEYS[2] in-flight counter
# ARGV[1] per-window limit, ARGV[2] concurrent limit, ARGV[3] window ttl, ARGV[4] slot ttl
# Returns 0 when admitted, 1 for the window limit, 2 for the concurrency limit
ACQUIRE_SCRIPT = """
local count = tonumber(redis.call('GET', KEYS[1]) or '0')
if count >= tonumber(ARGV[1]) then
    return 1
end
local in_flight = tonumber(redis.call('GET', KEYS[2]) or '0')
if in_flight >= tonumber(ARGV[2]) then
    return 2
end
if redis.call('INCR', KEYS[1]) == 1 then
    redis.call('EXPIRE', KEYS[1], ARGV[3])
end
redis.call('INCR', KEYS[2])
redis.call('EXPIRE', KEYS[2], ARGV[4])
return 0
"""

RELEASE_SCRIPT = """
local in_flight = tonumber(redis.call('GET', KEYS[1]) or '0')
if in_flight > 0 then
    return redis.call('DECR', KEYS[1])
end
return 0
"""


class RedisBurstLimiter(BurstLimiter):
    """
    Burst limiter shared by all API processes through Redis

    In-flight counters expire after BURST_SLOT_TTL_SECONDS so slots leaked
    by a crashed process are eventually reclaimed.
    """

    def __init__(
        self,
        client: redis.Redis,
        config: Optional[Settings] = None,
        clock: Callable[[], float] = time.time,
        prefix: str = "burst",
    ):
        super().__init__(config, clock)
        self.client = client
        self.prefix = prefix
        self._acquire = client.register_script(ACQUIRE_SCRIPT)
        self._release = client.register_script(RELEASE_SCRIPT)

    def _keys(self, organization_id: str, mode: TranscriptionMode, index: int) -> Tuple[str, str]:
        mode_value = TranscriptionMode(mode).value
        return (
            f"{self.prefix}:window:{organization_id}:{mode_value}:{index}",
            f"{self.prefix}:inflight:{organization_id}:{mode_value}",
        )

    async def acquire(self, organization_id: str, mode: TranscriptionMode) -> BurstCheck:
        if not self.config.BURST_LIMIT_ENABLED:
            return BurstCheck(allowed=True)

        per_window, concurrent = self.limits(mode)
        index, retry_after = self.window()
        window_key, slot_key = self._keys(organization_id, mode, index)
        try:
            status = await self._acquire(
                keys=[window_key, slot_key],
                args=[per_window, concurrent, self.config.BURST_WINDOW_SECONDS, self.config.BURST_SLOT_TTL_SECONDS],
            )
        except RedisError as e:
            logger.error(f"Burst limiter unavailable: {e}")
            raise QuotaStoreUnavailableError(f"Burst limiter unavailable: {e}") from e

        status = int(status)
        if status == 1:
            logger.warning(f"Burst limit reached for {organization_id} ({mode}), retry after {retry_after}s")
            return self.rejected(AdmissionRejectReason.BURST_LIMIT_EXCEEDED, retry_after)
        if status == 2:
            logger.warning(f"Concurrency limit reached for {organization_id} ({mode})")
            return self.rejected(AdmissionRejectReason.CONCURRENCY_LIMIT_EXCEEDED, retry_after)
        return BurstCheck(allowed=True)

    async def release(self, organization_id: str, mode: TranscriptionMode) -> None:
        if not self.config.BURST_LIMIT_ENABLED:
            return
        _, slot_key = self._keys(organization_id, mode, 0)
        try:
            await self._release(keys=[slot_key])
        except RedisError as e:
            logger.error(f"Failed to release burst slot for {organization_id} ({mode}): {e}")
            raise QuotaStoreUnavailableError(f"Burst limiter unavailable: {e}") from e

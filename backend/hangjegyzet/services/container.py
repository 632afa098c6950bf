from typing import Optional

import redis.asyncio as redis
from loguru import logger

from hangjegyzet.audio_processor.pipeline import AudioPreprocessor
from hangjegyzet.core.config import Settings, settings as default_settings
from hangjegyzet.providers.base import TextEnhancer, TranscriptionProvider
from hangjegyzet.services.accuracy_monitor import AccuracyMonitor
from hangjegyzet.services.burst_limiter import BurstLimiter, InMemoryBurstLimiter, RedisBurstLimiter
from hangjegyzet.services.error_classifier import ErrorClassifier
from hangjegyzet.services.events import EventBus
from hangjegyzet.services.multi_pass import MultiPassTranscriber
from hangjegyzet.services.orchestrator import JobOrchestrator
from hangjegyzet.services.post_processing import AIPostProcessor
from hangjegyzet.services.quota_gate import QuotaGate
from hangjegyzet.services.vocabulary_service import VocabularyCache, VocabularyService
from hangjegyzet.storage.base import PipelineStore


class Pipeline:
    """
    Wired set of pipeline components

    Built once per process (by the application lifespan or a test) and
    passed around explicitly.
    """

    def __init__(
        self,
        store: PipelineStore,
        provider: TranscriptionProvider,
        enhancer: Optional[TextEnhancer] = None,
        burst_limiter: Optional[BurstLimiter] = None,
        preprocessor: Optional[AudioPreprocessor] = None,
        config: Optional[Settings] = None,
    ):
        self.config = config or default_settings
        self.store = store
        self.provider = provider
        self.enhancer = enhancer
        self.classifier = ErrorClassifier(self.config)
        self.events = EventBus(self.config.EVENT_QUEUE_SIZE)
        self.burst_limiter = burst_limiter or InMemoryBurstLimiter(self.config)
        self.gate = QuotaGate(store, self.burst_limiter, self.config)
        self.vocabulary = VocabularyService(
            store, VocabularyCache(ttl=self.config.VOCABULARY_CACHE_TTL), config=self.config
        )
        self.accuracy = AccuracyMonitor(store, self.vocabulary, self.config)
        self.orchestrator = JobOrchestrator(
            store=store,
            gate=self.gate,
            preprocessor=preprocessor or AudioPreprocessor(self.config),
            transcriber=MultiPassTranscriber(provider, self.config),
            vocabulary=self.vocabulary,
            post_processor=AIPostProcessor(enhancer, self.config),
            accuracy=self.accuracy,
            classifier=self.classifier,
            events=self.events,
            config=self.config,
        )

    async def start(self) -> None:
        await self.orchestrator.start()

    async def stop(self) -> None:
        await self.orchestrator.stop()


def build_burst_limiter(client: Optional[redis.Redis], config: Optional[Settings] = None) -> BurstLimiter:
    """Redis-backed limiter when a client is available, in-memory otherwise"""
    if client is not None:
        return RedisBurstLimiter(client, config)
    logger.warning("Redis unavailable, burst limits are enforced per process")
    return InMemoryBurstLimiter(config)

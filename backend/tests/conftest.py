"""
Test configuration and fixtures

Pipelines are wired with the in-memory store, a scripted speech provider
and a preprocessor that returns canned audio, so orchestrator tests never
decode files or reach the network.
"""
from typing import Optional

import pytest
import pytest_asyncio

from hangjegyzet.core.config import Settings
from hangjegyzet.providers.base import TextEnhancer, TranscriptionProvider
from hangjegyzet.schemas.organization import OrganizationCreate
from hangjegyzet.services.burst_limiter import InMemoryBurstLimiter
from hangjegyzet.services.container import Pipeline
from hangjegyzet.storage.memory_store import InMemoryPipelineStore

from fakes import ORG_ID, CannedPreprocessor


@pytest.fixture
def config() -> Settings:
    return Settings(
        ENVIRONMENT="test",
        TESTING=True,
        REDIS_ENABLED=False,
        RETRY_BACKOFF_MULTIPLIER=0.0,
        WORKER_POOL_SIZES={"fast": 1, "balanced": 1, "precision": 1},
        TOTAL_JOB_TIMEOUT=10.0,
        CHUNK_TIMEOUT=5.0,
    )


@pytest_asyncio.fixture
async def store() -> InMemoryPipelineStore:
    return InMemoryPipelineStore()


@pytest_asyncio.fixture
async def organization(store):
    return await store.create_organization(
        OrganizationCreate(name="Teszt Kft", subscription_tier="profi"),
        organization_id=ORG_ID,
    )


@pytest.fixture
def burst_limiter(config) -> InMemoryBurstLimiter:
    return InMemoryBurstLimiter(config)


@pytest.fixture
def make_pipeline(store, burst_limiter, config):
    """Factory for pipelines over the shared store and burst limiter"""

    def _make(
        provider: TranscriptionProvider,
        preprocessor: Optional[CannedPreprocessor] = None,
        enhancer: Optional[TextEnhancer] = None,
    ) -> Pipeline:
        return Pipeline(
            store=store,
            provider=provider,
            enhancer=enhancer,
            burst_limiter=burst_limiter,
            preprocessor=preprocessor or CannedPreprocessor(),
            config=config,
        )

    return _make

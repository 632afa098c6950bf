from fastapi import Depends, Request

from hangjegyzet.core.exceptions import ServiceUnavailableException
from hangjegyzet.services.accuracy_monitor import AccuracyMonitor
from hangjegyzet.services.container import Pipeline
from hangjegyzet.services.orchestrator import JobOrchestrator
from hangjegyzet.services.quota_gate import QuotaGate
from hangjegyzet.services.vocabulary_service import VocabularyService
from hangjegyzet.storage.base import PipelineStore


def get_pipeline(request: Request) -> Pipeline:
    """
    Dependency for the pipeline built by the application lifespan

    Raises:
        ServiceUnavailableException: If the application has not finished starting
    """
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise ServiceUnavailableException("Transcription pipeline is not ready")
    return pipeline


def get_store(pipeline: Pipeline = Depends(get_pipeline)) -> PipelineStore:
    return pipeline.store


def get_gate(pipeline: Pipeline = Depends(get_pipeline)) -> QuotaGate:
    return pipeline.gate


def get_orchestrator(pipeline: Pipeline = Depends(get_pipeline)) -> JobOrchestrator:
    return pipeline.orchestrator


def get_vocabulary(pipeline: Pipeline = Depends(get_pipeline)) -> VocabularyService:
    return pipeline.vocabulary


def get_accuracy(pipeline: Pipeline = Depends(get_pipeline)) -> AccuracyMonitor:
    return pipeline.accuracy

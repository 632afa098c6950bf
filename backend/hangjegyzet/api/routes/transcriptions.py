from typing import Any

from fastapi import APIRouter, Depends, status
from loguru import logger

from hangjegyzet.api.deps import get_orchestrator
from hangjegyzet.core.exceptions import (
    BaseAPIException, ModeNotAvailableException, QuotaExceededException,
    RateLimitExceeded, ResourceNotFoundError,
)
from hangjegyzet.schemas.transcription import (
    AdmissionDecision, AdmissionRejectReason, JobStatusResponse, JobSubmission,
)
from hangjegyzet.services.orchestrator import JobOrchestrator

router = APIRouter()


def rejection_error(decision: AdmissionDecision) -> BaseAPIException:
    """Map a gate rejection to the matching HTTP error"""
    detail = decision.model_dump(mode="json", exclude_none=True)
    reason = decision.reason
    if reason == AdmissionRejectReason.ORGANIZATION_LIMIT_EXCEEDED:
        return QuotaExceededException(detail=detail)
    if reason in (AdmissionRejectReason.BURST_LIMIT_EXCEEDED, AdmissionRejectReason.CONCURRENCY_LIMIT_EXCEEDED):
        error = RateLimitExceeded(detail=detail, retry_after=decision.retry_after_seconds)
        error.code = reason.value
        return error
    if reason in (AdmissionRejectReason.MODE_NOT_AVAILABLE, AdmissionRejectReason.SUBSCRIPTION_EXPIRED):
        return ModeNotAvailableException(detail=detail, code=reason.value)
    return ResourceNotFoundError("Organization", decision.organization_id)


@router.post("", response_model=JobStatusResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_transcription(
        submission: JobSubmission,
        orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> Any:
    """
    Submit a meeting recording for transcription.

    The job is admitted against the organization's mode allocation and
    queued; poll the returned job for progress.
    """
    result = await orchestrator.submit(submission)
    if not result.admitted:
        logger.info(
            f"Submission for meeting {submission.meeting_id} rejected: {result.decision.reason.value}"
        )
        raise rejection_error(result.decision)
    return JobStatusResponse.from_job(result.job)


@router.get("/{job_id}", response_model=JobStatusResponse)
async def get_transcription(job_id: str, orchestrator: JobOrchestrator = Depends(get_orchestrator)) -> Any:
    """
    Get job status, progress and, once completed, the transcript.
    """
    return await orchestrator.get_status(job_id)


@router.delete("/{job_id}", response_model=JobStatusResponse)
async def cancel_transcription(job_id: str, orchestrator: JobOrchestrator = Depends(get_orchestrator)) -> Any:
    """
    Cancel a job. Usage is refunded when no provider call was made.
    """
    job = await orchestrator.cancel(job_id)
    return JobStatusResponse.from_job(job)

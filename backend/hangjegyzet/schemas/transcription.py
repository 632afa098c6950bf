from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from hangjegyzet.models.models import (
    AudioQuality, JobPriority, JobState, TranscriptionMode
)
from hangjegyzet.schemas.base import IdentifiedBase
from hangjegyzet.schemas.errors import PipelineError


class TranscriptSegment(BaseModel):
    """Timestamped span of transcript text"""
    start_time: float
    end_time: float
    text: str
    speaker: Optional[str] = None
    confidence: float = Field(0.0, ge=0.0, le=1.0)

    model_config = ConfigDict(frozen=True)


class ProcessingOptionsInput(BaseModel):
    """Caller overrides for the mode's processing defaults"""
    enable_preprocessing: Optional[bool] = None
    enable_multi_pass: Optional[bool] = None
    enable_vocabulary: Optional[bool] = None
    enable_ai_post_processing: Optional[bool] = None
    pass_count: Optional[int] = Field(None, ge=1, le=5)
    speaker_count: Optional[int] = Field(None, ge=1, le=20)
    custom_vocabulary: List[str] = []
    context_hints: List[str] = []
    minimum_audio_quality: Optional[AudioQuality] = None
    minimum_confidence_score: Optional[float] = Field(None, ge=0.0, le=1.0)
    priority: JobPriority = JobPriority.NORMAL

    model_config = ConfigDict(extra="forbid")


class ProcessingOptions(BaseModel):
    """Processing options resolved once at submission"""
    enable_preprocessing: bool
    noise_reduction: bool
    loudness_normalization: bool
    compression: bool
    enhance_poor_audio: bool
    enable_multi_pass: bool
    pass_count: int
    max_passes: int
    temperatures: List[float]
    enable_vocabulary: bool
    enable_ai_post_processing: bool
    speaker_count: Optional[int] = None
    custom_vocabulary: List[str] = []
    context_hints: List[str] = []
    minimum_audio_quality: Optional[AudioQuality] = None
    minimum_confidence_score: float
    priority: JobPriority = JobPriority.NORMAL

    model_config = ConfigDict(frozen=True)


class AdmissionRequest(BaseModel):
    """Quota gate admission request"""
    organization_id: str
    mode: TranscriptionMode
    estimated_duration_minutes: float = Field(..., gt=0)
    language: Optional[str] = None


class AdmissionRejectReason(str, Enum):
    """Why the gate refused a request"""
    ORGANIZATION_LIMIT_EXCEEDED = "organization_limit_exceeded"
    BURST_LIMIT_EXCEEDED = "burst_limit_exceeded"
    CONCURRENCY_LIMIT_EXCEEDED = "concurrency_limit_exceeded"
    MODE_NOT_AVAILABLE = "mode_not_available"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    ORGANIZATION_NOT_FOUND = "organization_not_found"


class AdmissionDecision(BaseModel):
    """Structured gate result; rejections are values, not exceptions"""
    allowed: bool
    organization_id: str
    mode: TranscriptionMode
    reason: Optional[AdmissionRejectReason] = None
    requested: int = 0
    used: Optional[int] = None
    limit: Optional[int] = None
    remaining: Optional[int] = Field(None, description="None when the allocation is unlimited")
    period: Optional[str] = None
    reset_at: Optional[datetime] = None
    retry_after_seconds: Optional[int] = None
    admission_id: Optional[str] = Field(None, description="Set when the admission is held for a later submission")
    expires_at: Optional[datetime] = None

    @property
    def unlimited(self) -> bool:
        return self.limit == -1


class UsageIncrementResult(BaseModel):
    """Result of the atomic increment-if-under-limit operation"""
    applied: bool
    used: int
    limit: int


class ModeUsage(BaseModel):
    """Usage of one mode in one period"""
    mode: TranscriptionMode
    used: int
    limit: int
    remaining: Optional[int] = None


class UsageSummary(BaseModel):
    """Per-mode usage of an organization"""
    organization_id: str
    period: str
    reset_at: datetime
    modes: List[ModeUsage]


class JobSubmission(BaseModel):
    """Job submission accepted by the orchestrator"""
    meeting_id: str
    source_audio_path: str
    organization_id: str
    user_id: Optional[str] = None
    mode: TranscriptionMode = TranscriptionMode.BALANCED
    language: str = "hu"
    estimated_duration_minutes: float = Field(..., gt=0)
    processing_options: ProcessingOptionsInput = Field(default_factory=ProcessingOptionsInput)
    admission_id: Optional[str] = Field(None, description="Held admission to use instead of admitting again")


class JobRecord(IdentifiedBase):
    """Full job state as persisted by the stores"""
    meeting_id: str
    organization_id: str
    user_id: Optional[str] = None
    source_audio_path: str
    mode: TranscriptionMode
    language: str
    options: ProcessingOptions
    priority: JobPriority = JobPriority.NORMAL
    queue_priority: int

    state: JobState = JobState.QUEUED
    progress: int = 0
    attempts: int = 1
    max_attempts: int
    requires_manual_intervention: bool = False

    estimated_duration_minutes: float
    charged_minutes: int = 0
    usage_period: Optional[str] = None
    usage_refunded: bool = False
    provider_calls: int = 0

    duration_seconds: Optional[float] = None
    quality_before: Optional[AudioQuality] = None
    audio_quality: Optional[AudioQuality] = None
    snr_db: Optional[float] = None
    pass_count: Optional[int] = None
    confidence: Optional[float] = None
    detected_language: Optional[str] = None
    segments: Optional[List[TranscriptSegment]] = None
    transcript_text: Optional[str] = None
    error: Optional[PipelineError] = None
    warnings: List[PipelineError] = []

    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in (JobState.COMPLETED, JobState.FAILED_PERMANENT, JobState.CANCELLED)


class JobStatusResponse(BaseModel):
    """Job status query result"""
    job_id: str
    meeting_id: str
    state: JobState
    progress: int
    attempts: int
    mode: TranscriptionMode
    audio_quality: Optional[AudioQuality] = None
    confidence: Optional[float] = None
    segments: Optional[List[TranscriptSegment]] = None
    transcript_text: Optional[str] = None
    error: Optional[PipelineError] = None
    requires_manual_intervention: bool = False

    @classmethod
    def from_job(cls, job: JobRecord) -> "JobStatusResponse":
        completed = job.state == JobState.COMPLETED
        return cls(
            job_id=job.id,
            meeting_id=job.meeting_id,
            state=job.state,
            progress=job.progress,
            attempts=job.attempts,
            mode=job.mode,
            audio_quality=job.audio_quality,
            confidence=job.confidence,
            segments=job.segments if completed else None,
            transcript_text=job.transcript_text if completed else None,
            error=job.error,
            requires_manual_intervention=job.requires_manual_intervention,
        )


class SubmissionResult(BaseModel):
    """Outcome of submitting a job: the admission decision and the job if admitted"""
    decision: AdmissionDecision
    job: Optional[JobRecord] = None

    @property
    def admitted(self) -> bool:
        return self.decision.allowed and self.job is not None


class JobEventType(str, Enum):
    COMPLETED = "job.completed"
    FAILED = "job.failed"
    CANCELLED = "job.cancelled"


class JobEvent(BaseModel):
    """Completion or failure event published to integrations"""
    type: JobEventType
    job_id: str
    meeting_id: str
    organization_id: str
    status: JobState
    transcript_ref: Optional[str] = None
    error: Optional[PipelineError] = None
    occurred_at: datetime
    metadata: Dict[str, Any] = {}
    metadata: Dict[str, Any] = {}

    model_config = ConfigDict(frozen=True)

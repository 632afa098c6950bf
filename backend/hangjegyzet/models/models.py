import uuid
from enum import Enum

from sqlalchemy import (
    Boolean, Column, DateTime, Float, ForeignKey, Integer,
    String, Text, JSON, func, Enum as SQLAEnum, UniqueConstraint, Index
)

from hangjegyzet.db.base_class import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def _enum(enum_cls, name: str) -> SQLAEnum:
    return SQLAEnum(enum_cls, name=name, values_callable=lambda e: [m.value for m in e])


class TranscriptionMode(str, Enum):
    """Quality/cost tier"""
    FAST = "fast"
    BALANCED = "balanced"
    PRECISION = "precision"


class JobState(str, Enum):
    """Transcription job lifecycle state"""
    QUEUED = "queued"
    PREPROCESSING = "preprocessing"
    TRANSCRIBING = "transcribing"
    ENHANCING = "enhancing"
    AI_POST_PROCESSING = "ai_post_processing"
    MONITORING = "monitoring"
    COMPLETED = "completed"
    FAILED_RETRYABLE = "failed_retryable"
    FAILED_PERMANENT = "failed_permanent"
    CANCELLED = "cancelled"


class JobPriority(str, Enum):
    """Business priority requested for a job"""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class AudioQuality(str, Enum):
    """Audio quality class derived from estimated SNR"""
    POOR = "poor"
    FAIR = "fair"
    GOOD = "good"
    EXCELLENT = "excellent"


class TermCategory(str, Enum):
    """Vocabulary term category"""
    GENERAL = "general"
    FINANCE = "finance"
    IT = "it"
    LEGAL = "legal"
    MEDICAL = "medical"
    MARKETING = "marketing"
    HR = "hr"
    MANUFACTURING = "manufacturing"
    REAL_ESTATE = "real_estate"
    EDUCATION = "education"
    GOVERNMENT = "government"
    CUSTOM = "custom"


class TermSource(str, Enum):
    """How a vocabulary term entered the dictionary"""
    MANUAL = "manual"
    LEARNED = "learned"
    DEFAULT = "default"


class PipelineErrorKind(str, Enum):
    """Classified pipeline failure kinds"""
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    API_RATE_LIMIT = "API_RATE_LIMIT"
    API_QUOTA_EXCEEDED = "API_QUOTA_EXCEEDED"
    API_AUTHENTICATION = "API_AUTHENTICATION"
    API_INVALID_REQUEST = "API_INVALID_REQUEST"
    FILE_NOT_FOUND = "FILE_NOT_FOUND"
    FILE_TOO_LARGE = "FILE_TOO_LARGE"
    FILE_INVALID_FORMAT = "FILE_INVALID_FORMAT"
    FILE_CORRUPTED = "FILE_CORRUPTED"
    PROCESSING_FAILED = "PROCESSING_FAILED"
    INSUFFICIENT_AUDIO_QUALITY = "INSUFFICIENT_AUDIO_QUALITY"
    LANGUAGE_NOT_SUPPORTED = "LANGUAGE_NOT_SUPPORTED"
    OUT_OF_MEMORY = "OUT_OF_MEMORY"
    DISK_SPACE_FULL = "DISK_SPACE_FULL"
    WORKER_CRASHED = "WORKER_CRASHED"
    ORGANIZATION_LIMIT_EXCEEDED = "ORGANIZATION_LIMIT_EXCEEDED"
    SUBSCRIPTION_EXPIRED = "SUBSCRIPTION_EXPIRED"
    MODE_NOT_AVAILABLE = "MODE_NOT_AVAILABLE"
    UNKNOWN = "UNKNOWN"


class Organization(Base):
    """Organization model"""
    __tablename__ = "organizations"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String, nullable=False)
    subscription_tier = Column(String, nullable=False, default="trial")
    subscription_expires_at = Column(DateTime(timezone=True), nullable=True)
    # Per-mode minute limits overriding the plan, e.g. {"precision": 100}
    mode_limits = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class UsageCounter(Base):
    """Per organization, mode and billing period usage"""
    __tablename__ = "usage_counters"
    __table_args__ = (
        UniqueConstraint("organization_id", "mode", "period", name="uq_usage_org_mode_period"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    organization_id = Column(String(36), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    mode = Column(_enum(TranscriptionMode, "transcription_mode"), nullable=False)
    period = Column(String(7), nullable=False)  # YYYY-MM
    used_minutes = Column(Integer, nullable=False, default=0)
    limit_minutes = Column(Integer, nullable=False, default=0)
    request_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class TranscriptionJob(Base):
    """Transcription job model"""
    __tablename__ = "transcription_jobs"
    __table_args__ = (
        Index("ix_transcription_jobs_org_state", "organization_id", "state"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    meeting_id = Column(String, nullable=False, index=True)
    organization_id = Column(String(36), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String, nullable=True)
    source_audio_path = Column(String, nullable=False)
    mode = Column(_enum(TranscriptionMode, "transcription_mode"), nullable=False)
    language = Column(String(8), nullable=False)
    options = Column(JSON, nullable=False)
    priority = Column(_enum(JobPriority, "job_priority"), nullable=False, default=JobPriority.NORMAL)
    queue_priority = Column(Integer, nullable=False)

    # Lifecycle
    state = Column(_enum(JobState, "job_state"), nullable=False, default=JobState.QUEUED)
    progress = Column(Integer, nullable=False, default=0)
    attempts = Column(Integer, nullable=False, default=1)
    max_attempts = Column(Integer, nullable=False)
    requires_manual_intervention = Column(Boolean, default=False)

    # Usage accounting
    estimated_duration_minutes = Column(Float, nullable=False)
    charged_minutes = Column(Integer, nullable=False, default=0)
    usage_period = Column(String(7), nullable=True)
    usage_refunded = Column(Boolean, default=False)
    provider_calls = Column(Integer, nullable=False, default=0)

    # Results
    duration_seconds = Column(Float, nullable=True)
    quality_before = Column(_enum(AudioQuality, "audio_quality"), nullable=True)
    audio_quality = Column(_enum(AudioQuality, "audio_quality"), nullable=True)
    snr_db = Column(Float, nullable=True)
    pass_count = Column(Integer, nullable=True)
    confidence = Column(Float, nullable=True)
    detected_language = Column(String(8), nullable=True)
    segments = Column(JSON, nullable=True)
    transcript_text = Column(Text, nullable=True)
    error = Column(JSON, nullable=True)
    warnings = Column(JSON, nullable=False, default=list)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)


class VocabularyTerm(Base):
    """Organization vocabulary term, soft-deleted via is_active"""
    __tablename__ = "vocabulary_terms"
    __table_args__ = (
        Index("ix_vocabulary_terms_org_active", "organization_id", "is_active"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    organization_id = Column(String(36), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    term = Column(String, nullable=False)
    variations = Column(JSON, nullable=False, default=list)
    category = Column(_enum(TermCategory, "term_category"), nullable=False, default=TermCategory.GENERAL)
    phonetic_hint = Column(String, nullable=True)
    context_hints = Column(JSON, nullable=False, default=list)
    language = Column(String(8), nullable=False, default="hu")
    usage_count = Column(Integer, nullable=False, default=0)
    confidence_score = Column(Float, nullable=False, default=0.7)
    source = Column(_enum(TermSource, "term_source"), nullable=False, default=TermSource.MANUAL)
    is_active = Column(Boolean, nullable=False, default=True)
    deactivated_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class CorrectionRecord(Base):
    """Append-only human correction of transcript text"""
    __tablename__ = "correction_records"

    id = Column(String(36), primary_key=True, default=_uuid)
    organization_id = Column(String(36), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    job_id = Column(String(36), ForeignKey("transcription_jobs.id", ondelete="SET NULL"), nullable=True)
    user_id = Column(String, nullable=True)
    original_text = Column(Text, nullable=False)
    corrected_text = Column(Text, nullable=False)
    segment_start = Column(Float, nullable=True)
    wer = Column(Float, nullable=True)
    cer = Column(Float, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())


class AccuracyMetric(Base):
    """Append-only per-job accuracy estimate"""
    __tablename__ = "accuracy_metrics"
    __table_args__ = (
        Index("ix_accuracy_metrics_org_created", "organization_id", "created_at"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    organization_id = Column(String(36), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    job_id = Column(String(36), ForeignKey("transcription_jobs.id", ondelete="SET NULL"), nullable=True)
    mode = Column(_enum(TranscriptionMode, "transcription_mode"), nullable=False)
    audio_quality = Column(_enum(AudioQuality, "audio_quality"), nullable=False)
    snr_db = Column(Float, nullable=True)
    estimated_wer = Column(Float, nullable=False)
    estimated_cer = Column(Float, nullable=False)
    confidence_mean = Column(Float, nullable=False)
    confidence_min = Column(Float, nullable=False)
    confidence_max = Column(Float, nullable=False)
    low_confidence_ratio = Column(Float, nullable=False)
    pass_count = Column(Integer, nullable=False, default=1)
    processing_seconds = Column(Float, nullable=False)
    audio_duration_seconds = Column(Float, nullable=False)
    meets_target = Column(Boolean, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

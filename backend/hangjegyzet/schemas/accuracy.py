from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from hangjegyzet.models.models import AudioQuality, TranscriptionMode
from hangjegyzet.schemas.base import IdentifiedBase


class AccuracyMetricCreate(BaseModel):
    """Accuracy metric computed for one job"""
    organization_id: str
    job_id: Optional[str] = None
    mode: TranscriptionMode
    audio_quality: AudioQuality
    snr_db: Optional[float] = None
    estimated_wer: float = Field(..., ge=0.0, le=1.0)
    estimated_cer: float = Field(..., ge=0.0, le=1.0)
    confidence_mean: float
    confidence_min: float
    confidence_max: float
    low_confidence_ratio: float
    pass_count: int = 1
    processing_seconds: float
    audio_duration_seconds: float
    meets_target: bool


class AccuracyMetricRead(AccuracyMetricCreate, IdentifiedBase):
    """Stored accuracy metric"""


class CommonError(BaseModel):
    """A recurring (original -> corrected) word pair"""
    original: str
    corrected: str
    frequency: int


class Recommendation(BaseModel):
    """Observational suggestion derived from a report"""
    kind: str
    message: str
    details: Dict[str, object] = {}


class AccuracyReport(BaseModel):
    """Organization-level accuracy report for a period"""
    organization_id: str
    period: str
    period_start: datetime
    period_end: datetime
    sample_size: int
    average_wer: float
    average_cer: float
    average_confidence: float
    targets_met_ratio: float
    quality_distribution: Dict[str, int]
    mode_distribution: Dict[str, int]
    common_errors: List[CommonError] = []
    well_recognized_terms: List[str] = []
    poorly_recognized_terms: List[str] = []
    recommendations: List[Recommendation] = []

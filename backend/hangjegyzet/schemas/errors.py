from typing import Optional

from pydantic import BaseModel, Field, ConfigDict

from hangjegyzet.models.models import PipelineErrorKind


class PipelineError(BaseModel):
    """Classified pipeline failure attached to a job attempt"""
    kind: PipelineErrorKind
    retryable: bool
    backoff_seconds: Optional[float] = Field(None, description="Suggested delay before the next attempt")
    user_message: str = Field(..., description="Localized, actionable message")
    technical_message: str = ""
    requires_manual_intervention: bool = False
    attempt: Optional[int] = None
    stage: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class RetryDecision(BaseModel):
    """Outcome of applying the retry policy to a classified failure"""
    error: PipelineError
    retry: bool
    delay_seconds: float = 0.0
    attempts_exhausted: bool = False

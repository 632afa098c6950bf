from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from hangjegyzet.models.models import JobState, TranscriptionMode
from hangjegyzet.schemas.accuracy import AccuracyMetricCreate, AccuracyMetricRead
from hangjegyzet.schemas.organization import OrganizationCreate, OrganizationRead
from hangjegyzet.schemas.transcription import JobRecord, UsageIncrementResult
from hangjegyzet.schemas.vocabulary import (
    CorrectionCreate, CorrectionRead, VocabularyTermCreate, VocabularyTermRead
)


class PipelineStore(ABC):
    """
    Persistence contract of the transcription pipeline

    Usage counters are only ever changed through
    ``increment_usage_if_under_limit`` (one atomic conditional increment) and
    its compensating ``decrement_usage``. Terms, corrections and metrics are
    never physically deleted.
    """

    # Organizations

    @abstractmethod
    async def get_organization(self, organization_id: str) -> Optional[OrganizationRead]:
        ...

    @abstractmethod
    async def create_organization(
        self, obj_in: OrganizationCreate, organization_id: Optional[str] = None
    ) -> OrganizationRead:
        ...

    # Usage counters

    @abstractmethod
    async def increment_usage_if_under_limit(
        self,
        organization_id: str,
        mode: TranscriptionMode,
        period: str,
        minutes: int,
        limit: int,
    ) -> UsageIncrementResult:
        """
        Add minutes to the counter only if the result stays within limit

        The check and the write must be a single atomic operation. A limit
        of -1 means unlimited.
        """

    @abstractmethod
    async def decrement_usage(
        self, organization_id: str, mode: TranscriptionMode, period: str, minutes: int
    ) -> int:
        """Compensating decrement, never below zero; returns the new usage"""

    @abstractmethod
    async def get_usage(self, organization_id: str, mode: TranscriptionMode, period: str) -> int:
        ...

    # Jobs

    @abstractmethod
    async def create_job(self, job: JobRecord) -> JobRecord:
        ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[JobRecord]:
        ...

    @abstractmethod
    async def update_job(self, job_id: str, **fields: Any) -> JobRecord:
        ...

    @abstractmethod
    async def list_jobs(
        self,
        *,
        organization_id: Optional[str] = None,
        states: Optional[Iterable[JobState]] = None,
        limit: int = 100,
    ) -> List[JobRecord]:
        ...

    # Vocabulary

    @abstractmethod
    async def create_term(self, organization_id: str, obj_in: VocabularyTermCreate) -> VocabularyTermRead:
        ...

    @abstractmethod
    async def get_term(self, term_id: str) -> Optional[VocabularyTermRead]:
        ...

    @abstractmethod
    async def list_terms(self, organization_id: str, include_inactive: bool = False) -> List[VocabularyTermRead]:
        ...

    @abstractmethod
    async def update_term(self, term_id: str, fields: Dict[str, Any]) -> Optional[VocabularyTermRead]:
        ...

    @abstractmethod
    async def adjust_term(
        self,
        term_id: str,
        confidence_delta: float,
        usage_increment: int = 0,
        floor: float = 0.0,
        ceiling: float = 1.0,
    ) -> Optional[VocabularyTermRead]:
        """Atomically shift a term's confidence within [floor, ceiling]"""

    @abstractmethod
    async def deactivate_term(self, term_id: str) -> Optional[VocabularyTermRead]:
        ...

    # Corrections

    @abstractmethod
    async def add_correction(
        self, obj_in: CorrectionCreate, wer: Optional[float] = None, cer: Optional[float] = None
    ) -> CorrectionRead:
        ...

    @abstractmethod
    async def list_corrections(
        self, organization_id: str, since: Optional[datetime] = None
    ) -> List[CorrectionRead]:
        ...

    # Accuracy metrics

    @abstractmethod
    async def add_metric(self, obj_in: AccuracyMetricCreate) -> AccuracyMetricRead:
        ...

    @abstractmethod
    async def list_metrics(
        self,
        organization_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[AccuracyMetricRead]:
        ...

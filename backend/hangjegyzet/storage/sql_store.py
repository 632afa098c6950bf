from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from hangjegyzet.core.exceptions import ResourceNotFoundError
from hangjegyzet.crud.crud_accuracy import accuracy_crud
from hangjegyzet.crud.crud_correction import correction_crud
from hangjegyzet.crud.crud_job import job_crud
from hangjegyzet.crud.crud_organization import organization_crud
from hangjegyzet.crud.crud_usage import usage_crud
from hangjegyzet.crud.crud_vocabulary import vocabulary_crud
from hangjegyzet.db.transaction import transaction
from hangjegyzet.models.models import JobState, TranscriptionMode
from hangjegyzet.schemas.accuracy import AccuracyMetricCreate, AccuracyMetricRead
from hangjegyzet.schemas.organization import OrganizationCreate, OrganizationRead
from hangjegyzet.schemas.transcription import JobRecord, UsageIncrementResult
from hangjegyzet.schemas.vocabulary import (
    CorrectionCreate, CorrectionRead, VocabularyTermCreate, VocabularyTermRead
)
from hangjegyzet.storage.base import PipelineStore


class SQLPipelineStore(PipelineStore):
    """
    SQLAlchemy-backed store

    Every call runs in its own session and transaction. Usage counters are
    changed with single conditional UPDATE statements, so the store is safe
    to share between workers and processes.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def get_organization(self, organization_id: str) -> Optional[OrganizationRead]:
        async with self.session_factory() as db:
            org = await organization_crud.get(db, id=organization_id)
            return OrganizationRead.model_validate(org) if org else None

    async def create_organization(
        self, obj_in: OrganizationCreate, organization_id: Optional[str] = None
    ) -> OrganizationRead:
        async with self.session_factory() as db:
            async with transaction(db):
                org = await organization_crud.create_with_id(
                    db, obj_in=obj_in, organization_id=organization_id
                )
            return OrganizationRead.model_validate(org)

    async def increment_usage_if_under_limit(
        self,
        organization_id: str,
        mode: TranscriptionMode,
        period: str,
        minutes: int,
        limit: int,
    ) -> UsageIncrementResult:
        async with self.session_factory() as db:
            async with transaction(db):
                return await usage_crud.increment_if_under_limit(
                    db,
                    organization_id=organization_id,
                    mode=mode,
                    period=period,
                    minutes=minutes,
                    limit=limit,
                )

    async def decrement_usage(
        self, organization_id: str, mode: TranscriptionMode, period: str, minutes: int
    ) -> int:
        async with self.session_factory() as db:
            async with transaction(db):
                return await usage_crud.decrement(
                    db, organization_id=organization_id, mode=mode, period=period, minutes=minutes
                )

    async def get_usage(self, organization_id: str, mode: TranscriptionMode, period: str) -> int:
        async with self.session_factory() as db:
            return await usage_crud.get_used(
                db, organization_id=organization_id, mode=mode, period=period
            )

    async def create_job(self, job: JobRecord) -> JobRecord:
        async with self.session_factory() as db:
            async with transaction(db):
                db_job = await job_crud.create_from_record(db, record=job)
            return JobRecord.model_validate(db_job)

    async def get_job(self, job_id: str) -> Optional[JobRecord]:
        async with self.session_factory() as db:
            db_job = await job_crud.get(db, id=job_id)
            return JobRecord.model_validate(db_job) if db_job else None

    async def update_job(self, job_id: str, **fields: Any) -> JobRecord:
        async with self.session_factory() as db:
            async with transaction(db):
                db_job = await job_crud.get_or_404(db, id=job_id)
                db_job = await job_crud.update_fields(db, db_obj=db_job, fields=fields)
            return JobRecord.model_validate(db_job)

    async def list_jobs(
        self,
        *,
        organization_id: Optional[str] = None,
        states: Optional[Iterable[JobState]] = None,
        limit: int = 100,
    ) -> List[JobRecord]:
        async with self.session_factory() as db:
            jobs = await job_crud.list_jobs(db, organization_id=organization_id, states=states, limit=limit)
            return [JobRecord.model_validate(job) for job in jobs]

    async def create_term(self, organization_id: str, obj_in: VocabularyTermCreate) -> VocabularyTermRead:
        async with self.session_factory() as db:
            async with transaction(db):
                term = await vocabulary_crud.create(db, obj_in=obj_in, organization_id=organization_id)
            return VocabularyTermRead.model_validate(term)

    async def get_term(self, term_id: str) -> Optional[VocabularyTermRead]:
        async with self.session_factory() as db:
            term = await vocabulary_crud.get(db, id=term_id)
            return VocabularyTermRead.model_validate(term) if term else None

    async def list_terms(self, organization_id: str, include_inactive: bool = False) -> List[VocabularyTermRead]:
        async with self.session_factory() as db:
            terms = await vocabulary_crud.get_organization_terms(
                db, organization_id=organization_id, include_inactive=include_inactive
            )
            return [VocabularyTermRead.model_validate(term) for term in terms]

    async def update_term(self, term_id: str, fields: Dict[str, Any]) -> Optional[VocabularyTermRead]:
        async with self.session_factory() as db:
            try:
                async with transaction(db):
                    term = await vocabulary_crud.get_or_404(db, id=term_id)
                    term = await vocabulary_crud.update(db, db_obj=term, obj_in=fields)
            except ResourceNotFoundError:
                return None
            return VocabularyTermRead.model_validate(term)

    async def adjust_term(
        self,
        term_id: str,
        confidence_delta: float,
        usage_increment: int = 0,
        floor: float = 0.0,
        ceiling: float = 1.0,
    ) -> Optional[VocabularyTermRead]:
        async with self.session_factory() as db:
            async with transaction(db):
                term = await vocabulary_crud.adjust_confidence(
                    db,
                    term_id=term_id,
                    confidence_delta=confidence_delta,
                    usage_increment=usage_increment,
                    floor=floor,
                    ceiling=ceiling,
                )
            return VocabularyTermRead.model_validate(term) if term else None

    async def deactivate_term(self, term_id: str) -> Optional[VocabularyTermRead]:
        async with self.session_factory() as db:
            try:
                async with transaction(db):
                    term = await vocabulary_crud.get_or_404(db, id=term_id)
                    term = await vocabulary_crud.deactivate(db, db_obj=term)
            except ResourceNotFoundError:
                return None
            return VocabularyTermRead.model_validate(term)

    async def add_correction(
        self, obj_in: CorrectionCreate, wer: Optional[float] = None, cer: Optional[float] = None
    ) -> CorrectionRead:
        async with self.session_factory() as db:
            async with transaction(db):
                record = await correction_crud.create(db, obj_in=obj_in, wer=wer, cer=cer)
            return CorrectionRead.model_validate(record)

    async def list_corrections(
        self, organization_id: str, since: Optional[datetime] = None
    ) -> List[CorrectionRead]:
        async with self.session_factory() as db:
            records = await correction_crud.get_organization_corrections(
                db, organization_id=organization_id, since=since
            )
            return [CorrectionRead.model_validate(record) for record in records]

    async def add_metric(self, obj_in: AccuracyMetricCreate) -> AccuracyMetricRead:
        async with self.session_factory() as db:
            async with transaction(db):
                metric = await accuracy_crud.create(db, obj_in=obj_in)
            return AccuracyMetricRead.model_validate(metric)

    async def list_metrics(
        self,
        organization_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[AccuracyMetricRead]:
        async with self.session_factory() as db:
            metrics = await accuracy_crud.get_in_window(
                db, organization_id=organization_id, start=start, end=end
            )
            return [AccuracyMetricRead.model_validate(metric) for metric in metrics]

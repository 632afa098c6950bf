import asyncio
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from hangjegyzet.core.exceptions import ResourceNotFoundError
from hangjegyzet.models.models import JobState, TranscriptionMode
from hangjegyzet.schemas.accuracy import AccuracyMetricCreate, AccuracyMetricRead
from hangjegyzet.schemas.organization import OrganizationCreate, OrganizationRead
from hangjegyzet.schemas.transcription import JobRecord, UsageIncrementResult
from hangjegyzet.schemas.vocabulary import (
    CorrectionCreate, CorrectionRead, VocabularyTermCreate, VocabularyTermRead
)
from hangjegyzet.storage.base import PipelineStore
from hangjegyzet.utils.time import utcnow


class InMemoryPipelineStore(PipelineStore):
    """
    Process-local store for development and tests

    A single asyncio lock serializes every mutation, which makes the
    conditional usage increment atomic across concurrent coroutines.
    """

    def __init__(self):
        self.lock = asyncio.Lock()
        self.organizations: Dict[str, OrganizationRead] = {}
        self.usage: Dict[Tuple[str, str, str], Dict[str, int]] = {}
        self.jobs: Dict[str, JobRecord] = {}
        self.terms: Dict[str, VocabularyTermRead] = {}
        self.corrections: List[CorrectionRead] = []
        self.metrics: List[AccuracyMetricRead] = []

    async def get_organization(self, organization_id: str) -> Optional[OrganizationRead]:
        return self.organizations.get(organization_id)

    async def create_organization(
        self, obj_in: OrganizationCreate, organization_id: Optional[str] = None
    ) -> OrganizationRead:
        async with self.lock:
            org = OrganizationRead(
                id=organization_id or str(uuid.uuid4()),
                created_at=utcnow(),
                **obj_in.model_dump(),
            )
            self.organizations[org.id] = org
            return org

    async def increment_usage_if_under_limit(
        self,
        organization_id: str,
        mode: TranscriptionMode,
        period: str,
        minutes: int,
        limit: int,
    ) -> UsageIncrementResult:
        async with self.lock:
            counter = self.usage.setdefault(
                (organization_id, TranscriptionMode(mode).value, period),
                {"used": 0, "limit": limit, "requests": 0},
            )
            counter["limit"] = limit
            if limit != -1 and counter["used"] + minutes > limit:
                return UsageIncrementResult(applied=False, used=counter["used"], limit=limit)
            counter["used"] += minutes
            counter["requests"] += 1
            return UsageIncrementResult(applied=True, used=counter["used"], limit=limit)

    async def decrement_usage(
        self, organization_id: str, mode: TranscriptionMode, period: str, minutes: int
    ) -> int:
        async with self.lock:
            counter = self.usage.get((organization_id, TranscriptionMode(mode).value, period))
            if counter is None:
                return 0
            counter["used"] = max(0, counter["used"] - minutes)
            return counter["used"]

    async def get_usage(self, organization_id: str, mode: TranscriptionMode, period: str) -> int:
        counter = self.usage.get((organization_id, TranscriptionMode(mode).value, period))
        return counter["used"] if counter else 0

    async def create_job(self, job: JobRecord) -> JobRecord:
        async with self.lock:
            job = job.model_copy(update={"created_at": job.created_at or utcnow()})
            self.jobs[job.id] = job
            return job

    async def get_job(self, job_id: str) -> Optional[JobRecord]:
        return self.jobs.get(job_id)

    async def update_job(self, job_id: str, **fields: Any) -> JobRecord:
        async with self.lock:
            job = self.jobs.get(job_id)
            if job is None:
                raise ResourceNotFoundError("TranscriptionJob", job_id)
            fields["updated_at"] = utcnow()
            job = job.model_copy(update=fields)
            self.jobs[job_id] = job
            return job

    async def list_jobs(
        self,
        *,
        organization_id: Optional[str] = None,
        states: Optional[Iterable[JobState]] = None,
        limit: int = 100,
    ) -> List[JobRecord]:
        wanted = set(states) if states is not None else None
        jobs = [
            job for job in self.jobs.values()
            if (organization_id is None or job.organization_id == organization_id)
            and (wanted is None or job.state in wanted)
        ]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return jobs[:limit]

    async def create_term(self, organization_id: str, obj_in: VocabularyTermCreate) -> VocabularyTermRead:
        async with self.lock:
            term = VocabularyTermRead(
                id=str(uuid.uuid4()),
                organization_id=organization_id,
                created_at=utcnow(),
                **obj_in.model_dump(),
            )
            self.terms[term.id] = term
            return term

    async def get_term(self, term_id: str) -> Optional[VocabularyTermRead]:
        return self.terms.get(term_id)

    async def list_terms(self, organization_id: str, include_inactive: bool = False) -> List[VocabularyTermRead]:
        return [
            term for term in self.terms.values()
            if term.organization_id == organization_id and (include_inactive or term.is_active)
        ]

    async def update_term(self, term_id: str, fields: Dict[str, Any]) -> Optional[VocabularyTermRead]:
        async with self.lock:
            term = self.terms.get(term_id)
            if term is None:
                return None
            term = term.model_copy(update={**fields, "updated_at": utcnow()})
            self.terms[term_id] = term
            return term

    async def adjust_term(
        self,
        term_id: str,
        confidence_delta: float,
        usage_increment: int = 0,
        floor: float = 0.0,
        ceiling: float = 1.0,
    ) -> Optional[VocabularyTermRead]:
        async with self.lock:
            term = self.terms.get(term_id)
            if term is None:
                return None
            confidence = min(ceiling, max(floor, term.confidence_score + confidence_delta))
            term = term.model_copy(update={
                "confidence_score": confidence,
                "usage_count": term.usage_count + usage_increment,
                "updated_at": utcnow(),
            })
            self.terms[term_id] = term
            return term

    async def deactivate_term(self, term_id: str) -> Optional[VocabularyTermRead]:
        async with self.lock:
            term = self.terms.get(term_id)
            if term is None:
                return None
            now = utcnow()
            term = term.model_copy(update={"is_active": False, "deactivated_at": now, "updated_at": now})
            self.terms[term_id] = term
            return term

    async def add_correction(
        self, obj_in: CorrectionCreate, wer: Optional[float] = None, cer: Optional[float] = None
    ) -> CorrectionRead:
        async with self.lock:
            record = CorrectionRead(
                id=str(uuid.uuid4()),
                created_at=utcnow(),
                wer=wer,
                cer=cer,
                **obj_in.model_dump(),
            )
            self.corrections.append(record)
            return record

    async def list_corrections(
        self, organization_id: str, since: Optional[datetime] = None
    ) -> List[CorrectionRead]:
        return [
            record for record in self.corrections
            if record.organization_id == organization_id and (since is None or record.created_at >= since)
        ]

    async def add_metric(self, obj_in: AccuracyMetricCreate) -> AccuracyMetricRead:
        async with self.lock:
            metric = AccuracyMetricRead(id=str(uuid.uuid4()), created_at=utcnow(), **obj_in.model_dump())
            self.metrics.append(metric)
            return metric

    async def list_metrics(
        self,
        organization_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[AccuracyMetricRead]:
        return [
            metric for metric in self.metrics
            if metric.organization_id == organization_id
            and (start is None or metric.created_at >= start)
            and (end is None or metric.created_at <= end)
        ]

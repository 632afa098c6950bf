from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel
from sqlalchemy import and_, true
from sqlalchemy.ext.asyncio import AsyncSession

from hangjegyzet.crud.base import CRUDBase
from hangjegyzet.models.models import JobState, TranscriptionJob
from hangjegyzet.schemas.transcription import JobRecord

# Columns stored as JSON documents
JSON_FIELDS = {"options", "segments", "error", "warnings"}


def to_column_value(field: str, value: Any) -> Any:
    """Convert schema values into what the JSON columns accept"""
    if field not in JSON_FIELDS or value is None:
        return value
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [v.model_dump(mode="json") if isinstance(v, BaseModel) else v for v in value]
    return value


class CRUDJob(CRUDBase[TranscriptionJob, JobRecord, JobRecord]):
    """CRUD operations for TranscriptionJob model"""

    async def create_from_record(self, db: AsyncSession, *, record: JobRecord) -> TranscriptionJob:
        """Persist a new job record"""
        data = {
            field: to_column_value(field, getattr(record, field))
            for field in JobRecord.model_fields
            if field not in ("created_at", "updated_at")
        }
        return await self.create(db, obj_in=data)

    async def update_fields(
            self, db: AsyncSession, *, db_obj: TranscriptionJob, fields: Dict[str, Any]
    ) -> TranscriptionJob:
        """Update a job from schema-typed field values"""
        data = {field: to_column_value(field, value) for field, value in fields.items()}
        return await self.update(db, db_obj=db_obj, obj_in=data)

    async def list_jobs(
            self,
            db: AsyncSession,
            *,
            organization_id: Optional[str] = None,
            states: Optional[Iterable[JobState]] = None,
            limit: int = 100,
    ) -> List[TranscriptionJob]:
        """List jobs, newest first, filtered by organization and state"""
        conditions = []
        if organization_id is not None:
            conditions.append(TranscriptionJob.organization_id == organization_id)
        if states is not None:
            conditions.append(TranscriptionJob.state.in_(list(states)))
        condition = and_(*conditions) if conditions else true()
        return await self.get_by_condition(db, condition=condition, limit=limit)


job_crud = CRUDJob(TranscriptionJob)

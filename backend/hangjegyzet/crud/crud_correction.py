from datetime import datetime
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from hangjegyzet.crud.base import CRUDBase
from hangjegyzet.models.models import CorrectionRecord
from hangjegyzet.schemas.vocabulary import CorrectionCreate


class CRUDCorrection(CRUDBase[CorrectionRecord, CorrectionCreate, CorrectionCreate]):
    """Append-only correction records"""

    async def get_organization_corrections(
            self, db: AsyncSession, *, organization_id: str, since: Optional[datetime] = None
    ) -> List[CorrectionRecord]:
        condition = CorrectionRecord.organization_id == organization_id
        if since is not None:
            condition = condition & (CorrectionRecord.created_at >= since)
        return await self.get_by_condition(db, condition=condition, limit=None, newest_first=False)


correction_crud = CRUDCorrection(CorrectionRecord)

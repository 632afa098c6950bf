from datetime import datetime
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from hangjegyzet.crud.base import CRUDBase
from hangjegyzet.models.models import AccuracyMetric
from hangjegyzet.schemas.accuracy import AccuracyMetricCreate


class CRUDAccuracyMetric(CRUDBase[AccuracyMetric, AccuracyMetricCreate, AccuracyMetricCreate]):
    """Append-only accuracy metrics"""

    async def get_in_window(
            self,
            db: AsyncSession,
            *,
            organization_id: str,
            start: Optional[datetime] = None,
            end: Optional[datetime] = None,
    ) -> List[AccuracyMetric]:
        """Get an organization's metrics created within [start, end]"""
        condition = AccuracyMetric.organization_id == organization_id
        if start is not None:
            condition = condition & (AccuracyMetric.created_at >= start)
        if end is not None:
            condition = condition & (AccuracyMetric.created_at <= end)
        return await self.get_by_condition(db, condition=condition, limit=None, newest_first=False)


accuracy_crud = CRUDAccuracyMetric(AccuracyMetric)

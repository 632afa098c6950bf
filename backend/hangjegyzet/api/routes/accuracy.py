from typing import Any

from fastapi import APIRouter, Depends, Query

from hangjegyzet.api.deps import get_accuracy
from hangjegyzet.core.exceptions import NotFoundException
from hangjegyzet.schemas.accuracy import AccuracyReport
from hangjegyzet.services.accuracy_monitor import AccuracyMonitor

router = APIRouter()


@router.get("/{organization_id}/report", response_model=AccuracyReport)
async def get_report(
        organization_id: str,
        period: str = Query("weekly", pattern="^(weekly|monthly)$"),
        accuracy: AccuracyMonitor = Depends(get_accuracy),
) -> Any:
    """
    Accuracy report for the current week or month.
    """
    report = await accuracy.generate_report(organization_id, period=period)
    if report is None:
        raise NotFoundException(f"Not enough accuracy samples for a {period} report")
    return report

from typing import Any

from fastapi import APIRouter, Depends, status

from hangjegyzet.api.deps import get_accuracy
from hangjegyzet.schemas.vocabulary import CorrectionCreate, CorrectionRead
from hangjegyzet.services.accuracy_monitor import AccuracyMonitor

router = APIRouter()


@router.post("", response_model=CorrectionRead, status_code=status.HTTP_201_CREATED)
async def submit_correction(
        correction_in: CorrectionCreate,
        accuracy: AccuracyMonitor = Depends(get_accuracy),
) -> Any:
    """
    Record a human correction of a transcript passage.

    The correction is scored (WER/CER) and fed to vocabulary learning.
    """
    return await accuracy.record_correction(correction_in)

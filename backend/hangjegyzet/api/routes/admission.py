from typing import Any

from fastapi import APIRouter, Depends

from hangjegyzet.api.deps import get_gate
from hangjegyzet.schemas.transcription import AdmissionDecision, AdmissionRequest
from hangjegyzet.services.quota_gate import QuotaGate

router = APIRouter()


@router.post("", response_model=AdmissionDecision)
async def admit(request: AdmissionRequest, gate: QuotaGate = Depends(get_gate)) -> Any:
    """
    Check and commit an admission for a job that will be submitted later.

    Rejections are returned with allowed=false and the exact figures. On
    success the minutes are charged, an in-flight slot is held and the
    returned admission_id must be passed with the job submission before
    expires_at; unredeemed admissions are refunded.
    """
    return await gate.hold(request)


@router.post("/preview", response_model=AdmissionDecision)
async def preview(request: AdmissionRequest, gate: QuotaGate = Depends(get_gate)) -> Any:
    """
    Same figures as admission without charging anything.
    """
    return await gate.preview(request)

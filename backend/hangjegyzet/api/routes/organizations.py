from typing import Any

from fastapi import APIRouter, Depends, status

from hangjegyzet.api.deps import get_gate, get_store
from hangjegyzet.core.exceptions import ResourceNotFoundError
from hangjegyzet.schemas.organization import OrganizationCreate, OrganizationRead
from hangjegyzet.schemas.transcription import UsageSummary
from hangjegyzet.services.quota_gate import QuotaGate
from hangjegyzet.storage.base import PipelineStore

router = APIRouter()


@router.post("", response_model=OrganizationRead, status_code=status.HTTP_201_CREATED)
async def create_organization(
        organization_in: OrganizationCreate,
        store: PipelineStore = Depends(get_store),
) -> Any:
    """
    Register an organization and its plan.
    """
    return await store.create_organization(organization_in)


@router.get("/{organization_id}", response_model=OrganizationRead)
async def get_organization(organization_id: str, store: PipelineStore = Depends(get_store)) -> Any:
    organization = await store.get_organization(organization_id)
    if organization is None:
        raise ResourceNotFoundError("Organization", organization_id)
    return organization


@router.get("/{organization_id}/usage", response_model=UsageSummary)
async def get_usage(organization_id: str, gate: QuotaGate = Depends(get_gate)) -> Any:
    """
    Per-mode used, limit and remaining minutes for the current period.
    """
    summary = await gate.usage_summary(organization_id)
    if summary is None:
        raise ResourceNotFoundError("Organization", organization_id)
    return summary

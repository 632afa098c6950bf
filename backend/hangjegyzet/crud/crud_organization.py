from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from hangjegyzet.crud.base import CRUDBase
from hangjegyzet.models.models import Organization
from hangjegyzet.schemas.organization import OrganizationCreate


class CRUDOrganization(CRUDBase[Organization, OrganizationCreate, OrganizationCreate]):
    """CRUD operations for Organization model"""

    async def create_with_id(
            self,
            db: AsyncSession,
            *,
            obj_in: OrganizationCreate,
            organization_id: Optional[str] = None,
    ) -> Organization:
        """Create an organization, optionally with a caller-chosen ID"""
        if organization_id:
            return await self.create(db, obj_in=obj_in, id=organization_id)
        return await self.create(db, obj_in=obj_in)


organization_crud = CRUDOrganization(Organization)

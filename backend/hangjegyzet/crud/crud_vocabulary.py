from typing import Any, Dict, List, Optional

from sqlalchemy import case, update
from sqlalchemy.ext.asyncio import AsyncSession
from loguru import logger

from hangjegyzet.core.exceptions import DatabaseError
from hangjegyzet.crud.base import CRUDBase
from hangjegyzet.models.models import VocabularyTerm
from hangjegyzet.schemas.vocabulary import VocabularyTermCreate, VocabularyTermUpdate
from hangjegyzet.utils.time import utcnow


class CRUDVocabularyTerm(CRUDBase[VocabularyTerm, VocabularyTermCreate, VocabularyTermUpdate]):
    """CRUD operations for VocabularyTerm model"""

    async def get_organization_terms(
            self, db: AsyncSession, *, organization_id: str, include_inactive: bool = False
    ) -> List[VocabularyTerm]:
        """Get all terms of an organization, active only unless requested"""
        condition = VocabularyTerm.organization_id == organization_id
        if not include_inactive:
            condition = condition & VocabularyTerm.is_active.is_(True)
        return await self.get_by_condition(db, condition=condition, limit=None, newest_first=False)

    async def adjust_confidence(
            self,
            db: AsyncSession,
            *,
            term_id: str,
            confidence_delta: float,
            usage_increment: int = 0,
            floor: float = 0.0,
            ceiling: float = 1.0,
    ) -> Optional[VocabularyTerm]:
        """
        Shift a term's confidence in one UPDATE, clamped to [floor, ceiling]

        Args:
            db: Database session
            term_id: Term ID
            confidence_delta: Signed confidence change
            usage_increment: Usage count increment
            floor: Lowest allowed confidence
            ceiling: Highest allowed confidence

        Returns:
            Updated term, None if it does not exist
        """
        shifted = VocabularyTerm.confidence_score + confidence_delta
        try:
            stmt = (
                update(VocabularyTerm)
                .where(VocabularyTerm.id == term_id)
                .values(
                    confidence_score=case(
                        (shifted > ceiling, ceiling),
                        (shifted < floor, floor),
                        else_=shifted,
                    ),
                    usage_count=VocabularyTerm.usage_count + usage_increment,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
        except Exception as e:
            logger.error(f"Error adjusting vocabulary term {term_id}: {e}")
            raise DatabaseError("Error adjusting vocabulary term") from e

        if result.rowcount == 0:
            return None
        term = await self.get(db, id=term_id)
        await db.refresh(term)
        return term

    async def deactivate(self, db: AsyncSession, *, db_obj: VocabularyTerm) -> VocabularyTerm:
        """Soft-delete a term"""
        fields: Dict[str, Any] = {"is_active": False, "deactivated_at": utcnow()}
        return await self.update(db, db_obj=db_obj, obj_in=fields)


vocabulary_crud = CRUDVocabularyTerm(VocabularyTerm)

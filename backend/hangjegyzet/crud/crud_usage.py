from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession
from loguru import logger

from hangjegyzet.core.exceptions import DatabaseError
from hangjegyzet.models.models import TranscriptionMode, UsageCounter, _uuid
from hangjegyzet.schemas.transcription import UsageIncrementResult


class CRUDUsage:
    """
    Usage counter operations

    The counter row is only changed by single conditional UPDATE statements,
    so concurrent admissions cannot both pass a check and then overshoot the
    limit.
    """

    def _insert(self, db: AsyncSession):
        dialect = db.get_bind().dialect.name
        if dialect == "postgresql":
            return postgresql.insert(UsageCounter)
        if dialect == "sqlite":
            return sqlite.insert(UsageCounter)
        raise DatabaseError(f"Unsupported database dialect for usage counters: {dialect}")

    async def ensure_counter(
            self, db: AsyncSession, *, organization_id: str, mode: TranscriptionMode, period: str, limit: int
    ) -> None:
        """Create the counter row if it does not exist yet"""
        stmt = self._insert(db).values(
            id=_uuid(),
            organization_id=organization_id,
            mode=TranscriptionMode(mode),
            period=period,
            used_minutes=0,
            limit_minutes=limit,
            request_count=0,
        ).on_conflict_do_nothing(index_elements=["organization_id", "mode", "period"])
        await db.execute(stmt)

    async def increment_if_under_limit(
            self,
            db: AsyncSession,
            *,
            organization_id: str,
            mode: TranscriptionMode,
            period: str,
            minutes: int,
            limit: int,
    ) -> UsageIncrementResult:
        """
        Add minutes to the counter only if the new total stays within limit

        Args:
            db: Database session
            organization_id: Organization ID
            mode: Transcription mode
            period: Billing period key (YYYY-MM)
            minutes: Minutes to add
            limit: Effective limit, -1 for unlimited

        Returns:
            Increment result; applied is False when the limit would be exceeded
        """
        try:
            await self.ensure_counter(
                db, organization_id=organization_id, mode=mode, period=period, limit=limit
            )

            conditions = [
                UsageCounter.organization_id == organization_id,
                UsageCounter.mode == TranscriptionMode(mode),
                UsageCounter.period == period,
            ]
            if limit != -1:
                conditions.append(UsageCounter.used_minutes + minutes <= limit)

            stmt = (
                update(UsageCounter)
                .where(*conditions)
                .values(
                    used_minutes=UsageCounter.used_minutes + minutes,
                    request_count=UsageCounter.request_count + 1,
                    limit_minutes=limit,
                )
                .returning(UsageCounter.used_minutes)
                .execution_options(synchronize_session=False)
            )
            row = (await db.execute(stmt)).first()
            if row is not None:
                return UsageIncrementResult(applied=True, used=row[0], limit=limit)

            used = await self.get_used(db, organization_id=organization_id, mode=mode, period=period)
            return UsageIncrementResult(applied=False, used=used, limit=limit)
        except DatabaseError:
            raise
        except Exception as e:
            logger.error(f"Error incrementing usage for organization {organization_id}: {e}")
            raise DatabaseError("Error updating usage counter") from e

    async def decrement(
            self,
            db: AsyncSession,
            *,
            organization_id: str,
            mode: TranscriptionMode,
            period: str,
            minutes: int,
    ) -> int:
        """Compensating decrement that never goes below zero"""
        try:
            conditions = [
                UsageCounter.organization_id == organization_id,
                UsageCounter.mode == TranscriptionMode(mode),
                UsageCounter.period == period,
            ]
            # Counters smaller than the refund are floored at zero
            stmt = (
                update(UsageCounter)
                .where(*conditions, UsageCounter.used_minutes >= minutes)
                .values(used_minutes=UsageCounter.used_minutes - minutes)
                .returning(UsageCounter.used_minutes)
                .execution_options(synchronize_session=False)
            )
            row = (await db.execute(stmt)).first()
            if row is not None:
                return row[0]

            stmt = (
                update(UsageCounter)
                .where(*conditions)
                .values(used_minutes=0)
                .execution_options(synchronize_session=False)
            )
            await db.execute(stmt)
            return 0
        except Exception as e:
            logger.error(f"Error decrementing usage for organization {organization_id}: {e}")
            raise DatabaseError("Error updating usage counter") from e

    async def get_used(
            self, db: AsyncSession, *, organization_id: str, mode: TranscriptionMode, period: str
    ) -> int:
        counter = await self.get_counter(db, organization_id=organization_id, mode=mode, period=period)
        return counter.used_minutes if counter else 0

    async def get_counter(
            self, db: AsyncSession, *, organization_id: str, mode: TranscriptionMode, period: str
    ) -> Optional[UsageCounter]:
        try:
            result = await db.execute(
                select(UsageCounter).where(
                    UsageCounter.organization_id == organization_id,
                    UsageCounter.mode == TranscriptionMode(mode),
                    UsageCounter.period == period,
                )
            )
            return result.scalars().first()
        except Exception as e:
            logger.error(f"Error reading usage for organization {organization_id}: {e}")
            raise DatabaseError("Error reading usage counter") from e


usage_crud = CRUDUsage()

from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession
from loguru import logger

from hangjegyzet.core.exceptions import DatabaseError, ResourceNotFoundError


@asynccontextmanager
async def transaction(db: AsyncSession):
    """
    Context manager for database transactions

    Usage:
        async with transaction(db):
            # database operations

    Raises:
        DatabaseError: If there's an error during the transaction
    """
    try:
        yield
        await db.commit()
    except ResourceNotFoundError:
        await db.rollback()
        raise
    except DatabaseError:
        await db.rollback()
        raise
    except Exception as e:
        await db.rollback()
        logger.error(f"Transaction error: {str(e)}")
        raise DatabaseError(f"Database operation failed: {str(e)}") from e

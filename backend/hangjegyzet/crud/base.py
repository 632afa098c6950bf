from typing import Any, Dict, Generic, List, Optional, Type, TypeVar, Union

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from loguru import logger

from hangjegyzet.db.base_class import Base
from hangjegyzet.core.exceptions import DatabaseError, ResourceNotFoundError

ModelType = TypeVar("ModelType", bound=Base)
CreateSchemaType = TypeVar("CreateSchemaType", bound=BaseModel)
UpdateSchemaType = TypeVar("UpdateSchemaType", bound=BaseModel)


class CRUDBase(Generic[ModelType, CreateSchemaType, UpdateSchemaType]):
    """
    Base class for CRUD operations with error handling

    Records in this project are soft-deleted or append-only, so there is no
    generic remove.
    """

    def __init__(self, model: Type[ModelType]):
        """
        Initialize with model class

        Args:
            model: SQLAlchemy model class
        """
        self.model = model

    async def get(self, db: AsyncSession, id: Any) -> Optional[ModelType]:
        """
        Get a record by ID

        Args:
            db: Database session
            id: Record ID

        Returns:
            Model instance if found, None otherwise
        """
        try:
            result = await db.execute(select(self.model).filter(self.model.id == id))
            return result.scalars().first()
        except Exception as e:
            logger.error(f"Error retrieving {self.model.__name__} with ID {id}: {e}")
            raise DatabaseError(f"Error retrieving {self.model.__name__}") from e

    async def get_or_404(self, db: AsyncSession, id: Any) -> ModelType:
        """
        Get a record by ID or raise if it does not exist

        Raises:
            ResourceNotFoundError: If record doesn't exist
        """
        model = await self.get(db, id=id)
        if model is None:
            raise ResourceNotFoundError(self.model.__name__, str(id))
        return model

    async def get_by_condition(
            self, db: AsyncSession, *, condition, skip: int = 0, limit: Optional[int] = 100,
            newest_first: bool = True,
    ) -> List[ModelType]:
        """
        Get records by condition

        Args:
            db: Database session
            condition: SQLAlchemy filter condition
            skip: Number of records to skip
            limit: Maximum number of records to return, None for all
            newest_first: Order by creation time descending

        Returns:
            List of model instances
        """
        try:
            order = self.model.created_at.desc() if newest_first else self.model.created_at.asc()
            query = select(self.model).filter(condition).order_by(order).offset(skip)
            if limit is not None:
                query = query.limit(limit)
            result = await db.execute(query)
            return list(result.scalars().all())
        except Exception as e:
            logger.error(f"Error retrieving {self.model.__name__} by condition: {e}")
            raise DatabaseError(f"Error retrieving {self.model.__name__} records") from e

    async def create(
            self, db: AsyncSession, *, obj_in: Union[CreateSchemaType, Dict[str, Any]], **kwargs
    ) -> ModelType:
        """
        Create a new record

        Args:
            db: Database session
            obj_in: Input schema or dictionary for creation
            **kwargs: Additional model fields

        Returns:
            Created model instance
        """
        try:
            obj_in_data = obj_in if isinstance(obj_in, dict) else obj_in.model_dump()
            db_obj = self.model(**obj_in_data, **kwargs)
            db.add(db_obj)
            await db.flush()
            await db.refresh(db_obj)
            return db_obj
        except Exception as e:
            logger.error(f"Error creating {self.model.__name__}: {e}")
            await db.rollback()
            raise DatabaseError(f"Error creating {self.model.__name__}") from e

    async def update(
            self,
            db: AsyncSession,
            *,
            db_obj: ModelType,
            obj_in: Union[UpdateSchemaType, Dict[str, Any]]
    ) -> ModelType:
        """
        Update a record

        Args:
            db: Database session
            db_obj: Existing model instance
            obj_in: Update schema or dictionary of fields to update

        Returns:
            Updated model instance
        """
        try:
            if isinstance(obj_in, dict):
                update_data = obj_in
            else:
                update_data = obj_in.model_dump(exclude_unset=True)

            for field, value in update_data.items():
                if hasattr(db_obj, field):
                    setattr(db_obj, field, value)

            db.add(db_obj)
            await db.flush()
            await db.refresh(db_obj)
            return db_obj
        except Exception as e:
            logger.error(f"Error updating {self.model.__name__} {db_obj.id}: {e}")
            await db.rollback()
            raise DatabaseError(f"Error updating {self.model.__name__}") from e

from typing import Any, Dict, Generic, List, Optional, Type, TypeVar, Union, Tuple
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, and_
from app.models.base import Base
from app.core.exceptions import NotFoundError

ModelType = TypeVar("ModelType", bound=Base)
CreateSchemaType = TypeVar("CreateSchemaType", bound=BaseModel)
UpdateSchemaType = TypeVar("UpdateSchemaType", bound=BaseModel)

class CRUDBase(Generic[ModelType, CreateSchemaType, UpdateSchemaType]):
    """Generic repository.

    Writes only flush: the calling service owns the transaction and decides
    when to commit, so a state change and its audit rows land together.
    """
    def __init__(self, model: Type[ModelType]):
        self.model = model

    async def get(self, db: AsyncSession, id: Any, *, raise_if_not_found: bool = True, for_update: bool = False) -> Optional[ModelType]:
        """Get a single record by ID"""
        query = select(self.model).where(self.model.id == id)
        if for_update:
            query = query.with_for_update()
        result = await db.execute(query)
        obj = result.scalar_one_or_none()

        if raise_if_not_found and obj is None:
            raise NotFoundError(f"{self.model.__name__}")

        return obj

    async def get_multi(
        self,
        db: AsyncSession,
        *,
        skip: int = 0,
        limit: int = 100,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        order_desc: bool = True,
    ) -> Tuple[List[ModelType], int]:
        """Get multiple records with pagination and equality/IN filtering"""
        query = select(self.model)

        if filters:
            filter_conditions = []
            for field, value in filters.items():
                if hasattr(self.model, field):
                    if isinstance(value, (list, tuple)):
                        filter_conditions.append(getattr(self.model, field).in_(value))
                    else:
                        filter_conditions.append(getattr(self.model, field) == value)

            if filter_conditions:
                query = query.where(and_(*filter_conditions))

        # Get total count for pagination
        count_query = select(func.count()).select_from(query.subquery())
        total_result = await db.execute(count_query)
        total = total_result.scalar()

        # Apply ordering
        if order_by and hasattr(self.model, order_by):
            order_field = getattr(self.model, order_by)
            query = query.order_by(order_field.desc() if order_desc else order_field.asc())
        else:
            # Default ordering by created_at desc
            query = query.order_by(self.model.created_at.desc())

        query = query.offset(skip).limit(limit)

        result = await db.execute(query)
        items = result.scalars().all()

        return items, total

    async def create(self, db: AsyncSession, *, obj_in: Union[CreateSchemaType, Dict[str, Any]]) -> ModelType:
        """Create a new record (flushed, not committed)"""
        if isinstance(obj_in, dict):
            obj_in_data = dict(obj_in)
        else:
            # model_dump() preserves Python types (date, datetime, enums)
            obj_in_data = obj_in.model_dump(exclude_unset=True)

        db_obj = self.model(**obj_in_data)
        db.add(db_obj)
        await db.flush()
        return db_obj

    async def update(
        self,
        db: AsyncSession,
        *,
        db_obj: ModelType,
        obj_in: Union[UpdateSchemaType, Dict[str, Any]]
    ) -> ModelType:
        """Update a record (flushed, not committed)"""
        if isinstance(obj_in, dict):
            update_data = obj_in
        else:
            update_data = obj_in.model_dump(exclude_unset=True)

        for field, value in update_data.items():
            if hasattr(db_obj, field):
                setattr(db_obj, field, value)

        db.add(db_obj)
        await db.flush()
        return db_obj

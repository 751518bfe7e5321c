"""Shared DAO plumbing for the knowledge-graph tables."""

import uuid
from typing import Any, Generic, TypeVar

from sqlalchemy import Select, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from contextkeeper.core.database import Base

ModelT = TypeVar("ModelT", bound=Base)


class BaseDAO(Generic[ModelT]):
    """Subclasses bind ``model``; every method takes the caller's session."""

    model: type[ModelT]

    async def get_by_id(self, session: AsyncSession, pk: uuid.UUID) -> ModelT | None:
        if pk is None:
            raise ValueError(f"{self.model.__name__}: primary key is required")
        return await session.get(self.model, pk)

    async def get_by_field(self, session: AsyncSession, **filters: Any) -> ModelT | None:
        """First row whose columns equal every keyword in *filters*."""
        if not filters:
            raise ValueError(f"{self.model.__name__}: at least one filter is required")
        stmt = select(self.model).filter_by(**filters).limit(1)
        return (await session.scalars(stmt)).first()

    async def count(self, session: AsyncSession, query: Select | None = None) -> int:
        """Rows matched by *query*, or the whole table when omitted."""
        source = self.model.__table__ if query is None else query.subquery()
        return await session.scalar(select(func.count()).select_from(source)) or 0

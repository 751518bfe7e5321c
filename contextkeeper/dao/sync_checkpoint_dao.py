"""SyncCheckpointDAO — sync_checkpoints table operations."""

import uuid
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from contextkeeper.core.database import dialect_insert, utcnow
from contextkeeper.dao.base import BaseDAO
from contextkeeper.models.sync_checkpoint import SyncCheckpoint


class SyncCheckpointDAO(BaseDAO[SyncCheckpoint]):
    model = SyncCheckpoint

    async def get(
        self, session: AsyncSession, project_id: str, platform: str
    ) -> SyncCheckpoint | None:
        return await self.get_by_field(session, project_id=project_id, platform=platform)

    async def get_for_update(
        self, session: AsyncSession, project_id: str, platform: str
    ) -> SyncCheckpoint:
        """Return the row for (project, platform), creating it if absent.

        The row is locked ``FOR UPDATE`` on databases that support it.
        """
        now = utcnow()
        stmt = (
            dialect_insert(session, SyncCheckpoint)
            .values(
                id=uuid.uuid4(),
                project_id=project_id,
                platform=platform,
                status="idle",
                error_count=0,
                total_events_processed=0,
                last_batch_size=0,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["project_id", "platform"])
        )
        await session.execute(stmt)
        query = (
            select(SyncCheckpoint)
            .where(SyncCheckpoint.project_id == project_id, SyncCheckpoint.platform == platform)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await session.execute(query)
        return result.scalar_one()

    async def update_fields(
        self, session: AsyncSession, project_id: str, platform: str, **values: Any
    ) -> SyncCheckpoint:
        checkpoint = await self.get_for_update(session, project_id, platform)
        for key, val in values.items():
            setattr(checkpoint, key, val)
        await session.flush()
        return checkpoint

    async def list_by_project(self, session: AsyncSession, project_id: str) -> list[SyncCheckpoint]:
        stmt = (
            select(SyncCheckpoint)
            .where(SyncCheckpoint.project_id == project_id)
            .order_by(SyncCheckpoint.platform)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

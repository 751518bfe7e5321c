"""sync_checkpoints table."""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Enum, Integer, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from contextkeeper.core.database import Base, TimestampMixin, UTCDateTime

SYNC_STATUSES = ("idle", "running", "failed", "disabled")

sync_status_enum = Enum(
    *SYNC_STATUSES,
    name="sync_status",
    native_enum=False,
    create_constraint=True,
    length=16,
)


class SyncCheckpoint(TimestampMixin, Base):
    """Per (project, platform) incremental sync position and health."""

    __tablename__ = "sync_checkpoints"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id: Mapped[str] = mapped_column(Text, nullable=False)
    platform: Mapped[str] = mapped_column(Text, nullable=False)
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    status: Mapped[str] = mapped_column(sync_status_enum, nullable=False, default="idle")
    error_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    total_events_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_batch_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_run_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())

    __table_args__ = (
        UniqueConstraint("project_id", "platform", name="uq_sync_checkpoints_project_platform"),
    )

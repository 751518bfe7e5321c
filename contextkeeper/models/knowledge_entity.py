"""knowledge_entities and knowledge_entity_revisions tables."""

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from contextkeeper.core.database import Base, TimestampMixin, UTCDateTime

ENTITY_TYPES = ("feature", "file", "decision", "discussion", "contributor")

entity_type_enum = Enum(
    *ENTITY_TYPES,
    name="entity_type",
    native_enum=False,
    create_constraint=True,
    length=16,
)

json_type = JSON().with_variant(JSONB(), "postgresql")


class KnowledgeEntity(TimestampMixin, Base):
    """Deduplicated graph node, keyed by (project, platform, platform_id, type)."""

    __tablename__ = "knowledge_entities"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id: Mapped[str] = mapped_column(Text, nullable=False)
    entity_type: Mapped[str] = mapped_column(entity_type_enum, nullable=False)
    platform: Mapped[str] = mapped_column(Text, nullable=False)
    platform_id: Mapped[str] = mapped_column(Text, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False, default="")
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    participants: Mapped[list[str]] = mapped_column(json_type, nullable=False, default=list)
    source_event_ids: Mapped[list[str]] = mapped_column(json_type, nullable=False, default=list)
    attributes: Mapped[dict[str, Any]] = mapped_column(json_type, nullable=False, default=dict)
    observed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __table_args__ = (
        UniqueConstraint(
            "project_id",
            "platform",
            "platform_id",
            "entity_type",
            name="uq_knowledge_entities_natural_key",
        ),
        Index("idx_knowledge_entities_project_type", "project_id", "entity_type"),
    )


class KnowledgeEntityRevision(Base):
    """Append-only snapshot written on every upsert of an entity."""

    __tablename__ = "knowledge_entity_revisions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    entity_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("knowledge_entities.id", ondelete="CASCADE"),
        nullable=False,
    )
    project_id: Mapped[str] = mapped_column(Text, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False, default="")
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    attributes: Mapped[dict[str, Any]] = mapped_column(json_type, nullable=False, default=dict)
    source_event_id: Mapped[Optional[str]] = mapped_column(Text)
    observed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    recorded_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    __table_args__ = (
        UniqueConstraint("entity_id", "version", name="uq_knowledge_entity_revisions_version"),
    )

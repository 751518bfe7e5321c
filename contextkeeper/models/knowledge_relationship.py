"""knowledge_relationships table."""

import uuid
from typing import Any

from sqlalchemy import Double, Enum, ForeignKey, Index, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from contextkeeper.core.database import Base, TimestampMixin
from contextkeeper.models.knowledge_entity import json_type

RELATIONSHIP_TYPES = ("relates_to", "introduced_by", "modified_by", "discussed_in")

relationship_type_enum = Enum(
    *RELATIONSHIP_TYPES,
    name="relationship_type",
    native_enum=False,
    create_constraint=True,
    length=16,
)


class KnowledgeRelationship(TimestampMixin, Base):
    """Directed typed edge; both endpoints must exist in the same project."""

    __tablename__ = "knowledge_relationships"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id: Mapped[str] = mapped_column(Text, nullable=False)
    source_entity_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("knowledge_entities.id", ondelete="CASCADE"),
        nullable=False,
    )
    target_entity_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("knowledge_entities.id", ondelete="CASCADE"),
        nullable=False,
    )
    relationship_type: Mapped[str] = mapped_column(relationship_type_enum, nullable=False)
    strength: Mapped[float] = mapped_column(Double, nullable=False, default=1.0)
    attributes: Mapped[dict[str, Any]] = mapped_column(json_type, nullable=False, default=dict)

    __table_args__ = (
        UniqueConstraint(
            "source_entity_id",
            "target_entity_id",
            "relationship_type",
            name="uq_knowledge_relationships_edge",
        ),
        Index("idx_knowledge_relationships_source", "source_entity_id"),
        Index("idx_knowledge_relationships_target", "target_entity_id"),
    )

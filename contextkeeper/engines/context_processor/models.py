"""Request/response contract between ingestion and the context processor."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from contextkeeper.connectors.models import EventType, NormalizedEvent

EntityType = Literal["feature", "file", "decision", "discussion", "contributor"]
RelationshipType = Literal["relates_to", "introduced_by", "modified_by", "discussed_in"]


class EntityKey(BaseModel):
    """Natural key of a knowledge entity within one project."""

    model_config = ConfigDict(frozen=True)

    platform: str
    platform_id: str
    entity_type: EntityType


class EntityDraft(BaseModel):
    entity_type: EntityType
    platform: str
    platform_id: str
    title: str = ""
    content: str = ""
    participants: list[str] = Field(default_factory=list)
    attributes: dict[str, Any] = Field(default_factory=dict)

    @property
    def key(self) -> EntityKey:
        return EntityKey(
            platform=self.platform,
            platform_id=self.platform_id,
            entity_type=self.entity_type,
        )


class RelationshipDraft(BaseModel):
    """Directed edge whose endpoints are named by natural key."""

    source: EntityKey
    target: EntityKey
    relationship_type: RelationshipType
    strength: float = Field(default=1.0, ge=0.0, le=1.0)
    attributes: dict[str, Any] = Field(default_factory=dict)


class ExtractionResult(BaseModel):
    entities: list[EntityDraft] = Field(default_factory=list)
    relationships: list[RelationshipDraft] = Field(default_factory=list)


class EventPayload(BaseModel):
    """Wire form of a :class:`NormalizedEvent`."""

    platform_id: str
    event_type: EventType
    timestamp: datetime
    author: str = ""
    content: str = ""
    platform: str
    title: str = ""
    thread_id: str | None = None
    parent_id: str | None = None
    file_refs: list[str] = Field(default_factory=list)
    feature_refs: list[str] = Field(default_factory=list)
    labels: list[str] = Field(default_factory=list)
    state: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_event(cls, event: NormalizedEvent) -> EventPayload:
        return cls(
            platform_id=event.platform_id,
            event_type=event.event_type,
            timestamp=event.timestamp,
            author=event.author,
            content=event.content,
            platform=event.platform,
            title=event.title,
            thread_id=event.thread_id,
            parent_id=event.parent_id,
            file_refs=list(event.file_refs),
            feature_refs=list(event.feature_refs),
            labels=list(event.labels),
            state=event.state,
            metadata=dict(event.metadata),
        )


class ProcessingRequest(BaseModel):
    project_id: str
    event: EventPayload

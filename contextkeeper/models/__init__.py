"""SQLAlchemy ORM models — one file per table."""

from contextkeeper.models.knowledge_entity import KnowledgeEntity, KnowledgeEntityRevision
from contextkeeper.models.knowledge_relationship import KnowledgeRelationship
from contextkeeper.models.sync_checkpoint import SyncCheckpoint

__all__ = [
    "KnowledgeEntity",
    "KnowledgeEntityRevision",
    "KnowledgeRelationship",
    "SyncCheckpoint",
]

"""Ingestion engine — checkpointed sync cycles from connectors into the knowledge graph."""

from contextkeeper.engines.ingestion.models import (
    IntegrationHealth,
    ProjectHealth,
    SyncResult,
    SyncState,
)
from contextkeeper.engines.ingestion.orchestrator import IngestionOrchestrator

__all__ = [
    "IngestionOrchestrator",
    "IntegrationHealth",
    "ProjectHealth",
    "SyncResult",
    "SyncState",
]

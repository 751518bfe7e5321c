"""Context processor engine — normalized events to knowledge-graph drafts."""

from contextkeeper.engines.context_processor.http import HttpContextProcessor
from contextkeeper.engines.context_processor.models import (
    EntityDraft,
    EntityKey,
    EventPayload,
    ExtractionResult,
    ProcessingRequest,
    RelationshipDraft,
)
from contextkeeper.engines.context_processor.processor import (
    ContextProcessor,
    create_context_processor,
)
from contextkeeper.engines.context_processor.rules import RuleBasedContextProcessor, extract

__all__ = [
    "ContextProcessor",
    "EntityDraft",
    "EntityKey",
    "EventPayload",
    "ExtractionResult",
    "HttpContextProcessor",
    "ProcessingRequest",
    "RelationshipDraft",
    "RuleBasedContextProcessor",
    "create_context_processor",
    "extract",
]

"""ContextProcessor protocol and environment-driven selection."""

from __future__ import annotations

import os
from typing import Protocol, runtime_checkable

from contextkeeper.connectors.models import NormalizedEvent
from contextkeeper.engines.context_processor.http import HttpContextProcessor
from contextkeeper.engines.context_processor.models import ExtractionResult
from contextkeeper.engines.context_processor.rules import RuleBasedContextProcessor


@runtime_checkable
class ContextProcessor(Protocol):
    """Turns one normalized event into entity and relationship drafts."""

    async def process(self, project_id: str, event: NormalizedEvent) -> ExtractionResult: ...


def create_context_processor(url: str | None = None) -> ContextProcessor:
    """HTTP processor when a service URL is configured, else the rule-based one."""
    url = url or os.environ.get("CONTEXTKEEPER_CONTEXT_PROCESSOR_URL")
    if url:
        return HttpContextProcessor(url)
    return RuleBasedContextProcessor()

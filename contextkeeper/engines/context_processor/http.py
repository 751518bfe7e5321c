"""HttpContextProcessor — delegate extraction to an external service."""

from __future__ import annotations

import httpx
import structlog

from contextkeeper.connectors.models import NormalizedEvent
from contextkeeper.engines.context_processor.models import (
    EventPayload,
    ExtractionResult,
    ProcessingRequest,
)

log = structlog.get_logger("contextkeeper.processor")

_DEFAULT_TIMEOUT = 30.0


class HttpContextProcessor:
    """POSTs a :class:`ProcessingRequest` and validates the reply.

    Transport and HTTP errors propagate; the orchestrator records them as
    per-event failures.
    """

    def __init__(
        self,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        timeout: float = _DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url
        self._client = httpx.AsyncClient(
            headers=headers or {},
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> HttpContextProcessor:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def process(self, project_id: str, event: NormalizedEvent) -> ExtractionResult:
        request = ProcessingRequest(project_id=project_id, event=EventPayload.from_event(event))
        resp = await self._client.post(self._url, json=request.model_dump(mode="json"))
        resp.raise_for_status()
        result = ExtractionResult.model_validate(resp.json())
        log.debug(
            "processor.extracted",
            event_id=event.platform_id,
            entities=len(result.entities),
            relationships=len(result.relationships),
        )
        return result

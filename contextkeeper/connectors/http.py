"""Async platform HTTP client with rate-limit admission, pagination, and retries."""

from __future__ import annotations

import asyncio
import re
import time
from collections.abc import AsyncGenerator
from datetime import timedelta
from typing import Any

import httpx
import structlog

from contextkeeper.connectors.errors import ErrorRule, RateLimitError, classify_error
from contextkeeper.connectors.rate_limiter import RateLimiter

log = structlog.get_logger("contextkeeper.connectors")

_NEXT_LINK_RE = re.compile(r'<([^>]+)>;\s*rel="next"')

_RETRY_BASE_DELAY = 1.0  # seconds


class PlatformClient:
    """Thin async wrapper around one platform's REST API.

    Every request first waits on the connector's :class:`RateLimiter`.
    5xx responses and timeouts are retried in place with exponential delay;
    a rate-limit response is *not* slept on here but raised as a classified
    :class:`RateLimitError` so the orchestrator can schedule the retry.
    All other failures are classified with the platform's error table.
    """

    def __init__(
        self,
        platform: str,
        base_url: str,
        *,
        headers: dict[str, str] | None = None,
        rate_limiter: RateLimiter | None = None,
        error_rules: tuple[ErrorRule, ...] = (),
        max_retries: int = 3,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.platform = platform
        self._rate_limiter = rate_limiter
        self._error_rules = error_rules
        self._max_retries = max(max_retries, 1)
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers or {},
            timeout=timeout,
            transport=transport,
        )

    # ── lifecycle ──────────────────────────────────────────────────────────

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> PlatformClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # ── public ─────────────────────────────────────────────────────────────

    async def get(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        """Single GET, returns parsed JSON."""
        response = await self.request("GET", path, params=params, headers=headers)
        return response.json()

    async def post(
        self,
        path: str,
        json: Any = None,
        data: dict[str, Any] | None = None,
    ) -> Any:
        response = await self.request("POST", path, json=json, data=data)
        return response.json()

    async def get_paginated(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        *,
        max_pages: int = 10,
    ) -> AsyncGenerator[dict[str, Any], None]:
        """Yield JSON items from an endpoint paginated with ``Link: rel="next"``.

        Stops after *max_pages* pages, logging a warning if more were left.
        Callers that need fewer items simply stop iterating; no further page
        is requested.
        """
        url: str | None = path
        first_params = dict(params or {})
        page = 0

        while url and page < max_pages:
            response = await self.request("GET", url, params=first_params if page == 0 else None)
            data = response.json()
            if isinstance(data, list):
                for item in data:
                    yield item
            else:
                yield data

            url = self._parse_next_link(response.headers.get("Link", ""))
            page += 1

        if url:
            log.warning(
                "http.pagination_truncated", platform=self.platform, path=path, max_pages=max_pages
            )

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send a request, retrying 5xx and timeouts, classifying everything else."""
        last_exc: Exception | None = None
        for attempt in range(self._max_retries):
            if self._rate_limiter is not None:
                await self._rate_limiter.wait()
            try:
                resp = await self._client.request(method, url, **kwargs)
            except httpx.TimeoutException as exc:
                log.warning(
                    "http.timeout",
                    platform=self.platform,
                    url=url,
                    attempt=attempt + 1,
                    max_retries=self._max_retries,
                )
                last_exc = exc
            except httpx.TransportError as exc:
                raise classify_error(self.platform, exc, self._error_rules) from exc
            else:
                if self._is_rate_limited(resp):
                    wait = self._get_rate_limit_wait(resp)
                    log.warning(
                        "http.rate_limited",
                        platform=self.platform,
                        url=url,
                        status=resp.status_code,
                        retry_after=wait.total_seconds() if wait else None,
                    )
                    exc = httpx.HTTPStatusError(
                        f"{resp.status_code} rate limit exceeded",
                        request=resp.request,
                        response=resp,
                    )
                    err = classify_error(
                        self.platform, exc, self._error_rules, retry_after=wait
                    )
                    if not isinstance(err, RateLimitError):
                        err = RateLimitError(self.platform, str(exc), retry_after=wait)
                    raise err from exc

                if resp.status_code < 500:
                    try:
                        resp.raise_for_status()
                    except httpx.HTTPStatusError as exc:
                        raise classify_error(self.platform, exc, self._error_rules) from exc
                    return resp

                log.warning(
                    "http.server_error",
                    platform=self.platform,
                    url=url,
                    status=resp.status_code,
                    attempt=attempt + 1,
                    max_retries=self._max_retries,
                )
                last_exc = httpx.HTTPStatusError(
                    f"{resp.status_code}", request=resp.request, response=resp
                )

            if attempt < self._max_retries - 1:
                await asyncio.sleep(_RETRY_BASE_DELAY * (2**attempt))

        err = classify_error(self.platform, last_exc, self._error_rules)  # type: ignore[arg-type]
        raise err from last_exc

    # ── internal ───────────────────────────────────────────────────────────

    @staticmethod
    def _is_rate_limited(response: httpx.Response) -> bool:
        """429, or a 403 whose headers say the quota is exhausted."""
        if response.status_code == 429:
            return True
        if response.status_code != 403:
            return False
        remaining = PlatformClient._parse_header_float(
            response.headers.get("X-RateLimit-Remaining")
        )
        if remaining is not None:
            return remaining == 0
        return "Retry-After" in response.headers

    @staticmethod
    def _get_rate_limit_wait(response: httpx.Response) -> timedelta | None:
        """How long the platform asks us to wait, or None if it does not say."""
        retry_after = PlatformClient._parse_header_float(response.headers.get("Retry-After"))
        if retry_after is not None:
            return timedelta(seconds=max(retry_after, 1.0))
        reset_after = PlatformClient._parse_header_float(
            response.headers.get("X-RateLimit-Reset-After")
        )
        if reset_after is not None:
            return timedelta(seconds=max(reset_after, 1.0))
        reset_ts = PlatformClient._parse_header_float(response.headers.get("X-RateLimit-Reset"))
        if reset_ts is not None:
            return timedelta(seconds=max(reset_ts - time.time(), 1.0))
        return None

    @staticmethod
    def _parse_header_float(value: str | None) -> float | None:
        if value is None:
            return None
        try:
            return float(value)
        except (ValueError, TypeError):
            return None

    @staticmethod
    def _parse_next_link(link_header: str) -> str | None:
        """Extract the ``next`` URL from a ``Link`` header."""
        match = _NEXT_LINK_RE.search(link_header)
        return match.group(1) if match else None

"""Connector error taxonomy and table-driven classification.

Every remote failure is mapped onto one of six codes. Each code fixes the
``retryable`` flag; ``rate_limit`` may also carry a suggested retry delay.
Platforms supply an ordered tuple of :class:`ErrorRule` entries instead of
their own control flow.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any

import httpx


class ErrorCode(str, Enum):
    RATE_LIMIT = "rate_limit"
    AUTH_ERROR = "auth_error"
    PERMISSION_ERROR = "permission_error"
    NOT_FOUND = "not_found"
    NETWORK_ERROR = "network_error"
    API_ERROR = "api_error"


RETRYABLE: dict[ErrorCode, bool] = {
    ErrorCode.RATE_LIMIT: True,
    ErrorCode.AUTH_ERROR: False,
    ErrorCode.PERMISSION_ERROR: False,
    ErrorCode.NOT_FOUND: False,
    ErrorCode.NETWORK_ERROR: True,
    ErrorCode.API_ERROR: True,
}


class ConnectorError(Exception):
    """Classified remote failure, shaped for the connector boundary."""

    code: ErrorCode = ErrorCode.API_ERROR

    def __init__(
        self,
        platform: str,
        message: str,
        *,
        retry_after: timedelta | None = None,
    ) -> None:
        self.platform = platform
        self.message = message
        self.retryable = RETRYABLE[self.code]
        self.retry_after = retry_after
        super().__init__(f"{platform}: {self.code.value}: {message}")

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "platform": self.platform,
            "code": self.code.value,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            data["retry_after"] = self.retry_after.total_seconds()
        return data

    @staticmethod
    def from_code(
        code: ErrorCode,
        platform: str,
        message: str,
        *,
        retry_after: timedelta | None = None,
    ) -> ConnectorError:
        return _ERROR_CLASSES[code](platform, message, retry_after=retry_after)


class RateLimitError(ConnectorError):
    code = ErrorCode.RATE_LIMIT


class AuthError(ConnectorError):
    code = ErrorCode.AUTH_ERROR


class PermissionDeniedError(ConnectorError):
    code = ErrorCode.PERMISSION_ERROR


class NotFoundError(ConnectorError):
    code = ErrorCode.NOT_FOUND


class NetworkError(ConnectorError):
    code = ErrorCode.NETWORK_ERROR


class APIError(ConnectorError):
    code = ErrorCode.API_ERROR


_ERROR_CLASSES: dict[ErrorCode, type[ConnectorError]] = {
    cls.code: cls
    for cls in (
        RateLimitError,
        AuthError,
        PermissionDeniedError,
        NotFoundError,
        NetworkError,
        APIError,
    )
}


class ConfigError(ValueError):
    """Invalid or incomplete connector configuration."""


# ── classification table ──────────────────────────────────────────────────


@dataclass(frozen=True)
class ErrorRule:
    """One row of a platform's error mapping table.

    A rule matches when the HTTP status is in *status_codes* or any of
    *patterns* occurs in the lowercased error text. *retry_after* is the
    default delay used when the response carries no retry header.
    """

    code: ErrorCode
    status_codes: frozenset[int] = frozenset()
    patterns: tuple[str, ...] = ()
    retry_after: timedelta | None = None

    def matches(self, status: int | None, text: str) -> bool:
        if status is not None and status in self.status_codes:
            return True
        return any(p in text for p in self.patterns)


def classify_error(
    platform: str,
    exc: BaseException,
    rules: tuple[ErrorRule, ...],
    *,
    retry_after: timedelta | None = None,
) -> ConnectorError:
    """Map *exc* to a :class:`ConnectorError` using *rules* in order.

    Already-classified errors pass through unchanged. *retry_after* (parsed
    from response headers by the caller) overrides a rule's default delay.
    """
    if isinstance(exc, ConnectorError):
        return exc

    status: int | None = None
    text = str(exc).lower()
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        text = f"{text} {_safe_text(exc.response)}".lower()

    if isinstance(exc, httpx.TransportError):
        return NetworkError(platform, str(exc) or type(exc).__name__)

    for rule in rules:
        if rule.matches(status, text):
            delay = (retry_after or rule.retry_after) if rule.code is ErrorCode.RATE_LIMIT else None
            return ConnectorError.from_code(rule.code, platform, str(exc), retry_after=delay)

    if status == 429:
        return RateLimitError(platform, str(exc), retry_after=retry_after)
    return APIError(platform, str(exc) or type(exc).__name__)


def _safe_text(response: httpx.Response) -> str:
    try:
        return response.text[:500]
    except (httpx.ResponseNotRead, UnicodeDecodeError):
        return ""

"""Channel-chat connector for Slack."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from contextkeeper.connectors.base import BaseConnector
from contextkeeper.connectors.config import SLACK, AuthConfig, ConnectorConfig
from contextkeeper.connectors.errors import (
    AuthError,
    ConfigError,
    ConnectorError,
    ErrorCode,
    ErrorRule,
)
from contextkeeper.connectors.models import (
    AuthResult,
    EventBatch,
    EventType,
    PlatformEvent,
    PlatformInfo,
    RateLimitInfo,
    oldest_window,
)
from contextkeeper.connectors.normalizer import extract_file_references

log = structlog.get_logger("contextkeeper.connectors")

DEFAULT_THREAD_DEPTH = 10
_HISTORY_PAGE_SIZE = 200
_MAX_HISTORY_PAGES = 10

SLACK_ERROR_RULES: tuple[ErrorRule, ...] = (
    ErrorRule(
        ErrorCode.RATE_LIMIT,
        status_codes=frozenset({429}),
        patterns=("ratelimited", "rate_limited"),
        retry_after=timedelta(minutes=1),
    ),
    ErrorRule(
        ErrorCode.AUTH_ERROR,
        status_codes=frozenset({401}),
        patterns=(
            "invalid_auth",
            "not_authed",
            "token_revoked",
            "token_expired",
            "account_inactive",
        ),
    ),
    ErrorRule(
        ErrorCode.PERMISSION_ERROR,
        status_codes=frozenset({403}),
        patterns=("missing_scope", "not_in_channel", "access_denied"),
    ),
    ErrorRule(
        ErrorCode.NOT_FOUND,
        status_codes=frozenset({404}),
        patterns=("channel_not_found", "thread_not_found", "not_found"),
    ),
    ErrorRule(ErrorCode.NETWORK_ERROR, patterns=("timeout", "connection")),
)

# Channel-level failures that skip the channel instead of failing the fetch.
_SKIPPABLE = (ErrorCode.NOT_FOUND, ErrorCode.PERMISSION_ERROR)


def ts_to_datetime(ts: str) -> datetime:
    return datetime.fromtimestamp(float(ts), tz=timezone.utc)


def datetime_to_ts(value: datetime) -> str:
    return f"{value.timestamp():.6f}"


class SlackAPIError(Exception):
    """``{"ok": false}`` payload; the message is Slack's error string."""


class SlackConnector(BaseConnector):
    """Channel history, thread replies and (optionally) DMs from a Slack workspace."""

    platform = SLACK
    base_url = "https://slack.com/api"
    default_sync_interval = timedelta(minutes=2)
    error_rules = SLACK_ERROR_RULES

    def __init__(self, config: ConnectorConfig, **kwargs: Any) -> None:
        if not config.setting("bot_token"):
            raise ConfigError("slack: bot_token is required in auth_config.metadata")
        channels = config.setting("channels") or []
        if isinstance(channels, str):
            channels = [c.strip() for c in channels.split(",") if c.strip()]
        self.channels: list[str] = list(channels)
        self.include_dms = bool(config.setting("include_dms", False))
        self.thread_depth = int(config.setting("thread_depth", DEFAULT_THREAD_DEPTH))
        super().__init__(config, **kwargs)

    def _default_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._config.setting('bot_token')}"}

    # ── interface ──────────────────────────────────────────────────────────

    async def authenticate(self, config: AuthConfig) -> AuthResult:
        token = config.metadata.get("bot_token")
        if not token:
            raise AuthError(self.platform, "bot_token not found in auth metadata")

        client = self._client_for_token({"Authorization": f"Bearer {token}"})
        try:
            data = await self._call(client, "auth.test")
        finally:
            await client.close()

        return AuthResult(
            access_token=str(token),
            user_id=str(data.get("user_id", "")),
            user_login=str(data.get("user", "")),
            scopes=list(config.scopes),
        )

    async def fetch_events(self, since: datetime, limit: int) -> EventBatch:
        """Messages and thread replies at or after *since*, *limit* split across channels.

        A channel with more top-level messages than its share yields the
        oldest ones and sets the batch horizon.
        """
        channels = list(self.channels)
        if self.include_dms:
            channels.extend(await self._list_dm_channels())
        if not channels or limit <= 0:
            return EventBatch()

        per_channel = max(limit // len(channels), 1)
        batch = EventBatch()
        for channel in channels:
            try:
                batch.merge(await self._fetch_channel(channel, since, per_channel))
            except ConnectorError as err:
                if err.code not in _SKIPPABLE:
                    raise
                log.warning(
                    "slack.channel_skipped",
                    channel=channel,
                    code=err.code.value,
                    error=err.message,
                )
        return batch

    def get_platform_info(self) -> PlatformInfo:
        rl = self._config.rate_limit
        return PlatformInfo(
            name=SLACK,
            display_name="Slack",
            version="1.0.0",
            description="Slack channel messages and threads",
            supported_events=(EventType.MESSAGE, EventType.THREAD, EventType.REACTION),
            rate_limits=RateLimitInfo(
                requests_per_hour=rl.requests_per_hour,
                requests_per_minute=rl.requests_per_minute,
                burst_limit=rl.burst_limit,
                backoff_strategy="exponential",
                retry_after_header="Retry-After",
            ),
            auth_type="bot_token",
            required_scopes=("channels:history", "groups:history", "im:history", "mpim:history"),
        )

    # ── collectors ─────────────────────────────────────────────────────────

    async def _fetch_channel(self, channel: str, since: datetime, limit: int) -> EventBatch:
        """History is newest-first: read it down to *since*, keep the oldest *limit*."""
        found: list[tuple[datetime, dict[str, Any]]] = []
        cursor: str | None = None
        for _ in range(_MAX_HISTORY_PAGES):
            params: dict[str, Any] = {
                "channel": channel,
                "oldest": datetime_to_ts(since),
                "inclusive": "true",
                "limit": _HISTORY_PAGE_SIZE,
            }
            if cursor:
                params["cursor"] = cursor
            data = await self._call(self._client, "conversations.history", params)

            for msg in data.get("messages") or []:
                if not msg.get("ts"):
                    continue
                ts = ts_to_datetime(msg["ts"])
                if ts >= since:
                    found.append((ts, msg))

            cursor = (data.get("response_metadata") or {}).get("next_cursor") or None
            if not data.get("has_more") or not cursor:
                break
        else:
            log.warning("slack.history_truncated", channel=channel, pages=_MAX_HISTORY_PAGES)

        window, horizon = oldest_window(found, limit)
        batch = EventBatch(horizon=horizon)
        for _, msg in window:
            batch.append(self._message_event(channel, msg))
            if msg.get("reply_count") and msg.get("thread_ts") == msg["ts"]:
                batch.extend(await self._fetch_replies(channel, msg["ts"], since))
        return batch

    async def _fetch_replies(
        self, channel: str, thread_ts: str, since: datetime
    ) -> list[PlatformEvent]:
        params = {"channel": channel, "ts": thread_ts, "limit": self.thread_depth + 1}
        data = await self._call(self._client, "conversations.replies", params)
        replies = []
        for msg in (data.get("messages") or [])[: self.thread_depth + 1]:
            if msg.get("ts") == thread_ts:
                continue  # parent message
            if ts_to_datetime(msg["ts"]) < since:
                continue
            replies.append(self._message_event(channel, msg))
        return replies[: self.thread_depth]

    async def _list_dm_channels(self) -> list[str]:
        data = await self._call(
            self._client, "conversations.list", {"types": "im", "limit": 200}
        )
        return [c["id"] for c in data.get("channels") or [] if c.get("id")]

    def _message_event(self, channel: str, msg: dict[str, Any]) -> PlatformEvent:
        ts = msg["ts"]
        thread_ts = msg.get("thread_ts")
        text = msg.get("text") or ""
        attachments = [f.get("name") for f in msg.get("files") or [] if f.get("name")]

        metadata: dict[str, Any] = {
            "channel_id": channel,
            "timestamp": ts,
            "thread_ts": thread_ts,
            "reply_count": msg.get("reply_count", 0),
            "subtype": msg.get("subtype", ""),
            "bot_id": msg.get("bot_id", ""),
            "attachments": attachments,
            "reactions": [r.get("name") for r in msg.get("reactions") or []],
        }
        event_type = EventType.MESSAGE
        if thread_ts:
            metadata["thread_id"] = thread_ts
            if thread_ts != ts:
                metadata["parent_id"] = self.message_id(channel, thread_ts)
            else:
                event_type = EventType.THREAD

        return PlatformEvent(
            id=self.message_id(channel, ts),
            type=event_type,
            timestamp=ts_to_datetime(ts),
            author=msg.get("user") or msg.get("bot_id") or "",
            content=text,
            platform=SLACK,
            metadata=metadata,
            references=extract_file_references(text),
        )

    @staticmethod
    def message_id(channel: str, ts: str) -> str:
        return f"msg-{channel}-{ts}"

    async def _call(self, client: Any, method: str, params: dict[str, Any] | None = None) -> Any:
        """Call a Web API method and raise a classified error on ``ok: false``."""
        data = await client.get(f"/{method}", params=params)
        if not data.get("ok", False):
            raise self.classify(SlackAPIError(data.get("error") or "unknown_error"))
        return data

"""Guild-chat connector for Discord."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

import structlog

from contextkeeper.connectors.base import BaseConnector
from contextkeeper.connectors.config import DISCORD, AuthConfig, ConnectorConfig
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
_PAGE_SIZE = 100
_MAX_PAGES = 10

# Discord channel types
_GUILD_TEXT = 0
_GUILD_ANNOUNCEMENT = 5
# Message type of the system message that opens a thread channel
_THREAD_STARTER_MESSAGE = 21

DISCORD_ERROR_RULES: tuple[ErrorRule, ...] = (
    ErrorRule(
        ErrorCode.RATE_LIMIT,
        status_codes=frozenset({429}),
        patterns=("rate limit",),
        retry_after=timedelta(minutes=1),
    ),
    ErrorRule(ErrorCode.AUTH_ERROR, status_codes=frozenset({401})),
    ErrorRule(
        ErrorCode.PERMISSION_ERROR, status_codes=frozenset({403}), patterns=("missing access",)
    ),
    ErrorRule(ErrorCode.NOT_FOUND, status_codes=frozenset({404}), patterns=("unknown channel",)),
    ErrorRule(ErrorCode.NETWORK_ERROR, patterns=("timeout", "connection")),
)

_SKIPPABLE = (ErrorCode.NOT_FOUND, ErrorCode.PERMISSION_ERROR)


def _parse_datetime(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class DiscordConnector(BaseConnector):
    """Channel messages and thread replies from Discord guilds."""

    platform = DISCORD
    base_url = "https://discord.com/api/v10"
    default_sync_interval = timedelta(minutes=2)
    error_rules = DISCORD_ERROR_RULES

    def __init__(self, config: ConnectorConfig, **kwargs: Any) -> None:
        if not config.setting("bot_token"):
            raise ConfigError("discord: bot_token is required in auth_config.metadata")
        self.guild_ids: list[str] = [str(g) for g in config.setting("guild_ids") or []]
        self.channel_ids: list[str] = [str(c) for c in config.setting("channel_ids") or []]
        self.thread_depth = int(config.setting("thread_depth", DEFAULT_THREAD_DEPTH))
        super().__init__(config, **kwargs)

    def _default_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bot {self._config.setting('bot_token')}"}

    # ── interface ──────────────────────────────────────────────────────────

    async def authenticate(self, config: AuthConfig) -> AuthResult:
        token = config.metadata.get("bot_token")
        if not token:
            raise AuthError(self.platform, "bot_token not found in auth metadata")

        client = self._client_for_token({"Authorization": f"Bot {token}"})
        try:
            user = await client.get("/users/@me")
        finally:
            await client.close()

        return AuthResult(
            access_token=str(token),
            user_id=str(user.get("id", "")),
            user_login=str(user.get("username", "")),
            scopes=list(config.scopes),
        )

    async def fetch_events(self, since: datetime, limit: int) -> EventBatch:
        """Messages and thread replies at or after *since*, *limit* split across channels.

        A channel with more messages than its share yields the oldest ones
        and sets the batch horizon.
        """
        channels = await self._resolve_channels()
        if not channels or limit <= 0:
            return EventBatch()

        per_channel = max(limit // len(channels), 1)
        batch = EventBatch()
        for channel_id in channels:
            try:
                batch.merge(await self._fetch_channel(channel_id, since, per_channel))
            except ConnectorError as err:
                if err.code not in _SKIPPABLE:
                    raise
                log.warning(
                    "discord.channel_skipped",
                    channel=channel_id,
                    code=err.code.value,
                    error=err.message,
                )
        return batch

    def get_platform_info(self) -> PlatformInfo:
        rl = self._config.rate_limit
        return PlatformInfo(
            name=DISCORD,
            display_name="Discord",
            version="1.0.0",
            description="Discord guild channel messages and threads",
            supported_events=(EventType.MESSAGE, EventType.THREAD, EventType.REACTION),
            rate_limits=RateLimitInfo(
                requests_per_hour=rl.requests_per_hour,
                requests_per_minute=rl.requests_per_minute,
                burst_limit=rl.burst_limit,
                backoff_strategy="exponential",
                retry_after_header="X-RateLimit-Reset-After",
            ),
            auth_type="bot_token",
            required_scopes=("bot", "read_messages", "read_message_history"),
        )

    # ── collectors ─────────────────────────────────────────────────────────

    async def _resolve_channels(self) -> list[str]:
        if self.channel_ids:
            return list(self.channel_ids)
        channels: list[str] = []
        for guild_id in self.guild_ids:
            for channel in await self._client.get(f"/guilds/{guild_id}/channels"):
                if channel.get("type") in (_GUILD_TEXT, _GUILD_ANNOUNCEMENT):
                    channels.append(str(channel["id"]))
        return channels

    async def _fetch_channel(self, channel_id: str, since: datetime, limit: int) -> EventBatch:
        """Page backwards from the newest message down to *since*, keep the oldest *limit*."""
        found: list[tuple[datetime, dict[str, Any]]] = []
        before: str | None = None
        for _ in range(_MAX_PAGES):
            params: dict[str, Any] = {"limit": _PAGE_SIZE}
            if before:
                params["before"] = before
            page = await self._client.get(f"/channels/{channel_id}/messages", params=params)
            if not page:
                break

            reached_since = False
            for msg in page:
                created = _parse_datetime(msg["timestamp"])
                if created < since:
                    reached_since = True
                    break
                found.append((created, msg))

            if reached_since or len(page) < _PAGE_SIZE:
                break
            before = str(page[-1]["id"])
        else:
            log.warning("discord.history_truncated", channel=channel_id, pages=_MAX_PAGES)

        window, horizon = oldest_window(found, limit)
        batch = EventBatch(horizon=horizon)
        for _, msg in window:
            batch.append(self._message_event(channel_id, msg))
            thread = msg.get("thread")
            if thread and thread.get("id"):
                batch.extend(await self._fetch_thread(str(thread["id"]), msg, since))
        return batch

    async def _fetch_thread(
        self, thread_id: str, starter: dict[str, Any], since: datetime
    ) -> list[PlatformEvent]:
        page = await self._client.get(
            f"/channels/{thread_id}/messages", params={"limit": self.thread_depth}
        )
        replies: list[PlatformEvent] = []
        for msg in page or []:
            if msg.get("type") == _THREAD_STARTER_MESSAGE or msg.get("id") == starter.get("id"):
                continue
            if _parse_datetime(msg["timestamp"]) < since:
                continue
            replies.append(
                self._message_event(thread_id, msg, thread_id=thread_id, starter=starter)
            )
        return replies[: self.thread_depth]

    def _message_event(
        self,
        channel_id: str,
        msg: dict[str, Any],
        *,
        thread_id: str | None = None,
        starter: dict[str, Any] | None = None,
    ) -> PlatformEvent:
        content = msg.get("content") or ""
        attachments = [a.get("filename") for a in msg.get("attachments") or [] if a.get("filename")]
        author = msg.get("author") or {}

        metadata: dict[str, Any] = {
            "channel_id": channel_id,
            "guild_id": msg.get("guild_id", ""),
            "message_type": msg.get("type", 0),
            "attachments": attachments,
            "reactions": [
                (r.get("emoji") or {}).get("name") for r in msg.get("reactions") or []
            ],
        }
        event_type = EventType.MESSAGE
        if starter is not None and thread_id is not None:
            metadata["thread_id"] = thread_id
            metadata["parent_id"] = self.message_id(str(starter["id"]))
        elif (msg.get("thread") or {}).get("id"):
            metadata["thread_id"] = str(msg["thread"]["id"])
            event_type = EventType.THREAD

        return PlatformEvent(
            id=self.message_id(str(msg["id"])),
            type=event_type,
            timestamp=_parse_datetime(msg["timestamp"]),
            author=author.get("username", ""),
            content=content,
            platform=DISCORD,
            metadata=metadata,
            references=extract_file_references(content),
        )

    @staticmethod
    def message_id(message_id: str) -> str:
        return f"msg-{message_id}"

"""Connector configuration — pydantic models, file/env loading, validation."""

from __future__ import annotations

import json
import os
import threading
from datetime import timedelta
from pathlib import Path
from typing import Any, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from contextkeeper.connectors.errors import ConfigError

log = structlog.get_logger("contextkeeper.connectors")

GITHUB = "github"
SLACK = "slack"
DISCORD = "discord"

_SECRET_KEYS = frozenset({"access_token", "bot_token", "client_secret", "refresh_token"})


class AuthConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    client_id: str = ""
    client_secret: str = ""
    redirect_url: str = ""
    scopes: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class RateLimitConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    requests_per_hour: int = Field(default=1000, gt=0)
    requests_per_minute: int = Field(default=50, gt=0)
    burst_limit: int = Field(default=5, gt=0)
    backoff_multiplier: float = Field(default=2.0, gt=1.0)
    max_retries: int = Field(default=3, ge=0)


class SyncConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    batch_size: int = Field(default=100, gt=0)
    sync_interval: Optional[timedelta] = None
    max_lookback: Optional[timedelta] = None
    incremental_sync: bool = True

    @field_validator("sync_interval", "max_lookback")
    @classmethod
    def _positive_duration(cls, value: Optional[timedelta]) -> Optional[timedelta]:
        if value is not None and value <= timedelta(0):
            raise ValueError("duration must be positive")
        return value


class ConnectorConfig(BaseModel):
    """Full configuration of one platform connector.

    Frozen: a connector instance never sees its config change. Use
    ``model_copy(update=...)`` and ``ConnectorRegistry.set_config`` to
    reconfigure.
    """

    model_config = ConfigDict(frozen=True)

    platform: str
    enabled: bool = True
    auth_config: AuthConfig = Field(default_factory=AuthConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    sync_config: SyncConfig = Field(default_factory=SyncConfig)
    metadata: dict[str, Any] = Field(default_factory=dict)

    def setting(self, key: str, default: Any = None) -> Any:
        """Look up *key* in auth metadata first, then connector metadata."""
        if key in self.auth_config.metadata:
            return self.auth_config.metadata[key]
        return self.metadata.get(key, default)

    def masked(self) -> dict[str, Any]:
        """JSON-safe dump with every credential replaced by ``***``."""
        data = self.model_dump(mode="json")
        auth = data["auth_config"]
        if auth.get("client_secret"):
            auth["client_secret"] = "***"
        for section in (auth["metadata"], data["metadata"]):
            for key in list(section):
                if key in _SECRET_KEYS and section[key]:
                    section[key] = "***"
        return data


# ── validation ────────────────────────────────────────────────────────────


def validate_config(config: ConnectorConfig) -> None:
    """Raise :class:`ConfigError` if *config* is unusable.

    pydantic already enforces field ranges at construction; this adds the
    checks that depend on the platform.
    """
    if not config.platform:
        raise ConfigError("platform name is required")

    rl = config.rate_limit
    if rl.requests_per_hour <= 0 or rl.requests_per_minute <= 0 or rl.burst_limit <= 0:
        raise ConfigError(f"{config.platform}: rate limits must be positive")
    if rl.backoff_multiplier <= 1.0:
        raise ConfigError(f"{config.platform}: backoff_multiplier must be greater than 1.0")
    if config.sync_config.batch_size <= 0:
        raise ConfigError(f"{config.platform}: batch_size must be positive")

    if config.platform == GITHUB:
        auth = config.auth_config
        if not auth.client_id or not auth.client_secret:
            raise ConfigError("github: client_id and client_secret are required")
        missing = {"repo", "read:user"} - set(auth.scopes)
        if missing:
            raise ConfigError(f"github: missing required scopes: {sorted(missing)}")
    elif config.platform == SLACK:
        token = config.setting("bot_token", "")
        if not token:
            raise ConfigError("slack: bot_token is required")
        if not str(token).startswith("xoxb-"):
            raise ConfigError("slack: bot_token must be a bot token (xoxb-...)")
    elif config.platform == DISCORD:
        if not config.setting("bot_token", ""):
            raise ConfigError("discord: bot_token is required")


# ── environment fallbacks ─────────────────────────────────────────────────


def _env_bool(key: str, default: bool) -> bool:
    value = os.environ.get(key)
    if value is None:
        return default
    return value.strip().lower() not in ("false", "0", "no", "off")


def _env_list(key: str) -> list[str]:
    return [item.strip() for item in os.environ.get(key, "").split(",") if item.strip()]


def _github_from_env() -> ConnectorConfig | None:
    client_id = os.environ.get("GITHUB_CLIENT_ID", "")
    client_secret = os.environ.get("GITHUB_CLIENT_SECRET", "")
    if not client_id or not client_secret:
        return None

    metadata: dict[str, Any] = {"api_url": "https://api.github.com"}
    if token := os.environ.get("GITHUB_TOKEN"):
        metadata["access_token"] = token
    if repository := os.environ.get("GITHUB_REPOSITORY"):
        metadata["repository"] = repository

    return ConnectorConfig(
        platform=GITHUB,
        enabled=_env_bool("GITHUB_CONNECTOR_ENABLED", True),
        auth_config=AuthConfig(
            client_id=client_id,
            client_secret=client_secret,
            redirect_url=os.environ.get("GITHUB_REDIRECT_URL", ""),
            scopes=["repo", "read:user"],
            metadata=metadata,
        ),
        rate_limit=RateLimitConfig(
            requests_per_hour=5000,
            requests_per_minute=100,
            burst_limit=10,
            backoff_multiplier=2.0,
            max_retries=3,
        ),
        sync_config=SyncConfig(
            batch_size=100,
            sync_interval=timedelta(minutes=5),
            max_lookback=timedelta(days=30),
            incremental_sync=True,
        ),
    )


def _chat_limits() -> RateLimitConfig:
    return RateLimitConfig(
        requests_per_hour=1000,
        requests_per_minute=50,
        burst_limit=5,
        backoff_multiplier=2.0,
        max_retries=3,
    )


def _chat_sync() -> SyncConfig:
    return SyncConfig(
        batch_size=50,
        sync_interval=timedelta(minutes=2),
        max_lookback=timedelta(days=7),
        incremental_sync=True,
    )


def _slack_from_env() -> ConnectorConfig | None:
    bot_token = os.environ.get("SLACK_BOT_TOKEN", "")
    if not bot_token:
        return None
    return ConnectorConfig(
        platform=SLACK,
        enabled=_env_bool("SLACK_CONNECTOR_ENABLED", True),
        auth_config=AuthConfig(
            scopes=["channels:history", "groups:history", "im:history", "mpim:history"],
            metadata={"bot_token": bot_token},
        ),
        rate_limit=_chat_limits(),
        sync_config=_chat_sync(),
        metadata={
            "channels": _env_list("SLACK_CHANNELS"),
            "include_dms": _env_bool("SLACK_INCLUDE_DMS", False),
            "thread_depth": 10,
        },
    )


def _discord_from_env() -> ConnectorConfig | None:
    bot_token = os.environ.get("DISCORD_BOT_TOKEN", "")
    if not bot_token:
        return None
    return ConnectorConfig(
        platform=DISCORD,
        enabled=_env_bool("DISCORD_CONNECTOR_ENABLED", True),
        auth_config=AuthConfig(
            scopes=["bot", "read_messages", "read_message_history"],
            metadata={"bot_token": bot_token},
        ),
        rate_limit=_chat_limits(),
        sync_config=_chat_sync(),
        metadata={
            "guild_ids": _env_list("DISCORD_GUILD_IDS"),
            "channel_ids": _env_list("DISCORD_CHANNEL_IDS"),
            "thread_depth": 10,
        },
    )


_ENV_LOADERS = {
    GITHUB: _github_from_env,
    SLACK: _slack_from_env,
    DISCORD: _discord_from_env,
}


# ── manager ───────────────────────────────────────────────────────────────


class ConfigManager:
    """Loads, validates, and persists connector configurations.

    Configurations come from a JSON file when *config_path* exists,
    otherwise from per-platform environment variables.
    """

    def __init__(self, config_path: str | Path | None = None) -> None:
        self._path = Path(
            config_path or os.environ.get("CONTEXTKEEPER_CONFIG_PATH", "connectors.json")
        )
        self._configs: dict[str, ConnectorConfig] = {}
        self._lock = threading.RLock()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> dict[str, ConnectorConfig]:
        """Populate configs from file (if present) or environment."""
        if self._path.exists():
            configs = self._load_file()
            source = "file"
        else:
            configs = self._load_env()
            source = "env"
        with self._lock:
            self._configs = configs
        log.info("config.loaded", source=source, platforms=sorted(configs))
        return dict(configs)

    def get_config(self, platform: str) -> ConnectorConfig | None:
        with self._lock:
            return self._configs.get(platform)

    def set_config(self, config: ConnectorConfig) -> None:
        validate_config(config)
        with self._lock:
            self._configs[config.platform] = config

    def get_all_configs(self) -> dict[str, ConnectorConfig]:
        with self._lock:
            return dict(self._configs)

    def get_enabled_platforms(self) -> list[str]:
        with self._lock:
            return sorted(p for p, c in self._configs.items() if c.enabled)

    def save(self) -> None:
        """Write all configs back to the JSON file."""
        with self._lock:
            payload = {
                "connectors": {
                    platform: config.model_dump(mode="json")
                    for platform, config in sorted(self._configs.items())
                }
            }
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(payload, indent=2) + "\n")

    @staticmethod
    def validate_config(config: ConnectorConfig) -> None:
        validate_config(config)

    # ── internal ──────────────────────────────────────────────────────────

    def _load_file(self) -> dict[str, ConnectorConfig]:
        try:
            raw = json.loads(self._path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigError(f"cannot read {self._path}: {exc}") from exc

        entries = raw.get("connectors", {}) if isinstance(raw, dict) else None
        if not isinstance(entries, dict):
            raise ConfigError(f"{self._path}: expected a 'connectors' object")

        configs: dict[str, ConnectorConfig] = {}
        for platform, entry in entries.items():
            if not isinstance(entry, dict):
                raise ConfigError(f"{self._path}: connector {platform!r} must be an object")
            entry = {"platform": platform, **entry}
            try:
                configs[platform] = ConnectorConfig.model_validate(entry)
            except ValidationError as exc:
                raise ConfigError(f"{self._path}: invalid config for {platform!r}: {exc}") from exc
        return configs

    @staticmethod
    def _load_env() -> dict[str, ConnectorConfig]:
        configs: dict[str, ConnectorConfig] = {}
        for platform, loader in _ENV_LOADERS.items():
            config = loader()
            if config is None:
                log.debug("config.env_missing", platform=platform)
                continue
            configs[platform] = config
        return configs

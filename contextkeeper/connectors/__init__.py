"""Platform connectors — authenticate, fetch, and normalize external activity."""

from contextkeeper.connectors.base import BaseConnector, PlatformConnector
from contextkeeper.connectors.config import (
    AuthConfig,
    ConfigManager,
    ConnectorConfig,
    RateLimitConfig,
    SyncConfig,
)
from contextkeeper.connectors.discord import DiscordConnector
from contextkeeper.connectors.errors import (
    ConfigError,
    ConnectorError,
    ErrorCode,
    classify_error,
)
from contextkeeper.connectors.github import GitHubConnector
from contextkeeper.connectors.models import (
    AuthResult,
    EventType,
    NormalizedEvent,
    PlatformEvent,
    PlatformInfo,
)
from contextkeeper.connectors.normalizer import EventNormalizer
from contextkeeper.connectors.rate_limiter import RateLimiter
from contextkeeper.connectors.registry import (
    ConnectorManager,
    ConnectorRegistry,
    create_default_registry,
)
from contextkeeper.connectors.slack import SlackConnector

__all__ = [
    "AuthConfig",
    "AuthResult",
    "BaseConnector",
    "ConfigError",
    "ConfigManager",
    "ConnectorConfig",
    "ConnectorError",
    "ConnectorManager",
    "ConnectorRegistry",
    "DiscordConnector",
    "ErrorCode",
    "EventNormalizer",
    "EventType",
    "GitHubConnector",
    "NormalizedEvent",
    "PlatformConnector",
    "PlatformEvent",
    "PlatformInfo",
    "RateLimitConfig",
    "RateLimiter",
    "SlackConnector",
    "SyncConfig",
    "classify_error",
    "create_default_registry",
]

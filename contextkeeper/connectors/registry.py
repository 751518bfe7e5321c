"""Connector registry (platform → factory + config) and live connector manager."""

from __future__ import annotations

import threading
from collections.abc import Callable

import structlog

from contextkeeper.connectors.base import PlatformConnector
from contextkeeper.connectors.config import (
    DISCORD,
    GITHUB,
    SLACK,
    ConfigManager,
    ConnectorConfig,
    validate_config,
)
from contextkeeper.connectors.discord import DiscordConnector
from contextkeeper.connectors.github import GitHubConnector
from contextkeeper.connectors.slack import SlackConnector

log = structlog.get_logger("contextkeeper.connectors")

ConnectorFactory = Callable[[ConnectorConfig], PlatformConnector]


class RegistryError(Exception):
    """Base registry exception."""


class PlatformAlreadyRegisteredError(RegistryError):
    """A factory is already registered under this platform name."""


class UnknownPlatformError(RegistryError):
    """No factory registered for the platform."""


class MissingConfigError(RegistryError):
    """No configuration set for the platform."""


class ConnectorDisabledError(RegistryError):
    """The platform's configuration has ``enabled = false``."""


class ConnectorNotAvailableError(RegistryError):
    """The manager holds no live connector for the platform."""


class ConnectorRegistry:
    """Maps platform names to connector factories and their configurations.

    Each platform's entry is independent: removing or disabling one never
    affects creating another.
    """

    def __init__(self) -> None:
        self._factories: dict[str, ConnectorFactory] = {}
        self._configs: dict[str, ConnectorConfig] = {}
        self._lock = threading.RLock()

    def register(self, platform: str, factory: ConnectorFactory) -> None:
        with self._lock:
            if platform in self._factories:
                raise PlatformAlreadyRegisteredError(f"platform {platform!r} already registered")
            self._factories[platform] = factory
        log.debug("registry.registered", platform=platform)

    def set_config(self, platform: str, config: ConnectorConfig) -> None:
        if config.platform != platform:
            config = config.model_copy(update={"platform": platform})
        with self._lock:
            self._configs[platform] = config

    def get_config(self, platform: str) -> ConnectorConfig | None:
        with self._lock:
            return self._configs.get(platform)

    def remove_config(self, platform: str) -> None:
        with self._lock:
            self._configs.pop(platform, None)

    def list_platforms(self) -> list[str]:
        with self._lock:
            return sorted(self._factories)

    def list_enabled_platforms(self) -> list[str]:
        with self._lock:
            return sorted(
                p for p in self._factories if p in self._configs and self._configs[p].enabled
            )

    def create_connector(self, platform: str) -> PlatformConnector:
        """Build a connector from the registered factory and current config.

        Raises a :class:`RegistryError` subclass for an unknown, unconfigured
        or disabled platform, and ``ConfigError`` for an invalid config.
        """
        with self._lock:
            factory = self._factories.get(platform)
            config = self._configs.get(platform)
        if factory is None:
            raise UnknownPlatformError(f"no connector registered for platform {platform!r}")
        if config is None:
            raise MissingConfigError(f"no configuration found for platform {platform!r}")
        if not config.enabled:
            raise ConnectorDisabledError(f"connector for platform {platform!r} is disabled")
        validate_config(config)
        return factory(config)


def create_default_registry(config_manager: ConfigManager | None = None) -> ConnectorRegistry:
    """Registry with the built-in GitHub, Slack and Discord connectors.

    Configs present in *config_manager* are copied in.
    """
    registry = ConnectorRegistry()
    registry.register(GITHUB, GitHubConnector)
    registry.register(SLACK, SlackConnector)
    registry.register(DISCORD, DiscordConnector)
    if config_manager is not None:
        for platform, config in config_manager.get_all_configs().items():
            registry.set_config(platform, config)
    return registry


class ConnectorManager:
    """Holds the live set of connectors, keyed by platform name."""

    def __init__(self, registry: ConnectorRegistry) -> None:
        self._registry = registry
        self._connectors: dict[str, PlatformConnector] = {}
        self._lock = threading.RLock()

    @property
    def registry(self) -> ConnectorRegistry:
        return self._registry

    def initialize_connectors(self) -> dict[str, Exception]:
        """Create every enabled platform's connector.

        A platform that fails to build is logged and reported in the returned
        mapping; the remaining platforms are still created.
        """
        failures: dict[str, Exception] = {}
        for platform in self._registry.list_enabled_platforms():
            try:
                connector = self._registry.create_connector(platform)
            except Exception as exc:
                log.error("manager.connector_failed", platform=platform, error=str(exc))
                failures[platform] = exc
                continue
            with self._lock:
                self._connectors[platform] = connector
            log.info("manager.connector_ready", platform=platform)
        return failures

    def get_connector(self, platform: str) -> PlatformConnector:
        with self._lock:
            connector = self._connectors.get(platform)
        if connector is None:
            raise ConnectorNotAvailableError(f"connector for platform {platform!r} not available")
        return connector

    def get_all_connectors(self) -> dict[str, PlatformConnector]:
        with self._lock:
            return dict(self._connectors)

    async def reload_connector(self, platform: str) -> PlatformConnector:
        """Rebuild one platform's connector from the registry's current config."""
        connector = self._registry.create_connector(platform)
        with self._lock:
            previous = self._connectors.get(platform)
            self._connectors[platform] = connector
        if previous is not None:
            await _close(previous)
        return connector

    async def remove_connector(self, platform: str) -> None:
        with self._lock:
            connector = self._connectors.pop(platform, None)
        if connector is not None:
            await _close(connector)

    async def shutdown(self) -> None:
        """Drop every live connector, closing HTTP clients where present."""
        with self._lock:
            connectors = list(self._connectors.items())
            self._connectors.clear()
        for platform, connector in connectors:
            try:
                await _close(connector)
            except Exception:
                log.warning("manager.close_failed", platform=platform)
        log.info("manager.shutdown", connectors=len(connectors))


async def _close(connector: PlatformConnector) -> None:
    close = getattr(connector, "close", None)
    if close is not None:
        await close()

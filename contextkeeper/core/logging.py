"""Structured logging for ContextKeeper: structlog events rendered through stdlib handlers."""

from __future__ import annotations

import logging
import logging.config
import os
from collections.abc import MutableMapping
from typing import Any

import structlog

# Event keys whose values are credentials; never rendered.
REDACTED_KEYS = frozenset(
    {"access_token", "authorization", "bot_token", "client_secret", "password", "token"}
)

# Chatty dependencies, clamped regardless of the configured level.
_QUIET_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "asyncpg", "aiosqlite")


def redact_credentials(
    _logger: Any, _method: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """structlog processor: mask any credential-like key in the event."""
    for key in event_dict.keys() & REDACTED_KEYS:
        if event_dict[key]:
            event_dict[key] = "***"
    return event_dict


def _renderer(log_format: str) -> structlog.types.Processor:
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=False)


def setup_logging(level: str | None = None) -> None:
    """Configure structlog and route stdlib logging through the same renderer.

    Environment:
        CONTEXTKEEPER_LOG_LEVEL   level name, default INFO
        CONTEXTKEEPER_LOG_FORMAT  ``console`` or ``json``, default console

    An explicit *level* (``--verbose`` on the CLI) wins over the environment.
    Output goes to stderr so command output on stdout stays machine readable.
    """
    log_level = (level or os.environ.get("CONTEXTKEEPER_LOG_LEVEL", "INFO")).upper()
    log_format = os.environ.get("CONTEXTKEEPER_LOG_FORMAT", "console").lower()

    pre_chain: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_credentials,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    loggers: dict[str, dict[str, Any]] = {"contextkeeper": {"level": log_level}}
    loggers.update({name: {"level": "WARNING"} for name in _QUIET_LOGGERS})

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "structlog": {
                    "()": structlog.stdlib.ProcessorFormatter,
                    "foreign_pre_chain": pre_chain,
                    "processors": [
                        structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                        _renderer(log_format),
                    ],
                },
            },
            "handlers": {
                "stderr": {
                    "class": "logging.StreamHandler",
                    "stream": "ext://sys.stderr",
                    "formatter": "structlog",
                },
            },
            "root": {"handlers": ["stderr"], "level": log_level},
            "loggers": loggers,
        }
    )

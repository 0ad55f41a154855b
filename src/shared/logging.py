"""Logging configuration for the MCP gateway.

Every module logs through structlog with key/value events. Values under
secret-bearing keys are masked before rendering, so tokens, client
secrets and API keys never reach a log sink.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

# Event keys whose values must never reach a log sink
SECRET_KEYS = frozenset({
    "access_token",
    "refresh_token",
    "id_token",
    "client_secret",
    "api_key",
    "token",
})


def redact_secrets(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Replace secret-bearing values with a placeholder."""
    for key in SECRET_KEYS.intersection(event_dict):
        event_dict[key] = "[REDACTED]"
    return event_dict


def _renderers(json_output: bool) -> list[Processor]:
    if json_output:
        return [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]
    return [structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())]


def setup_logging(log_level: str = "INFO", json_output: bool = False) -> None:
    """
    Configure structlog and the standard library root logger.

    Args:
        log_level: Level name such as ``"DEBUG"`` or ``"WARNING"``
        json_output: Render one JSON object per line instead of console output
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            redact_secrets,
            *_renderers(json_output),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # uvicorn logs through the standard library
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    # httpx logs request URLs at INFO; token-info URLs carry the access token
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))


def get_logger(name: str | None = None) -> Any:
    """Return a structlog logger named after the calling module."""
    return structlog.get_logger(name)


def bind_context(**context: Any) -> None:
    """Attach values to every event logged in the current request."""
    structlog.contextvars.bind_contextvars(**context)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()

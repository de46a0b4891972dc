"""structlog setup and per-connector log context."""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog

from connectors.core.config import settings

# Stdlib loggers held at WARNING or above regardless of the app level
_CHATTY = (
    "googleapiclient.discovery",
    "googleapiclient.discovery_cache",
    "google_auth_httplib2",
    "sqlalchemy.engine",
)


def _renderer(pretty: bool) -> list[Any]:
    if pretty:
        return [structlog.dev.ConsoleRenderer(colors=True)]
    return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]


def setup_logging(level: str | None = None, *, pretty: bool | None = None) -> None:
    """Configure structlog and the stdlib root logger.

    Output is JSON lines unless ``pretty`` (default: ``settings.debug``).
    Context bound with ``bind_connector_context`` is merged into every event.
    """
    numeric = logging.getLevelName((level or settings.log_level).upper())
    if not isinstance(numeric, int):
        numeric = logging.INFO
    if pretty is None:
        pretty = settings.debug

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
            *_renderer(pretty),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=numeric)
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logging.getLogger(name).setLevel(numeric)
    for name in _CHATTY:
        logging.getLogger(name).setLevel(max(numeric, logging.WARNING))


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_connector_context(connector_id: str, **extra: Any) -> None:
    """Tag every event the current task logs with ``connector_id``."""
    structlog.contextvars.bind_contextvars(connector_id=connector_id, **extra)


def clear_connector_context() -> None:
    structlog.contextvars.clear_contextvars()

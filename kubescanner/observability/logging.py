"""Structured logging configuration using structlog.

Scanner code logs through structlog as single-line JSON on stderr.  Libraries
that log through the standard library (uvicorn, kubernetes-asyncio, httpx)
are routed to the same stream at the same level; httpx is capped at WARNING
because it logs every request at INFO.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import MutableMapping
from typing import Any

import structlog

_SERVICE = "kubernetes-scanner"
_NOISY_LIBRARIES = ("httpx", "httpcore")


def _add_service(_logger: Any, _method: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    from kubescanner import __version__

    event_dict.setdefault("service", _SERVICE)
    event_dict.setdefault("version", __version__)
    return event_dict


def setup_logging(level: str = "info") -> None:
    """Configure structlog and the stdlib root logger for JSON output to stderr."""
    log_level = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(level=log_level, stream=sys.stderr, format="%(message)s", force=True)
    for name in _NOISY_LIBRARIES:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            _add_service,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.format_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def get_logger(component: str) -> structlog.stdlib.BoundLogger:
    """Get a logger bound with a component name."""
    return structlog.get_logger(component=component)  # type: ignore[return-value]

"""structlog configuration: single-line key=value records for log shippers."""
from __future__ import annotations

import logging
import sys
from typing import Any

import structlog

_ESCAPES = {"\\": "\\\\", "\n": "\\n", "\r": "\\r", "\t": "\\t"}


def _escape(value: str) -> str:
    for raw, escaped in _ESCAPES.items():
        value = value.replace(raw, escaped)
    return value


def escape_control_chars(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Keep every record on one line.

    Tracebacks rendered by ``format_exc_info`` and response bodies echoed from
    subscriber endpoints both carry newlines, so this has to run after
    ``format_exc_info`` and before the renderer.
    """
    for key, value in event_dict.items():
        if isinstance(value, str):
            event_dict[key] = _escape(value)
        elif isinstance(value, (list, tuple)):
            event_dict[key] = [_escape(item) if isinstance(item, str) else item for item in value]
    return event_dict


def configure_logging(level: int | str = logging.INFO, *, json_output: bool = False) -> None:
    """Route stdlib logging (aiohttp, asyncpg) and structlog to stdout."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(message)s"))

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)

    # aiohttp.client logs every retry-worthy connection error at DEBUG; the
    # executor already records them on the delivery.
    logging.getLogger("aiohttp.client").setLevel(logging.WARNING)

    renderer: Any
    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.processors.KeyValueRenderer(
            key_order=["timestamp", "level", "logger", "event"],
            drop_missing=True,
        )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            escape_control_chars,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

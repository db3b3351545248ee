"""Structlog-based logging helpers with contextual enrichment."""

from __future__ import annotations

import contextlib
import contextvars
import logging
import os
import sys
from typing import Dict, Iterator, MutableMapping, TextIO

import structlog
from opentelemetry import trace

from common.redaction import Redactor

__all__ = [
    "configure_logging",
    "get_logger",
    "bind_log_context",
    "clear_log_context",
    "get_log_context",
    "log_context",
]


_CONTEXT_FIELDS: tuple[str, ...] = ("trace_id", "request_id", "namespace")
_LOG_CONTEXT: contextvars.ContextVar[dict[str, str] | None] = contextvars.ContextVar(
    "log_context", default=None
)

_SERVICE_CONTEXT: dict[str, str] = {
    "service.name": os.getenv("SERVICE_NAME", "search-core"),
    "service.version": os.getenv("SERVICE_VERSION", "unknown"),
    "deployment.environment": os.getenv("DEPLOY_ENV", "unknown"),
}

_TIME_STAMPER = structlog.processors.TimeStamper(fmt="iso", key="timestamp")
_JSON_RENDERER = structlog.processors.JSONRenderer(ensure_ascii=False)
_CONFIGURED = False
_CONFIGURED_STREAM: TextIO | None = None


def get_log_context() -> dict[str, str]:
    """Return a copy of the active logging context."""

    current = _LOG_CONTEXT.get()
    return dict(current) if current else {}


def clear_log_context() -> None:
    """Clear all contextual values from the logging context."""

    _LOG_CONTEXT.set({})


def _filter_allowed(data: Dict[str, object]) -> dict[str, str]:
    filtered: dict[str, str] = {}
    for key, value in data.items():
        if key not in _CONTEXT_FIELDS or value is None:
            continue
        filtered[key] = str(value)
    return filtered


def bind_log_context(**kwargs: object) -> contextvars.Token[dict[str, str] | None]:
    """Bind values to the logging context and return the reset token."""

    current = get_log_context()
    merged = {**current, **_filter_allowed(kwargs)}
    return _LOG_CONTEXT.set(merged)


def _reset_log_context(token: contextvars.Token[dict[str, str] | None]) -> None:
    try:
        _LOG_CONTEXT.reset(token)
    except ValueError:
        clear_log_context()


@contextlib.contextmanager
def log_context(**kwargs: object) -> Iterator[None]:
    """Context manager for temporarily binding logging metadata."""

    token = bind_log_context(**kwargs)
    try:
        yield
    finally:
        _reset_log_context(token)


def _context_processor(
    _: structlog.typing.WrappedLogger,
    __: str,
    event_dict: MutableMapping[str, object],
) -> MutableMapping[str, object]:
    for field, value in get_log_context().items():
        event_dict.setdefault(field, value)
    return event_dict


def _service_processor(
    _: structlog.typing.WrappedLogger,
    __: str,
    event_dict: MutableMapping[str, object],
) -> MutableMapping[str, object]:
    for key, value in _SERVICE_CONTEXT.items():
        event_dict.setdefault(key, value)
    return event_dict


def _otel_trace_processor(
    _: structlog.typing.WrappedLogger,
    __: str,
    event_dict: MutableMapping[str, object],
) -> MutableMapping[str, object]:
    span = trace.get_current_span()
    span_context = span.get_span_context() if span else None
    if not span_context or not span_context.is_valid:
        event_dict.setdefault("trace_id", None)
        event_dict.setdefault("span_id", None)
        return event_dict

    event_dict["trace_id"] = f"{span_context.trace_id:032x}"
    event_dict["span_id"] = f"{span_context.span_id:016x}"
    return event_dict


def _shared_processors(redactor: Redactor) -> list[structlog.types.Processor]:
    return [
        _service_processor,
        _context_processor,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        _TIME_STAMPER,
        _otel_trace_processor,
        structlog.processors.format_exc_info,
        redactor,
    ]


def _configure_stdlib_logging(level: int, redactor: Redactor, stream: TextIO) -> None:
    handler = logging.StreamHandler(stream)
    handler.setLevel(level)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=_JSON_RENDERER,
            foreign_pre_chain=_shared_processors(redactor),
        )
    )
    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)


def _log_level_from_env() -> int:
    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    return getattr(logging, level_name, logging.INFO)


def configure_logging(stream: TextIO | None = None) -> None:
    """Configure structlog and stdlib logging once."""

    global _CONFIGURED, _CONFIGURED_STREAM

    active_stream = stream or sys.stderr
    level = _log_level_from_env()
    redactor = Redactor()

    if _CONFIGURED:
        if _CONFIGURED_STREAM is not active_stream:
            _configure_stdlib_logging(level, redactor, active_stream)
            _CONFIGURED_STREAM = active_stream
        return

    _configure_stdlib_logging(level, redactor, active_stream)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *_shared_processors(redactor),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _CONFIGURED = True
    _CONFIGURED_STREAM = active_stream


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger for ``name``."""

    return structlog.get_logger(name) if name else structlog.get_logger()

"""Scoped PostgreSQL connections and connection validation for pgvector."""

from __future__ import annotations

import math
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, Optional

import psycopg2

from common.logging import get_logger
from common.redaction import redact_dsn
from search_core.infra.config import DEFAULT_CONNECTION_TIMEOUT_MS

from .vector_schema import (
    VectorSchemaError,
    ensure_vector_extension_available,
    list_public_tables,
    validate_embedding_table,
)

logger = get_logger(__name__)

CONNECTION_REFUSED_MESSAGE = (
    "The host could not be reached. Please check your connection string and try again."
)

_REFUSED_MARKERS = ("econnrefused", "connection refused", "could not connect to server")

ConnectFactory = Callable[..., object]


class VectorStoreConfigurationError(ValueError):
    """Raised when a required setting or argument is missing."""


@dataclass(frozen=True)
class ConnectionStatus:
    """Result of :func:`validate_connection`.

    ``reason`` distinguishes ``"timeout"``, ``"refused"``, ``"schema"`` and
    generic ``"error"`` failures.
    """

    success: bool
    error: Optional[str] = None
    reason: Optional[str] = None

    def as_dict(self) -> Dict[str, object]:
        return {"success": self.success, "error": self.error}


def timeout_message(timeout_ms: int) -> str:
    seconds = f"{timeout_ms / 1000:.0f}"
    return (
        f"Connection timeout ({seconds}s). "
        "Please check your connection string and try again."
    )


def describe_connection_error(exc: BaseException) -> str:
    """Translate driver errors into a message a user can act on."""

    message = str(exc).strip() or exc.__class__.__name__
    lowered = message.lower()
    if any(marker in lowered for marker in _REFUSED_MARKERS):
        return CONNECTION_REFUSED_MESSAGE
    return message


def open_connection(connection_string: str, *, connect_timeout_s: float | None = None):  # type: ignore[no-untyped-def]
    """Open a new psycopg2 connection; the caller owns closing it."""

    kwargs: Dict[str, object] = {}
    if connect_timeout_s is not None and connect_timeout_s > 0:
        # libpq takes whole seconds and treats 1 as 2
        kwargs["connect_timeout"] = max(1, int(math.ceil(connect_timeout_s)))
    return psycopg2.connect(connection_string, **kwargs)


@contextmanager
def scoped_connection(
    connection_string: str | None,
    *,
    connect: ConnectFactory = open_connection,
) -> Iterator[object]:
    """Yield a connection that is closed on every exit path."""

    if not connection_string:
        raise VectorStoreConfigurationError("No connection string provided")
    conn = connect(connection_string)
    try:
        yield conn
    finally:
        try:
            conn.close()  # type: ignore[attr-defined]
        except Exception as exc:  # pragma: no cover - close failures are logged only
            logger.warning(
                "rag.connection.close_failed",
                exc_type=exc.__class__.__name__,
                error=str(exc),
            )


def validate_connection(
    connection_string: str | None,
    table_name: str | None = None,
    *,
    timeout_ms: int = DEFAULT_CONNECTION_TIMEOUT_MS,
    connect: ConnectFactory = open_connection,
) -> ConnectionStatus:
    """Check that ``connection_string`` reaches a pgvector-capable database.

    The real connection attempt is raced against ``timeout_ms``. When
    ``table_name`` already exists its columns are validated against the
    minimum embedding table schema.
    """

    if not connection_string:
        raise VectorStoreConfigurationError("No connection string provided")

    timeout_s = max(0.001, float(timeout_ms) / 1000.0)

    def _probe() -> ConnectionStatus:
        conn = None
        try:
            conn = connect(connection_string, connect_timeout_s=timeout_s)
            with conn.cursor() as cur:  # type: ignore[attr-defined]
                ensure_vector_extension_available(cur)
                tables = list_public_tables(cur)
                if table_name and table_name in tables:
                    validate_embedding_table(cur, table_name)
            return ConnectionStatus(success=True)
        except VectorSchemaError as exc:
            return ConnectionStatus(success=False, error=str(exc), reason="schema")
        except Exception as exc:
            message = describe_connection_error(exc)
            reason = "refused" if message == CONNECTION_REFUSED_MESSAGE else "error"
            return ConnectionStatus(success=False, error=message, reason=reason)
        finally:
            if conn is not None:
                try:
                    conn.close()  # type: ignore[attr-defined]
                except Exception as exc:  # pragma: no cover - close failures are logged only
                    logger.warning(
                        "rag.connection.close_failed",
                        exc_type=exc.__class__.__name__,
                        error=str(exc),
                    )

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="pgvector-validate")
    future = executor.submit(_probe)
    try:
        status = future.result(timeout=timeout_s)
    except FutureTimeout:
        logger.warning(
            "rag.connection.validate_timeout",
            timeout_ms=timeout_ms,
            connection_string=redact_dsn(connection_string),
        )
        return ConnectionStatus(
            success=False, error=timeout_message(timeout_ms), reason="timeout"
        )
    finally:
        # The probe closes its own connection once the driver returns.
        executor.shutdown(wait=False)

    if not status.success:
        logger.warning(
            "rag.connection.validate_failed",
            reason=status.reason,
            error=status.error,
            table=table_name,
        )
    return status


__all__ = [
    "CONNECTION_REFUSED_MESSAGE",
    "ConnectionStatus",
    "VectorStoreConfigurationError",
    "describe_connection_error",
    "open_connection",
    "scoped_connection",
    "timeout_message",
    "validate_connection",
]

"""DDL and validation helpers for the embedding table."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Set

from psycopg2 import sql

from common.logging import get_logger

logger = get_logger(__name__)


class VectorSchemaError(RuntimeError):
    """Raised when the embedding table cannot be created or does not fit."""


class VectorSchemaErrorCode:
    """Machine-readable error codes for schema validation failures."""

    TABLE_EMPTY = "SCHEMA_TABLE_EMPTY"
    COLUMN_MISSING = "SCHEMA_COLUMN_MISSING"
    COLUMN_TYPE_MISMATCH = "SCHEMA_COLUMN_TYPE"
    DIMENSION_INVALID = "SCHEMA_DIM_INVALID"
    EXTENSION_UNAVAILABLE = "SCHEMA_EXTENSION_MISSING"


def _format_error(code: str, message: str) -> str:
    return f"{code}: {message}"


LIST_TABLES_SQL = (
    "SELECT tablename FROM pg_catalog.pg_tables WHERE schemaname = 'public'"
)
TABLE_COLUMNS_SQL = (
    "SELECT column_name, data_type FROM information_schema.columns "
    "WHERE table_name = %s"
)
EXTENSION_AVAILABLE_SQL = (
    "SELECT 1 FROM pg_catalog.pg_available_extensions WHERE name = 'vector'"
)
CREATE_EXTENSION_SQL = "CREATE EXTENSION IF NOT EXISTS vector"


@dataclass(frozen=True)
class ColumnExpectation:
    name: str
    expected: str
    check: Callable[[str], bool]


# Extra columns are allowed; these are the minimum an embedding table needs.
EXPECTED_COLUMNS: tuple[ColumnExpectation, ...] = (
    ColumnExpectation("id", "uuid", lambda data_type: data_type.lower() == "uuid"),
    ColumnExpectation("namespace", "text", lambda data_type: data_type.lower() == "text"),
    # information_schema reports pgvector columns as USER-DEFINED
    ColumnExpectation("embedding", "vector", lambda data_type: bool(data_type)),
    ColumnExpectation("metadata", "jsonb", lambda data_type: data_type.lower() == "jsonb"),
    ColumnExpectation(
        "created_at", "timestamp", lambda data_type: "timestamp" in data_type.lower()
    ),
)


def render_create_table_sql(table_name: str, dimension: int) -> sql.Composed:
    """Return the ``CREATE TABLE IF NOT EXISTS`` statement for the embedding table."""

    try:
        dim = int(dimension)
    except (TypeError, ValueError) as exc:
        raise VectorSchemaError(
            _format_error(
                VectorSchemaErrorCode.DIMENSION_INVALID,
                f"Vector dimension must be an integer, got {dimension!r}",
            )
        ) from exc
    if dim <= 0:
        raise VectorSchemaError(
            _format_error(
                VectorSchemaErrorCode.DIMENSION_INVALID,
                "Vector dimension must be positive",
            )
        )
    return sql.SQL(
        "CREATE TABLE IF NOT EXISTS {table} ("
        "id UUID PRIMARY KEY, "
        "namespace TEXT, "
        "embedding vector({dim}), "
        "metadata JSONB, "
        "created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP)"
    ).format(table=sql.Identifier(table_name), dim=sql.Literal(dim))


def list_public_tables(cur) -> Set[str]:  # type: ignore[no-untyped-def]
    cur.execute(LIST_TABLES_SQL)
    return {str(row[0]) for row in cur.fetchall() or []}


def table_exists(cur, table_name: str) -> bool:  # type: ignore[no-untyped-def]
    return table_name in list_public_tables(cur)


def ensure_vector_extension_available(cur) -> None:  # type: ignore[no-untyped-def]
    """Fail when the server cannot provide the pgvector extension."""

    cur.execute(EXTENSION_AVAILABLE_SQL)
    if cur.fetchone() is None:
        raise VectorSchemaError(
            _format_error(
                VectorSchemaErrorCode.EXTENSION_UNAVAILABLE,
                "The pgvector extension is not available on this server",
            )
        )


def validate_embedding_table(cur, table_name: str) -> bool:  # type: ignore[no-untyped-def]
    """Check that ``table_name`` has the minimum embedding table columns.

    Raises :class:`VectorSchemaError` naming the first offending column.
    """

    cur.execute(TABLE_COLUMNS_SQL, (table_name,))
    rows = cur.fetchall() or []
    if not rows:
        raise VectorSchemaError(
            _format_error(
                VectorSchemaErrorCode.TABLE_EMPTY,
                f"The table '{table_name}' was found but does not contain any columns "
                "or cannot be accessed by role. It cannot be used as an embedding table",
            )
        )

    columns: Dict[str, str] = {str(row[0]): str(row[1] or "") for row in rows}
    for expectation in EXPECTED_COLUMNS:
        data_type = columns.get(expectation.name)
        if data_type is None:
            raise VectorSchemaError(
                _format_error(
                    VectorSchemaErrorCode.COLUMN_MISSING,
                    f"The column '{expectation.name}' was expected but not found "
                    f"in the table '{table_name}'",
                )
            )
        if not expectation.check(data_type):
            raise VectorSchemaError(
                _format_error(
                    VectorSchemaErrorCode.COLUMN_TYPE_MISMATCH,
                    f"Invalid data type for column: '{expectation.name}'. "
                    f"Got '{data_type}' but expected '{expectation.expected}'",
                )
            )

    logger.info("rag.schema.validated", table=table_name)
    return True


def ensure_embedding_table(cur, table_name: str, dimension: int) -> None:  # type: ignore[no-untyped-def]
    """Enable pgvector and create the embedding table when it is missing."""

    statement = render_create_table_sql(table_name, dimension)
    logger.info("rag.schema.ensure_table", table=table_name, dimension=int(dimension))
    cur.execute(CREATE_EXTENSION_SQL)
    cur.execute(statement)


__all__ = [
    "CREATE_EXTENSION_SQL",
    "EXPECTED_COLUMNS",
    "EXTENSION_AVAILABLE_SQL",
    "LIST_TABLES_SQL",
    "TABLE_COLUMNS_SQL",
    "VectorSchemaError",
    "VectorSchemaErrorCode",
    "ensure_embedding_table",
    "ensure_vector_extension_available",
    "list_public_tables",
    "render_create_table_sql",
    "table_exists",
    "validate_embedding_table",
]

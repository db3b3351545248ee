"""Make metadata payloads safe for storage in a PostgreSQL ``jsonb`` column."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Mapping

__all__ = ["sanitize_for_jsonb", "strip_control_characters"]

# Tab, line feed and carriage return are the only C0 characters kept.
_ALLOWED_CONTROL = frozenset({9, 10, 13})


def strip_control_characters(value: str) -> str:
    """Drop NUL and other C0 control characters from ``value``."""

    return "".join(
        char for char in value if ord(char) >= 0x20 or ord(char) in _ALLOWED_CONTROL
    )


def sanitize_for_jsonb(value: Any) -> Any:
    """Recursively sanitize ``value`` for ``jsonb``.

    PostgreSQL rejects ``\\u0000`` inside ``jsonb`` ("unsupported Unicode escape
    sequence"). Strings are stripped of C0 control characters except tab,
    newline and carriage return; lists and tuples are mapped element-wise,
    mappings value-wise with keys preserved, and dates become ISO-8601
    strings. Everything else passes through unchanged.
    """

    if value is None:
        return None
    if isinstance(value, str):
        return strip_control_characters(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {key: sanitize_for_jsonb(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [sanitize_for_jsonb(item) for item in value]
    return value

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from functools import lru_cache

import environ


env = environ.Env()

DEFAULT_TABLE_NAME = "search_core_vectors"
DEFAULT_CONNECTION_TIMEOUT_MS = 30_000
HYBRID_ALPHA_FALLBACK = 0.5


@dataclass(frozen=True)
class SearchConfig:
    """Collected environment configuration for the retrieval engine."""

    connection_string: str | None = None
    table_name: str = DEFAULT_TABLE_NAME
    connection_timeout_ms: int = DEFAULT_CONNECTION_TIMEOUT_MS
    term_library_inline: str = ""
    term_library_path: str = ""
    term_max_len_cjk: int = 20
    term_max_len_latin: int = 60
    term_include_latin: bool = False
    term_extract_max: int = 3
    keyword_per_term_limit: int = 1
    hybrid_alpha: float = HYBRID_ALPHA_FALLBACK
    rrf_k: int = 60
    rrf_weight_semantic: float = 1.0
    rrf_weight_keyword: float = 1.0
    hybrid_debug: bool = False
    search_workers: int = 4
    document_id_field: str = "doc_id"

    def with_overrides(self, **changes: object) -> "SearchConfig":
        """Return a copy of the configuration with ``changes`` applied."""

        return replace(self, **changes)  # type: ignore[arg-type]


def clamp_alpha(value: object, fallback: float = HYBRID_ALPHA_FALLBACK) -> float:
    """Coerce ``value`` into ``[0, 1]``; unparsable input yields ``fallback``."""

    if value is None or isinstance(value, bool):
        return fallback
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return fallback
    try:
        parsed = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return fallback
    if math.isnan(parsed):
        return fallback
    if parsed < 0:
        return 0.0
    if parsed > 1:
        return 1.0
    return parsed


def _int_setting(name: str, default: int, *, minimum: int | None = None) -> int:
    raw = env.str(name, default="")
    if not raw.strip():
        return default
    try:
        value = int(float(raw))
    except (TypeError, ValueError):
        return default
    if minimum is not None and value < minimum:
        return default
    return value


def _float_setting(name: str, default: float) -> float:
    raw = env.str(name, default="")
    if not raw.strip():
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return default
    if math.isnan(value) or math.isinf(value):
        return default
    return value


@lru_cache(maxsize=1)
def get_config() -> SearchConfig:
    """Load environment configuration.

    Values are read once and cached for subsequent calls.
    """

    connection_string = env.str("PGVECTOR_CONNECTION_STRING", default="") or env.str(
        "DATABASE_URL", default=""
    )
    raw_alpha = env.str("PGVECTOR_HYBRID_ALPHA", default="") or env.str(
        "VECTOR_HYBRID_ALPHA", default=""
    )

    return SearchConfig(
        connection_string=connection_string or None,
        table_name=env.str("PGVECTOR_TABLE_NAME", default="") or DEFAULT_TABLE_NAME,
        connection_timeout_ms=_int_setting(
            "PGVECTOR_CONNECTION_TIMEOUT_MS", DEFAULT_CONNECTION_TIMEOUT_MS, minimum=1
        ),
        term_library_inline=env.str("TERM_LIBRARY", default=""),
        term_library_path=env.str("TERM_LIBRARY_PATH", default=""),
        term_max_len_cjk=_int_setting("TERM_MAX_LEN_ZH", 20, minimum=2),
        term_max_len_latin=_int_setting("TERM_MAX_LEN_EN", 60, minimum=2),
        term_include_latin=env.bool("TERM_INCLUDE_EN", default=False),
        term_extract_max=_int_setting("TERM_EXTRACT_MAX", 3, minimum=0),
        keyword_per_term_limit=_int_setting("KEYWORD_TOPK_PER_TERM", 1, minimum=1),
        hybrid_alpha=clamp_alpha(raw_alpha),
        rrf_k=_int_setting("RRF_K", 60, minimum=1),
        rrf_weight_semantic=_float_setting("RRF_WEIGHT_SEMANTIC", 1.0),
        rrf_weight_keyword=_float_setting("RRF_WEIGHT_KEYWORD", 1.0),
        hybrid_debug=env.bool("PGVECTOR_HYBRID_DEBUG", default=False),
        search_workers=_int_setting("SEARCH_WORKERS", 4, minimum=1),
        document_id_field=env.str("DOCUMENT_ID_FIELD", default="") or "doc_id",
    )


__all__ = [
    "DEFAULT_CONNECTION_TIMEOUT_MS",
    "DEFAULT_TABLE_NAME",
    "HYBRID_ALPHA_FALLBACK",
    "SearchConfig",
    "clamp_alpha",
    "get_config",
]

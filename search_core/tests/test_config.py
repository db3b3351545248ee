import math

import pytest

from search_core.infra import config as config_module
from search_core.infra.config import DEFAULT_TABLE_NAME, SearchConfig, clamp_alpha, get_config

_ENV_VARS = (
    "PGVECTOR_CONNECTION_STRING",
    "DATABASE_URL",
    "PGVECTOR_TABLE_NAME",
    "PGVECTOR_CONNECTION_TIMEOUT_MS",
    "PGVECTOR_HYBRID_ALPHA",
    "VECTOR_HYBRID_ALPHA",
    "TERM_LIBRARY",
    "TERM_LIBRARY_PATH",
    "TERM_INCLUDE_EN",
    "TERM_EXTRACT_MAX",
    "KEYWORD_TOPK_PER_TERM",
    "RRF_K",
    "RRF_WEIGHT_SEMANTIC",
    "RRF_WEIGHT_KEYWORD",
    "PGVECTOR_HYBRID_DEBUG",
    "SEARCH_WORKERS",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    get_config.cache_clear()
    yield
    get_config.cache_clear()


def test_defaults_when_environment_is_empty():
    cfg = get_config()

    assert cfg.connection_string is None
    assert cfg.table_name == DEFAULT_TABLE_NAME
    assert cfg.connection_timeout_ms == 30_000
    assert cfg.hybrid_alpha == 0.5
    assert cfg.rrf_k == 60
    assert cfg.rrf_weight_semantic == 1.0
    assert cfg.rrf_weight_keyword == 1.0
    assert cfg.keyword_per_term_limit == 1
    assert cfg.term_extract_max == 3
    assert cfg.term_include_latin is False
    assert cfg.hybrid_debug is False


def test_reads_environment(monkeypatch):
    monkeypatch.setenv("PGVECTOR_CONNECTION_STRING", "postgresql://u:p@h/db")
    monkeypatch.setenv("PGVECTOR_TABLE_NAME", "chunks")
    monkeypatch.setenv("KEYWORD_TOPK_PER_TERM", "3")
    monkeypatch.setenv("TERM_INCLUDE_EN", "true")
    monkeypatch.setenv("PGVECTOR_HYBRID_DEBUG", "true")
    monkeypatch.setenv("RRF_K", "10")

    cfg = get_config()

    assert cfg.connection_string == "postgresql://u:p@h/db"
    assert cfg.table_name == "chunks"
    assert cfg.keyword_per_term_limit == 3
    assert cfg.term_include_latin is True
    assert cfg.hybrid_debug is True
    assert cfg.rrf_k == 10


def test_database_url_is_connection_fallback(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql://fallback/db")

    assert get_config().connection_string == "postgresql://fallback/db"


def test_vector_alpha_fallback_env_and_clamping(monkeypatch):
    monkeypatch.setenv("VECTOR_HYBRID_ALPHA", "7")

    assert get_config().hybrid_alpha == 1.0


def test_invalid_numbers_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv("RRF_K", "not-a-number")
    monkeypatch.setenv("SEARCH_WORKERS", "0")
    monkeypatch.setenv("RRF_WEIGHT_KEYWORD", "nan")

    cfg = get_config()

    assert cfg.rrf_k == 60
    assert cfg.search_workers == 4
    assert cfg.rrf_weight_keyword == 1.0


def test_config_is_cached(monkeypatch):
    first = get_config()
    monkeypatch.setenv("PGVECTOR_TABLE_NAME", "other")

    assert get_config() is first


@pytest.mark.parametrize(
    "raw,expected",
    [
        (-1, 0.0),
        (2, 1.0),
        ("abc", 0.5),
        ("0.3", 0.3),
        (None, 0.5),
        ("", 0.5),
        (float("nan"), 0.5),
        (True, 0.5),
    ],
)
def test_clamp_alpha(raw, expected):
    value = clamp_alpha(raw)

    assert not math.isnan(value)
    assert value == pytest.approx(expected)


def test_with_overrides_returns_new_instance():
    base = SearchConfig()
    changed = base.with_overrides(keyword_per_term_limit=5)

    assert base.keyword_per_term_limit == 1
    assert changed.keyword_per_term_limit == 5
    assert config_module.SearchConfig is SearchConfig

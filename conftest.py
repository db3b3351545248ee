import pytest

from common import logging as common_logging
from search_core.infra.config import get_config
from search_core.rag.term_library import reset_term_library_cache

pytest_plugins = [
    "tests.plugins.pg_db",
]


@pytest.fixture(autouse=True)
def clear_structlog_context():
    common_logging.clear_log_context()
    try:
        yield
    finally:
        common_logging.clear_log_context()


@pytest.fixture(autouse=True)
def fresh_search_config():
    """Drop cached configuration and term library state between tests."""

    get_config.cache_clear()
    reset_term_library_cache()
    yield
    get_config.cache_clear()
    reset_term_library_cache()

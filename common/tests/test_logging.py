import io
import json
import logging

import pytest
import structlog

from common import logging as common_logging
from common.redaction import MASK


@pytest.fixture(autouse=True)
def _clear_log_context():
    common_logging.clear_log_context()
    yield
    common_logging.clear_log_context()


@pytest.fixture
def configured_stream(monkeypatch):
    """Configure logging into a buffer and undo it afterwards."""

    monkeypatch.setenv("LOG_LEVEL", "INFO")
    monkeypatch.setattr(common_logging, "_CONFIGURED", False)
    monkeypatch.setattr(common_logging, "_CONFIGURED_STREAM", None)
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    stream = io.StringIO()
    common_logging.configure_logging(stream)
    yield stream
    structlog.reset_defaults()
    root.handlers = saved_handlers
    root.setLevel(saved_level)


def _last_payload(stream: io.StringIO) -> dict:
    lines = [line for line in stream.getvalue().splitlines() if line.strip()]
    return json.loads(lines[-1])


def test_log_context_binds_only_known_fields():
    with common_logging.log_context(namespace="docs", request_id="req-1", tenant="t-1"):
        assert common_logging.get_log_context() == {
            "namespace": "docs",
            "request_id": "req-1",
        }
    assert common_logging.get_log_context() == {}


def test_nested_log_context_restores_outer_values():
    with common_logging.log_context(namespace="outer"):
        with common_logging.log_context(namespace="inner", trace_id="abc"):
            assert common_logging.get_log_context() == {
                "namespace": "inner",
                "trace_id": "abc",
            }
        assert common_logging.get_log_context() == {"namespace": "outer"}


def test_bind_log_context_skips_none_and_stringifies():
    common_logging.bind_log_context(request_id=42, namespace=None)

    assert common_logging.get_log_context() == {"request_id": "42"}

    common_logging.clear_log_context()
    assert common_logging.get_log_context() == {}


def test_configured_logger_renders_json_with_context(configured_stream):
    logger = common_logging.get_logger("search_core.tests.logging_probe")

    with common_logging.log_context(namespace="docs", trace_id="trace-1"):
        logger.info(
            "probe.event",
            connection_string="postgresql://app:hunter2@db/vectors",
            detail="dsn postgresql://app:hunter2@db/vectors",
        )

    payload = _last_payload(configured_stream)
    assert payload["event"] == "probe.event"
    assert payload["level"] == "info"
    assert payload["logger"] == "search_core.tests.logging_probe"
    assert payload["namespace"] == "docs"
    assert payload["trace_id"] == "trace-1"
    assert payload["connection_string"] == MASK
    assert payload["detail"] == f"dsn postgresql://app:{MASK}@db/vectors"
    assert "service.name" in payload
    assert "timestamp" in payload
    assert "hunter2" not in configured_stream.getvalue()


def test_stdlib_records_share_the_pipeline(configured_stream):
    logging.getLogger("search_core.tests.stdlib_probe").warning(
        "login failed password=hunter2"
    )

    payload = _last_payload(configured_stream)
    assert payload["event"] == f"login failed password={MASK}"
    assert payload["level"] == "warning"


def test_configure_logging_switches_stream(configured_stream):
    replacement = io.StringIO()

    common_logging.configure_logging(replacement)
    logging.getLogger("search_core.tests.switch_probe").warning("moved")

    assert "moved" in replacement.getvalue()
    assert "moved" not in configured_stream.getvalue()

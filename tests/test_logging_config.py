"""Tests for the structlog pipeline."""

import json
import logging

import pytest
import structlog

from config.logging_config import LIBRARY_LEVELS, SERVICE_NAME, get_logger, setup_logging
from tradedash.version import __version__


@pytest.fixture(autouse=True)
def restore_logging():
    """Put back the silenced test configuration after each test."""
    saved = structlog.get_config()
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    yield
    structlog.contextvars.clear_contextvars()
    structlog.configure(**saved)
    for handler in root.handlers:
        handler.close()
    root.handlers[:] = saved_handlers
    root.setLevel(saved_level)


def _records(log_file):
    for handler in logging.getLogger().handlers:
        handler.flush()
    return [json.loads(line) for line in log_file.read_text().splitlines() if line.strip()]


def test_json_events_carry_service_context(tmp_path):
    log_file = tmp_path / "logs" / "dashboard.log"
    setup_logging("INFO", log_file=log_file, json_format=True)

    get_logger("tradedash.cache.record_store").info("store_bulk_loaded", added=3)

    record = _records(log_file)[-1]
    assert record["event"] == "store_bulk_loaded"
    assert record["added"] == 3
    assert record["level"] == "info"
    assert record["service"] == SERVICE_NAME
    assert record["version"] == __version__
    assert record["logger"] == "tradedash.cache.record_store"


def test_json_exceptions_rendered_as_text(tmp_path):
    log_file = tmp_path / "dashboard.log"
    setup_logging("INFO", log_file=log_file, json_format=True)

    try:
        raise RuntimeError("kaboom")
    except RuntimeError:
        get_logger("tradedash.dashboard.server").error("sync_check_unexpected_error", exc_info=True)

    record = _records(log_file)[-1]
    assert "RuntimeError: kaboom" in record["exception"]


def test_stdlib_records_share_the_pipeline(tmp_path):
    log_file = tmp_path / "dashboard.log"
    setup_logging("INFO", log_file=log_file, json_format=True)

    logging.getLogger("uvicorn.error").warning("Started server process")

    record = _records(log_file)[-1]
    assert record["event"] == "Started server process"
    assert record["service"] == SERVICE_NAME


def test_level_filtering(tmp_path):
    log_file = tmp_path / "dashboard.log"
    setup_logging("WARNING", log_file=log_file, json_format=True)

    logger = get_logger("tradedash.service")
    logger.info("serving_cached_data")
    logger.warning("serving_degraded_data")

    assert [r["event"] for r in _records(log_file)] == ["serving_degraded_data"]


def test_library_loggers_quieted():
    setup_logging("DEBUG")

    for name, level in LIBRARY_LEVELS.items():
        assert logging.getLogger(name).level == level
    assert logging.getLogger("uvicorn").handlers == []
    assert logging.getLogger("uvicorn").propagate

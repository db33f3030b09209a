"""Tests for the structlog setup."""

import json
import logging

import pytest
import structlog

from webmon.logconfig import configure_logging


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    level = root.level
    yield
    root.setLevel(level)
    structlog.reset_defaults()


def test_json_events_reach_stdlib_logging(restore_logging, caplog):
    configure_logging("debug", json=True)
    assert logging.getLogger().level == logging.DEBUG
    with caplog.at_level(logging.DEBUG, logger="webmon.test"):
        structlog.get_logger("webmon.test").info("Sample taken", modules=12)
    event = json.loads(caplog.records[-1].getMessage())
    assert event["event"] == "Sample taken"
    assert event["modules"] == 12
    assert event["level"] == "info"
    assert event["logger"] == "webmon.test"
    assert "timestamp" in event


def test_level_filter(restore_logging, caplog):
    configure_logging(logging.WARNING)
    with caplog.at_level(logging.WARNING, logger="webmon.test"):
        logger = structlog.get_logger("webmon.test")
        logger.info("dropped")
        logger.warning("kept")
    messages = [r.getMessage() for r in caplog.records]
    assert not any("dropped" in m for m in messages)
    assert any("kept" in m for m in messages)

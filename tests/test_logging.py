"""Tests for structured JSON logging."""

import io
import json
import logging

import pytest

from fieldsync import __version__
from fieldsync.logging import (
    FieldSyncJsonFormatter,
    log_connectivity_change,
    log_item_failed,
    set_device_id,
)


@pytest.fixture
def capture():
    """Logger writing JSON lines into a buffer."""
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(FieldSyncJsonFormatter())
    logger = logging.getLogger("fieldsync.test")
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    def records() -> list[dict]:
        return [json.loads(line) for line in stream.getvalue().splitlines()]

    yield logger, records

    logger.removeHandler(handler)
    set_device_id(None)


class TestJsonFormatter:
    def test_standard_fields(self, capture):
        logger, records = capture
        logger.info("Sync run finished")

        (record,) = records()
        assert record["message"] == "Sync run finished"
        assert record["level"] == "INFO"
        assert record["logger"] == "fieldsync.test"
        assert record["client_version"] == __version__
        assert record["timestamp"].endswith("+00:00")
        assert "device_id" not in record

    def test_device_id(self, capture):
        logger, records = capture
        set_device_id("scanner-07")
        logger.info("hello")

        assert records()[0]["device_id"] == "scanner-07"


class TestAuditEvents:
    def test_item_failed(self, capture):
        logger, records = capture
        log_item_failed(logger, "local_1_abc", "scan", "Server error: 500", 5, True)

        (record,) = records()
        assert record["level"] == "WARNING"
        assert record["event"] == "item_failed"
        assert record["retry_count"] == 5
        assert record["terminal"] is True

    def test_connectivity_change_rounds_rtt(self, capture):
        logger, records = capture
        log_connectivity_change(logger, True, False, rtt=123.456)

        assert records()[0]["rtt_ms"] == 123.5

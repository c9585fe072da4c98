"""
tests/test_log_buffer.py — In-Memory Log Viewer
=================================================
"""

from __future__ import annotations

import logging

import pytest

from dreamlight.errors import ValidationError
from dreamlight.services import log_buffer
from dreamlight.services.log_buffer import BufferHandler, LogBuffer


@pytest.fixture
def captured():
    """A private buffer wired to a throwaway logger tree."""
    buffer = LogBuffer(capacity=5)
    handler = BufferHandler(buffer, logging.DEBUG)
    parent = logging.getLogger("dreamlight_test")
    parent.setLevel(logging.DEBUG)
    parent.propagate = False
    parent.addHandler(handler)
    yield buffer
    parent.removeHandler(handler)


class TestLogBuffer:
    def test_records_fields(self, captured):
        logging.getLogger("dreamlight_test.api").warning("Server %s down", "eu-1")
        entry = captured.query()[0]
        assert entry["level"] == "WARNING"
        assert entry["logger"] == "dreamlight_test.api"
        assert entry["message"] == "Server eu-1 down"
        assert "levelno" not in entry
        assert entry["timestamp"].endswith("+00:00")

    def test_capacity_keeps_newest(self, captured):
        log = logging.getLogger("dreamlight_test")
        for i in range(8):
            log.info("line %d", i)
        assert len(captured) == 5
        assert [e["message"] for e in captured.query()] == [f"line {i}" for i in range(3, 8)]

    def test_filters(self, captured):
        logging.getLogger("dreamlight_test.api").info("request ok")
        logging.getLogger("dreamlight_test.api.auth").error("Login FAILED")
        logging.getLogger("dreamlight_test.apix").error("other failure")
        logging.getLogger("dreamlight_test.bot").debug("tick")

        assert [e["message"] for e in captured.query(level="error")] == ["Login FAILED", "other failure"]
        assert [e["message"] for e in captured.query(prefix="dreamlight_test.api")] == [
            "request ok", "Login FAILED",
        ]
        assert [e["message"] for e in captured.query(search="failed")] == ["Login FAILED"]
        assert [e["message"] for e in captured.query(tail=1)] == ["tick"]

    def test_invalid_level_filter(self, captured):
        with pytest.raises(ValidationError):
            captured.query(level="LOUD")

    def test_clear(self, captured):
        logging.getLogger("dreamlight_test").info("x")
        captured.clear()
        assert captured.query() == []


class TestCaptureLevel:
    def test_set_and_read_back(self):
        try:
            assert log_buffer.set_capture_level("error") == "ERROR"
            assert log_buffer.get_current_level() == "ERROR"
        finally:
            log_buffer.install_handler(logging.INFO)
        assert log_buffer.get_current_level() == "INFO"

    def test_invalid_level(self):
        with pytest.raises(ValidationError):
            log_buffer.set_capture_level("verbose")

    def test_install_is_idempotent(self):
        first = log_buffer.install_handler()
        second = log_buffer.install_handler()
        assert first is second
        assert logging.getLogger().handlers.count(first) == 1

"""Tests for logger.py -- logging setup for agent and server modes."""

import json
import logging
import sys
from unittest.mock import patch

from bookmark_sync.logger import JsonFormatter, setup_logging


class TestSetupLogging:
    """Tests for setup_logging()."""

    @patch("bookmark_sync.logger.logging.basicConfig")
    def test_agent_default_warning(self, mock_basic, monkeypatch):
        monkeypatch.delenv("LOG_LEVEL", raising=False)
        monkeypatch.delenv("LOG_FILE", raising=False)
        setup_logging("agent")

        kwargs = mock_basic.call_args.kwargs
        assert kwargs["level"] == logging.WARNING
        assert kwargs["force"] is True
        assert len(kwargs["handlers"]) == 1
        assert kwargs["handlers"][0].stream is sys.stderr

    @patch("bookmark_sync.logger.logging.basicConfig")
    def test_server_default_info(self, mock_basic, monkeypatch):
        monkeypatch.delenv("LOG_LEVEL", raising=False)
        monkeypatch.delenv("LOG_FILE", raising=False)
        setup_logging("server")

        assert mock_basic.call_args.kwargs["level"] == logging.INFO

    @patch("bookmark_sync.logger.logging.basicConfig")
    def test_env_level(self, mock_basic, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "error")
        monkeypatch.delenv("LOG_FILE", raising=False)
        setup_logging("agent")

        assert mock_basic.call_args.kwargs["level"] == logging.ERROR

    @patch("bookmark_sync.logger.logging.basicConfig")
    def test_debug_overrides_env(self, mock_basic, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "ERROR")
        setup_logging("agent", debug=True)

        assert mock_basic.call_args.kwargs["level"] == logging.DEBUG

    @patch("bookmark_sync.logger.logging.basicConfig")
    def test_log_file_handler(self, mock_basic, tmp_path, monkeypatch):
        monkeypatch.delenv("LOG_LEVEL", raising=False)
        log_file = tmp_path / "sync.log"
        setup_logging("server", log_file=str(log_file))

        handlers = mock_basic.call_args.kwargs["handlers"]
        try:
            assert len(handlers) == 2
            assert isinstance(handlers[1], logging.FileHandler)
        finally:
            handlers[1].close()

    @patch("bookmark_sync.logger.logging.basicConfig")
    def test_json_format(self, mock_basic, monkeypatch):
        monkeypatch.delenv("LOG_FILE", raising=False)
        setup_logging("agent", debug_format="json")

        handler = mock_basic.call_args.kwargs["handlers"][0]
        assert isinstance(handler.formatter, JsonFormatter)


class TestJsonFormatter:
    """Tests for JsonFormatter."""

    def test_single_line_json(self):
        record = logging.LogRecord(
            "bookmark_sync.test", logging.INFO, __file__, 1,
            "Applied %d changes", (3,), None,
        )
        line = JsonFormatter().format(record)

        entry = json.loads(line)
        assert "\n" not in line
        assert entry["level"] == "INFO"
        assert entry["logger"] == "bookmark_sync.test"
        assert entry["msg"] == "Applied 3 changes"
        assert "exc" not in entry

    def test_exception_included(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            exc_info = sys.exc_info()
        record = logging.LogRecord(
            "x", logging.ERROR, __file__, 1, "failed", (), exc_info
        )
        entry = json.loads(JsonFormatter().format(record))
        assert "RuntimeError: boom" in entry["exc"]

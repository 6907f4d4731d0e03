"""Tests for logging setup and the structured formatter."""

import json
import logging
import sys

import pytest

from src.infrastructure.logging_config import StructuredFormatter, setup_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="src.infrastructure.audit.persistence_writer",
        level=logging.ERROR,
        pathname=__file__,
        lineno=10,
        msg="Dropping %d audit record(s)",
        args=(2,),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestStructuredFormatter:
    """Test JSON log lines."""

    def test_core_fields(self):
        payload = json.loads(StructuredFormatter().format(_record()))
        assert payload["level"] == "ERROR"
        assert payload["logger"] == "src.infrastructure.audit.persistence_writer"
        assert payload["message"] == "Dropping 2 audit record(s)"
        assert payload["timestamp"].endswith("Z")

    def test_extra_fields_are_merged(self):
        payload = json.loads(StructuredFormatter().format(
            _record(extra_fields={"audit_ids": ["a", "b"], "tables": ["orders"]})
        ))
        assert payload["audit_ids"] == ["a", "b"]
        assert payload["tables"] == ["orders"]

    def test_exception_text(self):
        try:
            raise RuntimeError("store down")
        except RuntimeError:
            record = _record()
            record.exc_info = sys.exc_info()
        payload = json.loads(StructuredFormatter().format(record))
        assert "RuntimeError: store down" in payload["exception"]


class TestSetupLogging:
    """Test root logger configuration."""

    def test_single_json_handler(self, restore_root_logger):
        setup_logging(use_json=True, log_level="debug")
        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, StructuredFormatter)

    def test_unknown_level_defaults_to_info(self, restore_root_logger):
        setup_logging(log_level="chatty")
        assert logging.getLogger().level == logging.INFO

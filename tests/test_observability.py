"""Tests for the observability module.

Tests for metrics collection, operation tracing and logging configuration.
"""
import logging
import tempfile
import time
from pathlib import Path
from unittest.mock import patch

import pytest

from notetree.exceptions import NoteNotFoundError
from notetree.observability import (
    MetricsCollector,
    configure_logging,
    timed_operation,
    traced,
)
from tests.fakes import TEST_KEY


@pytest.fixture
def metrics_collector():
    return MetricsCollector()


@pytest.fixture
def clean_notetree_logger():
    """Detach handlers added by configure_logging after the test."""
    logger = logging.getLogger("notetree")
    handlers = list(logger.handlers)
    level = logger.level
    yield logger
    for handler in logger.handlers[:]:
        if handler not in handlers:
            handler.close()
            logger.removeHandler(handler)
    logger.setLevel(level)


class TestMetricsCollector:
    """Tests for MetricsCollector class."""

    def test_record_successful_operation(self, metrics_collector):
        """Test recording a successful operation."""
        metrics_collector.record_operation("test_op", 100.0, True)

        metrics = metrics_collector.get_metrics()
        assert "test_op" in metrics
        assert metrics["test_op"]["count"] == 1
        assert metrics["test_op"]["success_count"] == 1
        assert metrics["test_op"]["error_count"] == 0
        assert metrics["test_op"]["avg_duration_ms"] == 100.0

    def test_record_failed_operation(self, metrics_collector):
        """Test recording a failed operation with error."""
        metrics_collector.record_operation("test_op", 50.0, False, "Test error")

        metrics = metrics_collector.get_metrics()
        assert metrics["test_op"]["error_count"] == 1
        assert metrics["test_op"]["last_error"] == "Test error"
        assert metrics["test_op"]["last_error_time"] is not None

    def test_multiple_operations_aggregated(self, metrics_collector):
        """Test that multiple operations are aggregated correctly."""
        metrics_collector.record_operation("test_op", 100.0, True)
        metrics_collector.record_operation("test_op", 200.0, True)
        metrics_collector.record_operation("test_op", 300.0, False, "Error")

        metrics = metrics_collector.get_metrics()
        assert metrics["test_op"]["count"] == 3
        assert metrics["test_op"]["success_count"] == 2
        assert metrics["test_op"]["avg_duration_ms"] == 200.0
        assert metrics["test_op"]["max_duration_ms"] == 300.0

    def test_get_summary(self, metrics_collector):
        """Test getting metrics summary."""
        metrics_collector.record_operation("op1", 100.0, True)
        metrics_collector.record_operation("op2", 200.0, False, "Error")

        summary = metrics_collector.get_summary()
        assert summary["total_operations"] == 2
        assert summary["total_errors"] == 1
        assert summary["operations_tracked"] == ["op1", "op2"]

    def test_reset_metrics(self, metrics_collector):
        """Test resetting all metrics."""
        metrics_collector.record_operation("test_op", 100.0, True)
        metrics_collector.reset()
        assert metrics_collector.get_metrics() == {}


class TestTimedOperation:
    """Tests for timed_operation and traced."""

    def test_timed_operation_records_success(self, metrics_collector):
        with patch('notetree.observability.metrics', metrics_collector):
            with timed_operation("test_op", note_id="n1") as op:
                time.sleep(0.01)  # 10ms
                op["custom_data"] = "value"

        metrics = metrics_collector.get_metrics()
        assert metrics["test_op"]["success_count"] == 1
        assert metrics["test_op"]["avg_duration_ms"] >= 10

    def test_timed_operation_records_failure(self, metrics_collector):
        with patch('notetree.observability.metrics', metrics_collector):
            with pytest.raises(ValueError):
                with timed_operation("test_op"):
                    raise ValueError("Test error")

        metrics = metrics_collector.get_metrics()
        assert metrics["test_op"]["error_count"] == 1
        assert "Test error" in metrics["test_op"]["last_error"]

    def test_traced_decorator(self, metrics_collector):
        @traced("decorated_op")
        def work(note_id=None):
            return [1, 2, 3]

        with patch('notetree.observability.metrics', metrics_collector):
            assert work(note_id="n1") == [1, 2, 3]

        assert metrics_collector.get_metrics()["decorated_op"]["success_count"] == 1

    def test_traced_uses_function_name(self, metrics_collector):
        @traced()
        def another():
            return None

        with patch('notetree.observability.metrics', metrics_collector):
            another()

        assert "another" in metrics_collector.get_metrics()

    def test_traced_logs_positional_ids(self, metrics_collector, caplog):
        @traced("positional_op")
        def work(note_id, parent_note_id=None, title=None):
            return None

        with patch('notetree.observability.metrics', metrics_collector), \
                caplog.at_level(logging.DEBUG, logger="notetree.observability"):
            work("n1", "p1", title="hidden")

        messages = [r.getMessage() for r in caplog.records]
        start_line = next(m for m in messages if "START positional_op" in m)
        assert "note_id=n1" in start_line
        assert "parent_note_id=p1" in start_line
        assert "hidden" not in start_line

    def test_service_calls_trace_their_ids(
        self, metrics_collector, note_service, make_note, caplog
    ):
        note = make_note("Traced")
        with patch('notetree.observability.metrics', metrics_collector), \
                caplog.at_level(logging.DEBUG, logger="notetree.observability"):
            note_service.protect_recursively(note.note_id, TEST_KEY, True, "alice")

        assert any(
            f"START protect_recursively (note_id={note.note_id}, protect=True)" in r.getMessage()
            for r in caplog.records
        )

    def test_failures_counted_by_error_code(self, metrics_collector, note_service):
        with patch('notetree.observability.metrics', metrics_collector):
            with pytest.raises(NoteNotFoundError):
                note_service.protect_recursively("missing", TEST_KEY, True, "alice")

        stats = metrics_collector.get_metrics()["protect_recursively"]
        assert stats["error_count"] == 1
        assert stats["errors_by_code"] == {"NOTE_NOT_FOUND": 1}

    def test_service_operations_are_traced(self, metrics_collector, note_service, make_note):
        with patch('notetree.observability.metrics', metrics_collector):
            make_note("Traced")

        assert metrics_collector.get_metrics()["create_note"]["count"] == 1


class TestConfigureLogging:
    """Tests for configure_logging function."""

    def test_configure_logging_creates_directory(self, clean_notetree_logger):
        with tempfile.TemporaryDirectory() as temp_dir:
            log_dir = Path(temp_dir) / "logs"

            result = configure_logging(log_dir=log_dir, console=False)

            assert result == log_dir
            assert log_dir.is_dir()
            assert (log_dir / "notetree.log").exists()

    def test_configure_logging_sets_level(self, clean_notetree_logger):
        with tempfile.TemporaryDirectory() as temp_dir:
            configure_logging(log_dir=Path(temp_dir), level=logging.DEBUG, console=False)

            assert clean_notetree_logger.level == logging.DEBUG

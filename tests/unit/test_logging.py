"""Tests for structured logging."""
import io
import json
import logging

import pytest

from stepflow.observability.logging import setup_logging, with_run_context


@pytest.fixture
def log_stream():
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    stream = io.StringIO()
    setup_logging(level="DEBUG", stream=stream)
    yield stream
    root.handlers[:] = saved_handlers
    root.setLevel(saved_level)


class TestJsonLogging:
    """Records are emitted as JSON with run context."""

    def test_context_fields(self, log_stream):
        logging.getLogger("stepflow.test").info(
            "step done",
            extra=with_run_context(run_id="run-1", step_id="s", items=3),
        )

        record = json.loads(log_stream.getvalue().strip().splitlines()[-1])
        assert record["message"] == "step done"
        assert record["level"] == "INFO"
        assert record["logger"] == "stepflow.test"
        assert record["run_id"] == "run-1"
        assert record["step_id"] == "s"
        assert record["items"] == 3
        assert "step_type" not in record

    def test_with_run_context_drops_unset(self):
        assert with_run_context(run_id="r", attempt=0) == {"run_id": "r", "attempt": 0}
        assert with_run_context(status="ok") == {"status": "ok"}

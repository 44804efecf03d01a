"""
Structured logging.

Every scheduler, step and recovery record may carry run context
(run_id, step_id, step_type, attempt) passed through ``extra=``. With
setup_logging() installed those fields become top-level JSON keys.
"""
import logging
import sys
from typing import Any, Optional, TextIO

from pythonjsonlogger.json import JsonFormatter

from stepflow.config import get_settings


CONTEXT_FIELDS = ("run_id", "step_id", "step_type", "attempt")

# Libraries whose INFO chatter drowns out run logs
QUIET_LOGGERS = ("urllib3", "requests")


class RunContextFilter(logging.Filter):
    """Guarantee every record has the run context attributes."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name in CONTEXT_FIELDS:
            if not hasattr(record, name):
                setattr(record, name, None)
        return True


class RunJsonFormatter(JsonFormatter):
    """One JSON object per record; unset context fields are omitted."""

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        if not log_record.get("timestamp"):
            log_record["timestamp"] = self.formatTime(record, self.datefmt)
        log_record["level"] = log_record.pop("levelname", record.levelname)
        log_record["logger"] = log_record.pop("name", record.name)
        for name in CONTEXT_FIELDS:
            if log_record.get(name) is None:
                log_record.pop(name, None)


def setup_logging(level: Optional[str] = None, stream: Optional[TextIO] = None) -> None:
    """
    Install JSON logging on the root logger.

    Args:
        level: Log level name (default: settings.log_level)
        stream: Destination (default: stderr, leaving stdout to command output)
    """
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(RunJsonFormatter(
        "%(timestamp)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    ))
    handler.addFilter(RunContextFilter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level or get_settings().log_level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def with_run_context(
    run_id: Optional[str] = None,
    step_id: Optional[str] = None,
    step_type: Optional[str] = None,
    attempt: Optional[int] = None,
    **fields: Any,
) -> dict[str, Any]:
    """``extra=`` dict carrying the run context plus any extra fields."""
    context = {"run_id": run_id, "step_id": step_id, "step_type": step_type, "attempt": attempt}
    return {**fields, **{key: value for key, value in context.items() if value is not None}}

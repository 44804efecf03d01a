"""Observability module."""
from stepflow.observability.logging import (
    RunContextFilter,
    RunJsonFormatter,
    setup_logging,
    with_run_context,
)

__all__ = ["RunContextFilter", "RunJsonFormatter", "setup_logging", "with_run_context"]

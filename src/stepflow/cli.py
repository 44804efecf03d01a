"""
stepflow command line.

Commands:
    stepflow validate graph.json
    stepflow run graph.yaml --input '{"name": "x"}' --timeout 60
    stepflow steps

Output is JSON on stdout. Exit codes: 0 success, 1 invalid graph or failed
run, 2 usage errors.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, List, Optional

from pydantic import ValidationError

from stepflow.config import get_settings
from stepflow.observability.logging import setup_logging
from stepflow.step_registry.registry import StepRegistry
from stepflow.workflow_runtime.engine import Engine
from stepflow.workflow_runtime.models import Graph, TriggerEvent, load_graph
from stepflow.workflow_runtime.state import RunStatus
from stepflow.workflow_runtime.validation import GraphValidationError, validate


logger = logging.getLogger(__name__)


def _emit(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _build_registry(modules: List[str]) -> StepRegistry:
    registry = StepRegistry.with_core_steps()
    for module in modules:
        count = registry.discover_module(module)
        logger.info(f"Loaded {count} steps from {module}")
    return registry


def _load(path: str) -> Optional[Graph]:
    try:
        return load_graph(path)
    except (OSError, ValueError, ValidationError) as e:
        _emit({"error": f"Cannot load graph {path}: {e}"})
        return None


def _seed_payloads(args: argparse.Namespace) -> List[Any]:
    raw = args.input
    if args.input_file:
        raw = Path(args.input_file).read_text(encoding="utf-8")
    if raw is None:
        return []
    data = json.loads(raw)
    return data if isinstance(data, list) else [data]


def cmd_validate(args: argparse.Namespace, registry: StepRegistry) -> int:
    graph = _load(args.graph)
    if graph is None:
        return 1
    result = validate(graph, registry)
    _emit({"valid": result.valid, **result.model_dump(by_alias=True)})
    return 0 if result.valid else 1


def cmd_run(args: argparse.Namespace, registry: StepRegistry) -> int:
    graph = _load(args.graph)
    if graph is None:
        return 1
    try:
        payloads = _seed_payloads(args)
    except (OSError, json.JSONDecodeError) as e:
        _emit({"error": f"Invalid input: {e}"})
        return 2

    event = TriggerEvent.manual(*payloads, start_step_id=args.start)
    with Engine(registry) as engine:
        try:
            state = engine.run(graph, event, timeout=args.timeout)
        except GraphValidationError as e:
            _emit({"valid": False, **e.result.model_dump(by_alias=True)})
            return 1
        except TimeoutError as e:
            engine.cancel_run(event.run_id, "command line timeout")
            _emit({"error": str(e), "runId": event.run_id})
            return 1

    if args.full:
        _emit(json.loads(state.to_json()))
    else:
        _emit(state.summary())
    return 0 if state.status == RunStatus.SUCCEEDED else 1


def cmd_steps(args: argparse.Namespace, registry: StepRegistry) -> int:
    _emit([
        {
            "type": definition.step_type,
            "displayName": definition.display_name,
            "pack": definition.step_pack,
            "inputs": definition.inputs,
            "outputs": definition.outputs,
            "iterative": definition.iterative,
            "trigger": definition.trigger,
        }
        for definition in sorted(registry.list(), key=lambda d: d.step_type)
    ])
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="stepflow",
        description="Run and validate step graphs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--module",
        action="append",
        default=[],
        help="Extra module to scan for step classes (repeatable)",
    )
    parser.add_argument("--log", action="store_true", help="Emit JSON logs on stderr")

    subparsers = parser.add_subparsers(dest="command", required=True)

    validate_parser = subparsers.add_parser("validate", help="Validate a graph file")
    validate_parser.add_argument("graph", help="Graph file (.json, .yaml, .yml)")

    run_parser = subparsers.add_parser("run", help="Run a graph with a manual trigger")
    run_parser.add_argument("graph", help="Graph file (.json, .yaml, .yml)")
    run_parser.add_argument("--input", help="Seed payload JSON (object or array)")
    run_parser.add_argument("--input-file", help="File holding the seed payload JSON")
    run_parser.add_argument("--start", help="Step to start from instead of the entry steps")
    run_parser.add_argument("--timeout", type=float, default=None, help="Seconds to wait for the run")
    run_parser.add_argument("--full", action="store_true", help="Print the whole run state")

    subparsers.add_parser("steps", help="List registered step types")

    args = parser.parse_args(argv)

    if args.log:
        setup_logging()
    else:
        logging.basicConfig(level=get_settings().log_level, stream=sys.stderr)

    registry = _build_registry(args.module)

    if args.command == "validate":
        return cmd_validate(args, registry)
    elif args.command == "run":
        return cmd_run(args, registry)
    elif args.command == "steps":
        return cmd_steps(args, registry)

    return 2


if __name__ == "__main__":
    sys.exit(main())

"""
BaseStep - Abstract base class for step implementations.

Every step type is a BaseStep subclass registered under a type string.
The scheduler only calls execute(inputs, parameters, ctx) and reads the
static port declarations; it never looks inside a step.

SYNC-SAFE: execute() is synchronous and runs on a scheduler worker thread.
"""

from __future__ import annotations

import copy
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Set, Tuple

from .cancellation import CancellationToken
from .expressions import VariableResolver, build_context, resolve_value
from .items import InputBundle, Item, PortBundle


logger = logging.getLogger(__name__)


# ==============================================================================
# BaseStep - Abstract base class
# ==============================================================================

class BaseStep(ABC):
    """
    Abstract base class for all step implementations.

    Steps define:
    - type: Unique identifier (e.g., "merge")
    - version: Step version number
    - description: Metadata dict including declared inputs/outputs
    - properties: Parameter descriptions

    And implement execute() which maps an InputBundle to a PortBundle.

    Example:

        class UppercaseStep(BaseStep):
            type = "uppercase"

            description = {
                "displayName": "Uppercase",
                "name": "uppercase",
                "inputs": ["main"],
                "outputs": ["main"],
            }

            properties = {
                "parameters": [
                    {"name": "field", "type": "string", "default": "name"},
                ],
            }

            def execute(self, inputs, parameters, ctx):
                out = []
                for i, item in enumerate(inputs.get("main", [])):
                    field = ctx.get_parameter("field", i)
                    payload = dict(item.json_payload())
                    payload[field] = str(payload.get(field, "")).upper()
                    out.append(Item(payload=payload, tags=item.tags))
                return {"main": out}
    """

    type: str = "base"
    version: int = 1

    description: Dict[str, Any] = {
        "displayName": "Base Step",
        "name": "base",
        "description": "",
        "group": [],
        "inputs": ["main"],
        "outputs": ["main"],
    }

    properties: Dict[str, Any] = {
        "parameters": [],
    }

    # Input ports that never block eligibility
    optional_inputs: Tuple[str, ...] = ()

    # Entry steps that turn trigger seed items into items
    is_trigger: bool = False

    # Stateful steps that may be re-entered through back-edges
    iterative: bool = False
    loop_ports: Tuple[str, ...] = ()

    # Used by editors to offer "run this step only"; the engine ignores it
    supports_individual_execution: bool = True

    def __init__(self) -> None:
        self.logger = logging.getLogger(f"step.{self.type}")

    # ==== Port declarations ====

    def input_ports(self, parameters: Dict[str, Any]) -> List[str]:
        return list(self.description.get("inputs", ["main"]))

    def output_ports(self, parameters: Dict[str, Any]) -> List[str]:
        """Output port names. Override when ports depend on parameters."""
        return list(self.description.get("outputs", ["main"]))

    def optional_input_ports(self, parameters: Dict[str, Any]) -> Set[str]:
        return set(self.optional_inputs)

    def wait_for_all_inputs(self, parameters: Dict[str, Any]) -> bool:
        """When False the step runs once per arriving input (pass-through)."""
        return True

    # ==== Parameters ====

    @classmethod
    def parameter_defaults(cls) -> Dict[str, Any]:
        defaults = {}
        for param in cls.properties.get("parameters", []):
            if "default" in param:
                defaults[param["name"]] = param["default"]
        return defaults

    def validate_parameters(self, parameters: Dict[str, Any]) -> List[str]:
        """
        Check parameters against the declared properties.

        Returns:
            List of problems, empty when valid.
        """
        problems = []
        for param in self.properties.get("parameters", []):
            name = param["name"]
            value = parameters.get(name, param.get("default"))
            if param.get("required") and value in (None, ""):
                problems.append(f"Parameter '{name}' is required")
                continue
            options = param.get("options")
            if options and value is not None and param.get("type") == "options":
                allowed = [opt["value"] for opt in options]
                if isinstance(value, str) and "{{" in value:
                    continue
                if value not in allowed:
                    problems.append(
                        f"Parameter '{name}' must be one of {allowed}, got {value!r}"
                    )
        return problems

    # ==== Execution ====

    @abstractmethod
    def execute(
        self,
        inputs: InputBundle,
        parameters: Dict[str, Any],
        ctx: "ExecutionContext",
    ) -> PortBundle:
        """
        Execute the step.

        Returns:
            PortBundle mapping output port name to items. Ports left out
            are treated as empty.

        Raises:
            StepError: On failure
        """
        raise NotImplementedError

    @classmethod
    def get_definition(cls) -> Dict[str, Any]:
        """Get full step definition for registration."""
        return {
            "type": cls.type,
            "version": cls.version,
            "description": cls.description,
            "properties": cls.properties,
            "iterative": cls.iterative,
            "loopPorts": list(cls.loop_ports),
            "supportsIndividualExecution": cls.supports_individual_execution,
        }


# ==============================================================================
# StepLogger - logger sink handed to steps
# ==============================================================================

class StepLogger(logging.LoggerAdapter):
    """LoggerAdapter that also keeps the formatted lines for the run record."""

    def __init__(self, logger: logging.Logger, extra: Dict[str, Any]) -> None:
        super().__init__(logger, extra)
        self.lines: List[str] = []

    def log(self, level: int, msg: Any, *args: Any, **kwargs: Any) -> None:
        text = str(msg) % args if args else str(msg)
        self.lines.append(f"{logging.getLevelName(level)}: {text}")
        super().log(level, msg, *args, **kwargs)


# ==============================================================================
# ExecutionContext - runtime context for one invocation
# ==============================================================================

class ExecutionContext:
    """
    Runtime context provided to a step during one invocation.

    Provides access to:
    - Parameter resolution with expression substitution
    - A logger sink
    - The per-step state blob (iterative steps)
    - The run cancellation token
    """

    def __init__(
        self,
        run_id: str,
        step_id: str,
        step_type: str,
        parameters: Dict[str, Any],
        inputs: Optional[InputBundle] = None,
        parameter_defaults: Optional[Dict[str, Any]] = None,
        variable_resolver: Optional[VariableResolver] = None,
        state: Optional[Dict[str, Any]] = None,
        cancel_token: Optional[CancellationToken] = None,
        settings: Any = None,
        seed_items: Optional[List[Item]] = None,
        attempt: int = 1,
        iteration: int = 0,
        services: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.run_id = run_id
        self.step_id = step_id
        self.step_type = step_type
        self._parameters = parameters
        self._defaults = parameter_defaults or {}
        self._inputs = inputs if inputs is not None else InputBundle()
        self._items = [item for items in self._inputs.values() for item in items]
        self.variable_resolver = variable_resolver
        self._state = copy.deepcopy(state) if state is not None else None
        self.state_changed = False
        self.cancel_token = cancel_token or CancellationToken()
        self.settings = settings
        self.seed_items = list(seed_items or [])
        self.attempt = attempt
        self.iteration = iteration
        self._services = dict(services or {})
        self.logger = StepLogger(
            logging.getLogger(f"step.{step_type}"),
            {"run_id": run_id, "step_id": step_id, "step_type": step_type, "attempt": attempt},
        )

    # ==== Parameters ====

    def get_parameter(
        self,
        name: str,
        item_index: Optional[int] = None,
        default: Any = None,
    ) -> Any:
        """
        Get a parameter value with expressions resolved.

        Args:
            name: Parameter name
            item_index: Index of the input item used for $json/$tags
            default: Fallback when neither the step nor its properties set it
        """
        if name in self._parameters:
            value = self._parameters[name]
        elif name in self._defaults:
            value = self._defaults[name]
        else:
            return default

        item = None
        if item_index is not None and 0 <= item_index < len(self._items):
            item = self._items[item_index]
        elif self._items:
            item = self._items[0]

        context = build_context(
            item=item,
            items=self._items,
            resolver=self.variable_resolver,
            run_id=self.run_id,
            step_id=self.step_id,
            step_type=self.step_type,
        )
        return resolve_value(value, context)

    def get_service(self, name: str, default: Any = None) -> Any:
        """Engine-provided collaborator (e.g. "code_executor")."""
        return self._services.get(name, default)

    # ==== State ====

    def get_state(self) -> Optional[Dict[str, Any]]:
        """Opaque per-step state; persists across invocations within a run."""
        return copy.deepcopy(self._state) if self._state is not None else None

    def set_state(self, state: Optional[Dict[str, Any]]) -> None:
        self._state = copy.deepcopy(state) if state is not None else None
        self.state_changed = True

    def clear_state(self) -> None:
        self.set_state(None)

    # ==== Cancellation ====

    @property
    def is_cancelled(self) -> bool:
        return self.cancel_token.is_cancelled

    def check_cancelled(self) -> None:
        """Raise StepCancelledError when the run has been cancelled."""
        self.cancel_token.raise_if_cancelled()

    @property
    def log_lines(self) -> List[str]:
        return list(self.logger.lines)


__all__ = [
    "BaseStep",
    "ExecutionContext",
    "StepLogger",
]

"""
Step Registry - map from type identifier to step implementation.

Supports multiple discovery methods:
1. Manual registration
2. Entry-points (for plugin step packs)
3. Module scanning

Registries are plain objects handed to the engine and the validator;
there is no process-wide instance.
"""

from __future__ import annotations

import importlib
import logging
from importlib.metadata import entry_points
from typing import Dict, Iterator, List, Optional, Type, TYPE_CHECKING

from .models import StepDefinition, StepPackManifest


if TYPE_CHECKING:
    from stepflow.step_sdk.basestep import BaseStep


logger = logging.getLogger(__name__)

# Entry point group for step packs
STEP_PACK_ENTRY_POINT = "stepflow.steppacks"


class UnknownStepTypeError(KeyError):
    """Requested step type is not registered."""

    def __init__(self, step_type: str) -> None:
        super().__init__(step_type)
        self.step_type = step_type

    def __str__(self) -> str:
        return f"Unknown step type: {self.step_type}"


class StepRegistry:
    """
    Registry for discovering and instantiating step types.

    Usage:
        registry = StepRegistry()
        registry.discover_entry_points()

        step = registry.create("merge")
    """

    def __init__(self) -> None:
        self._steps: Dict[str, StepDefinition] = {}
        self._step_classes: Dict[str, Type["BaseStep"]] = {}
        self._packs: Dict[str, StepPackManifest] = {}
        self._discovered = False

    @classmethod
    def with_core_steps(cls) -> "StepRegistry":
        """Registry preloaded with the built-in step pack."""
        from stepflow.steppacks.core.manifest import register_steps

        registry = cls()
        manifest, step_classes = register_steps()
        registry.register_pack(manifest, step_classes)
        return registry

    def register(
        self,
        step_class: Type["BaseStep"],
        step_type: Optional[str] = None,
    ) -> StepDefinition:
        """
        Register a step class.

        Args:
            step_class: BaseStep subclass
            step_type: Override step type (uses class.type if not provided)
        """
        if step_type is None:
            step_type = getattr(step_class, "type", step_class.__name__.lower())

        definition = StepDefinition.from_step_class(step_class)
        definition.step_type = step_type

        if step_type in self._steps:
            logger.warning(f"Step type '{step_type}' re-registered")

        self._steps[step_type] = definition
        self._step_classes[step_type] = step_class

        logger.debug(f"Registered step: {step_type}")
        return definition

    def register_pack(
        self,
        manifest: StepPackManifest,
        step_classes: Dict[str, Type["BaseStep"]],
    ) -> None:
        """Register a step pack with its step types."""
        self._packs[manifest.name] = manifest

        for step_type, step_class in step_classes.items():
            definition = self.register(step_class, step_type)
            definition.step_pack = manifest.name

        logger.info(f"Registered pack '{manifest.name}' with {len(step_classes)} steps")

    def discover_entry_points(self, force: bool = False) -> int:
        """
        Discover step packs via entry points.

        Entry points are declared in pyproject.toml:

            [project.entry-points."stepflow.steppacks"]
            mypack = "mypack:register_steps"

        The entry point is a function returning either
        (manifest, step_classes) or just a step_classes dict.

        Returns:
            Number of packs discovered
        """
        if self._discovered and not force:
            return len(self._packs)

        count = 0
        for ep in entry_points(group=STEP_PACK_ENTRY_POINT):
            try:
                result = ep.load()()
            except Exception as e:
                logger.error(f"Failed to load step pack '{ep.name}': {e}")
                continue

            if isinstance(result, tuple):
                manifest, step_classes = result
            else:
                step_classes = result
                manifest = StepPackManifest(name=ep.name, steps=list(step_classes.keys()))
            self.register_pack(manifest, step_classes)

            count += 1
            logger.info(f"Discovered step pack: {ep.name}")

        self._discovered = True
        return count

    def discover_module(self, module_path: str) -> int:
        """
        Scan a module for BaseStep subclasses and register them.

        Returns:
            Number of steps discovered
        """
        from stepflow.step_sdk.basestep import BaseStep

        try:
            module = importlib.import_module(module_path)
        except ImportError as e:
            logger.error(f"Failed to import module '{module_path}': {e}")
            return 0

        count = 0
        for name in dir(module):
            obj = getattr(module, name)
            if (
                isinstance(obj, type)
                and issubclass(obj, BaseStep)
                and obj is not BaseStep
                and not getattr(obj, "__abstractmethods__", None)
            ):
                self.register(obj)
                count += 1

        return count

    def get(self, step_type: str) -> Optional[StepDefinition]:
        return self._steps.get(step_type)

    def get_class(self, step_type: str) -> Type["BaseStep"]:
        """Get step class by type, raising UnknownStepTypeError."""
        try:
            return self._step_classes[step_type]
        except KeyError:
            raise UnknownStepTypeError(step_type) from None

    def create(self, step_type: str) -> "BaseStep":
        """Create a fresh step instance."""
        return self.get_class(step_type)()

    def list(self) -> List[StepDefinition]:
        return list(self._steps.values())

    def list_packs(self) -> List[StepPackManifest]:
        return list(self._packs.values())

    def list_types(self) -> List[str]:
        return sorted(self._steps.keys())

    def has(self, step_type: str) -> bool:
        return step_type in self._steps

    def __len__(self) -> int:
        return len(self._steps)

    def __iter__(self) -> Iterator[StepDefinition]:
        return iter(self._steps.values())

    def __contains__(self, step_type: str) -> bool:
        return self.has(step_type)


__all__ = [
    "STEP_PACK_ENTRY_POINT",
    "StepRegistry",
    "UnknownStepTypeError",
]

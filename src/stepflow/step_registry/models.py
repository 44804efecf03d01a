"""
Step Registry Models - Metadata structures for step types and step packs.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field


class StepDefinition(BaseModel):
    """
    Metadata about a registered step type.
    """
    model_config = ConfigDict(extra="allow")

    # Identity
    step_type: str = Field(..., description="Unique step type identifier")
    version: int = Field(1, description="Step version")

    # Display
    display_name: str = Field(..., description="Human-readable name")
    description: str = Field("", description="Step description")
    group: List[str] = Field(default_factory=list, description="Categories")

    # Technical
    step_class: Optional[str] = Field(None, description="Fully qualified class name")
    step_pack: Optional[str] = Field(None, description="Source step pack")

    # Runtime
    inputs: List[str] = Field(default_factory=lambda: ["main"])
    outputs: List[str] = Field(default_factory=lambda: ["main"])
    parameters: List[Dict[str, Any]] = Field(default_factory=list)
    iterative: bool = Field(False, description="Step may be re-entered through a loop")
    trigger: bool = Field(False, description="Step turns trigger seed items into items")
    supports_individual_execution: bool = Field(True)

    @classmethod
    def from_step_class(cls, step_class: Type) -> "StepDefinition":
        """Create definition from a BaseStep class."""
        step_type = getattr(step_class, "type", step_class.__name__.lower())
        description = getattr(step_class, "description", {}) or {}
        properties = getattr(step_class, "properties", {}) or {}

        inputs = description.get("inputs", ["main"])
        outputs = description.get("outputs", ["main"])
        parameters = properties.get("parameters", []) if isinstance(properties, dict) else []

        return cls(
            step_type=step_type,
            version=getattr(step_class, "version", 1),
            display_name=description.get("displayName", step_type),
            description=description.get("description", ""),
            group=description.get("group", []),
            step_class=f"{step_class.__module__}.{step_class.__name__}",
            inputs=inputs if isinstance(inputs, list) else ["main"],
            outputs=outputs if isinstance(outputs, list) else ["main"],
            parameters=parameters if isinstance(parameters, list) else [],
            iterative=getattr(step_class, "iterative", False),
            trigger=getattr(step_class, "is_trigger", False),
            supports_individual_execution=getattr(
                step_class, "supports_individual_execution", True
            ),
        )


class StepPackManifest(BaseModel):
    """
    Manifest for a step pack (collection of step types).
    """
    model_config = ConfigDict(extra="allow")

    name: str = Field(..., description="Pack name (e.g., 'stepflow-core')")
    version: str = Field("1.0.0", description="Pack version")
    description: str = Field("", description="Pack description")
    steps: List[str] = Field(
        default_factory=list,
        description="List of step types in this pack",
    )


__all__ = [
    "StepDefinition",
    "StepPackManifest",
]

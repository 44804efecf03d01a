"""
Step Registry - discovery and instantiation of step types.
"""

from .models import StepDefinition, StepPackManifest
from .registry import STEP_PACK_ENTRY_POINT, StepRegistry, UnknownStepTypeError


__all__ = [
    "STEP_PACK_ENTRY_POINT",
    "StepDefinition",
    "StepPackManifest",
    "StepRegistry",
    "UnknownStepTypeError",
]

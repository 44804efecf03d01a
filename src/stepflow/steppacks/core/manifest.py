"""
Core Step Pack Manifest - Registration function for entry-points.
"""

from stepflow.step_registry.models import StepPackManifest

from .flow import IfStep, LoopStep, MergeStep, SplitStep, SwitchStep
from .steps import CodeStep, HttpRequestStep, ManualTriggerStep, NoOpStep, SetStep


MANIFEST = StepPackManifest(
    name="core",
    version="0.1.0",
    description="Built-in steps for triggers, data shaping, routing and loops",
    steps=[
        "manualTrigger",
        "noOp",
        "set",
        "code",
        "httpRequest",
        "if",
        "switch",
        "merge",
        "split",
        "loop",
    ],
)


# Step classes by type
STEP_CLASSES = {
    "manualTrigger": ManualTriggerStep,
    "noOp": NoOpStep,
    "set": SetStep,
    "code": CodeStep,
    "httpRequest": HttpRequestStep,
    "if": IfStep,
    "switch": SwitchStep,
    "merge": MergeStep,
    "split": SplitStep,
    "loop": LoopStep,
}


def register_steps():
    """
    Entry point function for step pack discovery.

    Returns tuple of (manifest, step_classes).
    """
    return MANIFEST, STEP_CLASSES


__all__ = [
    "MANIFEST",
    "STEP_CLASSES",
    "register_steps",
]

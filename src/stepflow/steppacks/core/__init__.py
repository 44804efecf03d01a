"""
Core Step Pack - built-in steps.

- manualTrigger: start a graph with seed items
- noOp / set: pass-through and field assignment
- code: user code in the sandbox
- httpRequest: outbound HTTP
- if / switch: routing
- merge / split: combining and grouping
- loop: batched iteration over items

All steps are synchronous and run on scheduler worker threads.
"""

from .flow import IfStep, LoopStep, MergeStep, SplitStep, SwitchStep
from .manifest import MANIFEST, STEP_CLASSES, register_steps
from .steps import CodeStep, HttpRequestStep, ManualTriggerStep, NoOpStep, SetStep

__all__ = [
    "CodeStep",
    "HttpRequestStep",
    "IfStep",
    "LoopStep",
    "MANIFEST",
    "ManualTriggerStep",
    "MergeStep",
    "NoOpStep",
    "STEP_CLASSES",
    "SetStep",
    "SplitStep",
    "SwitchStep",
    "register_steps",
]

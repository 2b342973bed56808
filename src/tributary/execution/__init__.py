"""Transform evaluation and run scheduling."""

from tributary.execution.scheduler import OutputMap, Run, run_workflow
from tributary.execution.script import ScriptEvaluator, ScriptLimits
from tributary.execution.transform import TransformEvaluator

__all__ = [
    "OutputMap",
    "Run",
    "run_workflow",
    "ScriptEvaluator",
    "ScriptLimits",
    "TransformEvaluator",
]

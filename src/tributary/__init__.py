"""Tributary - data-flow resolution engine for workflow transform nodes."""

from typing import TYPE_CHECKING

__all__ = ["EngineSettings", "Run", "run_workflow"]

if TYPE_CHECKING:
    from .config.settings import EngineSettings
    from .execution.scheduler import Run, run_workflow


def __getattr__(name: str):
    if name == "EngineSettings":
        from .config.settings import EngineSettings

        return EngineSettings
    if name in ("Run", "run_workflow"):
        from .execution import scheduler

        return getattr(scheduler, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

"""Custom exception hierarchy for tributary."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional

if TYPE_CHECKING:
    from tributary.core.results import EvalError
    from tributary.validation.graph_validator import ValidationIssue


@dataclass
class TributaryException(Exception):
    """Base exception type for all tributary errors."""

    message: str
    context: Optional[Dict[str, Any]] = None

    def __str__(self) -> str:
        if not self.context:
            return self.message
        return f"{self.message} | context={self.context}"


class ConfigurationError(TributaryException):
    """Raised when engine configuration or run inputs are invalid."""


class ValueConversionError(TributaryException):
    """Raised when a native object cannot be represented as a Value."""


class PathSyntaxError(TributaryException):
    """Raised by the path parser for malformed paths.

    The resolver converts this into a plain "not found".
    """


class TemplateRenderError(TributaryException):
    """Raised when a template placeholder uses unsupported syntax."""


class CombineSourceError(TributaryException):
    """Raised when a combine field's source node has no successful output."""

    def __init__(self, message: str, field_name: str, source_node_id: str):
        super().__init__(
            message,
            context={"field_name": field_name, "source_node_id": source_node_id},
        )
        self.field_name = field_name
        self.source_node_id = source_node_id


# -----------------------------------------------------------------------------
# Script sandbox
# -----------------------------------------------------------------------------


class ScriptExecutionError(TributaryException):
    """Raised when a user script fails, misbehaves or returns an invalid value."""


class ScriptTimeoutError(ScriptExecutionError):
    """Raised when a script exceeds its wall-clock budget."""


class ScriptLimitError(ScriptExecutionError):
    """Raised when a script exceeds a step, depth or size ceiling."""


class ScriptCancelledError(TributaryException):
    """Raised when the owning run is cancelled while a script is running."""


# -----------------------------------------------------------------------------
# Graph validation and runs
# -----------------------------------------------------------------------------


@dataclass
class GraphValidationError(TributaryException):
    """Raised when a workflow graph fails pre-execution validation.

    Nothing is evaluated when this is raised.
    """

    issues: List["ValidationIssue"] = field(default_factory=list)
    error: Optional["EvalError"] = None


class CyclicGraphError(GraphValidationError):
    """Raised when the node/edge graph contains a cycle."""


class MissingUpstreamError(GraphValidationError):
    """Raised when a transform node lacks its required upstream edge(s)."""


class InvalidConfigError(GraphValidationError):
    """Raised for other structural configuration problems."""


class RunStateError(TributaryException):
    """Raised when a single-use run is executed more than once."""

"""Per-node results and the evaluation error taxonomy."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from tributary.core.values import Value


class EvalErrorKind(str, Enum):
    """Stable, serializable error kind strings."""
    CYCLIC_GRAPH = "CyclicGraph"
    MISSING_UPSTREAM = "MissingUpstream"
    INVALID_CONFIG = "InvalidConfig"
    UPSTREAM_FAILED = "UpstreamFailed"
    SCRIPT_ERROR = "ScriptError"
    COMBINE_SOURCE_FAILED = "CombineSourceFailed"
    TEMPLATE_ERROR = "TemplateError"


# Kinds that abort a whole run before any node is evaluated
STRUCTURAL_KINDS = frozenset({
    EvalErrorKind.CYCLIC_GRAPH,
    EvalErrorKind.MISSING_UPSTREAM,
    EvalErrorKind.INVALID_CONFIG,
})


class NodeStatus(str, Enum):
    """Execution status of a node within a run."""
    IDLE = "idle"
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class RunStatus(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class EvalError:
    """A typed evaluation failure.

    Only the fields relevant to ``kind`` are populated:

    - UpstreamFailed: node_id, upstream_id
    - ScriptError / TemplateError / InvalidConfig: node_id, message
    - CombineSourceFailed: node_id, field_name, source_node_id
    - MissingUpstream: node_id
    - CyclicGraph: message (node_id is the first node on the cycle)
    """
    kind: EvalErrorKind
    node_id: Optional[str] = None
    message: str = ""
    upstream_id: Optional[str] = None
    field_name: Optional[str] = None
    source_node_id: Optional[str] = None

    @classmethod
    def upstream_failed(cls, node_id: str, upstream_id: str) -> "EvalError":
        return cls(
            kind=EvalErrorKind.UPSTREAM_FAILED,
            node_id=node_id,
            upstream_id=upstream_id,
            message=f"Upstream node '{upstream_id}' failed",
        )

    @classmethod
    def script_error(cls, node_id: str, message: str) -> "EvalError":
        return cls(kind=EvalErrorKind.SCRIPT_ERROR, node_id=node_id, message=message)

    @classmethod
    def template_error(cls, node_id: str, message: str) -> "EvalError":
        return cls(kind=EvalErrorKind.TEMPLATE_ERROR, node_id=node_id, message=message)

    @classmethod
    def combine_source_failed(
        cls, node_id: str, field_name: str, source_node_id: str
    ) -> "EvalError":
        return cls(
            kind=EvalErrorKind.COMBINE_SOURCE_FAILED,
            node_id=node_id,
            field_name=field_name,
            source_node_id=source_node_id,
            message=f"Source node '{source_node_id}' for field '{field_name}' has no output",
        )

    @property
    def is_structural(self) -> bool:
        return self.kind in STRUCTURAL_KINDS

    def describe(self, label: Optional[str] = None) -> str:
        """Human-readable message for display next to the failing node."""
        name = label or self.node_id or "workflow"
        if self.kind is EvalErrorKind.CYCLIC_GRAPH:
            return self.message or "Workflow contains a cycle"
        if self.kind is EvalErrorKind.MISSING_UPSTREAM:
            return self.message or f"'{name}' is missing its input connection"
        if self.kind is EvalErrorKind.UPSTREAM_FAILED:
            return f"'{name}' was skipped because '{self.upstream_id}' failed"
        if self.kind is EvalErrorKind.COMBINE_SOURCE_FAILED:
            return (
                f"'{name}' could not combine field '{self.field_name}': "
                f"source '{self.source_node_id}' failed"
            )
        if self.kind is EvalErrorKind.SCRIPT_ERROR:
            return f"Code in '{name}' failed: {self.message}"
        if self.kind is EvalErrorKind.TEMPLATE_ERROR:
            return f"Template in '{name}' is invalid: {self.message}"
        return f"'{name}' is misconfigured: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"kind": self.kind.value}
        for key in ("node_id", "message", "upstream_id", "field_name", "source_node_id"):
            value = getattr(self, key)
            if value:
                payload[key] = value
        return payload


@dataclass(frozen=True)
class NodeResult:
    """Outcome of a single node: a Value on success, an EvalError on failure."""
    value: Optional[Value] = None
    error: Optional[EvalError] = None

    def __post_init__(self) -> None:
        if (self.value is None) == (self.error is None):
            raise ValueError("NodeResult needs exactly one of value or error")

    @classmethod
    def success(cls, value: Value) -> "NodeResult":
        return cls(value=value)

    @classmethod
    def failure(cls, error: EvalError) -> "NodeResult":
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        if self.error is not None:
            return {"ok": False, "error": self.error.to_dict()}
        return {"ok": True, "value": self.value.to_python()}


def results_to_dict(results: Mapping[str, NodeResult]) -> Dict[str, Dict[str, Any]]:
    """Serializable view of a run's output map."""
    return {node_id: result.to_dict() for node_id, result in results.items()}

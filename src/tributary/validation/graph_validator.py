"""Pre-execution validation of workflow graphs."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Tuple

from tributary.core.exceptions import (
    CyclicGraphError,
    GraphValidationError,
    InvalidConfigError,
    MissingUpstreamError,
)
from tributary.core.model import CombineConfig, Workflow
from tributary.core.results import EvalError, EvalErrorKind

# Issue codes grouped by the run-level error they produce
CYCLE_CODES = frozenset({"SELF_LOOP_DETECTED", "CYCLE_DETECTED"})
UPSTREAM_CODES = frozenset({"MISSING_UPSTREAM", "COMBINE_SOURCE_NOT_UPSTREAM"})


@dataclass
class ValidationIssue:
    """Represents a workflow validation issue."""

    code: str
    message: str
    node_id: Optional[str] = None

    @property
    def kind(self) -> EvalErrorKind:
        if self.code in CYCLE_CODES:
            return EvalErrorKind.CYCLIC_GRAPH
        if self.code in UPSTREAM_CODES:
            return EvalErrorKind.MISSING_UPSTREAM
        return EvalErrorKind.INVALID_CONFIG


class GraphValidator:
    """Validates workflow structure before any node is evaluated."""

    def validate(self, workflow: Workflow) -> Tuple[bool, List[ValidationIssue]]:
        """
        Validate a workflow and return (is_valid, issues).

        Rules:
        1. Node IDs are unique
        2. Every edge references existing nodes
        3. No self-loops and no cycles (the graph is a DAG)
        4. Transform nodes carry a config
        5. Extract/Template/Code nodes have exactly one incoming edge
        6. Combine fields are named, unique, and read only from direct upstreams
        """
        issues: List[ValidationIssue] = []
        labels = {n.id: n.display_name for n in workflow.nodes}

        # Rule 1: Duplicate IDs
        for node_id, count in Counter(workflow.node_ids).items():
            if count > 1:
                issues.append(ValidationIssue(
                    code="DUPLICATE_NODE_ID",
                    message=f"Duplicate node ID: {node_id}",
                    node_id=node_id,
                ))

        # Rule 2: Edge endpoints
        node_ids = set(workflow.node_ids)
        for edge in workflow.edges:
            if edge.from_node not in node_ids:
                issues.append(ValidationIssue(
                    code="INVALID_EDGE_SOURCE",
                    message=f"Edge source '{edge.from_node}' does not exist",
                    node_id=edge.to_node if edge.to_node in node_ids else None,
                ))
            if edge.to_node not in node_ids:
                issues.append(ValidationIssue(
                    code="INVALID_EDGE_TARGET",
                    message=f"Edge target '{edge.to_node}' does not exist",
                    node_id=edge.from_node if edge.from_node in node_ids else None,
                ))

        # Rule 3: Self-loops and cycles
        for edge in workflow.edges:
            if edge.from_node == edge.to_node and edge.from_node in node_ids:
                issues.append(ValidationIssue(
                    code="SELF_LOOP_DETECTED",
                    message=f"Self-loop detected on node '{labels[edge.from_node]}'. Cycles are not allowed.",
                    node_id=edge.from_node,
                ))
        issues.extend(self._detect_cycles(workflow, labels))

        # Rules 4-6: Per-transform requirements
        for node in workflow.transform_nodes:
            issues.extend(self._validate_transform(workflow, node.id, labels))

        return len(issues) == 0, issues

    def _validate_transform(
        self, workflow: Workflow, node_id: str, labels: Dict[str, str]
    ) -> List[ValidationIssue]:
        issues: List[ValidationIssue] = []
        node = workflow.get_node(node_id)
        label = labels[node_id]

        if node.config is None:
            issues.append(ValidationIssue(
                code="MISSING_TRANSFORM_CONFIG",
                message=f"Transform node '{label}' has no transform type configured",
                node_id=node_id,
            ))
            return issues

        upstream_ids = workflow.upstream_ids(node_id)

        if not isinstance(node.config, CombineConfig):
            if not upstream_ids:
                issues.append(ValidationIssue(
                    code="MISSING_UPSTREAM",
                    message=f"'{label}' needs an input connection",
                    node_id=node_id,
                ))
            elif len(upstream_ids) > 1:
                issues.append(ValidationIssue(
                    code="AMBIGUOUS_UPSTREAM",
                    message=(
                        f"'{label}' has {len(upstream_ids)} input connections "
                        f"({', '.join(upstream_ids)}); {node.config.type} transforms take exactly one"
                    ),
                    node_id=node_id,
                ))
            return issues

        seen: Set[str] = set()
        for position, field in enumerate(node.config.fields, start=1):
            if not field.field_name or not field.source_node_id:
                issues.append(ValidationIssue(
                    code="EMPTY_COMBINE_FIELD",
                    message=f"Field #{position} of '{label}' needs a name and a source node",
                    node_id=node_id,
                ))
                continue
            if field.field_name in seen:
                issues.append(ValidationIssue(
                    code="DUPLICATE_COMBINE_FIELD",
                    message=f"'{label}' defines field '{field.field_name}' more than once",
                    node_id=node_id,
                ))
            seen.add(field.field_name)
            if field.source_node_id not in upstream_ids:
                issues.append(ValidationIssue(
                    code="COMBINE_SOURCE_NOT_UPSTREAM",
                    message=(
                        f"Field '{field.field_name}' of '{label}' reads from "
                        f"'{field.source_node_id}', which is not connected to it"
                    ),
                    node_id=node_id,
                ))
        return issues

    def _detect_cycles(
        self, workflow: Workflow, labels: Dict[str, str]
    ) -> List[ValidationIssue]:
        """Report the first cycle found by a three-colour depth-first walk.

        Nodes are unvisited, on the current path, or done. Reaching a node
        that is still on the path closes a cycle. The walk keeps its own
        stack so long chains do not hit the interpreter's recursion limit.
        Self-loops are reported separately and skipped here.
        """
        adjacency: Dict[str, List[str]] = {node_id: [] for node_id in workflow.node_ids}
        for edge in workflow.edges:
            if edge.from_node == edge.to_node:
                continue
            if edge.from_node in adjacency and edge.to_node in adjacency:
                adjacency[edge.from_node].append(edge.to_node)

        UNVISITED, ON_PATH, DONE = 0, 1, 2
        state = dict.fromkeys(adjacency, UNVISITED)

        for root_id in adjacency:
            if state[root_id] != UNVISITED:
                continue
            state[root_id] = ON_PATH
            path = [root_id]
            pending = [iter(adjacency[root_id])]
            while pending:
                next_id = next(pending[-1], None)
                if next_id is None:
                    state[path.pop()] = DONE
                    pending.pop()
                elif state[next_id] == ON_PATH:
                    cycle = path[path.index(next_id):] + [next_id]
                    cycle_str = " → ".join(labels.get(nid, nid) for nid in cycle)
                    return [ValidationIssue(
                        code="CYCLE_DETECTED",
                        message=f"Cycle detected in workflow: {cycle_str}. Workflows must be acyclic.",
                        node_id=cycle[0],
                    )]
                elif state[next_id] == UNVISITED:
                    state[next_id] = ON_PATH
                    path.append(next_id)
                    pending.append(iter(adjacency[next_id]))
        return []

    def format_issues(self, issues: List[ValidationIssue]) -> str:
        """Format validation issues as a readable string."""
        if not issues:
            return ""

        lines = ["Workflow validation failed:"]
        for issue in issues:
            location = f" (node: {issue.node_id})" if issue.node_id else ""
            lines.append(f"  • {issue.message}{location}")

        return "\n".join(lines)

    def check(self, workflow: Workflow) -> None:
        """Validate and raise if the workflow cannot run.

        Raises:
            CyclicGraphError: If any cycle or self-loop exists.
            MissingUpstreamError: If a required upstream edge is missing.
            InvalidConfigError: For any other issue.
        """
        is_valid, issues = self.validate(workflow)
        if not is_valid:
            raise error_for_issues(issues, self.format_issues(issues))


def error_for_issues(issues: List[ValidationIssue], message: str) -> GraphValidationError:
    """Build the exception for ``issues``; cycles win over upstream problems."""
    kinds = [issue.kind for issue in issues]
    for kind, exc_type in (
        (EvalErrorKind.CYCLIC_GRAPH, CyclicGraphError),
        (EvalErrorKind.MISSING_UPSTREAM, MissingUpstreamError),
        (EvalErrorKind.INVALID_CONFIG, InvalidConfigError),
    ):
        if kind in kinds:
            first = issues[kinds.index(kind)]
            error = EvalError(kind=kind, node_id=first.node_id, message=first.message)
            return exc_type(
                message,
                context={"codes": [issue.code for issue in issues]},
                issues=issues,
                error=error,
            )
    return InvalidConfigError(message, issues=issues)

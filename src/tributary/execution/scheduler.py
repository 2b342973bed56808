"""Dependency-ordered evaluation of a workflow run.

A ``Run`` takes a workflow, the outputs of its non-transform nodes (seeds)
and settings, then:

1. Validates the graph; structural problems raise before anything runs
2. Records the seeds into the run's output map
3. Submits every transform whose upstreams have all settled to a thread
   pool, recording each result as it arrives and releasing dependents

Nodes that cannot be reached from the seeds are never evaluated and stay
``idle``. Only the coordinating thread writes to the output map.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Deque, Dict, Iterator, List, Mapping, Optional, Set, Union

from tributary.config.settings import EngineSettings
from tributary.core.exceptions import (
    ConfigurationError,
    GraphValidationError,
    RunStateError,
    ValueConversionError,
)
from tributary.core.model import CombineConfig, Node, TemplateConfig, Workflow
from tributary.core.results import EvalError, NodeResult, NodeStatus, RunStatus
from tributary.core.values import Value, from_python
from tributary.execution.transform import TransformEvaluator
from tributary.utils.logging import get_logger
from tributary.validation.graph_validator import GraphValidator

logger = get_logger(__name__)

StatusCallback = Callable[[str, NodeStatus], None]

# Upper bound on how long the coordinator waits before re-checking
# cancellation and the run deadline
_POLL_INTERVAL = 0.05


class OutputMap(Mapping[str, NodeResult]):
    """Write-once ``node_id -> NodeResult`` map owned by a run."""

    def __init__(self) -> None:
        self._results: Dict[str, NodeResult] = {}
        self._lock = threading.Lock()

    def record(self, node_id: str, result: NodeResult) -> None:
        with self._lock:
            if node_id in self._results:
                raise RunStateError(
                    f"Result for node '{node_id}' is already recorded",
                    context={"node_id": node_id},
                )
            self._results[node_id] = result

    def __getitem__(self, node_id: str) -> NodeResult:
        with self._lock:
            return self._results[node_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self.snapshot())

    def __len__(self) -> int:
        with self._lock:
            return len(self._results)

    def snapshot(self) -> Dict[str, NodeResult]:
        with self._lock:
            return dict(self._results)


class Run:
    """A single, single-use evaluation of a workflow.

    Usage:
        run = Run(workflow, seeds={"trigger": {"user": {"name": "Ada"}}})
        results = run.execute()
        results["get_name"].value  # StringValue("Ada")

        # Seeds may also be Values or failed NodeResults
        run = Run(workflow, seeds={"fetch": NodeResult.failure(error)})
    """

    def __init__(
        self,
        workflow: Union[Workflow, Mapping[str, Any]],
        seeds: Optional[Mapping[str, Any]] = None,
        settings: Optional[EngineSettings] = None,
        *,
        on_status: Optional[StatusCallback] = None,
        evaluator: Optional[TransformEvaluator] = None,
    ):
        self.workflow = workflow if isinstance(workflow, Workflow) else Workflow.model_validate(workflow)
        self.settings = settings or EngineSettings()
        self.on_status = on_status
        self.evaluator = evaluator or TransformEvaluator(self.settings)
        self.validator = GraphValidator()
        self.outputs = OutputMap()
        self.status = RunStatus.CREATED
        self.seeds = self._normalize_seeds(seeds or {})

        self._statuses: Dict[str, NodeStatus] = {n.id: NodeStatus.IDLE for n in self.workflow.nodes}
        self._cancel_event = threading.Event()
        self._state_lock = threading.Lock()
        # Held while recording a result and while cancelling, so a result is
        # either recorded before cancel() returns or discarded
        self._settle_lock = threading.RLock()

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def execute(self) -> Dict[str, NodeResult]:
        """Evaluate the workflow and return the recorded results.

        Returns:
            ``node_id -> NodeResult`` for every seeded or evaluated node. After
            cancellation, only results recorded before it.

        Raises:
            GraphValidationError: (``CyclicGraphError``, ``MissingUpstreamError``
                or ``InvalidConfigError``) if the graph cannot run. Nothing
                is recorded in that case.
            RunStateError: If this run was already executed.
        """
        with self._state_lock:
            if self.status is not RunStatus.CREATED:
                raise RunStateError(
                    "A run can only be executed once; create a new Run",
                    context={"status": self.status.value},
                )
            self.status = RunStatus.RUNNING

        started = time.monotonic()
        logger.info(
            "Run started",
            extra={"nodes": len(self.workflow.nodes), "edges": len(self.workflow.edges)},
        )

        try:
            self.validator.check(self.workflow)
        except GraphValidationError as e:
            self.status = RunStatus.FAILED
            logger.warning(
                "Workflow validation failed",
                extra={
                    "kind": e.error.kind.value if e.error else None,
                    "codes": [issue.code for issue in e.issues],
                },
            )
            raise

        if not self._cancel_event.is_set():
            for node_id, result in self.seeds.items():
                self._record(node_id, result)
            self._evaluate_transforms(started)

        results = self.outputs.snapshot()
        self.status = RunStatus.CANCELLED if self._cancel_event.is_set() else RunStatus.COMPLETED
        if self.status is RunStatus.CANCELLED:
            self._reset_unsettled()

        logger.info(
            "Run finished",
            extra={
                "status": self.status.value,
                "recorded": len(results),
                "failed": sum(1 for r in results.values() if not r.ok),
                "duration_ms": round((time.monotonic() - started) * 1000, 1),
            },
        )
        return results

    def cancel(self) -> None:
        """Stop the run: no new nodes start and late results are discarded."""
        with self._settle_lock:
            if not self._cancel_event.is_set():
                logger.warning("Run cancelled", extra={"status": self.status.value})
            self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def status_of(self, node_id: str) -> NodeStatus:
        """Execution status of ``node_id`` (raises KeyError for unknown IDs)."""
        return self._statuses[node_id]

    def error_messages(self) -> Dict[str, str]:
        """Human-readable messages for failed nodes, keyed by node ID."""
        messages = {}
        for node_id, result in self.outputs.snapshot().items():
            if not result.ok:
                node = self.workflow.get_node(node_id)
                messages[node_id] = result.error.describe(node.display_name if node else None)
        return messages

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------

    def _evaluate_transforms(self, started: float) -> None:
        upstreams = self._upstream_map()
        downstreams: Dict[str, List[str]] = {node_id: [] for node_id in upstreams}
        for node_id, ids in upstreams.items():
            for upstream_id in ids:
                downstreams.setdefault(upstream_id, []).append(node_id)

        runnable = self._runnable_transforms(upstreams)
        for node_id in runnable:
            self._set_status(node_id, NodeStatus.PENDING)

        deadline: Optional[float] = None
        if self.settings.run_timeout_seconds is not None:
            deadline = started + self.settings.run_timeout_seconds

        waiting: Dict[str, Set[str]] = {
            node_id: {u for u in upstreams[node_id] if u not in self.outputs}
            for node_id in runnable
        }
        ready: Deque[str] = deque(node_id for node_id in runnable if not waiting[node_id])
        in_flight: Dict[Future, str] = {}

        def settle(node_id: str, result: NodeResult) -> None:
            self._record(node_id, result)
            for downstream_id in downstreams.get(node_id, []):
                pending = waiting.get(downstream_id)
                if pending is not None and node_id in pending:
                    pending.discard(node_id)
                    if not pending:
                        ready.append(downstream_id)

        pool = ThreadPoolExecutor(
            max_workers=self.settings.max_workers,
            thread_name_prefix="tributary-node",
        )
        try:
            while ready or in_flight:
                if self._cancel_event.is_set():
                    break
                if self._deadline_passed(deadline):
                    break

                while ready and not self._cancel_event.is_set():
                    node_id = ready.popleft()
                    node = self.workflow.get_node(node_id)
                    short_circuit = self._propagate_failure(node, upstreams[node_id])
                    if short_circuit is not None:
                        with self._settle_lock:
                            if not self._cancel_event.is_set():
                                settle(node_id, short_circuit)
                        continue
                    self._set_status(node_id, NodeStatus.RUNNING)
                    future = pool.submit(
                        self.evaluator.evaluate,
                        node,
                        upstreams[node_id],
                        self.outputs,
                        deadline=deadline,
                        cancel_event=self._cancel_event,
                    )
                    in_flight[future] = node_id

                if not in_flight:
                    continue

                timeout = _POLL_INTERVAL
                if deadline is not None:
                    timeout = max(0.0, min(timeout, deadline - time.monotonic()))
                done, _ = wait(list(in_flight), timeout=timeout, return_when=FIRST_COMPLETED)
                # Results that land after the deadline are discarded with the rest
                self._deadline_passed(deadline)

                for future in done:
                    node_id = in_flight.pop(future)
                    result = self._future_result(future, node_id)
                    with self._settle_lock:
                        if self._cancel_event.is_set():
                            logger.info("Discarding result after cancellation", extra={"node_id": node_id})
                            continue
                        settle(node_id, result)
        finally:
            pool.shutdown(wait=True, cancel_futures=True)

    def _deadline_passed(self, deadline: Optional[float]) -> bool:
        if deadline is None or time.monotonic() < deadline:
            return False
        if not self._cancel_event.is_set():
            logger.warning(
                "Run timed out",
                extra={"timeout_seconds": self.settings.run_timeout_seconds},
            )
            self.cancel()
        return True

    def _upstream_map(self) -> Dict[str, List[str]]:
        upstreams: Dict[str, List[str]] = {node.id: [] for node in self.workflow.nodes}
        for edge in self.workflow.edges:
            if edge.from_node not in upstreams[edge.to_node]:
                upstreams[edge.to_node].append(edge.from_node)
        return upstreams

    def _runnable_transforms(self, upstreams: Dict[str, List[str]]) -> List[str]:
        """Transforms whose upstreams all eventually settle, in topological order."""
        indegree = {node_id: len(ids) for node_id, ids in upstreams.items()}
        downstreams: Dict[str, List[str]] = {node_id: [] for node_id in upstreams}
        for node_id, ids in upstreams.items():
            for upstream_id in ids:
                downstreams[upstream_id].append(node_id)

        queue: Deque[str] = deque(n.id for n in self.workflow.nodes if indegree[n.id] == 0)
        available: Set[str] = set(self.seeds)
        runnable: List[str] = []
        while queue:
            node_id = queue.popleft()
            node = self.workflow.get_node(node_id)
            if node.is_transform and all(u in available for u in upstreams[node_id]):
                available.add(node_id)
                runnable.append(node_id)
            for downstream_id in downstreams[node_id]:
                indegree[downstream_id] -= 1
                if indegree[downstream_id] == 0:
                    queue.append(downstream_id)
        return runnable

    def _propagate_failure(self, node: Node, upstream_ids: List[str]) -> Optional[NodeResult]:
        """UpstreamFailed for single-input transforms whose input failed."""
        if isinstance(node.config, CombineConfig) or len(upstream_ids) != 1:
            return None
        upstream = self.outputs.get(upstream_ids[0])
        if upstream is not None and not upstream.ok:
            logger.info(
                "Skipping node after upstream failure",
                extra={"node_id": node.id, "upstream_id": upstream_ids[0]},
            )
            return NodeResult.failure(EvalError.upstream_failed(node.id, upstream_ids[0]))
        return None

    def _future_result(self, future: Future, node_id: str) -> NodeResult:
        try:
            return future.result()
        except Exception as e:
            logger.exception("Transform evaluation crashed", extra={"node_id": node_id})
            message = f"Unexpected error: {type(e).__name__}: {e}"
            node = self.workflow.get_node(node_id)
            if isinstance(node.config, TemplateConfig):
                return NodeResult.failure(EvalError.template_error(node_id, message))
            return NodeResult.failure(EvalError.script_error(node_id, message))

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    def _record(self, node_id: str, result: NodeResult) -> None:
        self.outputs.record(node_id, result)
        self._set_status(node_id, NodeStatus.COMPLETED if result.ok else NodeStatus.FAILED)

    def _set_status(self, node_id: str, status: NodeStatus) -> None:
        self._statuses[node_id] = status
        if self.on_status is None:
            return
        try:
            self.on_status(node_id, status)
        except Exception:
            logger.warning(
                "Status callback failed",
                extra={"node_id": node_id, "status": status.value},
                exc_info=True,
            )

    def _reset_unsettled(self) -> None:
        for node_id, status in list(self._statuses.items()):
            if status in (NodeStatus.PENDING, NodeStatus.RUNNING):
                self._set_status(node_id, NodeStatus.IDLE)

    def _normalize_seeds(self, seeds: Mapping[str, Any]) -> Dict[str, NodeResult]:
        normalized: Dict[str, NodeResult] = {}
        for node_id, seed in seeds.items():
            node = self.workflow.get_node(node_id)
            if node is None:
                raise ConfigurationError(
                    f"Seed given for unknown node '{node_id}'",
                    context={"node_id": node_id},
                )
            if node.is_transform:
                raise ConfigurationError(
                    f"Transform node '{node_id}' cannot be seeded; its output is computed",
                    context={"node_id": node_id},
                )
            if isinstance(seed, NodeResult):
                normalized[node_id] = seed
                continue
            try:
                value = seed if isinstance(seed, Value) else from_python(seed)
            except ValueConversionError as e:
                raise ConfigurationError(
                    f"Seed for node '{node_id}' is not JSON-like: {e.message}",
                    context={"node_id": node_id},
                )
            normalized[node_id] = NodeResult.success(value)
        return normalized


def run_workflow(
    nodes: List[Union[Node, Mapping[str, Any]]],
    edges: List[Any],
    seeds: Optional[Mapping[str, Any]] = None,
    settings: Optional[EngineSettings] = None,
    *,
    on_status: Optional[StatusCallback] = None,
) -> Dict[str, NodeResult]:
    """Build a workflow from ``nodes``/``edges`` and execute it once.

    Example:
        results = run_workflow(
            nodes=[
                {"id": "trigger", "kind": "trigger"},
                {"id": "name", "config": {"type": "extract", "path": "user.name"}},
            ],
            edges=[{"from": "trigger", "to": "name"}],
            seeds={"trigger": {"user": {"name": "Ada"}}},
        )
    """
    workflow = Workflow.model_validate({"nodes": list(nodes), "edges": list(edges)})
    return Run(workflow, seeds, settings, on_status=on_status).execute()

"""Tests for run scheduling.

Tests cover:
- Dependency order and end-to-end flows
- Failure propagation and sibling isolation
- Validation failures (cycles, missing upstreams)
- Seeds, orphaned nodes and status tracking
- Concurrency, cancellation and run timeouts
"""

import threading
import time

import pytest

from tributary.config.settings import EngineSettings
from tributary.core.exceptions import (
    ConfigurationError,
    CyclicGraphError,
    InvalidConfigError,
    MissingUpstreamError,
    RunStateError,
)
from tributary.core.results import EvalError, EvalErrorKind, NodeResult, NodeStatus, RunStatus
from tributary.core.values import StringValue, from_python
from tributary.execution.scheduler import OutputMap, Run, run_workflow
from tributary.execution.transform import TransformEvaluator
from tests.conftest import code, combine, edge, extract, ok, source, template, trigger


# -----------------------------------------------------------------------------
# End to end
# -----------------------------------------------------------------------------


class TestEndToEnd:

    def test_trigger_to_extract(self, settings):
        results = run_workflow(
            nodes=[trigger(), extract("name", "user.name")],
            edges=[edge("trigger", "name")],
            seeds={"trigger": {"user": {"name": "Ada"}}},
            settings=settings,
        )
        assert results["name"] == NodeResult.success(StringValue("Ada"))
        assert results["trigger"].value.to_python() == {"user": {"name": "Ada"}}

    def test_two_sources_into_combine(self, settings):
        results = run_workflow(
            nodes=[source("A"), source("B"), combine("C", ("x", "A", "v"), ("y", "B", "v"))],
            edges=[edge("A", "C"), edge("B", "C")],
            seeds={"A": {"v": 1}, "B": {"v": 2}},
            settings=settings,
        )
        assert results["C"].value.to_python() == {"x": 1, "y": 2}

    def test_mixed_pipeline(self, settings):
        nodes = [
            trigger(),
            extract("items", "data.items"),
            code("titles", "return [i['title'].upper() for i in input]"),
            template("summary", "Top: {{input[0]}} of {{input}}"),
            combine("report", ("titles", "titles", ""), ("first", "items", "[0].title")),
        ]
        edges = [
            edge("trigger", "items"),
            edge("items", "titles"),
            edge("titles", "summary"),
            edge("titles", "report"),
            edge("items", "report"),
        ]
        results = run_workflow(
            nodes, edges,
            seeds={"trigger": {"data": {"items": [{"title": "a"}, {"title": "b"}]}}},
            settings=settings,
        )
        assert results["titles"].value.to_python() == ["A", "B"]
        assert results["summary"].value == StringValue('Top: A of ["A","B"]')
        assert results["report"].value.to_python() == {"titles": ["A", "B"], "first": "a"}

    def test_canvas_edge_shape(self, settings):
        results = run_workflow(
            nodes=[trigger(), {"id": "t", "config": {"transformType": "extract", "path": "a"}}],
            edges=[{"id": "e1", "source": "trigger", "target": "t"}],
            seeds={"trigger": {"a": "yes"}},
            settings=settings,
        )
        assert results["t"].value == StringValue("yes")


# -----------------------------------------------------------------------------
# Ordering
# -----------------------------------------------------------------------------


class TestOrdering:

    def test_chain_runs_in_dependency_order(self, make_workflow, settings):
        started = []

        def on_status(node_id, status):
            if status is NodeStatus.RUNNING:
                started.append(node_id)

        workflow = make_workflow(
            [extract("C", ""), extract("B", ""), extract("A", ""), trigger()],
            [edge("trigger", "A"), edge("A", "B"), edge("B", "C")],
        )
        Run(workflow, {"trigger": 1}, settings, on_status=on_status).execute()
        assert started == ["A", "B", "C"]

    def test_each_node_recorded_once(self, make_workflow, settings):
        workflow = make_workflow(
            [trigger(), extract("A", "x"), extract("B", "x"), combine("C", ("a", "A", ""), ("b", "B", ""))],
            [edge("trigger", "A"), edge("trigger", "B"), edge("A", "C"), edge("B", "C")],
        )
        results = Run(workflow, {"trigger": {"x": 1}}, settings).execute()
        assert sorted(results) == ["A", "B", "C", "trigger"]
        assert results["C"].value.to_python() == {"a": 1, "b": 1}

    def test_idempotent_across_runs(self, make_workflow, settings):
        workflow = make_workflow(
            [trigger(), code("double", "return input * 2"), template("text", "={{input}}")],
            [edge("trigger", "double"), edge("double", "text")],
        )
        first = Run(workflow, {"trigger": 21}, settings).execute()
        second = Run(workflow, {"trigger": 21}, settings).execute()
        assert first == second
        assert second["text"].value == StringValue("=42")

    def test_single_worker(self, make_workflow):
        settings = EngineSettings(_env_file=None, max_workers=1)
        workflow = make_workflow(
            [trigger(), extract("a", "x"), extract("b", "y")],
            [edge("trigger", "a"), edge("trigger", "b")],
        )
        results = Run(workflow, {"trigger": {"x": 1, "y": 2}}, settings).execute()
        assert (results["a"].value.to_python(), results["b"].value.to_python()) == (1, 2)


# -----------------------------------------------------------------------------
# Failure propagation
# -----------------------------------------------------------------------------


class TestFailurePropagation:

    def test_upstream_failure_cascades(self, make_workflow, settings):
        workflow = make_workflow(
            [trigger(), code("A", "return 1 / 0"), extract("B", "x"), template("C", "{{input}}")],
            [edge("trigger", "A"), edge("A", "B"), edge("B", "C")],
        )
        results = Run(workflow, {"trigger": {}}, settings).execute()
        assert results["A"].error.kind is EvalErrorKind.SCRIPT_ERROR
        assert results["B"].error == EvalError.upstream_failed("B", "A")
        assert results["C"].error == EvalError.upstream_failed("C", "B")

    def test_sibling_branches_are_isolated(self, make_workflow, settings):
        workflow = make_workflow(
            [trigger(), code("bad", "raise ValueError('x')"), extract("good", "name")],
            [edge("trigger", "bad"), edge("trigger", "good")],
        )
        results = Run(workflow, {"trigger": {"name": "Ada"}}, settings).execute()
        assert not results["bad"].ok
        assert results["good"].value == StringValue("Ada")

    def test_combine_runs_despite_failed_source(self, make_workflow, settings):
        workflow = make_workflow(
            [trigger(), code("bad", "return 1 / 0"), extract("good", "v"),
             combine("merge", ("g", "good", ""), ("b", "bad", ""))],
            [edge("trigger", "bad"), edge("trigger", "good"), edge("bad", "merge"), edge("good", "merge")],
        )
        results = Run(workflow, {"trigger": {"v": 1}}, settings).execute()
        assert results["merge"].error == EvalError.combine_source_failed("merge", "b", "bad")

    def test_combine_null_policy(self, make_workflow, settings):
        settings = settings.model_copy(update={"combine_source_policy": "null"})
        workflow = make_workflow(
            [trigger(), code("bad", "return 1 / 0"), extract("good", "v"),
             combine("merge", ("g", "good", ""), ("b", "bad", ""))],
            [edge("trigger", "bad"), edge("trigger", "good"), edge("bad", "merge"), edge("good", "merge")],
        )
        results = Run(workflow, {"trigger": {"v": 1}}, settings).execute()
        assert results["merge"].value.to_python() == {"g": 1, "b": None}

    def test_failed_seed(self, make_workflow, settings):
        workflow = make_workflow([source("fetch"), extract("x", "a")], [edge("fetch", "x")])
        seed = NodeResult.failure(EvalError.script_error("fetch", "HTTP 500"))
        run = Run(workflow, {"fetch": seed}, settings)
        results = run.execute()
        assert results["x"].error.kind is EvalErrorKind.UPSTREAM_FAILED
        assert run.status_of("fetch") is NodeStatus.FAILED
        assert run.error_messages()["x"] == "'Transform (extract)' was skipped because 'fetch' failed"


# -----------------------------------------------------------------------------
# Validation
# -----------------------------------------------------------------------------


class TestValidationFailures:

    def test_cycle_records_nothing(self, make_workflow, settings):
        workflow = make_workflow(
            [trigger(), extract("A", ""), combine("B", ("a", "A", ""), ("t", "trigger", ""))],
            [edge("trigger", "B"), edge("A", "B"), edge("B", "A")],
        )
        run = Run(workflow, {"trigger": 1}, settings)
        with pytest.raises(CyclicGraphError) as exc_info:
            run.execute()
        assert exc_info.value.error.kind is EvalErrorKind.CYCLIC_GRAPH
        assert len(run.outputs) == 0
        assert run.status is RunStatus.FAILED
        assert run.status_of("trigger") is NodeStatus.IDLE

    def test_missing_upstream(self, make_workflow, settings):
        workflow = make_workflow([trigger(), extract("lonely", "a")])
        with pytest.raises(MissingUpstreamError) as exc_info:
            Run(workflow, {"trigger": 1}, settings).execute()
        assert exc_info.value.error == EvalError(
            kind=EvalErrorKind.MISSING_UPSTREAM,
            node_id="lonely",
            message=exc_info.value.issues[0].message,
        )

    def test_combine_source_must_be_connected(self, make_workflow, settings):
        workflow = make_workflow(
            [source("A"), source("B"), combine("C", ("a", "A", ""), ("b", "B", ""))],
            [edge("A", "C")],
        )
        with pytest.raises(MissingUpstreamError):
            Run(workflow, {"A": 1, "B": 2}, settings).execute()

    def test_duplicate_combine_field(self, make_workflow, settings):
        workflow = make_workflow(
            [source("A"), combine("C", ("a", "A", "x"), ("a", "A", "y"))],
            [edge("A", "C")],
        )
        with pytest.raises(InvalidConfigError):
            Run(workflow, {"A": {}}, settings).execute()


# -----------------------------------------------------------------------------
# Seeds, reachability and status
# -----------------------------------------------------------------------------


class TestSeedsAndStatus:

    def test_seeding_transform_is_rejected(self, make_workflow, settings):
        workflow = make_workflow([trigger(), extract("x", "a")], [edge("trigger", "x")])
        with pytest.raises(ConfigurationError):
            Run(workflow, {"x": 1}, settings)

    def test_seeding_unknown_node_is_rejected(self, make_workflow, settings):
        with pytest.raises(ConfigurationError):
            Run(make_workflow([trigger()]), {"nope": 1}, settings)

    def test_unrepresentable_seed(self, make_workflow, settings):
        with pytest.raises(ConfigurationError):
            Run(make_workflow([trigger()]), {"trigger": {1, 2}}, settings)

    def test_value_seed(self, make_workflow, settings):
        workflow = make_workflow([trigger(), extract("x", "")], [edge("trigger", "x")])
        results = Run(workflow, {"trigger": StringValue("v")}, settings).execute()
        assert results["x"].value == StringValue("v")

    def test_unseeded_branch_stays_idle(self, make_workflow, settings):
        workflow = make_workflow(
            [trigger(), source("fetch"), extract("a", "x"), extract("b", "x"), extract("c", "")],
            [edge("trigger", "a"), edge("fetch", "b"), edge("b", "c")],
        )
        run = Run(workflow, {"trigger": {"x": 1}}, settings)
        results = run.execute()
        assert sorted(results) == ["a", "trigger"]
        assert run.status_of("b") is NodeStatus.IDLE
        assert run.status_of("c") is NodeStatus.IDLE
        assert run.status_of("a") is NodeStatus.COMPLETED

    def test_status_transitions(self, make_workflow, settings):
        seen = []
        workflow = make_workflow([trigger(), extract("a", "x")], [edge("trigger", "a")])
        Run(workflow, {"trigger": {}}, settings, on_status=lambda n, s: seen.append((n, s))).execute()
        assert seen == [
            ("trigger", NodeStatus.COMPLETED),
            ("a", NodeStatus.PENDING),
            ("a", NodeStatus.RUNNING),
            ("a", NodeStatus.COMPLETED),
        ]

    def test_failing_status_callback_does_not_stop_run(self, make_workflow, settings):
        def explode(node_id, status):
            raise RuntimeError("ui went away")

        workflow = make_workflow([trigger(), extract("a", "x")], [edge("trigger", "a")])
        results = Run(workflow, {"trigger": {"x": 2}}, settings, on_status=explode).execute()
        assert results["a"].value.to_python() == 2

    def test_run_is_single_use(self, make_workflow, settings):
        run = Run(make_workflow([trigger()]), {"trigger": 1}, settings)
        run.execute()
        assert run.status is RunStatus.COMPLETED
        with pytest.raises(RunStateError):
            run.execute()

    def test_accepts_plain_dict_workflow(self, settings):
        run = Run({"nodes": [trigger(), extract("a", "")], "edges": [edge("trigger", "a")]}, {"trigger": 3}, settings)
        assert run.execute()["a"].value.to_python() == 3


# -----------------------------------------------------------------------------
# Concurrency and cancellation
# -----------------------------------------------------------------------------


class _BarrierEvaluator(TransformEvaluator):
    """Blocks each evaluation until ``parties`` evaluations are in flight."""

    def __init__(self, settings, parties):
        super().__init__(settings)
        self.barrier = threading.Barrier(parties, timeout=5)

    def evaluate(self, node, upstream_ids, outputs, **kwargs):
        self.barrier.wait()
        return super().evaluate(node, upstream_ids, outputs, **kwargs)


class TestConcurrency:

    def test_independent_nodes_run_concurrently(self, make_workflow, settings):
        workflow = make_workflow(
            [trigger(), extract("a", "x"), extract("b", "x"), extract("c", "x")],
            [edge("trigger", "a"), edge("trigger", "b"), edge("trigger", "c")],
        )
        evaluator = _BarrierEvaluator(settings, parties=3)
        results = Run(workflow, {"trigger": {"x": 1}}, settings, evaluator=evaluator).execute()
        assert all(results[n].ok for n in ("a", "b", "c"))

    def test_cancel_stops_running_scripts(self, make_workflow):
        settings = EngineSettings(_env_file=None, script_timeout_seconds=30, script_max_steps=10**12)
        workflow = make_workflow(
            [trigger(), code("spin", "while True:\n    pass"), extract("after", "")],
            [edge("trigger", "spin"), edge("spin", "after")],
        )
        run = Run(workflow, {"trigger": 1}, settings)
        threading.Timer(0.2, run.cancel).start()

        started = time.monotonic()
        results = run.execute()

        assert time.monotonic() - started < 5
        assert run.status is RunStatus.CANCELLED
        assert sorted(results) == ["trigger"]
        assert run.status_of("spin") is NodeStatus.IDLE
        assert run.status_of("after") is NodeStatus.IDLE

    def test_run_timeout_cancels(self, make_workflow):
        settings = EngineSettings(
            _env_file=None,
            script_timeout_seconds=30,
            script_max_steps=10**12,
            run_timeout_seconds=0.3,
        )
        workflow = make_workflow(
            [trigger(), code("spin", "while True:\n    pass"), extract("quick", "")],
            [edge("trigger", "spin"), edge("trigger", "quick")],
        )
        run = Run(workflow, {"trigger": 1}, settings)
        results = run.execute()
        assert run.status is RunStatus.CANCELLED
        assert "spin" not in results
        assert results["quick"].ok

    def test_cancel_waits_for_result_being_recorded(self, make_workflow, settings):
        workflow = make_workflow(
            [trigger(), extract("a", "x"), extract("b", "")],
            [edge("trigger", "a"), edge("a", "b")],
        )
        cancellers = []
        blocked = []

        def on_status(node_id, status):
            if node_id == "a" and status is NodeStatus.COMPLETED:
                canceller = threading.Thread(target=run.cancel)
                canceller.start()
                canceller.join(timeout=0.2)
                blocked.append(canceller.is_alive())
                cancellers.append(canceller)
            elif node_id == "b" and status is NodeStatus.RUNNING:
                cancellers[0].join(timeout=5)

        run = Run(workflow, {"trigger": {"x": 1}}, settings, on_status=on_status)
        results = run.execute()

        assert blocked == [True]
        assert run.status is RunStatus.CANCELLED
        assert results["a"].ok
        assert "b" not in results

    def test_cancel_before_execute(self, make_workflow, settings):
        run = Run(make_workflow([trigger()]), {"trigger": 1}, settings)
        run.cancel()
        assert run.execute() == {}
        assert run.status is RunStatus.CANCELLED


class _CrashingEvaluator(TransformEvaluator):

    def evaluate(self, node, upstream_ids, outputs, **kwargs):
        raise RuntimeError("boom")


class TestEvaluatorCrash:

    def test_crash_reported_with_node_kind(self, make_workflow, settings):
        workflow = make_workflow(
            [trigger(), code("c", "return input"), template("t", "{{input}}")],
            [edge("trigger", "c"), edge("trigger", "t")],
        )
        run = Run(workflow, {"trigger": 1}, settings, evaluator=_CrashingEvaluator(settings))
        results = run.execute()

        assert results["c"].error.kind is EvalErrorKind.SCRIPT_ERROR
        assert results["t"].error.kind is EvalErrorKind.TEMPLATE_ERROR
        assert "RuntimeError: boom" in results["c"].error.message
        assert run.status is RunStatus.COMPLETED


class TestOutputMap:

    def test_write_once(self):
        outputs = OutputMap()
        outputs.record("a", ok(1))
        with pytest.raises(RunStateError):
            outputs.record("a", ok(2))
        assert outputs["a"] == ok(1)
        assert "a" in outputs and "b" not in outputs
        assert outputs.get("b") is None
        assert outputs.snapshot() == {"a": ok(1)}

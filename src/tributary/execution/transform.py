"""Evaluation of a single transform node.

The evaluator reads the node's config variant, fetches what it needs from the
outputs recorded so far and dispatches to the path resolver, template
renderer, script evaluator or combine resolver. Every outcome is a
``NodeResult``; no exception escapes to the scheduler.
"""

from __future__ import annotations

import threading
from typing import Dict, List, Mapping, Optional

from tributary.config.settings import EngineSettings
from tributary.core.exceptions import (
    CombineSourceError,
    ScriptCancelledError,
    ScriptExecutionError,
    TemplateRenderError,
)
from tributary.core.model import (
    CodeConfig,
    CombineConfig,
    ExtractConfig,
    Node,
    TemplateConfig,
)
from tributary.core.results import EvalError, EvalErrorKind, NodeResult
from tributary.core.values import StringValue
from tributary.execution import templates
from tributary.execution.combine import combine
from tributary.execution.paths import resolve
from tributary.execution.script import ScriptEvaluator, ScriptLimits
from tributary.utils.logging import get_logger

logger = get_logger(__name__)


class TransformEvaluator:
    """Evaluates transform nodes.

    Usage:
        evaluator = TransformEvaluator(settings)
        result = evaluator.evaluate(node, ["fetch"], {"fetch": NodeResult.success(value)})
        if result.ok:
            print(result.value)
        else:
            print(result.error.describe(node.display_name))
    """

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        script_evaluator: Optional[ScriptEvaluator] = None,
    ):
        self.settings = settings or EngineSettings()
        self.scripts = script_evaluator or ScriptEvaluator(
            ScriptLimits.from_settings(self.settings)
        )

    def evaluate(
        self,
        node: Node,
        upstream_ids: List[str],
        outputs: Mapping[str, NodeResult],
        *,
        deadline: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> NodeResult:
        """Evaluate ``node``.

        Args:
            node: Transform node to evaluate.
            upstream_ids: IDs of the node's direct upstreams (incoming edges).
            outputs: Results recorded so far in the run.
            deadline: Absolute ``time.monotonic()`` bound for scripts.
            cancel_event: Set when the owning run is cancelled.

        Returns:
            Success with the transformed value, or a failure with a typed
            EvalError.
        """
        config = node.config
        if config is None:
            return self._fail(EvalError(
                kind=EvalErrorKind.INVALID_CONFIG,
                node_id=node.id,
                message="Transform node has no config",
            ))

        if isinstance(config, CombineConfig):
            return self._evaluate_combine(node, config, outputs)

        if len(upstream_ids) != 1:
            return self._fail(EvalError(
                kind=EvalErrorKind.MISSING_UPSTREAM if not upstream_ids else EvalErrorKind.INVALID_CONFIG,
                node_id=node.id,
                message=f"Expected exactly one input connection, found {len(upstream_ids)}",
            ))

        upstream_id = upstream_ids[0]
        upstream = outputs.get(upstream_id)
        if upstream is None or not upstream.ok:
            return self._fail(EvalError.upstream_failed(node.id, upstream_id))

        if isinstance(config, ExtractConfig):
            value, _found = resolve(upstream.value, config.path)
            return NodeResult.success(value)

        if isinstance(config, TemplateConfig):
            try:
                return NodeResult.success(
                    StringValue(templates.render(config.template, upstream.value))
                )
            except TemplateRenderError as e:
                return self._fail(EvalError.template_error(node.id, e.message))
            except Exception as e:
                logger.exception("Unexpected template failure", extra={"node_id": node.id})
                return self._fail(EvalError.template_error(node.id, f"{type(e).__name__}: {e}"))

        if isinstance(config, CodeConfig):
            try:
                return NodeResult.success(self.scripts.evaluate(
                    config.code,
                    upstream.value,
                    deadline=deadline,
                    cancel_event=cancel_event,
                ))
            except (ScriptExecutionError, ScriptCancelledError) as e:
                return self._fail(EvalError.script_error(node.id, e.message))
            except Exception as e:
                logger.exception("Unexpected script failure", extra={"node_id": node.id})
                return self._fail(EvalError.script_error(node.id, f"{type(e).__name__}: {e}"))

        return self._fail(EvalError(
            kind=EvalErrorKind.INVALID_CONFIG,
            node_id=node.id,
            message=f"Unsupported transform config: {type(config).__name__}",
        ))

    def _evaluate_combine(
        self,
        node: Node,
        config: CombineConfig,
        outputs: Mapping[str, NodeResult],
    ) -> NodeResult:
        try:
            return NodeResult.success(
                combine(config.fields, outputs, self.settings.combine_source_policy)
            )
        except CombineSourceError as e:
            return self._fail(EvalError.combine_source_failed(
                node.id, e.field_name, e.source_node_id
            ))
        except Exception as e:
            logger.exception("Unexpected combine failure", extra={"node_id": node.id})
            return self._fail(EvalError(
                kind=EvalErrorKind.INVALID_CONFIG,
                node_id=node.id,
                message=f"{type(e).__name__}: {e}",
            ))

    def _fail(self, error: EvalError) -> NodeResult:
        logger.info(
            "Transform node failed",
            extra={"node_id": error.node_id, "kind": error.kind.value, "detail": error.message},
        )
        return NodeResult.failure(error)


def evaluate_node(
    node: Node,
    upstream_ids: List[str],
    outputs: Dict[str, NodeResult],
    settings: Optional[EngineSettings] = None,
) -> NodeResult:
    """Evaluate one transform node with a one-off evaluator."""
    return TransformEvaluator(settings).evaluate(node, upstream_ids, outputs)

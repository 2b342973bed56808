"""Combine transform: build one object from fields of several upstream nodes."""

from __future__ import annotations

from typing import List, Literal, Mapping

from tributary.core.exceptions import CombineSourceError
from tributary.core.model import CombineField
from tributary.core.results import NodeResult
from tributary.core.values import NULL, ObjectValue, Value
from tributary.execution.paths import resolve

CombineSourcePolicy = Literal["fail", "null"]


def combine(
    fields: List[CombineField],
    outputs: Mapping[str, NodeResult],
    policy: CombineSourcePolicy = "fail",
) -> ObjectValue:
    """Assemble an object keyed by ``field_name`` in declaration order.

    A field whose source node failed (or has no recorded output) raises
    ``CombineSourceError`` under the ``"fail"`` policy and becomes null under
    ``"null"``. A path that misses on a healthy source is always a null
    field, never an error.

    Example:
        fields = [
            CombineField(field_name="a", source_node_id="n1", source_path="x"),
            CombineField(field_name="b", source_node_id="n2", source_path="y"),
        ]
        combine(fields, outputs)  # {"a": <n1.x>, "b": <n2.y>}
    """
    entries = []
    for field in fields:
        result = outputs.get(field.source_node_id)
        if result is None or not result.ok:
            if policy == "fail":
                raise CombineSourceError(
                    f"Source node '{field.source_node_id}' for field '{field.field_name}' failed",
                    field_name=field.field_name,
                    source_node_id=field.source_node_id,
                )
            entries.append((field.field_name, NULL))
            continue

        value: Value
        value, _found = resolve(result.value, field.source_path)
        entries.append((field.field_name, value))

    return ObjectValue(tuple(entries))

"""Workflow graph models.

This module defines the node/edge model consumed by the engine:
- Transform configs: ExtractConfig, TemplateConfig, CodeConfig, CombineConfig
- Nodes: a kind, an optional label and (for transforms) a config
- Edges: directed "may read output of" links between nodes
- Workflow: the node/edge container with convenience accessors

Transform configs form a tagged union on ``type`` so that each variant only
carries the fields it needs.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    field_validator,
    model_validator,
)


# -----------------------------------------------------------------------------
# Enums
# -----------------------------------------------------------------------------


class NodeKind(str, Enum):
    """Kinds of nodes on a workflow canvas.

    Only transform nodes are evaluated by the engine; every other kind has
    its output supplied by the caller.
    """
    TRIGGER = "trigger"
    RESOURCE = "resource"
    SOURCE = "source"
    TRANSFORM = "transform"


class TransformType(str, Enum):
    EXTRACT = "extract"
    TEMPLATE = "template"
    CODE = "code"
    COMBINE = "combine"


# -----------------------------------------------------------------------------
# Transform configs
# -----------------------------------------------------------------------------


class CombineField(BaseModel):
    """One output field of a combine transform.

    Examples:
        CombineField(field_name="title", source_node_id="fetch", source_path="data.title")
        CombineField(field_name="raw", source_node_id="trigger")
    """
    field_name: str = Field(alias="fieldName")
    source_node_id: str = Field(alias="sourceNodeId")
    source_path: str = Field(default="", alias="sourcePath")

    model_config = ConfigDict(populate_by_name=True, extra="forbid", frozen=True)

    @field_validator("field_name", "source_node_id")
    @classmethod
    def strip_identifiers(cls, v: str) -> str:
        return v.strip()

    @field_validator("source_path", mode="before")
    @classmethod
    def default_missing_path(cls, v: Any) -> Any:
        return "" if v is None else v


class TransformConfigBase(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    @property
    def is_complete(self) -> bool:
        raise NotImplementedError


class ExtractConfig(TransformConfigBase):
    """Pull a single field out of the upstream output, e.g. ``data.items[0].name``."""
    type: Literal["extract"] = "extract"
    path: str = ""

    @property
    def is_complete(self) -> bool:
        return bool(self.path.strip())


class TemplateConfig(TransformConfigBase):
    """Render a string such as ``"The answer is: {{input.answer}}"``."""
    type: Literal["template"] = "template"
    template: str = ""

    @property
    def is_complete(self) -> bool:
        return bool(self.template.strip())


class CodeConfig(TransformConfigBase):
    """Run a sandboxed function body with the upstream output bound as ``input``."""
    type: Literal["code"] = "code"
    code: str = ""

    @property
    def is_complete(self) -> bool:
        return bool(self.code.strip())


class CombineConfig(TransformConfigBase):
    """Merge fields from several upstream nodes into one object."""
    type: Literal["combine"] = "combine"
    fields: List[CombineField] = Field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return bool(self.fields) and all(
            f.field_name and f.source_node_id for f in self.fields
        )

    @property
    def source_node_ids(self) -> List[str]:
        """Distinct source node IDs in declaration order."""
        return list(dict.fromkeys(f.source_node_id for f in self.fields))


TransformConfig = Annotated[
    Union[ExtractConfig, TemplateConfig, CodeConfig, CombineConfig],
    Field(discriminator="type"),
]

_TRANSFORM_CONFIG_ADAPTER: TypeAdapter = TypeAdapter(TransformConfig)

# Flat editor shape: {"transformType": ..., "path"/"template"/"code"/"combineFields": ...}
_LEGACY_FIELDS = {
    TransformType.EXTRACT: ("path", "path"),
    TransformType.TEMPLATE: ("template", "template"),
    TransformType.CODE: ("code", "code"),
    TransformType.COMBINE: ("combineFields", "fields"),
}


def parse_transform_config(data: Union[Mapping[str, Any], TransformConfigBase]) -> TransformConfigBase:
    """Build a tagged transform config.

    Accepts the tagged form (``{"type": "extract", "path": "a.b"}``) and the
    flat form saved by the canvas editor, where the variant is named by
    ``transformType`` and fields for other variants may be present but
    empty, optionally nested under ``config``.
    """
    if isinstance(data, TransformConfigBase):
        return data
    if "type" in data:
        return _TRANSFORM_CONFIG_ADAPTER.validate_python(dict(data))

    raw_type = data.get("transformType")
    try:
        transform_type = TransformType(raw_type)
    except ValueError:
        raise ValueError(f"Unknown transform type: {raw_type!r}")

    fields = dict(data.get("config") or {})
    fields.update({k: v for k, v in data.items() if k not in ("transformType", "config", "label")})
    source_key, target_key = _LEGACY_FIELDS[transform_type]
    payload: Dict[str, Any] = {"type": transform_type.value}
    if fields.get(source_key) is not None:
        payload[target_key] = fields[source_key]
    return _TRANSFORM_CONFIG_ADAPTER.validate_python(payload)


# -----------------------------------------------------------------------------
# Nodes and edges
# -----------------------------------------------------------------------------


class Node(BaseModel):
    """A unit in the workflow graph with one output value."""
    id: str
    kind: NodeKind = NodeKind.TRANSFORM
    label: Optional[str] = None
    config: Optional[TransformConfig] = None

    model_config = ConfigDict(extra="forbid", frozen=True)

    @field_validator("id")
    @classmethod
    def validate_id_not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("node id cannot be empty")
        return v.strip()

    @field_validator("config", mode="before")
    @classmethod
    def accept_editor_config(cls, v: Any) -> Any:
        if isinstance(v, Mapping) and "type" not in v and "transformType" in v:
            return parse_transform_config(v)
        return v

    @model_validator(mode="after")
    def validate_config_matches_kind(self) -> "Node":
        if self.kind is not NodeKind.TRANSFORM and self.config is not None:
            raise ValueError(f"Only transform nodes carry a transform config (node '{self.id}')")
        return self

    @property
    def is_transform(self) -> bool:
        return self.kind is NodeKind.TRANSFORM

    @property
    def transform_type(self) -> Optional[TransformType]:
        return TransformType(self.config.type) if self.config is not None else None

    @property
    def display_name(self) -> str:
        if self.label:
            return self.label
        if self.is_transform:
            kind = self.transform_type.value if self.transform_type else "transform"
            return f"Transform ({kind})"
        return self.id


class Edge(BaseModel):
    """Directed edge: ``to_node`` may read ``from_node``'s output.

    Accepts ``from``/``to`` as well as the canvas's ``source``/``target``.
    """
    from_node: str = Field(validation_alias=AliasChoices("from_node", "from", "source"))
    to_node: str = Field(validation_alias=AliasChoices("to_node", "to", "target"))

    model_config = ConfigDict(extra="ignore", frozen=True)

    @field_validator("from_node", "to_node")
    @classmethod
    def strip_endpoint(cls, v: str) -> str:
        return v.strip()


class Workflow(BaseModel):
    """A fixed node/edge set handed to the engine for a run."""
    nodes: List[Node] = Field(default_factory=list)
    edges: List[Edge] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore")

    # -------------------------------------------------------------------------
    # Convenience accessors
    # -------------------------------------------------------------------------

    @property
    def node_ids(self) -> List[str]:
        return [n.id for n in self.nodes]

    @property
    def transform_nodes(self) -> List[Node]:
        return [n for n in self.nodes if n.is_transform]

    def get_node(self, node_id: str) -> Optional[Node]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def upstream_ids(self, node_id: str) -> List[str]:
        """Direct upstream node IDs (sources of incoming edges), de-duplicated."""
        return list(dict.fromkeys(e.from_node for e in self.edges if e.to_node == node_id))

    def downstream_ids(self, node_id: str) -> List[str]:
        return list(dict.fromkeys(e.to_node for e in self.edges if e.from_node == node_id))

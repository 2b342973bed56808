"""Shared test fixtures for engine tests.

Workflows are built from plain dicts the way the canvas editor sends them,
so the fixtures here mostly provide small node/edge factories.
"""

from typing import Any, Dict, List, Optional

import pytest

from tributary.config.settings import EngineSettings
from tributary.core.model import Workflow
from tributary.core.results import NodeResult
from tributary.core.values import from_python


@pytest.fixture
def settings() -> EngineSettings:
    """Default settings that ignore any local .env file."""
    return EngineSettings(_env_file=None)


@pytest.fixture
def fast_settings() -> EngineSettings:
    """Settings with a short script timeout for timeout/cancellation tests."""
    return EngineSettings(_env_file=None, script_timeout_seconds=0.5, script_max_steps=10_000_000)


def trigger(node_id: str = "trigger") -> Dict[str, Any]:
    return {"id": node_id, "kind": "trigger"}


def source(node_id: str) -> Dict[str, Any]:
    return {"id": node_id, "kind": "source"}


def extract(node_id: str, path: str, label: Optional[str] = None) -> Dict[str, Any]:
    node = {"id": node_id, "config": {"type": "extract", "path": path}}
    if label:
        node["label"] = label
    return node


def template(node_id: str, text: str) -> Dict[str, Any]:
    return {"id": node_id, "config": {"type": "template", "template": text}}


def code(node_id: str, body: str) -> Dict[str, Any]:
    return {"id": node_id, "config": {"type": "code", "code": body}}


def combine(node_id: str, *fields: tuple) -> Dict[str, Any]:
    return {
        "id": node_id,
        "config": {
            "type": "combine",
            "fields": [
                {"field_name": name, "source_node_id": src, "source_path": path}
                for name, src, path in fields
            ],
        },
    }


def edge(from_id: str, to_id: str) -> Dict[str, str]:
    return {"from": from_id, "to": to_id}


def ok(value: Any) -> NodeResult:
    return NodeResult.success(from_python(value))


@pytest.fixture
def make_workflow():
    """Factory fixture building a Workflow from node/edge dicts."""
    def _make(nodes: List[Dict[str, Any]], edges: Optional[List[Dict[str, str]]] = None) -> Workflow:
        return Workflow.model_validate({"nodes": nodes, "edges": edges or []})
    return _make

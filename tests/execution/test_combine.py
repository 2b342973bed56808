"""Tests for the combine resolver."""

import pytest

from tributary.core.exceptions import CombineSourceError
from tributary.core.model import CombineField
from tributary.core.results import EvalError, NodeResult
from tributary.execution.combine import combine
from tests.conftest import ok


def field(name, source, path=""):
    return CombineField(field_name=name, source_node_id=source, source_path=path)


@pytest.fixture
def outputs():
    return {
        "n1": ok({"x": 5, "nested": {"deep": [1, 2]}}),
        "n2": ok({"y": "hello"}),
        "bad": NodeResult.failure(EvalError.script_error("bad", "boom")),
    }


class TestCombine:

    def test_fields_from_two_sources(self, outputs):
        value = combine([field("a", "n1", "x"), field("b", "n2", "y")], outputs)
        assert value.to_python() == {"a": 5, "b": "hello"}

    def test_declared_order_is_kept(self, outputs):
        value = combine([field("z", "n2", "y"), field("a", "n1", "x")], outputs)
        assert value.keys() == ["z", "a"]

    def test_empty_path_is_whole_output(self, outputs):
        value = combine([field("all", "n2")], outputs)
        assert value.to_python() == {"all": {"y": "hello"}}

    def test_path_miss_is_null_field(self, outputs):
        value = combine([field("a", "n1", "missing"), field("b", "n1", "nested.deep[1]")], outputs)
        assert value.to_python() == {"a": None, "b": 2}

    def test_failed_source_fails_whole_combine(self, outputs):
        with pytest.raises(CombineSourceError) as exc_info:
            combine([field("a", "n1", "x"), field("b", "bad", "y")], outputs)
        assert exc_info.value.field_name == "b"
        assert exc_info.value.source_node_id == "bad"

    def test_absent_source_fails(self, outputs):
        with pytest.raises(CombineSourceError) as exc_info:
            combine([field("a", "nodeX", "x")], outputs)
        assert exc_info.value.source_node_id == "nodeX"

    def test_null_policy_degrades_failed_source(self, outputs):
        value = combine([field("a", "n1", "x"), field("b", "bad", "y")], outputs, policy="null")
        assert value.to_python() == {"a": 5, "b": None}

    def test_no_fields(self, outputs):
        assert combine([], outputs).to_python() == {}

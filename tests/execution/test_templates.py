"""Tests for template rendering."""

import pytest

from tributary.core.exceptions import TemplateRenderError
from tributary.core.values import from_python
from tributary.execution.templates import placeholders, render


@pytest.fixture
def user():
    return from_python({
        "user": {"name": "Ada", "tags": ["admin", "ops"], "active": True},
        "count": 3,
        "ratio": 0.5,
        "nothing": None,
        "headers": {"Content-Type": "text/plain"},
    })


class TestRender:

    def test_whole_input(self):
        assert render("{{input}}", from_python("x")) == "x"

    def test_missing_field_renders_empty(self):
        assert render("{{input.missing}}", from_python({})) == ""

    def test_no_placeholders_is_unchanged(self, user):
        assert render("plain text, no braces", user) == "plain text, no braces"
        assert render("", user) == ""

    def test_fields(self, user):
        assert render("Hello {{input.user.name}}, you have {{input.count}} items", user) == (
            "Hello Ada, you have 3 items"
        )

    def test_whitespace_inside_braces(self, user):
        assert render("{{ input.user.name }}", user) == "Ada"

    def test_scalars_render_canonically(self, user):
        assert render("{{input.ratio}}|{{input.user.active}}|{{input.nothing}}", user) == "0.5|true|"

    def test_small_numbers_render_without_padded_exponent(self):
        assert render("{{input.a}} {{input.b}}", from_python({"a": 1e-7, "b": 1e-5})) == "1e-7 0.00001"

    def test_containers_render_as_json(self, user):
        assert render("{{input.user.tags}}", user) == '["admin","ops"]'

    def test_index_and_quoted_key(self, user):
        assert render("{{input.user.tags[1]}}", user) == "ops"
        assert render('{{input.headers["Content-Type"]}}', user) == "text/plain"

    def test_bad_reference_does_not_blank_the_rest(self, user):
        assert render("a{{input.x.y.z}}b{{input.count}}", user) == "ab3"

    def test_unknown_root_renders_empty(self, user):
        assert render("{{name}}|{{user.name}}", user) == "|"

    def test_malformed_path_renders_empty(self, user):
        assert render("{{input..user}}", user) == ""

    def test_unterminated_braces_stay_literal(self, user):
        assert render("{{input.count", user) == "{{input.count"
        assert render("{{ {{input.count}}", user) == "{{ 3"

    def test_empty_placeholder(self, user):
        assert render("[{{}}]", user) == "[]"

    def test_rendered_values_are_not_re_expanded(self):
        value = from_python({"text": "{{input.secret}}", "secret": "s3cret"})
        assert render("{{input.text}}", value) == "{{input.secret}}"

    @pytest.mark.parametrize("text", [
        "{{input.count + 1}}",
        "{{input.user.name | upper}}",
        "{{len(input)}}",
        "{{input.count > 1}}",
    ])
    def test_expressions_are_rejected(self, user, text):
        with pytest.raises(TemplateRenderError):
            render(text, user)

    def test_non_string_template(self, user):
        with pytest.raises(TemplateRenderError):
            render(None, user)


class TestPlaceholders:

    def test_lists_bodies_in_order(self):
        assert placeholders("{{ input.a }} and {{input}}") == ["input.a", "input"]

"""String templates with ``{{input}}`` placeholders.

A template such as ``"Hello {{input.user.name}}, you have {{input.count}} items"``
is rendered against the upstream node output:

- ``{{input}}`` renders the whole value
- ``{{input.<path>}}`` / ``{{input[<n>]...}}`` render a field (see `paths`)

Missing fields, unknown names and malformed paths render as ``""`` so that
one bad reference does not blank out the rest of the string. An unterminated
``{{`` is left as literal text. Only expression-like placeholder bodies
(operators, calls, filters) are rejected.
"""

from __future__ import annotations

import re
from typing import List

from tributary.core.exceptions import PathSyntaxError, TemplateRenderError
from tributary.core.values import Value, stringify
from tributary.execution.paths import parse_path, resolve_segments

INPUT_NAME = "input"

# Innermost {{...}}: a stray "{{" before a real placeholder stays literal
PLACEHOLDER_PATTERN = re.compile(r"\{\{([^{}]*)\}\}")

# Quoted bracket keys may contain anything, so they are removed before the
# expression check
_QUOTED_KEY_PATTERN = re.compile(r"\[\s*(\"[^\"]*\"|'[^']*')\s*\]")
_EXPRESSION_PATTERN = re.compile(r"[\s()+*/%<>=!&|,;?`]")


def render(template: str, input_value: Value) -> str:
    """Render ``template`` against ``input_value``.

    Raises:
        TemplateRenderError: If ``template`` is not a string or a placeholder
            contains an expression rather than a reference.

    Examples:
        >>> from tributary.core.values import from_python
        >>> render("Hi {{input.name}}!", from_python({"name": "Ada"}))
        'Hi Ada!'
        >>> render("{{input.missing}}", from_python({}))
        ''
    """
    if not isinstance(template, str):
        raise TemplateRenderError(
            f"Template must be a string, got {type(template).__name__}"
        )
    return PLACEHOLDER_PATTERN.sub(
        lambda match: _render_placeholder(match.group(1), input_value), template
    )


def placeholders(template: str) -> List[str]:
    """Placeholder bodies used in ``template``, stripped, in order."""
    return [body.strip() for body in PLACEHOLDER_PATTERN.findall(template)]


def _render_placeholder(body: str, input_value: Value) -> str:
    body = body.strip()
    if not body:
        return ""

    if _EXPRESSION_PATTERN.search(_QUOTED_KEY_PATTERN.sub("[]", body)):
        raise TemplateRenderError(
            f"Unsupported expression in placeholder '{{{{{body}}}}}'; "
            f"only '{INPUT_NAME}' and '{INPUT_NAME}.<path>' are allowed",
            context={"placeholder": body},
        )

    try:
        segments = parse_path(body)
    except PathSyntaxError:
        return ""

    if not segments or segments[0] != INPUT_NAME:
        return ""

    value, found = resolve_segments(input_value, segments[1:])
    return stringify(value) if found else ""

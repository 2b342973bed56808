"""Dot/bracket path resolution against values.

Paths address a field inside a node output:

- ``name``                 object key
- ``data.items[0].name``   keys and array indexes, mixed
- ``headers["Content-Type"]``  quoted bracket key (for keys with dots/spaces)
- ``items.0``              a digit-only key indexes an array

The empty path addresses the whole value. Resolution never raises: a missing
key, an out-of-range index, indexing into a scalar or a malformed path all
give ``(NULL, False)``.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional, Sequence, Tuple, Union

from tributary.core.exceptions import PathSyntaxError
from tributary.core.values import NULL, ArrayValue, ObjectValue, Value

Segment = Union[str, int]


class _PathParser:
    """Tokenize a path string into key and index segments."""

    def __init__(self, text: str):
        self.text = text
        self.pos = 0

    @property
    def current_char(self) -> Optional[str]:
        return self.text[self.pos] if self.pos < len(self.text) else None

    def parse(self) -> Tuple[Segment, ...]:
        segments = []
        if self.current_char == ".":
            self.pos += 1  # ".foo" is the same as "foo"
        if self.current_char != "[":
            segments.append(self.read_key())

        while self.current_char is not None:
            if self.current_char == ".":
                self.pos += 1
                segments.append(self.read_key())
            elif self.current_char == "[":
                segments.append(self.read_bracket())
            else:
                raise PathSyntaxError(
                    f"Unexpected character '{self.current_char}' at position {self.pos}"
                )
        return tuple(segments)

    def read_key(self) -> str:
        start = self.pos
        while self.current_char is not None and self.current_char not in ".[]":
            self.pos += 1
        if self.pos == start:
            raise PathSyntaxError(f"Empty path segment at position {start}")
        return self.text[start:self.pos]

    def read_bracket(self) -> Segment:
        start = self.pos
        self.pos += 1  # Skip '['
        quote = self.current_char
        if quote in ('"', "'"):
            end = self.text.find(quote, self.pos + 1)
            if end == -1 or self.text[end + 1:end + 2] != "]":
                raise PathSyntaxError(f"Unclosed quoted key starting at position {start}")
            key = self.text[self.pos + 1:end]
            self.pos = end + 2
            return key

        end = self.text.find("]", self.pos)
        if end == -1:
            raise PathSyntaxError(f"Unclosed '[' at position {start}")
        raw = self.text[self.pos:end].strip()
        if not _is_index(raw):
            raise PathSyntaxError(f"Array index must be a non-negative integer, got '{raw}'")
        self.pos = end + 1
        return int(raw)


@lru_cache(maxsize=1024)
def parse_path(path: str) -> Tuple[Segment, ...]:
    """Parse ``path`` into segments.

    Raises:
        PathSyntaxError: If the path is malformed.

    Examples:
        >>> parse_path("data.items[0].name")
        ('data', 'items', 0, 'name')
        >>> parse_path("")
        ()
    """
    text = path.strip()
    if not text:
        return ()
    return _PathParser(text).parse()


def resolve(root: Value, path: str) -> Tuple[Value, bool]:
    """Resolve ``path`` against ``root``.

    Returns:
        ``(sub_value, True)`` when every segment exists, else ``(NULL, False)``.
    """
    if not isinstance(path, str):
        return NULL, False
    try:
        segments = parse_path(path)
    except PathSyntaxError:
        return NULL, False

    return resolve_segments(root, segments)


def resolve_segments(root: Value, segments: Sequence[Segment]) -> Tuple[Value, bool]:
    """Walk already-parsed segments; see `resolve`."""
    current = root
    for segment in segments:
        current, found = _step(current, segment)
        if not found:
            return NULL, False
    return current, True


def _step(current: Value, segment: Segment) -> Tuple[Value, bool]:
    if isinstance(current, ArrayValue):
        if isinstance(segment, int):
            return current.at(segment)
        if _is_index(segment):
            return current.at(int(segment))
        return NULL, False
    if isinstance(current, ObjectValue):
        return current.get(str(segment))
    return NULL, False


def _is_index(text: str) -> bool:
    return text.isascii() and text.isdigit()

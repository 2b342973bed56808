"""Immutable JSON-like value model.

Every node output and every transform input is a ``Value``:

- ``NullValue``, ``BoolValue``, ``NumberValue`` (float64, no int/float split),
  ``StringValue``
- ``ArrayValue``: ordered tuple of values
- ``ObjectValue``: string-keyed mapping; insertion order is kept for
  serialization but ignored by equality

Accessors never raise on a shape mismatch; they return ``(value, found)``.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from tributary.core.exceptions import ValueConversionError


class ValueKind(str, Enum):
    """Discriminator for the value variants."""
    NULL = "null"
    BOOL = "bool"
    NUMBER = "number"
    STRING = "string"
    ARRAY = "array"
    OBJECT = "object"


class Value:
    """Base class for all value variants."""

    kind: ValueKind

    def get(self, key: str) -> Tuple["Value", bool]:
        """Look up an object key. Non-objects never contain keys."""
        return NULL, False

    def at(self, index: int) -> Tuple["Value", bool]:
        """Look up an array element. Non-arrays never contain elements."""
        return NULL, False

    @property
    def is_null(self) -> bool:
        return self.kind is ValueKind.NULL

    def to_python(self) -> Any:
        raise NotImplementedError

    def to_json(self) -> str:
        """Compact JSON text (no whitespace, canonical numbers)."""
        return json.dumps(self.to_python(), separators=(",", ":"), ensure_ascii=False)


@dataclass(frozen=True)
class NullValue(Value):
    kind = ValueKind.NULL

    def to_python(self) -> Any:
        return None

    def __repr__(self) -> str:
        return "Null"


NULL = NullValue()


@dataclass(frozen=True)
class BoolValue(Value):
    value: bool
    kind = ValueKind.BOOL

    def __post_init__(self) -> None:
        if not isinstance(self.value, bool):
            raise ValueConversionError(
                f"BoolValue requires a bool, got {type(self.value).__name__}"
            )

    def to_python(self) -> bool:
        return self.value


@dataclass(frozen=True)
class NumberValue(Value):
    value: float
    kind = ValueKind.NUMBER

    def __post_init__(self) -> None:
        raw = self.value
        # bool is a subclass of int; it is not a number here
        if isinstance(raw, bool) or not isinstance(raw, (int, float)):
            raise ValueConversionError(
                f"NumberValue requires an int or float, got {type(raw).__name__}"
            )
        try:
            number = float(raw)
        except OverflowError:
            raise ValueConversionError(
                "Integer is too large to represent as a number",
                context={"digits": len(str(abs(raw)))},
            )
        if not math.isfinite(number):
            raise ValueConversionError(f"Number must be finite, got {raw!r}")
        object.__setattr__(self, "value", number)

    def to_python(self) -> Any:
        # Integral numbers serialize without a trailing ".0"
        if self.value.is_integer() and abs(self.value) < 1e21:
            return int(self.value)
        return self.value


@dataclass(frozen=True)
class StringValue(Value):
    value: str
    kind = ValueKind.STRING

    def __post_init__(self) -> None:
        if not isinstance(self.value, str):
            raise ValueConversionError(
                f"StringValue requires a str, got {type(self.value).__name__}"
            )

    def to_python(self) -> str:
        return self.value


@dataclass(frozen=True)
class ArrayValue(Value):
    items: Tuple[Value, ...] = ()
    kind = ValueKind.ARRAY

    def __post_init__(self) -> None:
        items = tuple(self.items)
        for item in items:
            if not isinstance(item, Value):
                raise ValueConversionError(
                    f"ArrayValue items must be Values, got {type(item).__name__}"
                )
        object.__setattr__(self, "items", items)

    def at(self, index: int) -> Tuple[Value, bool]:
        if isinstance(index, bool) or not isinstance(index, int):
            return NULL, False
        if 0 <= index < len(self.items):
            return self.items[index], True
        return NULL, False

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self) -> Iterator[Value]:
        return iter(self.items)

    def to_python(self) -> List[Any]:
        return [item.to_python() for item in self.items]


@dataclass(frozen=True, eq=False)
class ObjectValue(Value):
    entries: Tuple[Tuple[str, Value], ...] = ()
    kind = ValueKind.OBJECT

    def __post_init__(self) -> None:
        source = self.entries
        if isinstance(source, Mapping):
            source = source.items()
        merged: Dict[str, Value] = {}
        for key, item in source:
            if not isinstance(key, str):
                raise ValueConversionError(
                    f"Object keys must be strings, got {type(key).__name__}"
                )
            if not isinstance(item, Value):
                raise ValueConversionError(
                    f"ObjectValue values must be Values, got {type(item).__name__}"
                )
            merged[key] = item
        object.__setattr__(self, "entries", tuple(merged.items()))
        object.__setattr__(self, "_index", merged)

    def get(self, key: str) -> Tuple[Value, bool]:
        if not isinstance(key, str) or key not in self._index:
            return NULL, False
        return self._index[key], True

    def keys(self) -> List[str]:
        return [key for key, _ in self.entries]

    def __len__(self) -> int:
        return len(self.entries)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ObjectValue):
            return NotImplemented
        return self._index == other._index

    def __hash__(self) -> int:
        return hash(frozenset(self._index.items()))

    def __repr__(self) -> str:
        inner = ", ".join(f"{key!r}: {item!r}" for key, item in self.entries)
        return f"ObjectValue({{{inner}}})"

    def to_python(self) -> Dict[str, Any]:
        return {key: item.to_python() for key, item in self.entries}


# -----------------------------------------------------------------------------
# Conversion helpers
# -----------------------------------------------------------------------------


def from_python(obj: Any) -> Value:
    """Convert a native JSON-like object into a Value.

    Accepts None, bool, int, float, str, list/tuple and str-keyed dicts
    (and Values, which are returned unchanged). Anything else, including
    cyclic containers and non-finite floats, raises ValueConversionError.
    """
    return _from_python(obj, set())


def _from_python(obj: Any, active: set) -> Value:
    if isinstance(obj, Value):
        return obj
    if obj is None:
        return NULL
    if isinstance(obj, bool):
        return BoolValue(obj)
    if isinstance(obj, (int, float)):
        return NumberValue(obj)
    if isinstance(obj, str):
        return StringValue(obj)

    if isinstance(obj, (list, tuple, dict)):
        marker = id(obj)
        if marker in active:
            raise ValueConversionError("Cyclic reference cannot be represented as a value")
        active.add(marker)
        try:
            if isinstance(obj, dict):
                entries = []
                for key, item in obj.items():
                    if not isinstance(key, str):
                        raise ValueConversionError(
                            f"Object keys must be strings, got {type(key).__name__}",
                            context={"key": repr(key)},
                        )
                    entries.append((key, _from_python(item, active)))
                return ObjectValue(tuple(entries))
            return ArrayValue(tuple(_from_python(item, active) for item in obj))
        finally:
            active.discard(marker)

    raise ValueConversionError(
        f"Type '{type(obj).__name__}' cannot be represented as a value"
    )


def deep_equal(left: Value, right: Value) -> bool:
    """Structural equality; object key order is ignored."""
    return left == right


def format_number(number: float) -> str:
    """Canonical decimal text for a number, as JSON/JavaScript print it.

    ``3`` not ``3.0``, ``2.5`` as is. Magnitudes from 1e-6 up to 1e21 are
    written in fixed point; outside that range the exponent carries no
    zero padding (``1e-7``, ``1.5e+21``).
    """
    if number.is_integer() and abs(number) < 1e21:
        return str(int(number))
    text = repr(number)
    if "e" not in text:
        return text
    if 1e-6 <= abs(number) < 1e21:
        return format(Decimal(text), "f")
    mantissa, _, exponent = text.partition("e")
    sign = "-" if exponent.startswith("-") else "+"
    return f"{mantissa}e{sign}{exponent.lstrip('+-').lstrip('0')}"


def stringify(value: Optional[Value]) -> str:
    """Render a value as plain text for string interpolation.

    Strings render literally, numbers canonically, booleans as
    ``true``/``false``, null (or a missing value) as the empty string and
    arrays/objects as compact JSON.
    """
    if value is None or value.kind is ValueKind.NULL:
        return ""
    if isinstance(value, StringValue):
        return value.value
    if isinstance(value, BoolValue):
        return "true" if value.value else "false"
    if isinstance(value, NumberValue):
        return format_number(value.value)
    return value.to_json()

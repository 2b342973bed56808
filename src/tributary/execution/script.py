"""Sandboxed evaluation of user-authored transform scripts.

A code transform holds a Python function body. The upstream output is bound
to ``input`` and the body must ``return`` the transformed result:

    names = [item["title"] for item in input["data"]["items"]]
    return {"count": len(names), "names": names}

Scripts are never compiled or exec'd. The source is parsed with Python's AST
module, checked against a whitelist of node types, and then walked by a small
interpreter that only knows about plain data (dict/list/str/numbers/bools/
None), lambdas defined in the script and a fixed set of builtins. There is no
import, no attribute access beyond whitelisted str/list/dict methods, and no
way to reach host objects.

Every interpreter step checks the step budget, the wall-clock deadline and
the owning run's cancel event, so runaway scripts stop promptly. Collection,
string and integer sizes are capped before large values are built.
"""

from __future__ import annotations

import ast
import operator
import re
import textwrap
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from tributary.core.exceptions import (
    ScriptCancelledError,
    ScriptExecutionError,
    ScriptLimitError,
    ScriptTimeoutError,
    ValueConversionError,
)
from tributary.core.values import ArrayValue, NumberValue, ObjectValue, Value, from_python
from tributary.utils.logging import get_logger

logger = get_logger(__name__)

INPUT_NAME = "input"

# Allowed binary operators
BINARY_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

# Allowed comparison operators
COMPARISON_OPS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda x, y: x in y,
    ast.NotIn: lambda x, y: x not in y,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

# Allowed unary operators
UNARY_OPS = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

# Methods callable on plain data, by exact receiver type
SAFE_METHODS = {
    str: frozenset({
        "capitalize", "center", "count", "endswith", "find", "index", "isalnum",
        "isalpha", "isdigit", "islower", "isspace", "isupper", "join", "ljust",
        "lower", "lstrip", "partition", "replace", "rfind", "rjust", "rpartition",
        "rsplit", "rstrip", "split", "splitlines", "startswith", "strip",
        "swapcase", "title", "upper", "zfill",
    }),
    list: frozenset({
        "append", "clear", "copy", "count", "extend", "index", "insert", "pop",
        "remove", "reverse", "sort",
    }),
    dict: frozenset({
        "clear", "copy", "get", "items", "keys", "pop", "setdefault", "update",
        "values",
    }),
}

# String methods whose integer arguments set the result width
_WIDTH_METHODS = frozenset({"center", "ljust", "rjust", "zfill"})

EXCEPTION_TYPES = {
    "Exception": Exception,
    "ArithmeticError": ArithmeticError,
    "AssertionError": AssertionError,
    "IndexError": IndexError,
    "KeyError": KeyError,
    "LookupError": LookupError,
    "TypeError": TypeError,
    "ValueError": ValueError,
    "ZeroDivisionError": ZeroDivisionError,
}

_ALLOWED_CONSTANT_TYPES = (str, int, float, bool, type(None))

_STATEMENT_NODES = (
    ast.Expr, ast.Assign, ast.AugAssign, ast.AnnAssign, ast.Return, ast.If,
    ast.For, ast.While, ast.Break, ast.Continue, ast.Pass, ast.Raise, ast.Try,
    ast.Delete, ast.Assert,
)

_EXPRESSION_NODES = (
    ast.Constant, ast.Name, ast.BinOp, ast.UnaryOp, ast.BoolOp, ast.Compare,
    ast.IfExp, ast.List, ast.Tuple, ast.Set, ast.Dict, ast.ListComp, ast.SetComp,
    ast.DictComp, ast.GeneratorExp, ast.Subscript, ast.Slice, ast.Attribute,
    ast.Call, ast.Lambda, ast.JoinedStr, ast.FormattedValue, ast.Starred,
)

_SUPPORT_NODES = (
    ast.comprehension, ast.keyword, ast.arguments, ast.arg, ast.ExceptHandler,
    ast.expr_context, ast.boolop, ast.cmpop, ast.unaryop, ast.operator,
)

_FORMAT_WIDTH_PATTERN = re.compile(r"\d+")


@dataclass(frozen=True)
class ScriptLimits:
    """Resource ceilings for a single script evaluation."""
    timeout_seconds: float = 3.0
    max_steps: int = 200_000
    max_depth: int = 100
    max_items: int = 100_000
    max_int_bits: int = 4096

    @classmethod
    def from_settings(cls, settings: Any) -> "ScriptLimits":
        return cls(
            timeout_seconds=settings.script_timeout_seconds,
            max_steps=settings.script_max_steps,
            max_depth=settings.script_max_depth,
            max_items=settings.script_max_items,
            max_int_bits=settings.script_max_int_bits,
        )


class ScriptEvaluator:
    """Safely evaluate transform scripts against an input value.

    Usage:
        evaluator = ScriptEvaluator()
        value = evaluator.evaluate("return input['a'] * 2", from_python({"a": 21}))
        # value == NumberValue(42)

        # Check a script without running it
        errors = evaluator.validate("import os")
        # errors == ["line 1: Import is not allowed"]
    """

    def __init__(self, limits: Optional[ScriptLimits] = None):
        self.limits = limits or ScriptLimits()

    def evaluate(
        self,
        code: str,
        input_value: Value,
        *,
        deadline: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Value:
        """Run ``code`` with ``input`` bound to ``input_value``.

        Args:
            code: Function body; must return a value.
            input_value: Upstream output.
            deadline: Optional absolute ``time.monotonic()`` deadline imposed by
                the caller; the earlier of this and the script timeout wins.
            cancel_event: Event that aborts the script when set.

        Returns:
            The script's return value converted to a Value.

        Raises:
            ScriptExecutionError: Invalid script, uncaught exception, limit
                breach, timeout, missing return or unrepresentable result.
            ScriptCancelledError: ``cancel_event`` was set.
        """
        body = self._parse(code)

        limit = time.monotonic() + self.limits.timeout_seconds
        if deadline is not None:
            limit = min(limit, deadline)
        session = _Session(self.limits, limit, cancel_event)

        try:
            result = session.run(body, _to_script_value(input_value))
        except (ScriptExecutionError, ScriptCancelledError):
            raise
        except RecursionError:
            raise ScriptLimitError("Maximum recursion depth exceeded")
        except Exception as e:
            line = f" (line {session.current_line})" if session.current_line else ""
            raise ScriptExecutionError(
                f"{type(e).__name__}: {e}{line}",
                context={"error_type": type(e).__name__},
            )

        session.check_result(result)
        try:
            value = from_python(result)
        except ValueConversionError as e:
            raise ScriptExecutionError(
                f"Script returned a value that cannot be represented as JSON: {e.message}"
            )
        return value

    def validate(self, code: str) -> List[str]:
        """Check syntax and allowed constructs without running the script.

        Returns:
            List of error messages. Empty if valid.
        """
        try:
            tree = ast.parse(_normalize_source(code), mode="exec")
        except SyntaxError as e:
            return [f"Syntax error: {e.msg} (line {e.lineno})"]
        errors: List[str] = []
        _SandboxChecker(errors).check_block(tree.body, in_loop=False)
        if not tree.body:
            errors.append("Script is empty; it must return a value")
        return errors

    def _parse(self, code: str) -> List[ast.stmt]:
        if not isinstance(code, str):
            raise ScriptExecutionError(f"Script must be a string, got {type(code).__name__}")
        try:
            tree = ast.parse(_normalize_source(code), mode="exec")
        except SyntaxError as e:
            raise ScriptExecutionError(
                f"Syntax error: {e.msg} (line {e.lineno})",
                context={"line": e.lineno},
            )
        if not tree.body:
            raise ScriptExecutionError("Script is empty; it must return a value")

        errors: List[str] = []
        _SandboxChecker(errors).check_block(tree.body, in_loop=False)
        if errors:
            raise ScriptExecutionError("; ".join(errors), context={"errors": errors})
        return tree.body


def _normalize_source(code: str) -> str:
    # Editors often indent the whole body
    return textwrap.dedent(code).strip("\n")


def _to_script_value(value: Value) -> Any:
    """Fresh native copy of ``value``; integral numbers become ``int``."""
    if isinstance(value, NumberValue):
        number = value.value
        if number.is_integer() and abs(number) <= 2 ** 53:
            return int(number)
        return number
    if isinstance(value, ArrayValue):
        return [_to_script_value(item) for item in value.items]
    if isinstance(value, ObjectValue):
        return {key: _to_script_value(item) for key, item in value.entries}
    return value.to_python()


# -----------------------------------------------------------------------------
# Static checks
# -----------------------------------------------------------------------------


def _subscript_hint(node: ast.Attribute) -> str:
    """Suggest the subscript form of ``input.user.name``-style field access."""
    fields: List[str] = []
    base: ast.expr = node
    while isinstance(base, ast.Attribute):
        fields.append(base.attr)
        base = base.value
    fields.reverse()
    if fields[-1] == "length":
        target = ast.unparse(base) + "".join(f'["{name}"]' for name in fields[:-1])
        return f"use len({target}) for the length"
    target = ast.unparse(base) + "".join(f'["{name}"]' for name in fields)
    return f"read fields with subscripts: {target}"


class _SandboxChecker:
    """Collect errors for constructs the interpreter does not allow."""

    def __init__(self, errors: List[str]):
        self.errors = errors

    def error(self, node: ast.AST, message: str) -> None:
        line = getattr(node, "lineno", None)
        self.errors.append(f"line {line}: {message}" if line else message)

    def check_block(self, statements: List[ast.stmt], in_loop: bool) -> None:
        for statement in statements:
            self.check(statement, in_loop)

    def check(self, node: ast.AST, in_loop: bool) -> None:
        if isinstance(node, ast.stmt) and not isinstance(node, _STATEMENT_NODES):
            self.error(node, f"{type(node).__name__} is not allowed")
            return
        if isinstance(node, ast.expr) and not isinstance(node, _EXPRESSION_NODES):
            self.error(node, f"{type(node).__name__} expressions are not allowed")
            return
        if not isinstance(node, (ast.stmt, ast.expr) + _SUPPORT_NODES):
            self.error(node, f"{type(node).__name__} is not allowed")
            return

        if isinstance(node, (ast.Break, ast.Continue)) and not in_loop:
            self.error(node, f"'{type(node).__name__.lower()}' outside loop")
        elif isinstance(node, ast.Name) and node.id.startswith("__"):
            self.error(node, f"Name '{node.id}' is not allowed")
        elif isinstance(node, ast.Constant) and not isinstance(node.value, _ALLOWED_CONSTANT_TYPES):
            self.error(node, f"Constant of type {type(node.value).__name__} is not allowed")
        elif isinstance(node, ast.BinOp) and type(node.op) not in BINARY_OPS:
            self.error(node, f"Unsupported operator: {type(node.op).__name__}")
        elif isinstance(node, ast.AugAssign) and type(node.op) not in BINARY_OPS:
            self.error(node, f"Unsupported operator: {type(node.op).__name__}")
        elif isinstance(node, ast.UnaryOp) and type(node.op) not in UNARY_OPS:
            self.error(node, f"Unsupported unary operator: {type(node.op).__name__}")
        elif isinstance(node, ast.Attribute):
            self.error(
                node,
                "Attribute access is only allowed for method calls, e.g. text.upper(); "
                + _subscript_hint(node),
            )
            return
        elif isinstance(node, ast.Lambda):
            args = node.args
            if args.vararg or args.kwarg or args.kwonlyargs or args.posonlyargs:
                self.error(node, "Lambdas may only take simple positional parameters")
        elif isinstance(node, ast.comprehension) and node.is_async:
            self.error(node, "Async comprehensions are not allowed")
        elif isinstance(node, ast.Call) and isinstance(node.func, ast.Attribute):
            if node.func.attr.startswith("_"):
                self.error(node, f"Method '{node.func.attr}' is not allowed")
            self.check(node.func.value, in_loop)
            for child in list(node.args) + list(node.keywords):
                self.check(child, in_loop)
            return

        for target in _assignment_targets(node):
            self.check_target(target)

        if isinstance(node, ast.For):
            self.check(node.target, in_loop)
        if isinstance(node, (ast.For, ast.While)):
            self.check(node.iter if isinstance(node, ast.For) else node.test, in_loop)
            self.check_block(node.body, in_loop=True)
            self.check_block(node.orelse, in_loop)
            return

        for child in ast.iter_child_nodes(node):
            self.check(child, in_loop)

    def check_target(self, target: ast.expr) -> None:
        if isinstance(target, (ast.Tuple, ast.List)):
            for element in target.elts:
                self.check_target(element)
        elif not isinstance(target, (ast.Name, ast.Subscript)):
            self.error(target, f"Cannot assign to {type(target).__name__}")


def _assignment_targets(node: ast.AST) -> List[ast.expr]:
    if isinstance(node, ast.Assign):
        return list(node.targets)
    if isinstance(node, (ast.AugAssign, ast.AnnAssign, ast.For)):
        return [node.target]
    if isinstance(node, ast.Delete):
        return list(node.targets)
    if isinstance(node, ast.comprehension):
        return [node.target]
    return []


# -----------------------------------------------------------------------------
# Interpreter
# -----------------------------------------------------------------------------


class _ControlFlow(BaseException):
    """Base for non-error control transfer; never caught by script try/except."""


class _Return(_ControlFlow):
    def __init__(self, value: Any):
        self.value = value


class _Break(_ControlFlow):
    pass


class _Continue(_ControlFlow):
    pass


# Errors a script's own try/except must never swallow
_ABORT_ERRORS = (ScriptExecutionError, ScriptCancelledError, RecursionError)


class _Scope:
    """Variable scope with lexical parent chain."""

    def __init__(self, parent: Optional["_Scope"] = None):
        self.vars: Dict[str, Any] = {}
        self.parent = parent

    def lookup(self, name: str) -> Tuple[bool, Any]:
        scope: Optional[_Scope] = self
        while scope is not None:
            if name in scope.vars:
                return True, scope.vars[name]
            scope = scope.parent
        return False, None


class ScriptFunction:
    """A lambda created inside a script."""

    def __init__(self, node: ast.Lambda, defaults: List[Any], closure: _Scope, session: "_Session"):
        self.node = node
        self.params = [a.arg for a in node.args.args]
        self.defaults = defaults
        self.closure = closure
        self.session = session

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        return self.session.call_function(self, args, kwargs)

    def __repr__(self) -> str:
        return "<lambda>"


class _Session:
    """State of one script evaluation: scopes, budgets and builtins."""

    def __init__(
        self,
        limits: ScriptLimits,
        deadline: float,
        cancel_event: Optional[threading.Event],
    ):
        self.limits = limits
        self.deadline = deadline
        self.cancel_event = cancel_event
        self.steps = 0
        self.depth = 0
        self.current_line: Optional[int] = None
        self.builtins = self._make_builtins()
        self.constructor_types = {
            self.builtins["str"]: str,
            self.builtins["list"]: list,
            self.builtins["dict"]: dict,
            self.builtins["set"]: set,
            self.builtins["tuple"]: tuple,
        }

    # -------------------------------------------------------------------------
    # Budgets
    # -------------------------------------------------------------------------

    def tick(self) -> None:
        self.steps += 1
        if self.steps > self.limits.max_steps:
            raise ScriptLimitError(
                f"Script exceeded the step limit of {self.limits.max_steps}",
                context={"steps": self.steps},
            )
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise ScriptCancelledError("Script cancelled because the run was cancelled")
        if time.monotonic() > self.deadline:
            raise ScriptTimeoutError("Script timed out", context={"steps": self.steps})

    def check_size(self, value: Any) -> Any:
        if isinstance(value, (str, list, tuple, dict, set)):
            if len(value) > self.limits.max_items:
                raise ScriptLimitError(
                    f"{type(value).__name__} grew beyond {self.limits.max_items} items",
                )
        elif isinstance(value, int) and not isinstance(value, bool):
            if value.bit_length() > self.limits.max_int_bits:
                raise ScriptLimitError(
                    f"Integer exceeds {self.limits.max_int_bits} bits",
                )
        return value

    def check_rendered_size(self, value: Any, budget: Optional[int] = None) -> None:
        """Approximate text size of ``value``; raise before building huge strings."""
        budget = budget or self.limits.max_items
        total = 0
        stack = [value]
        while stack:
            item = stack.pop()
            if isinstance(item, str):
                total += len(item) + 2
            elif isinstance(item, dict):
                total += 2 + len(item)
                stack.extend(item.keys())
                stack.extend(item.values())
            elif isinstance(item, (list, tuple, set, frozenset)):
                total += 2 + len(item)
                stack.extend(item)
            else:
                total += 24
            if total > budget:
                raise ScriptLimitError(f"Value is too large (over {budget} characters)")

    def check_result(self, value: Any) -> None:
        """Bound a returned value before it is converted.

        Conversion copies a shared list once per reference, so every
        occurrence counts toward the budget. Cycles are rejected here
        since an unbounded walk would otherwise never end.
        """
        budget = self.limits.max_items * 10
        total = 0
        visited = 0
        on_path: Set[int] = set()
        stack: List[Tuple[Any, bool]] = [(value, False)]
        while stack:
            item, leaving = stack.pop()
            if leaving:
                on_path.discard(id(item))
                continue
            visited += 1
            if visited % 1024 == 0:
                self.tick()
            if isinstance(item, str):
                total += len(item) + 2
            elif isinstance(item, (list, tuple, dict)):
                if id(item) in on_path:
                    raise ScriptExecutionError(
                        "Script returned a value that cannot be represented as JSON: "
                        "it contains a cyclic reference"
                    )
                on_path.add(id(item))
                stack.append((item, True))
                total += 2 + len(item)
                if isinstance(item, dict):
                    total += sum(len(key) + 2 for key in item if isinstance(key, str))
                children = item.values() if isinstance(item, dict) else item
                stack.extend((child, False) for child in children)
            else:
                total += 24
            if total > budget:
                raise ScriptLimitError(f"Returned value is too large (over {budget} characters)")

    def materialize(self, iterable: Iterable[Any]) -> List[Any]:
        items: List[Any] = []
        for item in iterable:
            self.tick()
            items.append(item)
            if len(items) > self.limits.max_items:
                raise ScriptLimitError(f"Sequence grew beyond {self.limits.max_items} items")
        return items

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    def run(self, body: List[ast.stmt], native_input: Any) -> Any:
        scope = _Scope()
        scope.vars[INPUT_NAME] = native_input
        try:
            self.exec_block(body, scope)
        except _Return as signal:
            return signal.value
        raise ScriptExecutionError(
            "Script finished without returning a value; add a 'return' statement"
        )

    def call_function(self, function: ScriptFunction, args: Tuple[Any, ...], kwargs: Dict[str, Any]) -> Any:
        params = function.params
        if len(args) > len(params):
            raise TypeError(f"<lambda>() takes {len(params)} arguments but {len(args)} were given")
        scope = _Scope(parent=function.closure)
        for name, value in zip(params, args):
            scope.vars[name] = value
        for name, value in kwargs.items():
            if name not in params or name in scope.vars:
                raise TypeError(f"<lambda>() got an unexpected or repeated argument '{name}'")
            scope.vars[name] = value
        first_default = len(params) - len(function.defaults)
        for index, name in enumerate(params):
            if name in scope.vars:
                continue
            if index < first_default:
                raise TypeError(f"<lambda>() missing required argument '{name}'")
            scope.vars[name] = function.defaults[index - first_default]
        return self.eval(function.node.body, scope)

    # -------------------------------------------------------------------------
    # Statements
    # -------------------------------------------------------------------------

    def exec_block(self, statements: List[ast.stmt], scope: _Scope) -> None:
        for statement in statements:
            self.exec(statement, scope)

    def exec(self, node: ast.stmt, scope: _Scope) -> None:
        self.tick()
        self.current_line = getattr(node, "lineno", self.current_line)
        self.depth += 1
        if self.depth > self.limits.max_depth:
            raise ScriptLimitError(f"Script nesting exceeds depth {self.limits.max_depth}")
        try:
            handler = self._STATEMENTS.get(type(node))
            if handler is None:
                raise ScriptExecutionError(f"{type(node).__name__} is not allowed")
            handler(self, node, scope)
        finally:
            self.depth -= 1

    def _exec_expr(self, node: ast.Expr, scope: _Scope) -> None:
        self.eval(node.value, scope)

    def _exec_assign(self, node: ast.Assign, scope: _Scope) -> None:
        value = self.eval(node.value, scope)
        for target in node.targets:
            self.assign(target, value, scope)

    def _exec_ann_assign(self, node: ast.AnnAssign, scope: _Scope) -> None:
        if node.value is not None:
            self.assign(node.target, self.eval(node.value, scope), scope)

    def _exec_aug_assign(self, node: ast.AugAssign, scope: _Scope) -> None:
        target = node.target
        operand = self.eval(node.value, scope)
        if isinstance(target, ast.Name):
            found, current = scope.lookup(target.id)
            if not found:
                raise NameError(f"name '{target.id}' is not defined")
            scope.vars[target.id] = self.binary(node.op, current, operand)
        elif isinstance(target, ast.Subscript):
            container = self.eval(target.value, scope)
            key = self.eval(target.slice, scope)
            container[key] = self.binary(node.op, container[key], operand)
        else:
            raise ScriptExecutionError(f"Cannot assign to {type(target).__name__}")

    def _exec_delete(self, node: ast.Delete, scope: _Scope) -> None:
        for target in node.targets:
            if isinstance(target, ast.Name):
                if target.id not in scope.vars:
                    raise NameError(f"name '{target.id}' is not defined")
                del scope.vars[target.id]
            elif isinstance(target, ast.Subscript):
                container = self.eval(target.value, scope)
                del container[self.eval(target.slice, scope)]
            else:
                raise ScriptExecutionError(f"Cannot delete {type(target).__name__}")

    def _exec_return(self, node: ast.Return, scope: _Scope) -> None:
        raise _Return(self.eval(node.value, scope) if node.value is not None else None)

    def _exec_if(self, node: ast.If, scope: _Scope) -> None:
        if self.eval(node.test, scope):
            self.exec_block(node.body, scope)
        else:
            self.exec_block(node.orelse, scope)

    def _exec_for(self, node: ast.For, scope: _Scope) -> None:
        for item in self.eval(node.iter, scope):
            self.tick()
            self.assign(node.target, item, scope)
            try:
                self.exec_block(node.body, scope)
            except _Break:
                break
            except _Continue:
                continue
        else:
            self.exec_block(node.orelse, scope)

    def _exec_while(self, node: ast.While, scope: _Scope) -> None:
        while self.eval(node.test, scope):
            try:
                self.exec_block(node.body, scope)
            except _Break:
                break
            except _Continue:
                continue
        else:
            self.exec_block(node.orelse, scope)

    def _exec_break(self, node: ast.Break, scope: _Scope) -> None:
        raise _Break()

    def _exec_continue(self, node: ast.Continue, scope: _Scope) -> None:
        raise _Continue()

    def _exec_pass(self, node: ast.Pass, scope: _Scope) -> None:
        pass

    def _exec_raise(self, node: ast.Raise, scope: _Scope) -> None:
        if node.exc is None:
            raise RuntimeError("No active exception to re-raise")
        exc = self.eval(node.exc, scope)
        if isinstance(exc, type) and exc in EXCEPTION_TYPES.values():
            raise exc()
        if isinstance(exc, Exception) and not isinstance(exc, _ABORT_ERRORS):
            raise exc
        raise TypeError("exceptions must be created with one of: " + ", ".join(EXCEPTION_TYPES))

    def _exec_assert(self, node: ast.Assert, scope: _Scope) -> None:
        if not self.eval(node.test, scope):
            message = self.eval(node.msg, scope) if node.msg is not None else ""
            raise AssertionError(message)

    def _exec_try(self, node: ast.Try, scope: _Scope) -> None:
        try:
            self.exec_block(node.body, scope)
        except _ABORT_ERRORS:
            raise
        except Exception as exc:
            handler = self._match_handler(node.handlers, exc, scope)
            if handler is None:
                raise
            if handler.name:
                scope.vars[handler.name] = exc
            self.exec_block(handler.body, scope)
        else:
            self.exec_block(node.orelse, scope)
        finally:
            self.exec_block(node.finalbody, scope)

    def _match_handler(
        self, handlers: List[ast.ExceptHandler], exc: Exception, scope: _Scope
    ) -> Optional[ast.ExceptHandler]:
        for handler in handlers:
            if handler.type is None:
                return handler
            kinds = self.eval(handler.type, scope)
            if not isinstance(kinds, tuple):
                kinds = (kinds,)
            if not all(k in EXCEPTION_TYPES.values() for k in kinds):
                raise TypeError("except clauses may only name builtin exception types")
            if isinstance(exc, kinds):
                return handler
        return None

    def assign(self, target: ast.expr, value: Any, scope: _Scope) -> None:
        if isinstance(target, ast.Name):
            scope.vars[target.id] = value
        elif isinstance(target, ast.Subscript):
            container = self.eval(target.value, scope)
            if not isinstance(container, (list, dict)):
                raise TypeError(f"'{type(container).__name__}' object does not support item assignment")
            container[self.eval(target.slice, scope)] = value
            self.check_size(container)
        elif isinstance(target, (ast.Tuple, ast.List)):
            items = self.materialize(value)
            if len(items) != len(target.elts):
                raise ValueError(
                    f"cannot unpack {len(items)} values into {len(target.elts)} targets"
                )
            for element, item in zip(target.elts, items):
                self.assign(element, item, scope)
        else:
            raise ScriptExecutionError(f"Cannot assign to {type(target).__name__}")

    _STATEMENTS: Dict[type, Callable[..., None]] = {
        ast.Expr: _exec_expr,
        ast.Assign: _exec_assign,
        ast.AnnAssign: _exec_ann_assign,
        ast.AugAssign: _exec_aug_assign,
        ast.Delete: _exec_delete,
        ast.Return: _exec_return,
        ast.If: _exec_if,
        ast.For: _exec_for,
        ast.While: _exec_while,
        ast.Break: _exec_break,
        ast.Continue: _exec_continue,
        ast.Pass: _exec_pass,
        ast.Raise: _exec_raise,
        ast.Assert: _exec_assert,
        ast.Try: _exec_try,
    }

    # -------------------------------------------------------------------------
    # Expressions
    # -------------------------------------------------------------------------

    def eval(self, node: ast.expr, scope: _Scope) -> Any:
        self.tick()
        self.depth += 1
        if self.depth > self.limits.max_depth:
            raise ScriptLimitError(f"Script nesting exceeds depth {self.limits.max_depth}")
        try:
            handler = self._EXPRESSIONS.get(type(node))
            if handler is None:
                raise ScriptExecutionError(f"{type(node).__name__} expressions are not allowed")
            return handler(self, node, scope)
        finally:
            self.depth -= 1

    def _eval_constant(self, node: ast.Constant, scope: _Scope) -> Any:
        return node.value

    def _eval_name(self, node: ast.Name, scope: _Scope) -> Any:
        found, value = scope.lookup(node.id)
        if found:
            return value
        if node.id in self.builtins:
            return self.builtins[node.id]
        if node.id in EXCEPTION_TYPES:
            return EXCEPTION_TYPES[node.id]
        raise NameError(f"name '{node.id}' is not defined")

    def _eval_binop(self, node: ast.BinOp, scope: _Scope) -> Any:
        return self.binary(node.op, self.eval(node.left, scope), self.eval(node.right, scope))

    def binary(self, op: ast.operator, left: Any, right: Any) -> Any:
        func = BINARY_OPS.get(type(op))
        if func is None:
            raise ScriptExecutionError(f"Unsupported operator: {type(op).__name__}")
        self._precheck_binary(op, left, right)
        return self.check_size(func(left, right))

    def _precheck_binary(self, op: ast.operator, left: Any, right: Any) -> None:
        limit = self.limits.max_items
        if isinstance(op, ast.Mult):
            for seq, count in ((left, right), (right, left)):
                if isinstance(seq, (str, list, tuple)) and isinstance(count, int):
                    if len(seq) * max(count, 0) > limit:
                        raise ScriptLimitError(f"Repetition would exceed {limit} items")
        elif isinstance(op, ast.Add):
            if isinstance(left, (str, list, tuple)) and isinstance(right, type(left)):
                if len(left) + len(right) > limit:
                    raise ScriptLimitError(f"Concatenation would exceed {limit} items")
        elif isinstance(op, ast.Mod) and isinstance(left, str):
            raise TypeError("'%' string formatting is not supported; use an f-string")
        elif isinstance(op, ast.Pow):
            if (
                isinstance(left, int) and isinstance(right, int)
                and not isinstance(right, bool) and right > 0 and abs(left) > 1
                and abs(left).bit_length() * right > self.limits.max_int_bits
            ):
                raise ScriptLimitError(f"Integer exceeds {self.limits.max_int_bits} bits")

    def _eval_unaryop(self, node: ast.UnaryOp, scope: _Scope) -> Any:
        return UNARY_OPS[type(node.op)](self.eval(node.operand, scope))

    def _eval_boolop(self, node: ast.BoolOp, scope: _Scope) -> Any:
        is_and = isinstance(node.op, ast.And)
        value: Any = None
        for operand in node.values:
            value = self.eval(operand, scope)
            if is_and and not value:
                return value
            if not is_and and value:
                return value
        return value

    def _eval_compare(self, node: ast.Compare, scope: _Scope) -> Any:
        left = self.eval(node.left, scope)
        for op, comparator in zip(node.ops, node.comparators):
            right = self.eval(comparator, scope)
            op_func = COMPARISON_OPS.get(type(op))
            if op_func is None:
                raise ScriptExecutionError(f"Unsupported comparison operator: {type(op).__name__}")
            if not op_func(left, right):
                return False
            left = right
        return True

    def _eval_ifexp(self, node: ast.IfExp, scope: _Scope) -> Any:
        if self.eval(node.test, scope):
            return self.eval(node.body, scope)
        return self.eval(node.orelse, scope)

    def _elements(self, nodes: List[ast.expr], scope: _Scope) -> List[Any]:
        items: List[Any] = []
        for element in nodes:
            if isinstance(element, ast.Starred):
                items.extend(self.materialize(self.eval(element.value, scope)))
            else:
                items.append(self.eval(element, scope))
            if len(items) > self.limits.max_items:
                raise ScriptLimitError(f"Sequence grew beyond {self.limits.max_items} items")
        return items

    def _eval_list(self, node: ast.List, scope: _Scope) -> Any:
        return self._elements(node.elts, scope)

    def _eval_tuple(self, node: ast.Tuple, scope: _Scope) -> Any:
        return tuple(self._elements(node.elts, scope))

    def _eval_set(self, node: ast.Set, scope: _Scope) -> Any:
        return set(self._elements(node.elts, scope))

    def _eval_dict(self, node: ast.Dict, scope: _Scope) -> Any:
        result: Dict[Any, Any] = {}
        for key, value in zip(node.keys, node.values):
            if key is None:
                result.update(self.eval(value, scope))
            else:
                result[self.eval(key, scope)] = self.eval(value, scope)
        return self.check_size(result)

    def _comprehension(
        self,
        generators: List[ast.comprehension],
        scope: _Scope,
        emit: Callable[[_Scope], None],
    ) -> None:
        inner = _Scope(parent=scope)

        def loop(index: int) -> None:
            if index == len(generators):
                emit(inner)
                return
            generator = generators[index]
            for item in self.eval(generator.iter, inner):
                self.tick()
                self.assign(generator.target, item, inner)
                if all(self.eval(condition, inner) for condition in generator.ifs):
                    loop(index + 1)

        loop(0)

    def _eval_listcomp(self, node: ast.ListComp, scope: _Scope) -> Any:
        result: List[Any] = []

        def emit(inner: _Scope) -> None:
            result.append(self.eval(node.elt, inner))
            self.check_size(result)

        self._comprehension(node.generators, scope, emit)
        return result

    # Generator expressions are evaluated eagerly
    _eval_genexp = _eval_listcomp

    def _eval_setcomp(self, node: ast.SetComp, scope: _Scope) -> Any:
        result: set = set()

        def emit(inner: _Scope) -> None:
            result.add(self.eval(node.elt, inner))
            self.check_size(result)

        self._comprehension(node.generators, scope, emit)
        return result

    def _eval_dictcomp(self, node: ast.DictComp, scope: _Scope) -> Any:
        result: Dict[Any, Any] = {}

        def emit(inner: _Scope) -> None:
            result[self.eval(node.key, inner)] = self.eval(node.value, inner)
            self.check_size(result)

        self._comprehension(node.generators, scope, emit)
        return result

    def _eval_subscript(self, node: ast.Subscript, scope: _Scope) -> Any:
        container = self.eval(node.value, scope)
        return container[self.eval(node.slice, scope)]

    def _eval_slice(self, node: ast.Slice, scope: _Scope) -> Any:
        return slice(
            self.eval(node.lower, scope) if node.lower is not None else None,
            self.eval(node.upper, scope) if node.upper is not None else None,
            self.eval(node.step, scope) if node.step is not None else None,
        )

    def _eval_attribute(self, node: ast.Attribute, scope: _Scope) -> Any:
        raise ScriptExecutionError("Attribute access is only allowed for method calls")

    def _eval_call(self, node: ast.Call, scope: _Scope) -> Any:
        receiver: Any = None
        method_name: Optional[str] = None
        if isinstance(node.func, ast.Attribute):
            receiver = self.eval(node.func.value, scope)
            method_name = node.func.attr
            allowed = SAFE_METHODS.get(type(receiver), frozenset())
            if method_name not in allowed:
                raise AttributeError(
                    f"'{type(receiver).__name__}' object has no allowed method '{method_name}'"
                )
            func = getattr(receiver, method_name)
        else:
            func = self.eval(node.func, scope)
            if not self._is_callable(func):
                raise TypeError(f"'{type(func).__name__}' object is not callable")

        args = self._elements(node.args, scope)
        kwargs: Dict[str, Any] = {}
        for keyword in node.keywords:
            if keyword.arg is None:
                kwargs.update(self.eval(keyword.value, scope))
            else:
                kwargs[keyword.arg] = self.eval(keyword.value, scope)

        if method_name is not None:
            self._precheck_method(receiver, method_name, args)

        result = func(*args, **kwargs)

        if method_name is not None:
            self.check_size(receiver)
            if isinstance(result, (type({}.keys()), type({}.values()), type({}.items()))):
                result = self.materialize(result)
        return self.check_size(result)

    def _is_callable(self, func: Any) -> bool:
        if isinstance(func, ScriptFunction):
            return True
        if isinstance(func, type) and func in EXCEPTION_TYPES.values():
            return True
        return any(func is builtin for builtin in self.builtins.values())

    def _precheck_method(self, receiver: Any, name: str, args: List[Any]) -> None:
        limit = self.limits.max_items
        if name in _WIDTH_METHODS:
            if any(isinstance(a, int) and a > limit for a in args):
                raise ScriptLimitError(f"Width would exceed {limit} characters")
        elif name == "replace" and isinstance(receiver, str) and len(args) >= 2:
            old, new = args[0], args[1]
            if isinstance(old, str) and isinstance(new, str):
                occurrences = receiver.count(old) if old else len(receiver) + 1
                if len(receiver) + occurrences * len(new) > limit:
                    raise ScriptLimitError(f"Replacement would exceed {limit} characters")
        elif name == "join" and args:
            parts = self.materialize(args[0])
            args[0] = parts
            self.check_rendered_size(parts)
            if len(receiver) * len(parts) > limit:
                raise ScriptLimitError(f"Joined string would exceed {limit} characters")
        elif name == "extend" and args and hasattr(args[0], "__len__"):
            if len(receiver) + len(args[0]) > limit:
                raise ScriptLimitError(f"list grew beyond {limit} items")

    def _eval_lambda(self, node: ast.Lambda, scope: _Scope) -> Any:
        defaults = [self.eval(d, scope) for d in node.args.defaults]
        return ScriptFunction(node, defaults, scope, self)

    def _eval_joinedstr(self, node: ast.JoinedStr, scope: _Scope) -> Any:
        parts = [str(self.eval(value, scope)) for value in node.values]
        return self.check_size("".join(parts))

    def _eval_formatted(self, node: ast.FormattedValue, scope: _Scope) -> Any:
        value = self.eval(node.value, scope)
        self.check_rendered_size(value)
        if node.conversion == ord("r"):
            value = repr(value)
        elif node.conversion == ord("a"):
            value = ascii(value)
        elif node.conversion == ord("s"):
            value = str(value)
        fmt = self.eval(node.format_spec, scope) if node.format_spec is not None else ""
        if any(int(width) > self.limits.max_items for width in _FORMAT_WIDTH_PATTERN.findall(fmt)):
            raise ScriptLimitError(f"Format width would exceed {self.limits.max_items} characters")
        return format(value, fmt)

    def _eval_starred(self, node: ast.Starred, scope: _Scope) -> Any:
        raise ScriptExecutionError("Starred expressions are only allowed in calls and displays")

    _EXPRESSIONS: Dict[type, Callable[..., Any]] = {
        ast.Constant: _eval_constant,
        ast.Name: _eval_name,
        ast.BinOp: _eval_binop,
        ast.UnaryOp: _eval_unaryop,
        ast.BoolOp: _eval_boolop,
        ast.Compare: _eval_compare,
        ast.IfExp: _eval_ifexp,
        ast.List: _eval_list,
        ast.Tuple: _eval_tuple,
        ast.Set: _eval_set,
        ast.Dict: _eval_dict,
        ast.ListComp: _eval_listcomp,
        ast.GeneratorExp: _eval_genexp,
        ast.SetComp: _eval_setcomp,
        ast.DictComp: _eval_dictcomp,
        ast.Subscript: _eval_subscript,
        ast.Slice: _eval_slice,
        ast.Attribute: _eval_attribute,
        ast.Call: _eval_call,
        ast.Lambda: _eval_lambda,
        ast.JoinedStr: _eval_joinedstr,
        ast.FormattedValue: _eval_formatted,
        ast.Starred: _eval_starred,
    }

    # -------------------------------------------------------------------------
    # Builtins
    # -------------------------------------------------------------------------

    def _make_builtins(self) -> Dict[str, Callable[..., Any]]:
        return {
            "abs": abs,
            "all": all,
            "any": any,
            "bool": bool,
            "divmod": divmod,
            "float": float,
            "int": int,
            "len": len,
            "max": max,
            "min": min,
            "round": round,
            "dict": self._dict,
            "enumerate": self._enumerate,
            "filter": self._filter,
            "isinstance": self._isinstance,
            "list": self._list,
            "map": self._map,
            "range": self._range,
            "reversed": self._reversed,
            "set": self._set,
            "sorted": self._sorted,
            "str": self._str,
            "sum": self._sum,
            "tuple": self._tuple,
            "zip": self._zip,
        }

    def _str(self, value: Any = "") -> str:
        self.check_rendered_size(value)
        return str(value)

    def _list(self, iterable: Iterable[Any] = ()) -> List[Any]:
        return self.materialize(iterable)

    def _tuple(self, iterable: Iterable[Any] = ()) -> Tuple[Any, ...]:
        return tuple(self.materialize(iterable))

    def _set(self, iterable: Iterable[Any] = ()) -> set:
        return set(self.materialize(iterable))

    def _dict(self, source: Any = (), **kwargs: Any) -> Dict[Any, Any]:
        result = dict(source if isinstance(source, dict) else self.materialize(source))
        result.update(kwargs)
        return self.check_size(result)

    def _range(self, *args: int) -> range:
        result = range(*args)
        if len(result) > self.limits.max_items:
            raise ScriptLimitError(f"range() longer than {self.limits.max_items} items")
        return result

    def _enumerate(self, iterable: Iterable[Any], start: int = 0) -> List[Tuple[int, Any]]:
        return self.materialize(enumerate(iterable, start))

    def _zip(self, *iterables: Iterable[Any]) -> List[Tuple[Any, ...]]:
        return self.materialize(zip(*iterables))

    def _reversed(self, sequence: Any) -> List[Any]:
        return self.materialize(reversed(sequence))

    def _sorted(self, iterable: Iterable[Any], *, key: Any = None, reverse: bool = False) -> List[Any]:
        return sorted(self.materialize(iterable), key=key, reverse=reverse)

    def _map(self, func: Callable[..., Any], *iterables: Iterable[Any]) -> List[Any]:
        return self.materialize(func(*args) for args in zip(*iterables))

    def _filter(self, func: Optional[Callable[[Any], Any]], iterable: Iterable[Any]) -> List[Any]:
        predicate = func if func is not None else bool
        return self.materialize(item for item in iterable if predicate(item))

    def _sum(self, iterable: Iterable[Any], start: Any = 0) -> Any:
        total = start
        for item in iterable:
            self.tick()
            if isinstance(item, bool) or not isinstance(item, (int, float)):
                raise TypeError(f"sum() only adds numbers, got {type(item).__name__}")
            total = self.check_size(total + item)
        return total

    def _isinstance(self, value: Any, kinds: Any) -> bool:
        if not isinstance(kinds, tuple):
            kinds = (kinds,)
        resolved = []
        for kind in kinds:
            kind = self.constructor_types.get(kind, kind)
            if kind not in (str, int, float, bool, list, dict, tuple, set) and kind not in EXCEPTION_TYPES.values():
                raise TypeError("isinstance() arg 2 must be a builtin type")
            resolved.append(kind)
        return isinstance(value, tuple(resolved))

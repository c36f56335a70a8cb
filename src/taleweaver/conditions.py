"""Sandboxed evaluation of the condition expressions that gate choice visibility.

Conditions are short JavaScript-flavoured boolean expressions such as
``flags.level >= 3 && !flags.exhausted``. They are never handed to Python's
dynamic code facilities. Instead a small tokenizer and precedence-climbing
parser compile each expression into nested closures which only know how to
read values out of the evaluation scope.
"""

from __future__ import annotations

import math
import re
import time
from collections import OrderedDict
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, List, Mapping, Sequence

from loguru import logger

from .errors import ConditionEvaluationError
from .state import NarrativeState


class _Undefined:
    """Sentinel for values that are absent, distinct from ``None`` (``null``)."""

    __slots__ = ()

    def __repr__(self) -> str:  # pragma: no cover - trivial representation
        return "undefined"

    def __bool__(self) -> bool:
        return False


UNDEFINED = _Undefined()

DENYLISTED_IDENTIFIERS = frozenset(
    {
        # reflective or global access in JavaScript-style expressions
        "eval",
        "Function",
        "constructor",
        "prototype",
        "__proto__",
        "import",
        "require",
        "process",
        "global",
        "globalThis",
        "window",
        "document",
        # double-underscore names; any other `__` identifier fails in the tokenizer
        "__builtins__",
        "__import__",
        "__class__",
        "__subclasses__",
        "__globals__",
        "__dict__",
        "__mro__",
    }
)

_DENYLIST_PATTERN = re.compile(
    r"(?<![\w$])(?:"
    + "|".join(re.escape(name) for name in sorted(DENYLISTED_IDENTIFIERS))
    + r")(?![\w$])"
)

_FLAG_REFERENCE_PATTERN = re.compile(
    r"flags(?:\.([A-Za-z_$][A-Za-z0-9_$]*)|\[\s*(['\"])(.*?)\2\s*\])"
)

_TOKEN_PATTERN = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>(?:\d+\.\d*|\.\d+|\d+)(?:[eE][+-]?\d+)?)
  | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
  | (?P<name>[A-Za-z_$][A-Za-z0-9_$]*)
  | (?P<op>===|!==|==|!=|<=|>=|&&|\|\||[-+*/%<>!().\[\],])
    """,
    re.VERBOSE,
)

_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "0": "\0"}
_LITERALS: Mapping[str, Any] = {
    "true": True,
    "false": False,
    "null": None,
    "undefined": UNDEFINED,
}
_ALLOWED_METHODS = frozenset({"includes"})

_Compiled = Callable[[Mapping[str, Any]], Any]


@dataclass(frozen=True)
class ConditionContext:
    """Values an expression may read: ``flags``, ``state``, ``timestamp`` and ``customData``."""

    state: NarrativeState
    timestamp: float
    custom_data: Mapping[str, Any] | None = None

    @classmethod
    def for_state(
        cls, state: NarrativeState, custom_data: Mapping[str, Any] | None = None
    ) -> "ConditionContext":
        """Return a context stamped with the current wall-clock time in milliseconds."""

        return cls(state=state, timestamp=time.time() * 1000, custom_data=custom_data)


CustomEvaluator = Callable[[str, ConditionContext], bool]


@dataclass(frozen=True)
class ExpressionValidation:
    """Outcome of checking an expression without evaluating it."""

    valid: bool
    error: str | None = None


@dataclass(frozen=True)
class _Token:
    kind: str
    value: Any
    position: int


# ---------- JavaScript value semantics ----------


def _is_nullish(value: Any) -> bool:
    return value is None or value is UNDEFINED


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def is_truthy(value: Any) -> bool:
    """Return the JavaScript truthiness of ``value``.

    Empty lists and mappings are truthy, unlike in Python.
    """

    if _is_nullish(value):
        return False
    if isinstance(value, bool):
        return value
    if _is_number(value):
        return value != 0 and not math.isnan(value)
    if isinstance(value, str):
        return bool(value)
    return True


def strict_equals(left: Any, right: Any) -> bool:
    """Implement ``===``: equal values of the same kind, identity for containers."""

    if _is_nullish(left) or _is_nullish(right):
        return left is right
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if _is_number(left) and _is_number(right):
        return left == right
    if isinstance(left, str) and isinstance(right, str):
        return left == right
    if isinstance(left, (str, int, float)) or isinstance(right, (str, int, float)):
        return False
    return left is right


def loose_equals(left: Any, right: Any) -> bool:
    """Implement ``==`` with JavaScript's coercions for primitives."""

    if _is_nullish(left) or _is_nullish(right):
        return _is_nullish(left) and _is_nullish(right)
    primitives = (str, int, float, bool)
    if isinstance(left, primitives) and isinstance(right, primitives):
        if isinstance(left, str) and isinstance(right, str):
            return left == right
        return _to_number(left) == _to_number(right)
    return left is right


def _to_number(value: Any) -> float:
    if value is UNDEFINED:
        return math.nan
    if value is None:
        return 0
    if isinstance(value, bool):
        return int(value)
    if _is_number(value):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return 0
        try:
            return float(stripped)
        except ValueError:
            return math.nan
    return math.nan


def to_js_string(value: Any) -> str:
    """Render ``value`` the way string concatenation would in a condition."""

    if value is UNDEFINED:
        return "undefined"
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (list, tuple)):
        return ",".join("" if _is_nullish(item) else to_js_string(item) for item in value)
    if isinstance(value, Mapping):
        return "[object Object]"
    return str(value)


def _property_key(value: Any) -> str:
    if isinstance(value, str):
        return value
    return to_js_string(value)


def _get_member(target: Any, key: Any) -> Any:
    """Read ``target[key]`` without ever touching Python attributes."""

    if _is_nullish(target):
        raise TypeError(
            f"Cannot read properties of {to_js_string(target)} "
            f"(reading '{_property_key(key)}')"
        )

    if isinstance(target, Mapping):
        return target.get(_property_key(key), UNDEFINED)

    if isinstance(target, (str, list, tuple)):
        if key == "length":
            return len(target)
        if _is_number(key) and float(key).is_integer() and 0 <= key < len(target):
            return target[int(key)]
        if isinstance(key, str) and key.isdigit() and int(key) < len(target):
            return target[int(key)]

    return UNDEFINED


def _call_method(target: Any, name: str, arguments: Sequence[Any]) -> Any:
    if name == "includes":
        needle = arguments[0] if arguments else UNDEFINED
        if isinstance(target, str):
            return isinstance(needle, str) and needle in target
        if isinstance(target, (list, tuple)):
            return any(strict_equals(item, needle) for item in target)
    raise TypeError(f"{to_js_string(target)}.{name} is not a function")


def _add(left: Any, right: Any) -> Any:
    if isinstance(left, str) or isinstance(right, str):
        return to_js_string(left) + to_js_string(right)
    return _to_number(left) + _to_number(right)


def _divide(left: Any, right: Any) -> float:
    numerator, denominator = _to_number(left), _to_number(right)
    if denominator == 0:
        if numerator == 0 or math.isnan(numerator):
            return math.nan
        return math.copysign(math.inf, numerator) * math.copysign(1, denominator)
    return numerator / denominator


def _modulo(left: Any, right: Any) -> float:
    numerator, denominator = _to_number(left), _to_number(right)
    if denominator == 0 or math.isinf(numerator):
        return math.nan
    return math.fmod(numerator, denominator)


def _compare(operator: str, left: Any, right: Any) -> bool:
    if isinstance(left, str) and isinstance(right, str):
        pair = (left, right)
    else:
        pair = (_to_number(left), _to_number(right))
        if math.isnan(pair[0]) or math.isnan(pair[1]):
            return False
    if operator == "<":
        return pair[0] < pair[1]
    if operator == "<=":
        return pair[0] <= pair[1]
    if operator == ">":
        return pair[0] > pair[1]
    return pair[0] >= pair[1]


_BINARY_OPERATORS: Mapping[str, Callable[[Any, Any], Any]] = {
    "===": strict_equals,
    "!==": lambda a, b: not strict_equals(a, b),
    "==": loose_equals,
    "!=": lambda a, b: not loose_equals(a, b),
    "<": lambda a, b: _compare("<", a, b),
    "<=": lambda a, b: _compare("<=", a, b),
    ">": lambda a, b: _compare(">", a, b),
    ">=": lambda a, b: _compare(">=", a, b),
    "+": _add,
    "-": lambda a, b: _to_number(a) - _to_number(b),
    "*": lambda a, b: _to_number(a) * _to_number(b),
    "/": _divide,
    "%": _modulo,
}

_PRECEDENCE_LEVELS: Sequence[frozenset[str]] = (
    frozenset({"||"}),
    frozenset({"&&"}),
    frozenset({"===", "!==", "==", "!="}),
    frozenset({"<", "<=", ">", ">="}),
    frozenset({"+", "-"}),
    frozenset({"*", "/", "%"}),
)


# ---------- Tokenizer and parser ----------


def _unescape(literal: str) -> str:
    body = literal[1:-1]
    result: List[str] = []
    index = 0
    while index < len(body):
        char = body[index]
        if char == "\\" and index + 1 < len(body):
            escaped = body[index + 1]
            result.append(_ESCAPES.get(escaped, escaped))
            index += 2
            continue
        result.append(char)
        index += 1
    return "".join(result)


def _tokenize(expression: str) -> List[_Token]:
    tokens: List[_Token] = []
    position = 0
    while position < len(expression):
        match = _TOKEN_PATTERN.match(expression, position)
        if match is None:
            raise SyntaxError(
                f"Unexpected character {expression[position]!r} at position {position}"
            )
        kind = match.lastgroup or ""
        text = match.group()
        if kind == "number":
            value: Any = int(text) if text.isdigit() else float(text)
            tokens.append(_Token("number", value, position))
        elif kind == "string":
            tokens.append(_Token("string", _unescape(text), position))
        elif kind == "name":
            if text.startswith("__"):
                raise PermissionError(f"Identifier '{text}' is not allowed")
            tokens.append(_Token("name", text, position))
        elif kind == "op":
            tokens.append(_Token("op", text, position))
        position = match.end()
    tokens.append(_Token("end", None, len(expression)))
    return tokens


class _Parser:
    """Recursive-descent parser producing closures over an evaluation scope."""

    def __init__(self, tokens: Sequence[_Token]) -> None:
        self._tokens = tokens
        self._index = 0

    def parse(self) -> _Compiled:
        compiled = self._parse_level(0)
        token = self._peek()
        if token.kind != "end":
            raise SyntaxError(f"Unexpected token {token.value!r} at position {token.position}")
        return compiled

    def _peek(self) -> _Token:
        return self._tokens[self._index]

    def _advance(self) -> _Token:
        token = self._tokens[self._index]
        self._index += 1
        return token

    def _expect(self, operator: str) -> None:
        token = self._advance()
        if token.kind != "op" or token.value != operator:
            found = "end of expression" if token.kind == "end" else repr(token.value)
            raise SyntaxError(f"Expected '{operator}' but found {found}")

    def _parse_level(self, level: int) -> _Compiled:
        if level == len(_PRECEDENCE_LEVELS):
            return self._parse_unary()

        left = self._parse_level(level + 1)
        operators = _PRECEDENCE_LEVELS[level]
        while self._peek().kind == "op" and self._peek().value in operators:
            operator = self._advance().value
            right = self._parse_level(level + 1)
            left = self._combine(operator, left, right)
        return left

    @staticmethod
    def _combine(operator: str, left: _Compiled, right: _Compiled) -> _Compiled:
        if operator == "&&":
            def _and(scope: Mapping[str, Any]) -> Any:
                value = left(scope)
                return right(scope) if is_truthy(value) else value

            return _and

        if operator == "||":
            def _or(scope: Mapping[str, Any]) -> Any:
                value = left(scope)
                return value if is_truthy(value) else right(scope)

            return _or

        function = _BINARY_OPERATORS[operator]
        return lambda scope: function(left(scope), right(scope))

    def _parse_unary(self) -> _Compiled:
        token = self._peek()
        if token.kind == "op" and token.value in ("!", "-", "+"):
            self._advance()
            operand = self._parse_unary()
            if token.value == "!":
                return lambda scope: not is_truthy(operand(scope))
            if token.value == "-":
                return lambda scope: -_to_number(operand(scope))
            return lambda scope: _to_number(operand(scope))
        return self._parse_postfix()

    def _parse_postfix(self) -> _Compiled:
        compiled = self._parse_primary()
        while True:
            token = self._peek()
            if token.kind != "op":
                return compiled

            if token.value == ".":
                self._advance()
                name_token = self._advance()
                if name_token.kind != "name":
                    raise SyntaxError(
                        f"Expected property name at position {name_token.position}"
                    )
                name = name_token.value
                following = self._peek()
                if following.kind == "op" and following.value == "(":
                    if name not in _ALLOWED_METHODS:
                        raise PermissionError(f"Calling '{name}' is not allowed")
                    arguments = self._parse_arguments()
                    compiled = self._method_call(compiled, name, arguments)
                else:
                    compiled = self._member(compiled, lambda scope, key=name: key)
            elif token.value == "[":
                self._advance()
                key = self._parse_level(0)
                self._expect("]")
                compiled = self._member(compiled, key)
            elif token.value == "(":
                raise PermissionError("Function calls are not allowed in conditions")
            else:
                return compiled

    @staticmethod
    def _member(target: _Compiled, key: _Compiled) -> _Compiled:
        return lambda scope: _get_member(target(scope), key(scope))

    @staticmethod
    def _method_call(
        target: _Compiled, name: str, arguments: Sequence[_Compiled]
    ) -> _Compiled:
        return lambda scope: _call_method(
            target(scope), name, [argument(scope) for argument in arguments]
        )

    def _parse_arguments(self) -> List[_Compiled]:
        self._expect("(")
        arguments: List[_Compiled] = []
        if self._peek().kind == "op" and self._peek().value == ")":
            self._advance()
            return arguments
        while True:
            arguments.append(self._parse_level(0))
            token = self._advance()
            if token.kind == "op" and token.value == ")":
                return arguments
            if not (token.kind == "op" and token.value == ","):
                raise SyntaxError(f"Expected ',' or ')' at position {token.position}")

    def _parse_primary(self) -> _Compiled:
        token = self._advance()
        if token.kind in ("number", "string"):
            value = token.value
            return lambda scope: value
        if token.kind == "name":
            if token.value in _LITERALS:
                literal = _LITERALS[token.value]
                return lambda scope: literal
            name = token.value

            def _lookup(scope: Mapping[str, Any]) -> Any:
                if name not in scope:
                    raise NameError(f"{name} is not defined")
                return scope[name]

            return _lookup
        if token.kind == "op" and token.value == "(":
            inner = self._parse_level(0)
            self._expect(")")
            return inner
        if token.kind == "end":
            raise SyntaxError("Unexpected end of expression")
        raise SyntaxError(f"Unexpected token {token.value!r} at position {token.position}")


# ---------- Evaluator service ----------


class ConditionEvaluator:
    """Evaluate condition expressions against the narrative state.

    Compiled expressions are cached by their exact (trimmed) text. The cache
    holds at most ``max_cache_size`` entries and drops the oldest one when a
    new expression would overflow it. A custom evaluator, when installed,
    takes precedence over the built-in language for every expression.
    """

    def __init__(self, *, max_cache_size: int = 100) -> None:
        if max_cache_size < 1:
            raise ValueError("max_cache_size must be a positive integer")
        self._custom_evaluator: CustomEvaluator | None = None
        self._cache: "OrderedDict[str, _Compiled]" = OrderedDict()
        self._max_cache_size = max_cache_size

    def set_custom_evaluator(self, evaluator: CustomEvaluator) -> None:
        """Route every evaluation through ``evaluator`` instead of the built-in language."""

        self._custom_evaluator = evaluator

    def clear_custom_evaluator(self) -> None:
        self._custom_evaluator = None

    @property
    def has_custom_evaluator(self) -> bool:
        return self._custom_evaluator is not None

    def evaluate(self, expression: str, context: ConditionContext) -> bool:
        """Return whether ``expression`` is truthy in ``context``.

        Raises:
            ConditionEvaluationError: If the expression is unsafe, malformed
                or fails while running.
        """

        if self._custom_evaluator is not None:
            try:
                return bool(self._custom_evaluator(expression, context))
            except ConditionEvaluationError:
                raise
            except Exception as exc:
                raise ConditionEvaluationError(
                    f"Failed to evaluate condition: {expression}", expression
                ) from exc

        return self._evaluate_builtin(expression, context)

    def validate_expression(self, expression: str) -> ExpressionValidation:
        """Check that ``expression`` is safe and parses, without evaluating it."""

        try:
            sanitized = self._sanitize(expression)
            if sanitized not in ("true", "false"):
                self._compile(sanitized, expression)
        except ConditionEvaluationError as exc:
            cause = exc.__cause__
            return ExpressionValidation(valid=False, error=str(cause or exc))
        return ExpressionValidation(valid=True)

    def get_referenced_flags(self, expression: str) -> List[str]:
        """Return the unique flag names referenced as ``flags.<name>`` or ``flags['<name>']``."""

        names: List[str] = []
        for match in _FLAG_REFERENCE_PATTERN.finditer(expression or ""):
            name = match.group(1) if match.group(1) is not None else match.group(3)
            if name not in names:
                names.append(name)
        return names

    def cache_info(self) -> dict[str, int]:
        return {"size": len(self._cache), "maxSize": self._max_cache_size}

    def clear_cache(self) -> None:
        self._cache.clear()

    def _evaluate_builtin(self, expression: str, context: ConditionContext) -> bool:
        if not isinstance(expression, str) or not expression.strip():
            raise ConditionEvaluationError(
                "Empty or whitespace-only condition expression", expression
            )

        sanitized = self._sanitize(expression)
        if sanitized == "true":
            return True
        if sanitized == "false":
            return False

        compiled = self._cache.get(sanitized)
        if compiled is None:
            compiled = self._compile(sanitized, expression)
            if len(self._cache) >= self._max_cache_size:
                evicted, _ = self._cache.popitem(last=False)
                logger.debug("Evicted cached condition {!r}", evicted)
            self._cache[sanitized] = compiled

        try:
            return is_truthy(compiled(self._build_scope(context)))
        except (TypeError, NameError, ValueError, ArithmeticError, RecursionError) as exc:
            raise ConditionEvaluationError(
                f"Runtime error evaluating: {expression}", expression
            ) from exc

    @staticmethod
    def _sanitize(expression: str) -> str:
        if not isinstance(expression, str):
            raise ConditionEvaluationError(
                "Condition expression must be a string", str(expression)
            )
        sanitized = expression.strip()
        if _DENYLIST_PATTERN.search(sanitized):
            raise ConditionEvaluationError(
                f"Potentially unsafe expression detected: {expression}", expression
            )
        return sanitized

    @staticmethod
    def _compile(sanitized: str, expression: str) -> _Compiled:
        try:
            return _Parser(_tokenize(sanitized)).parse()
        except PermissionError as exc:
            raise ConditionEvaluationError(
                f"Potentially unsafe expression detected: {expression}", expression
            ) from exc
        except (SyntaxError, RecursionError) as exc:
            raise ConditionEvaluationError(
                f"Invalid expression syntax: {expression}", expression
            ) from exc

    @staticmethod
    def _build_scope(context: ConditionContext) -> Mapping[str, Any]:
        flags = MappingProxyType(context.state.flags)
        return {
            "flags": flags,
            "state": MappingProxyType(
                {
                    "currentNodeId": context.state.current_node_id,
                    "flags": flags,
                    "history": tuple(context.state.history),
                }
            ),
            "timestamp": context.timestamp,
            "customData": MappingProxyType(dict(context.custom_data or {})),
        }


__all__ = [
    "UNDEFINED",
    "DENYLISTED_IDENTIFIERS",
    "ConditionContext",
    "ConditionEvaluator",
    "CustomEvaluator",
    "ExpressionValidation",
    "is_truthy",
    "to_js_string",
    "loose_equals",
    "strict_equals",
]

"""Condition evaluator for form logic rules and validator guards."""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field, replace
from datetime import datetime
from functools import lru_cache
from typing import Any, Callable, ClassVar, Dict, List, Tuple, Union

import expression_eval
from dynform.field_path import get_path

logger = logging.getLogger("dynform.conditions")

DEFAULT_DEPTH_LIMIT = 32

OPERATORS = {
    "equals",
    "notEquals",
    "greater",
    "greaterOrEqual",
    "less",
    "lessOrEqual",
    "contains",
    "matches",
    "startsWith",
    "endsWith",
}


@dataclass
class ConditionEvalError(Exception):
    code: str
    message: str
    path: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base


class ConditionDepthError(ConditionEvalError):
    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__("CONDITION_DEPTH_EXCEEDED", message, path)


class UnknownConditionError(ConditionEvalError):
    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__("CONDITION_UNKNOWN_TYPE", message, path)


@dataclass
class HttpRequestSpec:
    url: str
    method: str = "GET"
    params: Dict[str, str] = field(default_factory=dict)
    query_params: Dict[str, str] = field(default_factory=dict)
    headers: Dict[str, str] = field(default_factory=dict)
    depends_on: List[str] = field(default_factory=list)
    debounce_ms: int | None = None


@dataclass
class FieldValueCondition:
    type: ClassVar[str] = "fieldValue"
    field_path: str
    operator: str
    value: Any = None


@dataclass
class FormValueCondition:
    type: ClassVar[str] = "formValue"
    operator: str
    value: Any = None


@dataclass
class ExpressionCondition:
    expression: str
    kind: str = "custom"

    @property
    def type(self) -> str:
        return self.kind


@dataclass
class HttpCondition:
    type: ClassVar[str] = "http"
    http: HttpRequestSpec
    response_expression: str | None = None
    pending_value: bool = False


@dataclass
class AndCondition:
    type: ClassVar[str] = "and"
    conditions: List["Condition"]


@dataclass
class OrCondition:
    type: ClassVar[str] = "or"
    conditions: List["Condition"]


Condition = Union[
    FieldValueCondition,
    FormValueCondition,
    ExpressionCondition,
    HttpCondition,
    AndCondition,
    OrCondition,
]


@dataclass(frozen=True)
class Pending:
    """An unsettled result; ``fallback`` stands in until the task settles."""

    fallback: bool


ConditionResult = Union[bool, Pending]

# (request spec, slot, bindings) -> outcome with .status and .response
HttpResolver = Callable[[HttpRequestSpec, str, Dict[str, Any]], Any]


_MISSING = object()


def scoped_get(form_value: Dict[str, Any], root_form_value: Dict[str, Any] | None, path: str) -> Any:
    """Read ``path`` from an array item, falling back to the root form.

    A key present in the item wins even when its value is null.
    """
    if root_form_value is None:
        return get_path(form_value, path)
    value = get_path(form_value, path, _MISSING)
    if value is _MISSING:
        return get_path(root_form_value, path)
    return value


@dataclass
class EvaluationContext:
    form_value: Dict[str, Any]
    external_data: Dict[str, Any] = field(default_factory=dict)
    field_path: str | None = None
    form_state: Dict[str, bool] = field(default_factory=dict)
    resolve_http: HttpResolver | None = None
    clock: expression_eval.Clock | None = None
    # set when evaluating a field inside an array item; form_value is then the item
    root_form_value: Dict[str, Any] | None = None
    array_path: str | None = None
    array_index: int | None = None

    @property
    def field_value(self) -> Any:
        if self.field_path is None:
            return None
        return get_path(self.form_value, self.field_path)

    def lookup(self, path: str) -> Any:
        return scoped_get(self.form_value, self.root_form_value, path)

    def bindings(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "formValue": self.form_value,
            "externalData": self.external_data,
        }
        if self.field_path is not None:
            out["fieldValue"] = self.field_value
        if self.root_form_value is not None:
            out["rootFormValue"] = self.root_form_value
            out["arrayIndex"] = self.array_index
        return out

    def for_field(self, field_path: str | None) -> "EvaluationContext":
        return replace(self, field_path=field_path)


def settle(result: ConditionResult) -> bool:
    if isinstance(result, Pending):
        return result.fallback
    return bool(result)


def is_pending(result: ConditionResult) -> bool:
    return isinstance(result, Pending)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _numeric(value: Any) -> float | None:
    if _is_number(value):
        try:
            number = float(value)
        except OverflowError:
            return None
        return number if math.isfinite(number) else None
    if isinstance(value, str):
        text = value.strip()
        if not text or "_" in text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


def _same(left: Any, right: Any) -> bool:
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    if _is_number(left) != _is_number(right):
        return False
    return left == right


def _ordered(left: Any, right: Any) -> Tuple[Any, Any] | None:
    a = _numeric(left)
    b = _numeric(right)
    if a is not None and b is not None:
        return a, b
    if isinstance(left, str) and isinstance(right, str):
        return left, right
    if isinstance(left, datetime) and isinstance(right, datetime):
        return expression_eval.to_number(left), expression_eval.to_number(right)
    return None


@lru_cache(maxsize=256)
def _compile(pattern: str) -> re.Pattern:
    return re.compile(pattern)


def compare_values(actual: Any, operator: str, expected: Any) -> bool:
    """Apply a comparison operator; type mismatches yield false, never raise."""
    if operator in ("equals", "notEquals"):
        a = _numeric(actual)
        b = _numeric(expected)
        equal = a == b if a is not None and b is not None else _same(actual, expected)
        return equal if operator == "equals" else not equal
    if operator in ("greater", "greaterOrEqual", "less", "lessOrEqual"):
        pair = _ordered(actual, expected)
        if pair is None:
            return False
        a, b = pair
        if operator == "greater":
            return a > b
        if operator == "greaterOrEqual":
            return a >= b
        if operator == "less":
            return a < b
        return a <= b
    if operator == "contains":
        if isinstance(actual, list):
            return any(_same(item, expected) for item in actual)
        if isinstance(actual, dict):
            return isinstance(expected, str) and expected in actual
        if actual is None or expected is None:
            return False
        return expression_eval.to_js_string(expected) in expression_eval.to_js_string(actual)
    if operator == "matches":
        if actual is None or not isinstance(expected, str):
            return False
        try:
            regex = _compile(expected)
        except re.error:
            return False
        return regex.search(expression_eval.to_js_string(actual)) is not None
    if operator in ("startsWith", "endsWith"):
        if actual is None or expected is None:
            return False
        text = expression_eval.to_js_string(actual)
        needle = expression_eval.to_js_string(expected)
        return text.startswith(needle) if operator == "startsWith" else text.endswith(needle)
    return False


def _depth_check(depth: int, limit: int, path: str) -> None:
    if depth > limit:
        raise ConditionDepthError("Depth limit exceeded", path)


def eval_condition(
    condition: Condition,
    ctx: EvaluationContext,
    slot: str = "$",
    depth_limit: int = DEFAULT_DEPTH_LIMIT,
) -> ConditionResult:
    """Evaluate a condition to a bool, or ``Pending`` while HTTP work is in flight.

    ``slot`` names the condition's location (``logic.hidden.conditions[1]``) and
    keys any HTTP task it starts.
    """
    return _eval_condition(condition, ctx, slot, 1, depth_limit)


def _eval_condition(cond: Any, ctx: EvaluationContext, path: str, depth: int, limit: int) -> ConditionResult:
    _depth_check(depth, limit, path)

    if isinstance(cond, FieldValueCondition):
        return compare_values(ctx.lookup(cond.field_path), cond.operator, cond.value)

    if isinstance(cond, FormValueCondition):
        return compare_values(ctx.form_value, cond.operator, cond.value)

    if isinstance(cond, ExpressionCondition):
        try:
            value = expression_eval.eval_expression(cond.expression, ctx.bindings(), ctx.clock)
        except expression_eval.ExpressionError as exc:
            logger.warning(
                "condition_expression_failed field=%s slot=%s code=%s error=%s",
                ctx.field_path,
                path,
                exc.code,
                exc.message,
            )
            return False
        return expression_eval.is_truthy(value)

    if isinstance(cond, HttpCondition):
        return _eval_http(cond, ctx, path)

    if isinstance(cond, AndCondition):
        pending: List[Pending] = []
        for idx, child in enumerate(cond.conditions):
            result = _eval_condition(child, ctx, f"{path}.conditions[{idx}]", depth + 1, limit)
            if result is False:
                return False
            if isinstance(result, Pending):
                pending.append(result)
        if pending:
            return Pending(all(p.fallback for p in pending))
        return True

    if isinstance(cond, OrCondition):
        pending = []
        for idx, child in enumerate(cond.conditions):
            result = _eval_condition(child, ctx, f"{path}.conditions[{idx}]", depth + 1, limit)
            if result is True:
                return True
            if isinstance(result, Pending):
                pending.append(result)
        if pending:
            return Pending(any(p.fallback for p in pending))
        return False

    raise UnknownConditionError(f"Unknown condition: {type(cond).__name__}", path)


def _eval_http(cond: HttpCondition, ctx: EvaluationContext, path: str) -> ConditionResult:
    if ctx.resolve_http is None:
        return Pending(cond.pending_value)
    outcome = ctx.resolve_http(cond.http, path, ctx.bindings())
    if outcome.status == "pending":
        return Pending(cond.pending_value)
    if outcome.status != "resolved":
        return cond.pending_value
    if cond.response_expression is None:
        return expression_eval.is_truthy(outcome.response)
    try:
        return expression_eval.eval_truthy(
            cond.response_expression, {"response": outcome.response}, ctx.clock
        )
    except expression_eval.ExpressionError as exc:
        logger.warning(
            "condition_response_expression_failed field=%s slot=%s code=%s error=%s",
            ctx.field_path,
            path,
            exc.code,
            exc.message,
        )
        return False

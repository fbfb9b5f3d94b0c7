"""Run a field's validators and collect typed validation errors."""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Callable, ClassVar, Dict, List, Tuple, Union

import expression_eval
from condition_eval import (
    Condition,
    EvaluationContext,
    HttpRequestSpec,
    eval_condition,
    is_pending,
    scoped_get,
    settle,
)
from logic_resolver import FieldDirectives

logger = logging.getLogger("dynform.validators")

# same address shape the browser form controls accept
EMAIL_RE = re.compile(
    r"^(?=.{1,254}$)(?=.{1,64}@)[a-zA-Z0-9!#$%&'*+/=?^_`{|}~-]+(?:\.[a-zA-Z0-9!#$%&'*+/=?^_`{|}~-]+)*"
    r"@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*$"
)


@dataclass
class RequiredValidator:
    type: ClassVar[str] = "required"
    when: Condition | None = None


@dataclass
class EmailValidator:
    type: ClassVar[str] = "email"
    when: Condition | None = None


@dataclass
class MinValidator:
    type: ClassVar[str] = "min"
    value: float
    when: Condition | None = None


@dataclass
class MaxValidator:
    type: ClassVar[str] = "max"
    value: float
    when: Condition | None = None


@dataclass
class MinLengthValidator:
    type: ClassVar[str] = "minLength"
    value: int
    when: Condition | None = None


@dataclass
class MaxLengthValidator:
    type: ClassVar[str] = "maxLength"
    value: int
    when: Condition | None = None


@dataclass
class PatternValidator:
    type: ClassVar[str] = "pattern"
    pattern: str
    when: Condition | None = None


@dataclass
class CustomValidator:
    type: ClassVar[str] = "custom"
    expression: str | None = None
    function_name: str | None = None
    kind: str = "custom"
    params: Dict[str, Any] = field(default_factory=dict)
    error_params: Dict[str, str] = field(default_factory=dict)
    when: Condition | None = None


@dataclass
class HttpValidator:
    type: ClassVar[str] = "http"
    http: HttpRequestSpec
    valid_when: str | None = None
    error_kind: str = "http"
    when: Condition | None = None


Validator = Union[
    RequiredValidator,
    EmailValidator,
    MinValidator,
    MaxValidator,
    MinLengthValidator,
    MaxLengthValidator,
    PatternValidator,
    CustomValidator,
    HttpValidator,
]


@dataclass
class ValidationError:
    kind: str
    params: Dict[str, Any] = field(default_factory=dict)
    message: str | None = None

    def as_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "params": dict(self.params), "message": self.message}


@dataclass
class ValidationOutcome:
    errors: List[ValidationError] = field(default_factory=list)
    pending: bool = False
    async_error: bool = False


@dataclass
class ValidatorContext:
    """What a registered validator function gets to see."""

    value: Any
    field_path: str
    form_value: Dict[str, Any]
    external_data: Dict[str, Any] = field(default_factory=dict)
    root_form_value: Dict[str, Any] | None = None

    def value_of(self, path: str) -> Any:
        return scoped_get(self.form_value, self.root_form_value, path)


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (str, list, dict, tuple)):
        return len(value) == 0
    return False


def _to_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return float(value) if not math.isnan(value) else None
        except OverflowError:
            return None
    if isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
        return None if math.isnan(number) else number
    return None


@lru_cache(maxsize=256)
def _compile_pattern(pattern: str) -> re.Pattern:
    return re.compile(pattern)


def anchored_pattern(pattern: str) -> str:
    out = pattern if pattern.startswith("^") else f"^{pattern}"
    return out if out.endswith("$") else f"{out}$"


def _check_builtin(validator: Validator, value: Any) -> ValidationError | None:
    if is_empty(value):
        return None
    if isinstance(validator, EmailValidator):
        if isinstance(value, str) and EMAIL_RE.match(value):
            return None
        return ValidationError("email")
    if isinstance(validator, (MinValidator, MaxValidator)):
        number = _to_float(value)
        if number is None:
            return None
        if isinstance(validator, MinValidator) and number < validator.value:
            return ValidationError("min", {"min": validator.value, "actual": value})
        if isinstance(validator, MaxValidator) and number > validator.value:
            return ValidationError("max", {"max": validator.value, "actual": value})
        return None
    if isinstance(validator, (MinLengthValidator, MaxLengthValidator)):
        if not isinstance(value, (str, list, dict, tuple)):
            return None
        size = len(value)
        if isinstance(validator, MinLengthValidator) and size < validator.value:
            return ValidationError("minLength", {"requiredLength": validator.value, "actualLength": size})
        if isinstance(validator, MaxLengthValidator) and size > validator.value:
            return ValidationError("maxLength", {"requiredLength": validator.value, "actualLength": size})
        return None
    if isinstance(validator, PatternValidator):
        text = expression_eval.to_js_string(value)
        anchored = anchored_pattern(validator.pattern)
        if _compile_pattern(validator.pattern).fullmatch(text):
            return None
        return ValidationError("pattern", {"requiredPattern": anchored, "actualValue": value})
    return None


def _normalize_result(result: Any, kind: str) -> List[ValidationError]:
    if result is None or result is True:
        return []
    if result is False:
        return [ValidationError(kind)]
    if isinstance(result, ValidationError):
        return [result]
    if isinstance(result, str):
        return [ValidationError(result)]
    if isinstance(result, dict):
        return [
            ValidationError(
                str(result.get("kind") or kind),
                dict(result.get("params") or {}),
                result.get("message"),
            )
        ]
    if isinstance(result, (list, tuple)):
        out: List[ValidationError] = []
        for item in result:
            out.extend(_normalize_result(item, kind))
        return out
    raise TypeError(f"Unsupported validator result: {type(result).__name__}")


def _run_custom(
    validator: CustomValidator,
    ctx: EvaluationContext,
    slot: str,
    registry: Any,
) -> List[ValidationError]:
    bindings = ctx.bindings()
    if validator.expression is not None:
        try:
            ok = expression_eval.eval_truthy(validator.expression, bindings, ctx.clock)
        except expression_eval.ExpressionError as exc:
            logger.warning(
                "validator_expression_failed field=%s slot=%s code=%s error=%s",
                ctx.field_path,
                slot,
                exc.code,
                exc.message,
            )
            return []
        if ok:
            return []
        params = dict(validator.params)
        for name, expr in validator.error_params.items():
            try:
                params[name] = expression_eval.eval_expression(expr, bindings, ctx.clock)
            except expression_eval.ExpressionError as exc:
                logger.warning(
                    "validator_error_param_failed field=%s slot=%s param=%s code=%s",
                    ctx.field_path,
                    slot,
                    name,
                    exc.code,
                )
                params[name] = None
        return [ValidationError(validator.kind, params)]

    func = registry.lookup(validator.function_name) if registry is not None else None
    if func is None:
        logger.warning(
            "validator_function_missing field=%s slot=%s name=%s",
            ctx.field_path,
            slot,
            validator.function_name,
        )
        return []
    vctx = ValidatorContext(
        value=ctx.field_value,
        field_path=ctx.field_path or "",
        form_value=ctx.form_value,
        external_data=ctx.external_data,
        root_form_value=ctx.root_form_value,
    )
    try:
        return _normalize_result(func(vctx, dict(validator.params)), validator.kind)
    except Exception:
        logger.warning(
            "validator_function_failed field=%s slot=%s name=%s",
            ctx.field_path,
            slot,
            validator.function_name,
            exc_info=True,
        )
        return []


def _run_http(
    validator: HttpValidator,
    ctx: EvaluationContext,
    slot: str,
    outcome: ValidationOutcome,
) -> List[ValidationError]:
    if ctx.resolve_http is None:
        outcome.pending = True
        return []
    result = ctx.resolve_http(validator.http, slot, ctx.bindings())
    if result.status == "pending":
        outcome.pending = True
        return []
    if result.status == "error":
        outcome.async_error = True
        return []
    if result.status != "resolved":
        return []
    if validator.valid_when is None:
        valid = expression_eval.is_truthy(result.response)
    else:
        try:
            valid = expression_eval.eval_truthy(
                validator.valid_when, {"response": result.response}, ctx.clock
            )
        except expression_eval.ExpressionError as exc:
            logger.warning(
                "validator_response_expression_failed field=%s slot=%s code=%s error=%s",
                ctx.field_path,
                slot,
                exc.code,
                exc.message,
            )
            return []
    return [] if valid else [ValidationError(validator.error_kind)]


def _guard(validator: Validator, ctx: EvaluationContext, slot: str, outcome: ValidationOutcome) -> bool:
    if validator.when is None:
        return True
    result = eval_condition(validator.when, ctx, f"{slot}.when")
    if is_pending(result):
        outcome.pending = True
    return settle(result)


def resolve_errors(
    validators: List[Validator],
    directives: FieldDirectives,
    ctx: EvaluationContext,
    registry: Any = None,
) -> ValidationOutcome:
    """Evaluate validators in declaration order.

    A failing ``required`` (validator or directive) suppresses the value-shape
    validators. Built-ins skip empty values. HTTP validators add no error while
    pending or failed and flag the outcome instead.
    """
    outcome = ValidationOutcome()
    value = ctx.field_value
    empty = is_empty(value)
    ordered: List[Tuple[int, ValidationError]] = []

    active: List[Tuple[int, Validator]] = []
    required_failed = False
    for idx, validator in enumerate(validators):
        if not _guard(validator, ctx, f"validators[{idx}]", outcome):
            continue
        if isinstance(validator, RequiredValidator):
            if empty and not required_failed:
                ordered.append((idx, ValidationError("required")))
                required_failed = True
            continue
        active.append((idx, validator))

    if directives.required and empty and not required_failed:
        ordered.append((-1, ValidationError("required")))
        required_failed = True

    if not required_failed:
        for idx, validator in active:
            slot = f"validators[{idx}]"
            if isinstance(validator, CustomValidator):
                errors = _run_custom(validator, ctx, slot, registry)
            elif isinstance(validator, HttpValidator):
                errors = [] if empty else _run_http(validator, ctx, slot, outcome)
            else:
                error = _check_builtin(validator, value)
                errors = [error] if error is not None else []
            ordered.extend((idx, error) for error in errors)

    ordered.sort(key=lambda item: item[0])
    outcome.errors = [error for _, error in ordered]
    return outcome


def resolve_message(
    error: ValidationError,
    field_messages: Dict[str, str],
    form_messages: Dict[str, str],
    format_message: Callable[[str, Dict[str, Any]], str],
) -> str:
    template = field_messages.get(error.kind)
    if template is None:
        template = form_messages.get(error.kind)
    if template is None:
        return error.message or error.kind
    return format_message(template, error.params)

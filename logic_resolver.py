"""Merge static field flags with conditional logic rules into directives."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, Union

from condition_eval import (
    Condition,
    ConditionResult,
    EvaluationContext,
    Pending,
    eval_condition,
    settle,
)

DIRECTIVES = ("hidden", "disabled", "required", "readonly")

FORM_SUBMITTING = "formSubmitting"
FORM_INVALID = "formInvalid"
FORM_PENDING = "formPending"
FORM_STATE_ALIASES = {FORM_SUBMITTING, FORM_INVALID, FORM_PENDING}

# aliases read whole-form state; only these directives may use them
ALIAS_DIRECTIVES = {"hidden", "disabled"}


@dataclass(frozen=True)
class FieldDirectives:
    hidden: bool = False
    disabled: bool = False
    required: bool = False
    readonly: bool = False

    def as_dict(self) -> Dict[str, bool]:
        return asdict(self)


@dataclass
class LogicRule:
    type: str
    condition: Union[bool, str, Condition]

    @property
    def alias(self) -> str | None:
        return self.condition if isinstance(self.condition, str) else None

    @property
    def slot(self) -> str:
        return f"logic.{self.type}"


@dataclass(frozen=True)
class DirectiveResolution:
    directives: FieldDirectives
    pending: bool = False


def evaluate_rule(rule: LogicRule, ctx: EvaluationContext) -> ConditionResult:
    condition: Any = rule.condition
    if isinstance(condition, bool):
        return condition
    if isinstance(condition, str):
        return bool(ctx.form_state.get(condition, False))
    return eval_condition(condition, ctx, rule.slot)


def resolve_directives(
    static: FieldDirectives,
    rules: Iterable[LogicRule],
    ctx: EvaluationContext,
) -> DirectiveResolution:
    """Static ``true`` always wins; a rule can only raise a directive to ``true``.

    Pending rules contribute their fallback value until their task settles.
    """
    values = static.as_dict()
    pending = False
    for rule in rules:
        if values[rule.type]:
            continue
        result = evaluate_rule(rule, ctx)
        if isinstance(result, Pending):
            pending = True
        if settle(result):
            values[rule.type] = True
    return DirectiveResolution(FieldDirectives(**values), pending)

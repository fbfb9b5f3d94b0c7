"""Static dependency extraction and the field dependency index."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterable, List, Set

import expression_eval
from condition_eval import (
    AndCondition,
    ExpressionCondition,
    FieldValueCondition,
    FormValueCondition,
    HttpCondition,
    HttpRequestSpec,
    OrCondition,
)
from dynform.field_path import format_path, is_related, parse_path
from logic_resolver import LogicRule
from validator_resolver import CustomValidator, HttpValidator

WHOLE_FORM = "*"

_FORM_REF_RE = re.compile(r"\b(?:rootF|f)ormValue((?:\.[A-Za-z_$][\w$]*)+)")
_EXTERNAL_REF_RE = re.compile(r"\bexternalData\.([A-Za-z_$][\w$]*)")


@dataclass(frozen=True)
class Dependencies:
    form_paths: FrozenSet[str] = frozenset()
    external_keys: FrozenSet[str] = frozenset()
    form_state: FrozenSet[str] = frozenset()

    def union(self, *others: "Dependencies") -> "Dependencies":
        form_paths = set(self.form_paths)
        external_keys = set(self.external_keys)
        form_state = set(self.form_state)
        for other in others:
            form_paths |= other.form_paths
            external_keys |= other.external_keys
            form_state |= other.form_state
        return Dependencies(frozenset(form_paths), frozenset(external_keys), frozenset(form_state))

    @property
    def whole_form(self) -> bool:
        return WHOLE_FORM in self.form_paths

    def as_dict(self) -> Dict[str, List[str]]:
        return {
            "form_paths": sorted(self.form_paths),
            "external_keys": sorted(self.external_keys),
            "form_state": sorted(self.form_state),
        }


EMPTY = Dependencies()


def _strip_length(props: tuple) -> tuple:
    # "items.length" changes whenever "items" does
    if props and props[-1] == "length":
        return props[:-1]
    return props


def _scan_expression(expression: str, field_path: str | None) -> Dependencies:
    paths: Set[str] = {WHOLE_FORM}
    for match in _FORM_REF_RE.finditer(expression):
        paths.add(match.group(1)[1:])
    if field_path and "fieldValue" in expression:
        paths.add(field_path)
    keys = {match.group(1) for match in _EXTERNAL_REF_RE.finditer(expression)}
    if "externalData" in expression:
        keys.add(WHOLE_FORM)
    return Dependencies(frozenset(paths), frozenset(keys))


def expression_dependencies(expression: str, field_path: str | None = None) -> Dependencies:
    """Form paths and external keys an expression reads.

    Unparseable expressions fall back to a textual scan plus the whole form.
    """
    try:
        refs = expression_eval.collect_references(expression)
    except expression_eval.ExpressionError:
        return _scan_expression(expression, field_path)
    paths: Set[str] = set()
    keys: Set[str] = set()
    for root, props in refs:
        props = _strip_length(props)
        if root in ("formValue", "rootFormValue"):
            paths.add(format_path(props) or WHOLE_FORM)
        elif root == "fieldValue":
            if field_path:
                paths.add(field_path)
        elif root == "externalData":
            keys.add(str(props[0]) if props else WHOLE_FORM)
    return Dependencies(frozenset(paths), frozenset(keys))


def http_dependencies(spec: HttpRequestSpec, field_path: str | None = None) -> Dependencies:
    deps = Dependencies(frozenset(spec.depends_on))
    for expr in list(spec.params.values()) + list(spec.query_params.values()):
        deps = deps.union(expression_dependencies(expr, field_path))
    return deps


def condition_dependencies(condition: Any, field_path: str | None = None) -> Dependencies:
    if condition is None or isinstance(condition, bool):
        return EMPTY
    if isinstance(condition, str):
        return Dependencies(form_state=frozenset({condition}))
    if isinstance(condition, FieldValueCondition):
        return Dependencies(frozenset({condition.field_path}))
    if isinstance(condition, FormValueCondition):
        return Dependencies(frozenset({WHOLE_FORM}))
    if isinstance(condition, ExpressionCondition):
        return expression_dependencies(condition.expression, field_path)
    if isinstance(condition, HttpCondition):
        return http_dependencies(condition.http, field_path)
    if isinstance(condition, (AndCondition, OrCondition)):
        return EMPTY.union(*(condition_dependencies(c, field_path) for c in condition.conditions))
    raise TypeError(f"Unknown condition: {type(condition).__name__}")


def rule_dependencies(rule: LogicRule, field_path: str | None = None) -> Dependencies:
    return condition_dependencies(rule.condition, field_path)


def validator_dependencies(validator: Any, field_path: str) -> Dependencies:
    deps = Dependencies(frozenset({field_path})).union(
        condition_dependencies(validator.when, field_path)
    )
    if isinstance(validator, CustomValidator):
        if validator.expression is not None:
            deps = deps.union(expression_dependencies(validator.expression, field_path))
            for expr in validator.error_params.values():
                deps = deps.union(expression_dependencies(expr, field_path))
        else:
            # registered functions may read anything
            deps = deps.union(Dependencies(frozenset({WHOLE_FORM}), frozenset({WHOLE_FORM})))
    elif isinstance(validator, HttpValidator):
        deps = deps.union(http_dependencies(validator.http, field_path))
    return deps


def field_dependencies(field_path: str, rules: Iterable[LogicRule], validators: Iterable[Any]) -> Dependencies:
    deps = Dependencies(frozenset({field_path}))
    for rule in rules:
        deps = deps.union(rule_dependencies(rule, field_path))
    for validator in validators:
        deps = deps.union(validator_dependencies(validator, field_path))
    return deps


def item_dependencies(deps: Dependencies, array_path: str, index: int) -> Dependencies:
    """Re-root the item-relative paths of a field inside an array item.

    Each path is kept at the root as well, since lookups fall back there.
    """
    prefix = parse_path(array_path) + (index,)
    paths: Set[str] = set()
    for path in deps.form_paths:
        if path != WHOLE_FORM:
            paths.add(format_path(prefix + parse_path(path)))
        paths.add(path)
    return Dependencies(frozenset(paths), deps.external_keys, deps.form_state)


def affects(
    deps: Dependencies,
    changed_paths: Iterable[str] = (),
    changed_keys: Iterable[str] = (),
    changed_state: Iterable[str] = (),
) -> bool:
    """True when any change touches the dependency set.

    Paths match on equality or prefix in either direction; the root path and
    ``*`` touch everything.
    """
    for changed in changed_paths:
        if deps.form_paths and (changed == WHOLE_FORM or deps.whole_form):
            return True
        for path in deps.form_paths:
            if is_related(path, changed):
                return True
    for key in changed_keys:
        if deps.external_keys and (key == WHOLE_FORM or WHOLE_FORM in deps.external_keys):
            return True
        if key in deps.external_keys:
            return True
    for name in changed_state:
        if name in deps.form_state:
            return True
    return False


def _head(path: str) -> Any:
    segments = parse_path(path)
    return segments[0] if segments else None


class DependencyIndex:
    """Maps dependency heads to the fields that read them."""

    def __init__(self) -> None:
        self._deps: Dict[str, Dependencies] = {}
        self._order: Dict[str, int] = {}
        self._seq = 0
        self._by_head: Dict[Any, Set[str]] = {}
        self._broad: Set[str] = set()

    def add(self, field_path: str, deps: Dependencies) -> None:
        self.remove(field_path)
        self._deps[field_path] = deps
        self._order[field_path] = self._seq
        self._seq += 1
        for path in deps.form_paths:
            head = None if path == WHOLE_FORM else _head(path)
            if head is None:
                self._broad.add(field_path)
            else:
                self._by_head.setdefault(head, set()).add(field_path)

    def remove(self, field_path: str) -> bool:
        deps = self._deps.pop(field_path, None)
        if deps is None:
            return False
        self._order.pop(field_path, None)
        self._broad.discard(field_path)
        for fields in self._by_head.values():
            fields.discard(field_path)
        return True

    def dependencies(self, field_path: str) -> Dependencies | None:
        return self._deps.get(field_path)

    def fields(self) -> List[str]:
        return sorted(self._deps, key=self._order.__getitem__)

    def impacted(
        self,
        changed_paths: Iterable[str] = (),
        changed_keys: Iterable[str] = (),
        changed_state: Iterable[str] = (),
    ) -> List[str]:
        """Fields touched by a change, each once, in registration order."""
        changed_paths = list(changed_paths)
        changed_keys = list(changed_keys)
        changed_state = list(changed_state)
        candidates: Set[str] = set()
        for changed in changed_paths:
            head = None if changed == WHOLE_FORM else _head(changed)
            if head is None:
                candidates.update(self._deps)
                break
            candidates.update(self._by_head.get(head, ()))
            candidates.update(self._broad)
        if changed_keys or changed_state:
            candidates.update(self._deps)
        out = [
            field_path
            for field_path in candidates
            if affects(self._deps[field_path], changed_paths, changed_keys, changed_state)
        ]
        return sorted(out, key=self._order.__getitem__)

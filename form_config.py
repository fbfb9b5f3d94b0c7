"""Form configuration parsing with eager validation of logic and validators."""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from typing import Any, Container, Dict, List, Tuple

import expression_eval
from async_tasks import url_placeholders
from condition_eval import (
    DEFAULT_DEPTH_LIMIT,
    OPERATORS,
    AndCondition,
    Condition,
    ExpressionCondition,
    FieldValueCondition,
    FormValueCondition,
    HttpCondition,
    HttpRequestSpec,
    OrCondition,
)
from dynform.field_path import FieldPathError, format_path, join_path, parse_path
from logic_resolver import (
    ALIAS_DIRECTIVES,
    DIRECTIVES,
    FORM_STATE_ALIASES,
    FieldDirectives,
    LogicRule,
)
from validator_resolver import (
    CustomValidator,
    EmailValidator,
    HttpValidator,
    MaxLengthValidator,
    MaxValidator,
    MinLengthValidator,
    MinValidator,
    PatternValidator,
    RequiredValidator,
    Validator,
)

Issue = Dict[str, Any]

CONDITION_TYPES = {"fieldValue", "formValue", "custom", "javascript", "http", "and", "or"}
VALIDATOR_TYPES = {"required", "email", "min", "max", "minLength", "maxLength", "pattern", "custom", "http"}
HTTP_METHODS = {"GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"}
GROUP_TYPES = {"group"}
CONTAINER_TYPES = {"row", "page", "fieldset", "panel"}
ARRAY_TYPES = {"array"}

ALLOWED_CONDITION_KEYS = {
    "fieldValue": {"type", "fieldPath", "operator", "value"},
    "formValue": {"type", "operator", "value"},
    "custom": {"type", "expression"},
    "javascript": {"type", "expression"},
    "http": {"type", "http", "responseExpression", "pendingValue"},
    "and": {"type", "conditions"},
    "or": {"type", "conditions"},
}
ALLOWED_HTTP_KEYS = {"url", "method", "params", "queryParams", "headers", "dependsOn", "debounceMs"}
ALLOWED_RULE_KEYS = {"type", "condition"}


@dataclass
class ConfigError(Exception):
    message: str
    issues: List[Issue] = field(default_factory=list)
    code: str = "FORM_CONFIG_INVALID"

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        first = self.issues[0] if self.issues else None
        if first is None:
            return f"{self.code}: {self.message}"
        return f"{self.code}: {self.message} ({first['code']} at {first['path']})"


@dataclass
class FieldSpec:
    path: str
    key: str
    type: str | None = None
    static: FieldDirectives = field(default_factory=FieldDirectives)
    logic: List[LogicRule] = field(default_factory=list)
    validators: List[Validator] = field(default_factory=list)
    validation_messages: Dict[str, str] = field(default_factory=dict)
    # array fields: templates with item-relative paths
    item_fields: List["FieldSpec"] = field(default_factory=list)
    # array item instances
    array_path: str | None = None
    array_index: int | None = None
    item_path: str | None = None

    @property
    def uses_form_state(self) -> bool:
        return any(rule.alias is not None for rule in self.logic)

    @property
    def is_array(self) -> bool:
        return self.type in ARRAY_TYPES

    def for_item(self, array_path: str, index: int) -> "FieldSpec":
        """Concrete copy of an item template for ``array_path[index]``."""
        path = format_path(parse_path(array_path) + (index,) + parse_path(self.path))
        return replace(self, path=path, array_path=array_path, array_index=index, item_path=self.path)


@dataclass
class FormSpec:
    fields: List[FieldSpec] = field(default_factory=list)
    default_validation_messages: Dict[str, str] = field(default_factory=dict)

    def field(self, path: str) -> FieldSpec | None:
        for spec in self.fields:
            if spec.path == path:
                return spec
        return None

    def paths(self) -> List[str]:
        return [spec.path for spec in self.fields]


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


def _get(obj: dict, key: str, default=None):
    return obj.get(key, default) if isinstance(obj, dict) else default


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _string_map(errors: List[Issue], raw: Any, path: str) -> Dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, dict) or not all(isinstance(k, str) and isinstance(v, str) for k, v in raw.items()):
        errors.append(_issue("FORM_MAP_INVALID", "expected an object of strings", path))
        return {}
    return dict(raw)


class _FormParser:
    def __init__(self, function_names: Container[str] | None) -> None:
        self.function_names = function_names
        self.errors: List[Issue] = []
        self.warnings: List[Issue] = []

    def _reject_unknown_keys(self, obj: dict, allowed: set, path: str) -> None:
        for key in obj.keys():
            if key not in allowed:
                self.warnings.append(_issue("FORM_UNKNOWN_KEY", f"Unknown key: {key}", f"{path}.{key}"))

    def expression(self, raw: Any, path: str) -> str | None:
        if not isinstance(raw, str) or not raw.strip():
            self.errors.append(_issue("EXPRESSION_MISSING", "expression must be a non-empty string", path))
            return None
        try:
            expression_eval.parse_expression(raw)
        except expression_eval.ExpressionError as exc:
            self.errors.append(
                _issue(
                    "EXPRESSION_INVALID",
                    exc.message,
                    path,
                    {"code": exc.code, "position": exc.position},
                )
            )
            return None
        return raw

    def expression_map(self, raw: Any, path: str) -> Dict[str, str]:
        if raw is None:
            return {}
        if not isinstance(raw, dict):
            self.errors.append(_issue("FORM_MAP_INVALID", "expected an object of expressions", path))
            return {}
        out: Dict[str, str] = {}
        for name, expr in raw.items():
            checked = self.expression(expr, f"{path}.{name}")
            if checked is not None:
                out[str(name)] = checked
        return out

    def field_path(self, raw: Any, path: str) -> str | None:
        if not isinstance(raw, str) or not raw:
            self.errors.append(_issue("FIELD_PATH_MISSING", "fieldPath must be a non-empty string", path))
            return None
        try:
            parse_path(raw)
        except FieldPathError as exc:
            self.errors.append(_issue("FIELD_PATH_INVALID", exc.message, path, {"position": exc.position}))
            return None
        return raw

    # -- conditions ----------------------------------------------------

    def http(self, raw: Any, path: str) -> HttpRequestSpec | None:
        if not isinstance(raw, dict):
            self.errors.append(_issue("HTTP_CONFIG_INVALID", "http must be an object", path))
            return None
        self._reject_unknown_keys(raw, ALLOWED_HTTP_KEYS, path)
        url = raw.get("url")
        if not isinstance(url, str) or not url.strip():
            self.errors.append(_issue("HTTP_URL_MISSING", "http.url must be a non-empty string", f"{path}.url"))
            return None
        method = raw.get("method", "GET")
        if not isinstance(method, str) or method.upper() not in HTTP_METHODS:
            self.errors.append(_issue("HTTP_METHOD_INVALID", f"Unsupported method: {method}", f"{path}.method"))
            return None
        raw_params = raw.get("params") or {}
        params = self.expression_map(raw_params, f"{path}.params")
        if isinstance(raw_params, dict):
            placeholders = set(url_placeholders(url))
            missing = sorted(placeholders - set(raw_params))
            unused = sorted(set(raw_params) - placeholders)
            if missing or unused:
                self.errors.append(
                    _issue(
                        "HTTP_PARAM_MISMATCH",
                        "url placeholders and params must match",
                        f"{path}.params",
                        {"missing": missing, "unused": unused},
                    )
                )
        depends_on = raw.get("dependsOn") or []
        if not isinstance(depends_on, list):
            self.errors.append(_issue("HTTP_DEPENDS_ON_INVALID", "dependsOn must be a list", f"{path}.dependsOn"))
            depends_on = []
        checked_deps = []
        for idx, dep in enumerate(depends_on):
            checked = self.field_path(dep, f"{path}.dependsOn[{idx}]")
            if checked is not None:
                checked_deps.append(checked)
        debounce = raw.get("debounceMs")
        if debounce is not None and (not isinstance(debounce, int) or isinstance(debounce, bool) or debounce < 0):
            self.errors.append(_issue("HTTP_DEBOUNCE_INVALID", "debounceMs must be a non-negative integer", f"{path}.debounceMs"))
            debounce = None
        return HttpRequestSpec(
            url=url,
            method=method.upper(),
            params=params,
            query_params=self.expression_map(raw.get("queryParams"), f"{path}.queryParams"),
            headers=_string_map(self.errors, raw.get("headers"), f"{path}.headers"),
            depends_on=checked_deps,
            debounce_ms=debounce,
        )

    def condition(self, raw: Any, path: str, depth: int = 1) -> Condition | None:
        if depth > DEFAULT_DEPTH_LIMIT:
            self.errors.append(_issue("CONDITION_DEPTH", "condition is nested too deeply", path))
            return None
        if not isinstance(raw, dict):
            self.errors.append(_issue("CONDITION_INVALID", "condition must be an object", path))
            return None
        ctype = raw.get("type")
        if ctype not in CONDITION_TYPES:
            self.errors.append(_issue("CONDITION_TYPE_UNKNOWN", f"Unknown condition type: {ctype}", f"{path}.type"))
            return None
        self._reject_unknown_keys(raw, ALLOWED_CONDITION_KEYS[ctype], path)

        if ctype in ("fieldValue", "formValue"):
            operator = raw.get("operator")
            if operator not in OPERATORS:
                self.errors.append(_issue("CONDITION_OPERATOR_UNKNOWN", f"Unknown operator: {operator}", f"{path}.operator"))
                return None
            value = raw.get("value")
            if operator == "matches":
                if not isinstance(value, str):
                    self.errors.append(_issue("CONDITION_PATTERN_INVALID", "matches needs a string pattern", f"{path}.value"))
                    return None
                try:
                    re.compile(value)
                except re.error as exc:
                    self.errors.append(_issue("CONDITION_PATTERN_INVALID", str(exc), f"{path}.value"))
                    return None
            if ctype == "formValue":
                return FormValueCondition(operator=operator, value=value)
            field_path = self.field_path(raw.get("fieldPath"), f"{path}.fieldPath")
            if field_path is None:
                return None
            return FieldValueCondition(field_path=field_path, operator=operator, value=value)

        if ctype in ("custom", "javascript"):
            expression = self.expression(raw.get("expression"), f"{path}.expression")
            if expression is None:
                return None
            return ExpressionCondition(expression=expression, kind=ctype)

        if ctype == "http":
            spec = self.http(raw.get("http"), f"{path}.http")
            response_expression = raw.get("responseExpression")
            if response_expression is not None:
                response_expression = self.expression(response_expression, f"{path}.responseExpression")
            pending_value = raw.get("pendingValue", False)
            if not isinstance(pending_value, bool):
                self.errors.append(_issue("CONDITION_PENDING_VALUE_INVALID", "pendingValue must be boolean", f"{path}.pendingValue"))
                return None
            if spec is None:
                return None
            return HttpCondition(http=spec, response_expression=response_expression, pending_value=pending_value)

        children = raw.get("conditions")
        if not isinstance(children, list) or not children:
            self.errors.append(_issue("CONDITION_CHILDREN_EMPTY", f"{ctype} needs at least one condition", f"{path}.conditions"))
            return None
        parsed = [self.condition(child, f"{path}.conditions[{idx}]", depth + 1) for idx, child in enumerate(children)]
        if any(child is None for child in parsed):
            return None
        if ctype == "and":
            return AndCondition(conditions=parsed)
        return OrCondition(conditions=parsed)

    # -- logic ---------------------------------------------------------

    def logic(self, raw: Any, path: str) -> List[LogicRule]:
        if raw is None:
            return []
        if not isinstance(raw, list):
            self.errors.append(_issue("LOGIC_INVALID", "logic must be a list", path))
            return []
        rules: List[LogicRule] = []
        seen: set = set()
        for idx, item in enumerate(raw):
            item_path = f"{path}[{idx}]"
            if not isinstance(item, dict):
                self.errors.append(_issue("LOGIC_INVALID", "logic rule must be an object", item_path))
                continue
            self._reject_unknown_keys(item, ALLOWED_RULE_KEYS, item_path)
            rtype = item.get("type")
            if rtype not in DIRECTIVES:
                self.errors.append(_issue("LOGIC_TYPE_UNKNOWN", f"Unknown logic type: {rtype}", f"{item_path}.type"))
                continue
            if rtype in seen:
                self.errors.append(_issue("LOGIC_DUPLICATE_TYPE", f"Duplicate logic rule for {rtype}", f"{item_path}.type"))
                continue
            seen.add(rtype)
            raw_condition = item.get("condition")
            cond_path = f"{item_path}.condition"
            if isinstance(raw_condition, bool):
                rules.append(LogicRule(rtype, raw_condition))
                continue
            if isinstance(raw_condition, str):
                if raw_condition not in FORM_STATE_ALIASES:
                    self.errors.append(_issue("LOGIC_ALIAS_UNKNOWN", f"Unknown condition alias: {raw_condition}", cond_path))
                    continue
                if rtype not in ALIAS_DIRECTIVES:
                    self.errors.append(
                        _issue(
                            "LOGIC_ALIAS_UNSUPPORTED",
                            f"{raw_condition} is only allowed on hidden/disabled rules",
                            cond_path,
                        )
                    )
                    continue
                rules.append(LogicRule(rtype, raw_condition))
                continue
            condition = self.condition(raw_condition, cond_path)
            if condition is not None:
                rules.append(LogicRule(rtype, condition))
        return rules

    # -- validators ----------------------------------------------------

    def _bound(self, raw: dict, path: str, integer: bool) -> Any:
        value = raw.get("value")
        if not _is_number(value) or (integer and (not isinstance(value, int) or value < 0)):
            kind = "a non-negative integer" if integer else "a number"
            self.errors.append(_issue("VALIDATOR_VALUE_INVALID", f"value must be {kind}", f"{path}.value"))
            return None
        return value

    def validator(self, raw: Any, path: str) -> Validator | None:
        if not isinstance(raw, dict):
            self.errors.append(_issue("VALIDATOR_INVALID", "validator must be an object", path))
            return None
        vtype = raw.get("type")
        if vtype not in VALIDATOR_TYPES:
            self.errors.append(_issue("VALIDATOR_TYPE_UNKNOWN", f"Unknown validator type: {vtype}", f"{path}.type"))
            return None
        when = None
        if raw.get("when") is not None:
            when = self.condition(raw.get("when"), f"{path}.when")
            if when is None:
                return None

        if vtype == "required":
            return RequiredValidator(when=when)
        if vtype == "email":
            return EmailValidator(when=when)
        if vtype in ("min", "max"):
            value = self._bound(raw, path, integer=False)
            if value is None:
                return None
            cls = MinValidator if vtype == "min" else MaxValidator
            return cls(value=value, when=when)
        if vtype in ("minLength", "maxLength"):
            value = self._bound(raw, path, integer=True)
            if value is None:
                return None
            cls = MinLengthValidator if vtype == "minLength" else MaxLengthValidator
            return cls(value=value, when=when)
        if vtype == "pattern":
            pattern = raw.get("pattern", raw.get("value"))
            if not isinstance(pattern, str):
                self.errors.append(_issue("VALIDATOR_PATTERN_INVALID", "pattern must be a string", f"{path}.pattern"))
                return None
            try:
                re.compile(pattern)
            except re.error as exc:
                self.errors.append(_issue("VALIDATOR_PATTERN_INVALID", str(exc), f"{path}.pattern"))
                return None
            return PatternValidator(pattern=pattern, when=when)
        if vtype == "custom":
            return self._custom(raw, path, when)
        return self._http_validator(raw, path, when)

    def _custom(self, raw: dict, path: str, when: Condition | None) -> CustomValidator | None:
        kind = raw.get("kind", "custom")
        if not isinstance(kind, str) or not kind:
            self.errors.append(_issue("VALIDATOR_KIND_INVALID", "kind must be a non-empty string", f"{path}.kind"))
            return None
        params = raw.get("params") or {}
        if not isinstance(params, dict):
            self.errors.append(_issue("VALIDATOR_PARAMS_INVALID", "params must be an object", f"{path}.params"))
            return None
        if raw.get("expression") is not None:
            expression = self.expression(raw.get("expression"), f"{path}.expression")
            if expression is None:
                return None
            return CustomValidator(
                expression=expression,
                kind=kind,
                params=dict(params),
                error_params=self.expression_map(raw.get("errorParams"), f"{path}.errorParams"),
                when=when,
            )
        name = raw.get("functionName")
        if not isinstance(name, str) or not name:
            self.errors.append(
                _issue("CUSTOM_VALIDATOR_TARGET_MISSING", "custom validator needs expression or functionName", path)
            )
            return None
        if self.function_names is not None and name not in self.function_names:
            self.errors.append(
                _issue("VALIDATOR_FUNCTION_UNKNOWN", f"No registered validator named {name}", f"{path}.functionName")
            )
            return None
        return CustomValidator(function_name=name, kind=kind, params=dict(params), when=when)

    def _http_validator(self, raw: dict, path: str, when: Condition | None) -> HttpValidator | None:
        spec = self.http(raw.get("http"), f"{path}.http")
        mapping = raw.get("responseMapping") or {}
        if not isinstance(mapping, dict):
            self.errors.append(_issue("VALIDATOR_MAPPING_INVALID", "responseMapping must be an object", f"{path}.responseMapping"))
            return None
        valid_when = mapping.get("validWhen")
        if valid_when is not None:
            valid_when = self.expression(valid_when, f"{path}.responseMapping.validWhen")
            if valid_when is None:
                return None
        error_kind = mapping.get("errorKind", "http")
        if not isinstance(error_kind, str) or not error_kind:
            self.errors.append(_issue("VALIDATOR_KIND_INVALID", "errorKind must be a non-empty string", f"{path}.responseMapping.errorKind"))
            return None
        if spec is None:
            return None
        return HttpValidator(http=spec, valid_when=valid_when, error_kind=error_kind, when=when)

    # -- fields --------------------------------------------------------

    def fields(
        self,
        raw: Any,
        prefix: str,
        path: str,
        out: List[FieldSpec],
        seen: Dict[str, str],
        in_array: bool = False,
    ) -> None:
        if not isinstance(raw, list):
            self.errors.append(_issue("FORM_FIELDS_INVALID", "fields must be a list", path))
            return
        for idx, item in enumerate(raw):
            item_path = f"{path}[{idx}]"
            if not isinstance(item, dict):
                self.errors.append(_issue("FIELD_INVALID", "field must be an object", item_path))
                continue
            ftype = item.get("type")
            key = item.get("key")
            children = item.get("fields")
            # layout containers never own a value, keyed or not
            if ftype in CONTAINER_TYPES or (
                key is None and children is not None and ftype not in GROUP_TYPES and ftype not in ARRAY_TYPES
            ):
                self.fields(children or [], prefix, f"{item_path}.fields", out, seen, in_array)
                continue
            if not isinstance(key, str) or not key:
                self.errors.append(_issue("FIELD_KEY_MISSING", "field key must be a non-empty string", f"{item_path}.key"))
                continue
            field_path = join_path(prefix, key)
            try:
                parse_path(field_path)
            except FieldPathError as exc:
                self.errors.append(_issue("FIELD_KEY_INVALID", exc.message, f"{item_path}.key"))
                continue
            if field_path in seen:
                self.errors.append(
                    _issue("FIELD_KEY_DUPLICATE", f"Duplicate field path: {field_path}", f"{item_path}.key", {"first": seen[field_path]})
                )
                continue
            seen[field_path] = item_path
            spec = self.field(item, field_path, key, item_path)
            out.append(spec)
            if ftype in ARRAY_TYPES:
                if in_array:
                    self.errors.append(_issue("ARRAY_NESTED", "arrays cannot be nested inside array items", f"{item_path}.type"))
                    continue
                self.fields(children or [], "", f"{item_path}.fields", spec.item_fields, {}, True)
                continue
            if children is not None:
                self.fields(children, field_path, f"{item_path}.fields", out, seen, in_array)

    def field(self, raw: dict, field_path: str, key: str, path: str) -> FieldSpec:
        flags: Dict[str, bool] = {}
        for name in DIRECTIVES:
            value = raw.get(name, False)
            if not isinstance(value, bool):
                self.errors.append(_issue("FIELD_FLAG_INVALID", f"{name} must be boolean", f"{path}.{name}"))
                value = False
            flags[name] = value
        validators: List[Validator] = []
        raw_validators = raw.get("validators") or []
        if not isinstance(raw_validators, list):
            self.errors.append(_issue("VALIDATORS_INVALID", "validators must be a list", f"{path}.validators"))
            raw_validators = []
        for idx, item in enumerate(raw_validators):
            validator = self.validator(item, f"{path}.validators[{idx}]")
            if validator is not None:
                validators.append(validator)
        return FieldSpec(
            path=field_path,
            key=key,
            type=raw.get("type"),
            static=FieldDirectives(**flags),
            logic=self.logic(raw.get("logic"), f"{path}.logic"),
            validators=validators,
            validation_messages=_string_map(self.errors, raw.get("validationMessages"), f"{path}.validationMessages"),
        )


def validate_form_config(raw: Any, function_names: Container[str] | None = None) -> Tuple[List[Issue], List[Issue]]:
    _, errors, warnings = _parse(raw, function_names)
    return errors, warnings


def _parse(raw: Any, function_names: Container[str] | None) -> Tuple[FormSpec, List[Issue], List[Issue]]:
    parser = _FormParser(function_names)
    form = FormSpec()
    if not isinstance(raw, dict):
        parser.errors.append(_issue("FORM_INVALID", "form config must be an object", None))
        return form, parser.errors, parser.warnings
    parser.fields(raw.get("fields") or [], "", "fields", form.fields, {})
    form.default_validation_messages = _string_map(
        parser.errors, raw.get("defaultValidationMessages"), "defaultValidationMessages"
    )
    return form, parser.errors, parser.warnings


def parse_form(raw: Any, function_names: Container[str] | None = None) -> FormSpec:
    """Parse a form config; raises ConfigError listing every problem found."""
    form, errors, _ = _parse(raw, function_names)
    if errors:
        raise ConfigError(f"{len(errors)} configuration error(s)", errors)
    return form

import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from condition_eval import AndCondition, ExpressionCondition, FieldValueCondition, HttpCondition
from form_config import ConfigError, parse_form, validate_form_config
from validator_resolver import CustomValidator, HttpValidator, MinLengthValidator, PatternValidator, RequiredValidator


def _form(*fields, **extra):
    return {"fields": list(fields), **extra}


def _codes(issues):
    return [issue["code"] for issue in issues]


class TestParseForm(unittest.TestCase):
    def test_parses_fields_logic_and_validators(self) -> None:
        form = parse_form(
            _form(
                {
                    "key": "email",
                    "required": True,
                    "logic": [
                        {"type": "hidden", "condition": {"type": "fieldValue", "fieldPath": "age", "operator": "less", "value": 18}},
                        {"type": "disabled", "condition": "formSubmitting"},
                    ],
                    "validators": [
                        {"type": "required"},
                        {"type": "minLength", "value": 3},
                        {"type": "pattern", "pattern": "[a-z@.]+"},
                    ],
                    "validationMessages": {"minLength": "Too short"},
                }
            )
        )
        spec = form.field("email")
        self.assertTrue(spec.static.required)
        self.assertIsInstance(spec.logic[0].condition, FieldValueCondition)
        self.assertEqual(spec.logic[1].alias, "formSubmitting")
        self.assertTrue(spec.uses_form_state)
        self.assertIsInstance(spec.validators[0], RequiredValidator)
        self.assertEqual(spec.validators[1], MinLengthValidator(3))
        self.assertEqual(spec.validators[2], PatternValidator("[a-z@.]+"))
        self.assertEqual(spec.validation_messages, {"minLength": "Too short"})

    def test_groups_prefix_paths_and_containers_do_not(self) -> None:
        form = parse_form(
            _form(
                {"key": "address", "type": "group", "fields": [{"key": "city"}, {"key": "zip"}]},
                {"type": "row", "fields": [{"key": "first"}, {"key": "last"}]},
            )
        )
        self.assertEqual(form.paths(), ["address", "address.city", "address.zip", "first", "last"])

    def test_keyed_containers_do_not_prefix_paths(self) -> None:
        form = parse_form(
            _form(
                {
                    "key": "page1",
                    "type": "page",
                    "fields": [
                        {"key": "row1", "type": "row", "fields": [{"key": "email", "validators": [{"type": "required"}]}]},
                        {"key": "contact", "type": "group", "fields": [{"key": "phone"}]},
                    ],
                },
                {"key": "page2", "type": "page", "fields": [{"key": "notes"}]},
            )
        )
        self.assertEqual(form.paths(), ["email", "contact", "contact.phone", "notes"])
        self.assertIsInstance(form.field("email").validators[0], RequiredValidator)

    def test_array_fields_keep_item_templates(self) -> None:
        form = parse_form(
            _form(
                {
                    "key": "addresses",
                    "type": "array",
                    "validators": [{"type": "minLength", "value": 1}],
                    "fields": [
                        {"key": "row", "type": "row", "fields": [{"key": "street"}]},
                        {
                            "key": "apartment",
                            "logic": [
                                {"type": "hidden", "condition": {"type": "fieldValue", "fieldPath": "hasApartment", "operator": "notEquals", "value": True}}
                            ],
                        },
                    ],
                }
            )
        )
        self.assertEqual(form.paths(), ["addresses"])
        spec = form.field("addresses")
        self.assertTrue(spec.is_array)
        self.assertEqual([item.path for item in spec.item_fields], ["street", "apartment"])
        item = spec.item_fields[1].for_item("addresses", 2)
        self.assertEqual(item.path, "addresses[2].apartment")
        self.assertEqual((item.array_path, item.array_index, item.item_path), ("addresses", 2, "apartment"))

    def test_http_and_custom_configs(self) -> None:
        form = parse_form(
            _form(
                {
                    "key": "username",
                    "logic": [
                        {
                            "type": "readonly",
                            "condition": {
                                "type": "and",
                                "conditions": [
                                    {"type": "custom", "expression": "externalData.locked"},
                                    {
                                        "type": "http",
                                        "http": {"url": "/api/flags/:id", "params": {"id": "formValue.userId"}},
                                        "responseExpression": "response.locked",
                                        "pendingValue": True,
                                    },
                                ],
                            },
                        }
                    ],
                    "validators": [
                        {"type": "custom", "functionName": "notReserved", "kind": "reserved"},
                        {
                            "type": "http",
                            "http": {"url": "/api/users/:name/available", "params": {"name": "fieldValue"}, "debounceMs": 500},
                            "responseMapping": {"validWhen": "response.available", "errorKind": "usernameTaken"},
                        },
                    ],
                }
            ),
            function_names={"notReserved"},
        )
        spec = form.field("username")
        cond = spec.logic[0].condition
        self.assertIsInstance(cond, AndCondition)
        self.assertIsInstance(cond.conditions[0], ExpressionCondition)
        self.assertIsInstance(cond.conditions[1], HttpCondition)
        self.assertTrue(cond.conditions[1].pending_value)
        self.assertEqual(cond.conditions[1].http.params, {"id": "formValue.userId"})
        self.assertEqual(spec.validators[0], CustomValidator(function_name="notReserved", kind="reserved"))
        http_validator = spec.validators[1]
        self.assertIsInstance(http_validator, HttpValidator)
        self.assertEqual(http_validator.error_kind, "usernameTaken")
        self.assertEqual(http_validator.http.debounce_ms, 500)

    def test_default_messages(self) -> None:
        form = parse_form(_form({"key": "a"}, defaultValidationMessages={"required": "Required"}))
        self.assertEqual(form.default_validation_messages, {"required": "Required"})


class TestConfigErrors(unittest.TestCase):
    def _errors(self, raw, **kwargs):
        errors, _ = validate_form_config(raw, **kwargs)
        return errors

    def test_parse_form_raises_with_every_issue(self) -> None:
        raw = _form(
            {"key": "a", "logic": [{"type": "hidden", "condition": {"type": "and", "conditions": []}}]},
            {"key": "b", "validators": [{"type": "bogus"}]},
        )
        with self.assertRaises(ConfigError) as ctx:
            parse_form(raw)
        self.assertEqual(_codes(ctx.exception.issues), ["CONDITION_CHILDREN_EMPTY", "VALIDATOR_TYPE_UNKNOWN"])
        self.assertEqual(ctx.exception.code, "FORM_CONFIG_INVALID")

    def test_expression_syntax_and_sandbox_errors(self) -> None:
        errors = self._errors(_form({"key": "a", "logic": [{"type": "hidden", "condition": {"type": "custom", "expression": "formValue.a +"}}]}))
        self.assertEqual(_codes(errors), ["EXPRESSION_INVALID"])
        self.assertEqual(errors[0]["detail"]["code"], "EXPR_SYNTAX_ERROR")
        errors = self._errors(_form({"key": "a", "logic": [{"type": "hidden", "condition": {"type": "custom", "expression": "formValue.a = 1"}}]}))
        self.assertEqual(errors[0]["detail"]["code"], "EXPR_PROHIBITED")

    def test_http_problems(self) -> None:
        def _http(http):
            return _form({"key": "a", "logic": [{"type": "hidden", "condition": {"type": "http", "http": http}}]})

        self.assertEqual(_codes(self._errors(_http({"method": "GET"}))), ["HTTP_URL_MISSING"])
        self.assertEqual(_codes(self._errors(_http({"url": "/x", "method": "BREW"}))), ["HTTP_METHOD_INVALID"])
        errors = self._errors(_http({"url": "/users/:id", "params": {"org": "formValue.org"}}))
        self.assertEqual(_codes(errors), ["HTTP_PARAM_MISMATCH"])
        self.assertEqual(errors[0]["detail"], {"missing": ["id"], "unused": ["org"]})
        self.assertEqual(_codes(self._errors(_http({"url": "/x", "debounceMs": -1}))), ["HTTP_DEBOUNCE_INVALID"])

    def test_logic_problems(self) -> None:
        cond = {"type": "fieldValue", "fieldPath": "x", "operator": "equals", "value": 1}
        errors = self._errors(_form({"key": "a", "logic": [{"type": "hidden", "condition": cond}, {"type": "hidden", "condition": True}]}))
        self.assertEqual(_codes(errors), ["LOGIC_DUPLICATE_TYPE"])
        errors = self._errors(_form({"key": "a", "logic": [{"type": "required", "condition": "formInvalid"}]}))
        self.assertEqual(_codes(errors), ["LOGIC_ALIAS_UNSUPPORTED"])
        errors = self._errors(_form({"key": "a", "logic": [{"type": "hidden", "condition": "formDirty"}]}))
        self.assertEqual(_codes(errors), ["LOGIC_ALIAS_UNKNOWN"])
        errors = self._errors(_form({"key": "a", "logic": [{"type": "visible", "condition": True}]}))
        self.assertEqual(_codes(errors), ["LOGIC_TYPE_UNKNOWN"])

    def test_condition_problems(self) -> None:
        def _cond(cond):
            return _form({"key": "a", "logic": [{"type": "hidden", "condition": cond}]})

        self.assertEqual(
            _codes(self._errors(_cond({"type": "fieldValue", "fieldPath": "x", "operator": "between"}))),
            ["CONDITION_OPERATOR_UNKNOWN"],
        )
        self.assertEqual(
            _codes(self._errors(_cond({"type": "fieldValue", "fieldPath": "x", "operator": "matches", "value": "["}))),
            ["CONDITION_PATTERN_INVALID"],
        )
        self.assertEqual(
            _codes(self._errors(_cond({"type": "fieldValue", "fieldPath": "a..b", "operator": "equals"}))),
            ["FIELD_PATH_INVALID"],
        )
        self.assertEqual(_codes(self._errors(_cond({"type": "script"}))), ["CONDITION_TYPE_UNKNOWN"])
        nested = {"type": "fieldValue", "fieldPath": "x", "operator": "equals", "value": 1}
        for _ in range(40):
            nested = {"type": "and", "conditions": [nested]}
        self.assertIn("CONDITION_DEPTH", _codes(self._errors(_cond(nested))))

    def test_validator_problems(self) -> None:
        def _validators(*validators):
            return _form({"key": "a", "validators": list(validators)})

        self.assertEqual(_codes(self._errors(_validators({"type": "minLength", "value": -1}))), ["VALIDATOR_VALUE_INVALID"])
        self.assertEqual(_codes(self._errors(_validators({"type": "min", "value": "x"}))), ["VALIDATOR_VALUE_INVALID"])
        self.assertEqual(_codes(self._errors(_validators({"type": "pattern", "pattern": "("}))), ["VALIDATOR_PATTERN_INVALID"])
        self.assertEqual(_codes(self._errors(_validators({"type": "custom"}))), ["CUSTOM_VALIDATOR_TARGET_MISSING"])
        errors = self._errors(_validators({"type": "custom", "functionName": "nope"}), function_names=set())
        self.assertEqual(_codes(errors), ["VALIDATOR_FUNCTION_UNKNOWN"])
        self.assertEqual(self._errors(_validators({"type": "custom", "functionName": "nope"})), [])

    def test_field_key_problems(self) -> None:
        errors = self._errors(_form({"key": "a"}, {"key": "a"}, {"type": "text"}))
        self.assertEqual(_codes(errors), ["FIELD_KEY_DUPLICATE", "FIELD_KEY_MISSING"])
        self.assertEqual(_codes(self._errors([])), ["FORM_INVALID"])

    def test_nested_arrays_are_rejected(self) -> None:
        raw = _form({"key": "teams", "type": "array", "fields": [{"key": "members", "type": "array", "fields": [{"key": "name"}]}]})
        errors = self._errors(raw)
        self.assertEqual(_codes(errors), ["ARRAY_NESTED"])
        self.assertEqual(errors[0]["path"], "fields[0].fields[0].type")

    def test_unknown_keys_are_warnings(self) -> None:
        raw = _form({"key": "a", "logic": [{"type": "hidden", "condition": {"type": "custom", "expression": "true", "extra": 1}}]})
        errors, warnings = validate_form_config(raw)
        self.assertEqual(errors, [])
        self.assertEqual(_codes(warnings), ["FORM_UNKNOWN_KEY"])
        self.assertEqual(warnings[0]["path"], "fields[0].logic[0].condition.extra")


if __name__ == "__main__":
    unittest.main()

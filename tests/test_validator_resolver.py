import os
import sys
import unittest
from types import SimpleNamespace


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.registry import FunctionRegistry
from condition_eval import EvaluationContext, FieldValueCondition, HttpRequestSpec
from logic_resolver import FieldDirectives
from validator_resolver import (
    CustomValidator,
    EmailValidator,
    HttpValidator,
    MaxLengthValidator,
    MinLengthValidator,
    MinValidator,
    PatternValidator,
    RequiredValidator,
    ValidationError,
    resolve_errors,
    resolve_message,
)


def _ctx(value, field_path="field", resolve_http=None, **form):
    form_value = dict(form)
    form_value[field_path] = value
    return EvaluationContext(form_value=form_value, field_path=field_path, resolve_http=resolve_http)


def _kinds(outcome):
    return [error.kind for error in outcome.errors]


class TestBuiltinValidators(unittest.TestCase):
    def test_required_suppresses_value_checks(self) -> None:
        validators = [RequiredValidator(), EmailValidator(), MinLengthValidator(3)]
        self.assertEqual(_kinds(resolve_errors(validators, FieldDirectives(), _ctx(""))), ["required"])
        self.assertEqual(_kinds(resolve_errors(validators, FieldDirectives(), _ctx(None))), ["required"])

    def test_email(self) -> None:
        validators = [RequiredValidator(), EmailValidator()]
        self.assertEqual(_kinds(resolve_errors(validators, FieldDirectives(), _ctx("a@b"))), [])
        self.assertEqual(_kinds(resolve_errors(validators, FieldDirectives(), _ctx("not-an-email"))), ["email"])

    def test_builtins_skip_empty_values(self) -> None:
        validators = [EmailValidator(), MinValidator(18), PatternValidator("[0-9]+")]
        self.assertEqual(_kinds(resolve_errors(validators, FieldDirectives(), _ctx(""))), [])

    def test_min_max_params(self) -> None:
        outcome = resolve_errors([MinValidator(18)], FieldDirectives(), _ctx(15))
        self.assertEqual(outcome.errors, [ValidationError("min", {"min": 18, "actual": 15})])
        outcome = resolve_errors([MinValidator(18)], FieldDirectives(), _ctx("21"))
        self.assertEqual(outcome.errors, [])

    def test_length_params(self) -> None:
        outcome = resolve_errors([MinLengthValidator(3)], FieldDirectives(), _ctx("ab"))
        self.assertEqual(outcome.errors[0].params, {"requiredLength": 3, "actualLength": 2})
        outcome = resolve_errors([MaxLengthValidator(1)], FieldDirectives(), _ctx(["a", "b"]))
        self.assertEqual(outcome.errors[0].kind, "maxLength")

    def test_pattern_must_match_whole_value(self) -> None:
        validators = [PatternValidator("[a-z]+")]
        self.assertEqual(resolve_errors(validators, FieldDirectives(), _ctx("abc")).errors, [])
        outcome = resolve_errors(validators, FieldDirectives(), _ctx("abc1"))
        self.assertEqual(outcome.errors[0].params, {"requiredPattern": "^[a-z]+$", "actualValue": "abc1"})

    def test_required_directive(self) -> None:
        outcome = resolve_errors([EmailValidator()], FieldDirectives(required=True), _ctx(""))
        self.assertEqual(_kinds(outcome), ["required"])
        outcome = resolve_errors([EmailValidator()], FieldDirectives(required=True), _ctx("x@y.z"))
        self.assertEqual(_kinds(outcome), [])

    def test_when_guard(self) -> None:
        validators = [RequiredValidator(when=FieldValueCondition("country", "equals", "NO"))]
        outcome = resolve_errors(validators, FieldDirectives(), _ctx("", field_path="zip", country="SE"))
        self.assertEqual(outcome.errors, [])
        outcome = resolve_errors(validators, FieldDirectives(), _ctx("", field_path="zip", country="NO"))
        self.assertEqual(_kinds(outcome), ["required"])

    def test_errors_keep_declaration_order(self) -> None:
        validators = [MaxLengthValidator(2), PatternValidator("[0-9]+"), EmailValidator()]
        outcome = resolve_errors(validators, FieldDirectives(), _ctx("abc"))
        self.assertEqual(_kinds(outcome), ["maxLength", "pattern", "email"])


class TestCustomValidators(unittest.TestCase):
    def test_expression_validator_with_error_params(self) -> None:
        validator = CustomValidator(
            expression="fieldValue === formValue.password",
            kind="mismatch",
            error_params={"expected": "formValue.password.length"},
        )
        ctx = _ctx("abc", field_path="confirm", password="abcd")
        outcome = resolve_errors([validator], FieldDirectives(), ctx)
        self.assertEqual(outcome.errors, [ValidationError("mismatch", {"expected": 4})])
        ctx = _ctx("abcd", field_path="confirm", password="abcd")
        self.assertEqual(resolve_errors([validator], FieldDirectives(), ctx).errors, [])

    def test_expression_failure_adds_no_error(self) -> None:
        validator = CustomValidator(expression="unknownName > 1")
        with self.assertLogs("dynform.validators", level="WARNING") as logs:
            outcome = resolve_errors([validator], FieldDirectives(), _ctx("x"))
        self.assertEqual(outcome.errors, [])
        self.assertIn("validator_expression_failed", logs.output[0])

    def test_registered_function(self) -> None:
        registry = FunctionRegistry()

        @registry.register("notAdmin")
        def _not_admin(vctx, params):
            if vctx.value == params.get("reserved"):
                return {"kind": "reserved", "params": {"value": vctx.value}}
            return None

        validator = CustomValidator(function_name="notAdmin", params={"reserved": "admin"})
        outcome = resolve_errors([validator], FieldDirectives(), _ctx("admin"), registry)
        self.assertEqual(outcome.errors, [ValidationError("reserved", {"value": "admin"})])
        outcome = resolve_errors([validator], FieldDirectives(), _ctx("ada"), registry)
        self.assertEqual(outcome.errors, [])

    def test_function_results_are_normalized(self) -> None:
        registry = FunctionRegistry(
            {
                "no": lambda vctx, params: False,
                "named": lambda vctx, params: "tooShort",
                "many": lambda vctx, params: ["a", ValidationError("b")],
            }
        )
        validators = [
            CustomValidator(function_name="no", kind="custom"),
            CustomValidator(function_name="named"),
            CustomValidator(function_name="many"),
        ]
        outcome = resolve_errors(validators, FieldDirectives(), _ctx("x"), registry)
        self.assertEqual(_kinds(outcome), ["custom", "tooShort", "a", "b"])

    def test_function_exception_is_logged(self) -> None:
        def _broken(vctx, params):
            raise RuntimeError("boom")

        registry = FunctionRegistry({"broken": _broken})
        with self.assertLogs("dynform.validators", level="WARNING") as logs:
            outcome = resolve_errors([CustomValidator(function_name="broken")], FieldDirectives(), _ctx("x"), registry)
        self.assertEqual(outcome.errors, [])
        self.assertIn("validator_function_failed", logs.output[0])


class TestHttpValidators(unittest.TestCase):
    def setUp(self) -> None:
        self.validator = HttpValidator(
            HttpRequestSpec(url="/api/users/:name/available", params={"name": "fieldValue"}),
            valid_when="response.available",
            error_kind="usernameTaken",
        )

    def _resolver(self, status, response=None):
        return lambda spec, slot, bindings: SimpleNamespace(status=status, response=response)

    def test_pending_sets_flag_without_error(self) -> None:
        outcome = resolve_errors([self.validator], FieldDirectives(), _ctx("bob", resolve_http=self._resolver("pending")))
        self.assertEqual(outcome.errors, [])
        self.assertTrue(outcome.pending)

    def test_resolved_maps_response(self) -> None:
        ctx = _ctx("alice", resolve_http=self._resolver("resolved", {"available": False}))
        self.assertEqual(_kinds(resolve_errors([self.validator], FieldDirectives(), ctx)), ["usernameTaken"])
        ctx = _ctx("bob", resolve_http=self._resolver("resolved", {"available": True}))
        self.assertEqual(resolve_errors([self.validator], FieldDirectives(), ctx).errors, [])

    def test_error_flags_async_error(self) -> None:
        outcome = resolve_errors([self.validator], FieldDirectives(), _ctx("bob", resolve_http=self._resolver("error")))
        self.assertEqual(outcome.errors, [])
        self.assertTrue(outcome.async_error)

    def test_empty_value_skips_request(self) -> None:
        calls = []

        def _resolve(spec, slot, bindings):
            calls.append(slot)

        outcome = resolve_errors([self.validator], FieldDirectives(), _ctx("", resolve_http=_resolve))
        self.assertEqual(calls, [])
        self.assertFalse(outcome.pending)


class TestResolveMessage(unittest.TestCase):
    def test_precedence(self) -> None:
        fmt = lambda template, params: template.format(**params)
        error = ValidationError("minLength", {"requiredLength": 3, "actualLength": 1})
        self.assertEqual(
            resolve_message(error, {"minLength": "At least {requiredLength}"}, {"minLength": "Too short"}, fmt),
            "At least 3",
        )
        self.assertEqual(resolve_message(error, {}, {"minLength": "Too short"}, fmt), "Too short")
        self.assertEqual(resolve_message(error, {}, {}, fmt), "minLength")
        self.assertEqual(resolve_message(ValidationError("x", message="Custom"), {}, {}, fmt), "Custom")


if __name__ == "__main__":
    unittest.main()

import os
import sys
import unittest
from datetime import datetime, timezone


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from expression_eval import (
    ExpressionDepthError,
    ExpressionSyntaxError,
    ExpressionTypeError,
    ProhibitedOperationError,
    UndeclaredIdentifierError,
    collect_references,
    eval_expression,
    eval_truthy,
)


class TestExpressionEval(unittest.TestCase):
    def setUp(self) -> None:
        self.bindings = {
            "formValue": {"age": 20, "name": "Ada", "tags": ["a", "b"], "address": None},
            "externalData": {"beta": True},
            "fieldValue": "Ada",
        }

    def test_arithmetic_and_concatenation(self) -> None:
        self.assertEqual(eval_expression("1 + 2 * 3", {}), 7)
        self.assertEqual(eval_expression("(1 + 2) * 3", {}), 9)
        self.assertEqual(eval_expression("'a' + 1", {}), "a1")
        self.assertEqual(eval_expression("7 % 4", {}), 3)
        self.assertIsNone(eval_expression("1 / 0", {}))
        self.assertIsNone(eval_expression("5 % 0", {}))

    def test_member_access_and_bindings(self) -> None:
        self.assertTrue(eval_truthy("formValue.age >= 18", self.bindings))
        self.assertEqual(eval_expression("formValue.tags.length", self.bindings), 2)
        self.assertEqual(eval_expression("formValue.tags[1]", self.bindings), "b")
        self.assertIsNone(eval_expression("formValue.missing", self.bindings))
        self.assertIsNone(eval_expression("formValue.address?.city", self.bindings))
        self.assertTrue(eval_expression("externalData.beta === true", self.bindings))

    def test_reading_through_null_raises(self) -> None:
        with self.assertRaises(ExpressionTypeError):
            eval_expression("formValue.address.city", self.bindings)

    def test_logical_operators_return_operands(self) -> None:
        self.assertEqual(eval_expression("null ?? 'x'", {}), "x")
        self.assertEqual(eval_expression("0 ?? 'x'", {}), 0)
        self.assertEqual(eval_expression("0 || 'y'", {}), "y")
        self.assertEqual(eval_expression("'' && 1", {}), "")
        self.assertEqual(eval_expression("true ? 'a' : 'b'", {}), "a")
        self.assertTrue(eval_expression("!formValue.missing", self.bindings))

    def test_equality_semantics(self) -> None:
        self.assertTrue(eval_expression("1 == '1'", {}))
        self.assertFalse(eval_expression("1 === '1'", {}))
        self.assertTrue(eval_expression("null == undefined", {}))
        self.assertFalse(eval_expression("[1] === [1]", {}))
        self.assertEqual(eval_expression("typeof formValue.age", self.bindings), "number")
        self.assertEqual(eval_expression("typeof formValue.nothing", self.bindings), "undefined")

    def test_whitelisted_methods(self) -> None:
        self.assertEqual(eval_expression("fieldValue.toUpperCase()", self.bindings), "ADA")
        self.assertTrue(eval_expression("formValue.tags.includes('b')", self.bindings))
        self.assertTrue(eval_expression("[1, 2, 3].includes(2)", {}))
        self.assertEqual(eval_expression("'a,b'.split(',').length", {}), 2)
        self.assertEqual(eval_expression("(1.005).toFixed(1)", {}), "1.0")
        self.assertEqual(eval_expression("fieldValue.trim().length > 2 ? 'ok' : 'short'", self.bindings), "ok")

    def test_dates_use_injected_clock(self) -> None:
        clock = lambda: datetime(2024, 1, 2, tzinfo=timezone.utc)
        self.assertEqual(eval_expression("new Date().getFullYear()", {}, clock), 2024)
        self.assertEqual(eval_expression("new Date('2024-03-05').getMonth()", {}), 2)
        self.assertTrue(
            eval_expression("new Date('2023-12-31').getTime() < new Date().getTime()", {}, clock)
        )

    def test_undeclared_identifier(self) -> None:
        with self.assertRaises(UndeclaredIdentifierError) as ctx:
            eval_expression("window.location", self.bindings)
        self.assertEqual(ctx.exception.code, "EXPR_UNDECLARED_IDENTIFIER")
        with self.assertRaises(UndeclaredIdentifierError):
            eval_expression("fieldValue", {"formValue": {}})

    def test_prohibited_operations(self) -> None:
        cases = [
            "formValue.age = 1",
            "formValue.age += 1",
            "formValue.age++",
            "(() => 1)",
            "function () { return 1 }",
            "delete formValue.age",
            "this",
            "`template`",
            "1; 2",
            "({})",
            "new Function('return 1')",
            "alert(1)",
            "formValue.constructor",
            "formValue['__proto__']",
            "fieldValue.constructor.constructor('x')()",
            "fieldValue.__class__",
            "fieldValue.exec()",
        ]
        for expression in cases:
            with self.subTest(expression=expression):
                with self.assertRaises(ProhibitedOperationError) as ctx:
                    eval_expression(expression, self.bindings)
                self.assertEqual(ctx.exception.code, "EXPR_PROHIBITED")

    def test_syntax_errors(self) -> None:
        for expression in ("1 +", "formValue.", "(1", "'open", "1 & 2", ""):
            with self.subTest(expression=expression):
                with self.assertRaises(ExpressionSyntaxError):
                    eval_expression(expression, self.bindings)

    def test_length_and_depth_limits(self) -> None:
        with self.assertRaises(ExpressionSyntaxError):
            eval_expression("1+" * 1000 + "1", {})
        with self.assertRaises(ExpressionDepthError):
            eval_expression("(" * 100 + "1" + ")" * 100, {})
        with self.assertRaises(ExpressionDepthError):
            eval_expression("!" * 100 + "true", {})

    def test_huge_integers_raise_expression_errors(self) -> None:
        bindings = {"fieldValue": 10**400}
        with self.assertRaises(ExpressionTypeError):
            eval_expression("fieldValue / 2 > 1", bindings)
        self.assertTrue(eval_expression("fieldValue > 1", bindings))

    def test_loose_equality_compares_dates_by_identity(self) -> None:
        stamp = datetime(2024, 1, 2, tzinfo=timezone.utc)
        self.assertFalse(eval_expression("new Date('2024-01-02') == new Date('2024-01-02')", {}))
        self.assertTrue(eval_expression("d == d", {"d": stamp}))
        self.assertTrue(
            eval_expression("new Date('2024-01-02').getTime() == new Date('2024-01-02').getTime()", {})
        )

    def test_evaluation_is_deterministic(self) -> None:
        expression = "formValue.tags.concat(['c']).join('-')"
        first = eval_expression(expression, self.bindings)
        second = eval_expression(expression, self.bindings)
        self.assertEqual(first, "a-b-c")
        self.assertEqual(first, second)
        self.assertEqual(self.bindings["formValue"]["tags"], ["a", "b"])

    def test_collect_references(self) -> None:
        refs = collect_references("formValue.address.city == 'x' && externalData.flag")
        self.assertEqual(
            refs,
            {("formValue", ("address", "city")), ("externalData", ("flag",))},
        )

    def test_collect_references_stops_at_dynamic_keys(self) -> None:
        refs = collect_references("formValue[fieldValue].x")
        self.assertEqual(refs, {("formValue", ()), ("fieldValue", ())})
        refs = collect_references("formValue['items'][0].name.toLowerCase()")
        self.assertEqual(refs, {("formValue", ("items", 0, "name"))})


if __name__ == "__main__":
    unittest.main()

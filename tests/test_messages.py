import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.messages import JinjaMessageFormatter


class TestJinjaMessageFormatter(unittest.TestCase):
    def setUp(self) -> None:
        self.fmt = JinjaMessageFormatter()

    def test_brace_placeholders(self) -> None:
        out = self.fmt.format("Must be at least {requiredLength} characters", {"requiredLength": 3})
        self.assertEqual(out, "Must be at least 3 characters")
        self.assertEqual(self.fmt("Minimum is {min}", {"min": 18.0}), "Minimum is 18")

    def test_unknown_placeholders_are_left_alone(self) -> None:
        self.assertEqual(self.fmt.format("{x} stays", {}), "{x} stays")

    def test_jinja_syntax(self) -> None:
        out = self.fmt.format("{{ actual }} is below {{ min }}", {"min": 5, "actual": 2})
        self.assertEqual(out, "2 is below 5")
        self.assertEqual(self.fmt.format("{{ flag }}|{{ none }}", {"flag": True, "none": None}), "true|")

    def test_invalid_template_returns_raw_text(self) -> None:
        with self.assertLogs("dynform.messages", level="WARNING"):
            self.assertEqual(self.fmt.format("{% if %}", {}), "{% if %}")

    def test_sandbox_blocks_attribute_access(self) -> None:
        self.assertEqual(self.fmt.format("{{ name.__class__ }}", {"name": "x"}), "")


if __name__ == "__main__":
    unittest.main()

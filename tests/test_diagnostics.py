import asyncio
import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.config import EngineSettings
from app.diagnostics import build_diagnostics
from app.form_engine import FormEngine
from value_store import FormValueStore


class _NeverClient:
    async def request(self, request):
        await asyncio.Event().wait()


FORM = {
    "fields": [
        {"key": "name", "validators": [{"type": "required"}]},
        {
            "key": "flag",
            "logic": [
                {
                    "type": "hidden",
                    "condition": {"type": "http", "http": {"url": "/flags"}, "pendingValue": True},
                }
            ],
        },
    ]
}


class TestDiagnostics(unittest.IsolatedAsyncioTestCase):
    async def test_report_lists_state_dependencies_and_tasks(self) -> None:
        engine = FormEngine(
            FORM,
            FormValueStore({"name": ""}),
            http_client=_NeverClient(),
            settings=EngineSettings(http_debounce_ms=0),
        )
        report = build_diagnostics(engine)
        self.assertEqual(report["summary"], {"fields": 2, "invalid": 1, "pending": 1, "async_errors": 0, "valid": False})
        name, flag = report["fields"]
        self.assertEqual(name["errors"], ["required"])
        self.assertEqual(name["dependencies"]["form_paths"], ["name"])
        self.assertTrue(flag["pending"])
        self.assertTrue(flag["directives"]["hidden"])
        self.assertEqual(len(flag["tasks"]), 1)
        self.assertEqual(flag["tasks"][0]["request"]["url"], "/flags")
        self.assertEqual(flag["tasks"][0]["status"], "pending")
        self.assertTrue(report["form_state"]["formPending"])
        await engine.aclose()


if __name__ == "__main__":
    unittest.main()

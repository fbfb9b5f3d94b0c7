import os
import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.config import EngineSettings, load_settings


class TestLoadSettings(unittest.TestCase):
    def test_defaults(self) -> None:
        self.assertEqual(load_settings(env={}), EngineSettings())

    def test_reads_environment(self) -> None:
        settings = load_settings(
            env={
                "DYNFORM_HTTP_DEBOUNCE_MS": "50",
                "DYNFORM_HTTP_TIMEOUT_S": "2.5",
                "DYNFORM_HTTP_BASE_URL": "https://api.example.com/",
                "DYNFORM_SETTLE_TIMEOUT_S": "-3",
                "DYNFORM_HTTP_CACHE_MAX_ENTRIES": "64",
            }
        )
        self.assertEqual(settings.http_debounce_ms, 50)
        self.assertEqual(settings.http_timeout_s, 2.5)
        self.assertEqual(settings.http_base_url, "https://api.example.com")
        self.assertEqual(settings.settle_timeout_s, 0.0)
        self.assertEqual(settings.http_cache_max_entries, 64)

    def test_invalid_values_fall_back(self) -> None:
        with self.assertLogs("dynform.config", level="WARNING"):
            settings = load_settings(env={"DYNFORM_HTTP_DEBOUNCE_MS": "soon"})
        self.assertEqual(settings.http_debounce_ms, 300)

    def test_env_file_does_not_override_environment(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            env_file = Path(tmp) / ".env"
            env_file.write_text(
                "# engine\nDYNFORM_HTTP_CACHE_TTL_S=5\nDYNFORM_HTTP_TIMEOUT_S='4'\n",
                encoding="utf-8",
            )
            with mock.patch.dict(os.environ, {"DYNFORM_HTTP_TIMEOUT_S": "7"}, clear=False):
                os.environ.pop("DYNFORM_HTTP_CACHE_TTL_S", None)
                settings = load_settings(env_file=env_file)
        self.assertEqual(settings.http_cache_ttl_s, 5.0)
        self.assertEqual(settings.http_timeout_s, 7.0)


if __name__ == "__main__":
    unittest.main()

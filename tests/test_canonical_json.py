import os
import sys
import unittest
from datetime import date, datetime, timezone


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from dynform.canonical_json import CanonicalJsonTypeError, canonical_dumps, canonical_key
from dynform.snapshot_hash import snapshot_hash


class TestCanonicalJson(unittest.TestCase):
    def test_key_ordering_is_deterministic(self) -> None:
        a = {"b": 1, "a": {"d": 4, "c": 3}}
        b = {"a": {"c": 3, "d": 4}, "b": 1}
        self.assertEqual(canonical_dumps(a), '{"a":{"c":3,"d":4},"b":1}')
        self.assertEqual(canonical_dumps(a), canonical_dumps(b))

    def test_non_ascii_preserved(self) -> None:
        out = canonical_dumps({"name": "café"})
        self.assertIn("café", out)
        self.assertNotIn("\\u", out)

    def test_strict_dumps_rejects_non_json(self) -> None:
        with self.assertRaises(CanonicalJsonTypeError):
            canonical_dumps({"bad": {1, 2, 3}})
        with self.assertRaises(ValueError):
            canonical_dumps({"bad": float("nan")})

    def test_canonical_key_normalizes_form_values(self) -> None:
        value = {
            "when": datetime(2024, 1, 2, 3, 4, tzinfo=timezone.utc),
            "day": date(2024, 1, 2),
            "pair": (1, 2),
            "tags": {"b", "a"},
            "ratio": float("inf"),
        }
        out = canonical_key(value)
        self.assertEqual(
            out,
            '{"day":"2024-01-02","pair":[1,2],"ratio":"inf","tags":["a","b"],'
            '"when":"2024-01-02T03:04:00+00:00"}',
        )

    def test_numeric_distinction(self) -> None:
        self.assertNotEqual(canonical_key({"n": 1}), canonical_key({"n": 1.0}))


class TestSnapshotHash(unittest.TestCase):
    def test_hash_is_stable_across_key_order(self) -> None:
        a = snapshot_hash({"userId": 7, "org": "acme"})
        b = snapshot_hash({"org": "acme", "userId": 7})
        self.assertEqual(a, b)
        self.assertTrue(a.startswith("sha256:"))
        self.assertEqual(len(a), len("sha256:") + 16)

    def test_hash_changes_with_values(self) -> None:
        self.assertNotEqual(snapshot_hash({"userId": 7}), snapshot_hash({"userId": 8}))


if __name__ == "__main__":
    unittest.main()

"""Deterministic canonical JSON used for request keys and dependency snapshots."""

from __future__ import annotations

import json
import math
from datetime import date, datetime
from typing import Any


class CanonicalJsonTypeError(TypeError):
    """Raised when a value cannot be serialized to canonical JSON."""


def _validate(obj: Any, path: str = "$") -> None:
    if isinstance(obj, dict):
        for key, value in obj.items():
            if not isinstance(key, str):
                raise CanonicalJsonTypeError(
                    f"Unsupported key type at {path}: {type(key).__name__}"
                )
            _validate(value, f"{path}.{key}")
        return
    if isinstance(obj, list):
        for idx, item in enumerate(obj):
            _validate(item, f"{path}[{idx}]")
        return
    if obj is None:
        return
    if isinstance(obj, float):
        if not math.isfinite(obj):
            raise ValueError(f"Non-finite float at {path}: {obj!r}")
        return
    if isinstance(obj, (str, int, bool)):
        return
    raise CanonicalJsonTypeError(
        f"Unsupported type at {path}: {type(obj).__name__}"
    )


def _normalize(obj: Any) -> Any:
    # form values may carry dates and tuples; keys only need a stable text form
    if isinstance(obj, dict):
        return {str(key): _normalize(value) for key, value in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_normalize(item) for item in obj]
    if isinstance(obj, (set, frozenset)):
        return sorted((_normalize(item) for item in obj), key=repr)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, float) and not math.isfinite(obj):
        return repr(obj)
    if obj is None or isinstance(obj, (str, int, float, bool)):
        return obj
    return repr(obj)


def canonical_dumps(obj: Any) -> str:
    """Serialize a JSON-compatible object to deterministic canonical JSON.

    Rules:
    - Sort dict keys recursively.
    - Preserve list order.
    - UTF-8 with non-ASCII preserved.
    - No extra whitespace.
    """
    _validate(obj)
    return json.dumps(
        obj,
        sort_keys=True,
        ensure_ascii=False,
        separators=(",", ":"),
        allow_nan=False,
    )


def canonical_key(obj: Any) -> str:
    """Canonical JSON for arbitrary form data, coercing non-JSON values first."""
    return canonical_dumps(_normalize(obj))

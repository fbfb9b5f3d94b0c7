"""Dependency snapshot hashing."""

from __future__ import annotations

import hashlib
from typing import Any

from .canonical_json import canonical_key


def snapshot_hash(values: Any) -> str:
    """Return a short SHA-256 digest of the values an async task depends on."""
    data = canonical_key(values).encode("utf-8")
    digest = hashlib.sha256(data).hexdigest()
    return f"sha256:{digest[:16]}"

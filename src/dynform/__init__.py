"""Dynamic form kernel utilities."""

from .canonical_json import CanonicalJsonTypeError, canonical_dumps, canonical_key
from .field_path import (
    FieldPathError,
    format_path,
    get_path,
    is_related,
    join_path,
    parse_path,
    set_path,
)
from .snapshot_hash import snapshot_hash

__all__ = [
    "CanonicalJsonTypeError",
    "FieldPathError",
    "canonical_dumps",
    "canonical_key",
    "format_path",
    "get_path",
    "is_related",
    "join_path",
    "parse_path",
    "set_path",
    "snapshot_hash",
]

"""Field path parsing and resolution for dot/bracket paths (``items[0].name``)."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Any, List, Tuple, Union

Segment = Union[str, int]
PathLike = Union[str, Tuple[Segment, ...]]


@dataclass
class FieldPathError(Exception):
    message: str
    path: str
    position: int

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.message} (path={self.path!r}, position={self.position})"


class PathSyntaxError(FieldPathError):
    pass


class PathTypeError(FieldPathError):
    pass


@lru_cache(maxsize=1024)
def _parse(path: str) -> Tuple[Segment, ...]:
    segments: List[Segment] = []
    idx = 0
    size = len(path)
    expect_name = True
    while idx < size:
        ch = path[idx]
        if ch == "[":
            end = path.find("]", idx)
            if end == -1:
                raise PathSyntaxError("Unclosed bracket", path, idx)
            raw = path[idx + 1 : end].strip()
            if raw.isdigit():
                segments.append(int(raw))
            elif len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in ("'", '"'):
                segments.append(raw[1:-1])
            else:
                raise PathSyntaxError("Invalid bracket segment", path, idx)
            idx = end + 1
            expect_name = False
            continue
        if ch == ".":
            if expect_name:
                raise PathSyntaxError("Empty path segment", path, idx)
            idx += 1
            expect_name = True
            if idx >= size:
                raise PathSyntaxError("Trailing dot", path, idx)
            continue
        if not expect_name:
            raise PathSyntaxError("Expected '.' or '['", path, idx)
        start = idx
        while idx < size and path[idx] not in ".[":
            idx += 1
        name = path[start:idx]
        if "]" in name:
            raise PathSyntaxError("Unexpected ']'", path, start)
        segments.append(int(name) if name.isdigit() else name)
        expect_name = False
    return tuple(segments)


def parse_path(path: PathLike) -> Tuple[Segment, ...]:
    """Split a field path into segments; bracket indices become ints."""
    if isinstance(path, tuple):
        return path
    if not isinstance(path, str):
        raise PathTypeError("Path must be a string", repr(path), 0)
    if path == "":
        return ()
    return _parse(path)


def format_path(segments: PathLike) -> str:
    if isinstance(segments, str):
        segments = parse_path(segments)
    out = ""
    for segment in segments:
        if isinstance(segment, int):
            out += f"[{segment}]"
        else:
            out = f"{out}.{segment}" if out else segment
    return out


def join_path(prefix: str, key: str) -> str:
    if not prefix:
        return key
    if not key:
        return prefix
    return f"{prefix}.{key}"


def get_path(doc: Any, path: PathLike, default: Any = None) -> Any:
    current = doc
    for segment in parse_path(path):
        if isinstance(current, dict):
            if segment not in current:
                # "items.0" style access on dicts keyed by strings
                if isinstance(segment, int) and str(segment) in current:
                    current = current[str(segment)]
                    continue
                return default
            current = current[segment]
            continue
        if isinstance(current, list) and isinstance(segment, int):
            if segment < 0 or segment >= len(current):
                return default
            current = current[segment]
            continue
        return default
    return current


def set_path(doc: dict, path: PathLike, value: Any) -> dict:
    """Write ``value`` at ``path``, creating intermediate containers."""
    segments = parse_path(path)
    if not segments:
        raise PathTypeError("Cannot set the root path", "", 0)
    current: Any = doc
    for idx, segment in enumerate(segments[:-1]):
        nxt = segments[idx + 1]
        if isinstance(current, list):
            if not isinstance(segment, int):
                raise PathTypeError("List segment must be an index", format_path(segments), idx)
            while len(current) <= segment:
                current.append(None)
            if not isinstance(current[segment], (dict, list)):
                current[segment] = [] if isinstance(nxt, int) else {}
            current = current[segment]
            continue
        if not isinstance(current, dict):
            raise PathTypeError("Cannot traverse into non-container", format_path(segments), idx)
        if not isinstance(current.get(segment), (dict, list)):
            current[segment] = [] if isinstance(nxt, int) else {}
        current = current[segment]
    last = segments[-1]
    if isinstance(current, list):
        if not isinstance(last, int):
            raise PathTypeError("List segment must be an index", format_path(segments), len(segments) - 1)
        while len(current) <= last:
            current.append(None)
        current[last] = value
    elif isinstance(current, dict):
        current[last] = value
    else:
        raise PathTypeError("Cannot assign into non-container", format_path(segments), len(segments) - 1)
    return doc


def is_related(left: PathLike, right: PathLike) -> bool:
    """True when one path equals or is an ancestor of the other."""
    a = parse_path(left)
    b = parse_path(right)
    size = min(len(a), len(b))
    return a[:size] == b[:size]

"""In-memory observable stores for form values and external data."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List

from dynform.field_path import FieldPathError, format_path, get_path, parse_path, set_path

logger = logging.getLogger("dynform.stores")

ChangeHandler = Callable[[List[str]], None]

_MISSING = object()


@dataclass
class StoreError(Exception):
    code: str
    message: str
    path: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base


def _same(left: Any, right: Any) -> bool:
    return type(left) is type(right) and left == right


class ObservableStore:
    """Nested mapping that tells subscribers which paths changed."""

    root_change = ""

    def __init__(self, initial: Dict[str, Any] | None = None) -> None:
        if initial is not None and not isinstance(initial, dict):
            raise StoreError("STORE_VALUE_INVALID", "initial value must be an object")
        self._data: Dict[str, Any] = copy.deepcopy(initial or {})
        self._subs: List[ChangeHandler] = []

    def subscribe(self, handler: ChangeHandler) -> None:
        self._subs.append(handler)

    def unsubscribe(self, handler: ChangeHandler) -> bool:
        try:
            self._subs.remove(handler)
            return True
        except ValueError:
            return False

    def get(self, path: str = "") -> Any:
        return copy.deepcopy(get_path(self._data, path))

    def snapshot(self) -> Dict[str, Any]:
        return copy.deepcopy(self._data)

    def _changed_name(self, path: str) -> str:
        return format_path(path)

    def _write(self, path: str, value: Any) -> bool:
        try:
            current = get_path(self._data, path, _MISSING)
            if current is not _MISSING and _same(current, value):
                return False
            set_path(self._data, path, copy.deepcopy(value))
        except FieldPathError as exc:
            raise StoreError("STORE_PATH_INVALID", exc.message, path) from exc
        return True

    def set(self, path: str, value: Any) -> bool:
        if path == "":
            return self.reset(value)
        if not self._write(path, value):
            return False
        self.publish([self._changed_name(path)])
        return True

    def update(self, values: Dict[str, Any]) -> List[str]:
        """Write several paths and notify once with everything that changed."""
        changed = [self._changed_name(path) for path, value in values.items() if self._write(path, value)]
        if changed:
            self.publish(changed)
        return changed

    def reset(self, value: Dict[str, Any]) -> bool:
        if not isinstance(value, dict):
            raise StoreError("STORE_VALUE_INVALID", "value must be an object")
        if value == self._data:
            return False
        self._data = copy.deepcopy(value)
        self.publish([self.root_change])
        return True

    def publish(self, changed: Iterable[str]) -> None:
        changed = list(dict.fromkeys(changed))
        for handler in list(self._subs):
            try:
                handler(changed)
            except Exception:
                logger.exception("store_handler_failed store=%s changed=%s", type(self).__name__, changed)


class FormValueStore(ObservableStore):
    """Form value model; change notifications carry field paths."""


class ExternalDataStore(ObservableStore):
    """Named external signals; change notifications carry top-level keys."""

    root_change = "*"

    def _changed_name(self, path: str) -> str:
        segments = parse_path(path)
        return str(segments[0]) if segments else self.root_change

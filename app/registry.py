"""Registry of named validator functions injected into the engine."""

from __future__ import annotations

from typing import Any, Callable, Dict, Iterator, List

ValidatorFunc = Callable[..., Any]


class RegistryError(ValueError):
    pass


class FunctionRegistry:
    def __init__(self, functions: Dict[str, ValidatorFunc] | None = None) -> None:
        self._functions: Dict[str, ValidatorFunc] = {}
        for name, func in (functions or {}).items():
            self.register(name, func)

    def register(self, name: str, func: ValidatorFunc | None = None):
        """Register ``func`` under ``name``; usable as a decorator."""
        if not isinstance(name, str) or not name:
            raise RegistryError("validator name must be a non-empty string")

        def _add(target: ValidatorFunc) -> ValidatorFunc:
            if not callable(target):
                raise RegistryError(f"validator {name} is not callable")
            if name in self._functions and self._functions[name] is not target:
                raise RegistryError(f"validator {name} already registered")
            self._functions[name] = target
            return target

        if func is None:
            return _add
        return _add(func)

    def unregister(self, name: str) -> bool:
        return self._functions.pop(name, None) is not None

    def lookup(self, name: str | None) -> ValidatorFunc | None:
        if name is None:
            return None
        return self._functions.get(name)

    def names(self) -> List[str]:
        return sorted(self._functions)

    def __contains__(self, name: object) -> bool:
        return name in self._functions

    def __iter__(self) -> Iterator[str]:
        return iter(self.names())

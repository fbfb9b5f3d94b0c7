"""Validation message rendering.

Templates use ``{param}`` placeholders (``"Must be at least {requiredLength}
characters"``); full Jinja syntax also works. Rendering happens in a locked
Jinja sandbox so message text from form configs can't reach Python objects.
"""

from __future__ import annotations

import logging
import re
from functools import lru_cache
from typing import Any, Dict

from jinja2 import Template, TemplateSyntaxError, Undefined
from jinja2.sandbox import ImmutableSandboxedEnvironment

logger = logging.getLogger("dynform.messages")

_PLACEHOLDER_RE = re.compile(r"(?<!\{)\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}(?!\})")

_ALLOWED_FILTERS = {"default", "lower", "upper", "title", "trim", "round", "length", "join"}


class _LockedSandbox(ImmutableSandboxedEnvironment):
    def is_safe_attribute(self, obj, attr, value) -> bool:
        return False

    def is_safe_callable(self, obj) -> bool:
        return False


def _env() -> _LockedSandbox:
    env = _LockedSandbox(autoescape=False, undefined=Undefined)
    env.globals = {}
    env.filters = {key: val for key, val in env.filters.items() if key in _ALLOWED_FILTERS}
    return env


_ENV = _env()


def _to_jinja(template: str, names: frozenset) -> str:
    def _sub(match: re.Match) -> str:
        name = match.group(1)
        return "{{ " + name + " }}" if name in names else match.group(0)

    return _PLACEHOLDER_RE.sub(_sub, template)


@lru_cache(maxsize=512)
def _compile(template: str, names: frozenset) -> Template:
    return _ENV.from_string(_to_jinja(template, names))


def _display(value: Any) -> Any:
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return value


class JinjaMessageFormatter:
    """Interpolates error params into message templates."""

    def format(self, template: str, params: Dict[str, Any]) -> str:
        context = {str(key): _display(value) for key, value in (params or {}).items()}
        try:
            compiled = _compile(template, frozenset(context))
            return compiled.render(**context)
        except TemplateSyntaxError as exc:
            logger.warning("message_template_invalid template=%r error=%s", template, exc)
            return template

    def __call__(self, template: str, params: Dict[str, Any]) -> str:
        return self.format(template, params)

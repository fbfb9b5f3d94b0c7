"""Engine settings from the environment (and app/.env when present)."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

ROOT = Path(__file__).resolve().parents[1]

logger = logging.getLogger("dynform.config")


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


@dataclass(frozen=True)
class EngineSettings:
    http_debounce_ms: int = 300
    http_timeout_s: float = 10.0
    http_cache_ttl_s: float = 30.0
    http_cache_max_entries: int = 256
    http_base_url: str = ""
    settle_timeout_s: float = 15.0


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = (env.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("config_value_invalid name=%s value=%s default=%s", name, raw, default)
        return default
    return max(value, 0)


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = (env.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("config_value_invalid name=%s value=%s default=%s", name, raw, default)
        return default
    return max(value, 0.0)


def load_settings(env: Mapping[str, str] | None = None, env_file: Path | None = None) -> EngineSettings:
    if env is None:
        _load_env_file(env_file or ROOT / "app" / ".env")
        env = os.environ
    return EngineSettings(
        http_debounce_ms=_int(env, "DYNFORM_HTTP_DEBOUNCE_MS", 300),
        http_timeout_s=_float(env, "DYNFORM_HTTP_TIMEOUT_S", 10.0),
        http_cache_ttl_s=_float(env, "DYNFORM_HTTP_CACHE_TTL_S", 30.0),
        http_cache_max_entries=_int(env, "DYNFORM_HTTP_CACHE_MAX_ENTRIES", 256),
        http_base_url=(env.get("DYNFORM_HTTP_BASE_URL") or "").strip().rstrip("/"),
        settle_timeout_s=_float(env, "DYNFORM_SETTLE_TIMEOUT_S", 15.0),
    )

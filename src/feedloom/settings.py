from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from dynaconf import Dynaconf

PACKAGE_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = PACKAGE_DIR.parent


def _resolve_config_dir() -> Path:
    env_override = os.environ.get("FEEDLOOM_CONFIG_DIR")
    candidates: list[Path] = []

    if env_override:
        candidates.append(Path(env_override).expanduser())

    candidates.append(PROJECT_ROOT / "config")
    candidates.append(PROJECT_ROOT.parent / "config")

    for candidate in candidates:
        expanded = candidate.expanduser()
        if expanded.is_dir():
            return expanded.resolve()

    searched = ", ".join(str(path) for path in candidates)
    message = f"Unable to locate configuration directory. Searched: {searched}."
    if env_override:
        message += " Set FEEDLOOM_CONFIG_DIR to a valid directory."
    raise RuntimeError(message)


CONFIG_DIR = _resolve_config_dir()


DEFAULTS: dict[str, Any] = {
    "APP_NAME": "Feedloom",
    "LOG_LEVEL": "INFO",
    "APP": {
        "host": "127.0.0.1",
        "port": 5000,
    },
    "LIMITS": {
        "max_query_length": 512,
    },
    "FEED": {
        "page_size": 15,
        "query_timeout": 10.0,
        "secondary_yield_every": 500,
        "history_size": 50,
        "scope": {
            "linear_threshold": 300,
            "chunked_threshold": 5000,
            "chunk_size": 1000,
            "latency_budget_ms": 100.0,
        },
        "auto_fetch": {
            "min_results": 1,
            "max_pages": 3,
        },
        "scope_cache": {
            "maxsize": 128,
            "ttl": 300,
        },
    },
    "SESSIONS": {
        "ttl": 30 * 60,
        "max_sessions": 256,
    },
    "STORE": {
        "seed_path": "",
    },
}

settings = Dynaconf(
    envvar_prefix="FEEDLOOM",
    settings_files=[
        CONFIG_DIR / "settings.toml",
        CONFIG_DIR / ".secrets.toml",
        CONFIG_DIR / "settings.local.toml",
    ],
    environments=True,
    env_switcher="FEEDLOOM_ENV",
    load_dotenv=True,
    envvar_parse_values=True,
    merge_enabled=True,
    defaults=DEFAULTS,
)


_MISSING = object()


def _ensure_defaults(prefix: str, defaults: dict[str, Any]) -> None:
    for key, value in defaults.items():
        dotted = f"{prefix}.{key}" if prefix else key
        existing = settings.get(dotted, _MISSING)

        if isinstance(value, dict):
            if existing is _MISSING:
                settings.set(dotted, value.copy())
                existing = settings.get(dotted, _MISSING)
            # Primitives supplied by the user for a mapping key are left alone.
            if isinstance(existing, Mapping):
                _ensure_defaults(dotted, value)
            continue

        if existing is _MISSING:
            settings.set(dotted, value)


_ensure_defaults("", DEFAULTS)


page_size_default = DEFAULTS["FEED"]["page_size"]
try:
    page_size = int(settings.get("FEED.page_size", page_size_default))
except (TypeError, ValueError):
    page_size = page_size_default
settings.set("FEED.page_size", page_size if page_size > 0 else page_size_default)

__all__ = ["settings"]

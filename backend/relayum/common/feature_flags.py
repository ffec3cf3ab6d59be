from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Mapping

from flask import current_app

from .errors import ConfigError


DEFAULT_FLAGS: dict[str, bool] = {
    "security.rate_limit": False,
}


def _as_flags(raw: Any) -> dict[str, bool]:
    if not isinstance(raw, Mapping):
        return {}
    return {str(name): bool(value) for name, value in raw.items()}


def read_flag_file(path: str | None) -> dict[str, bool]:
    """Flags from a JSON file shaped ``{"flags": {...}}``; a missing file means no flags."""
    if not path or not Path(path).is_file():
        return {}
    try:
        document = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as error:
        raise ConfigError(f"Unreadable feature flag file {path}: {error}") from error
    return _as_flags(document.get("flags") if isinstance(document, dict) else None)


def resolve_feature_flags(config: Mapping[str, Any]) -> dict[str, bool]:
    return {
        **DEFAULT_FLAGS,
        **read_flag_file(config.get("FEATURE_FLAGS_FILE")),
        **_as_flags(config.get("FEATURE_FLAGS")),
    }


def flag_enabled(name: str) -> bool:
    flags = current_app.config.get("FEATURE_FLAGS") or {}
    return bool(flags.get(name, DEFAULT_FLAGS.get(name, False)))

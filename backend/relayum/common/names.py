from __future__ import annotations

import re
from pathlib import PurePosixPath

from .errors import ValidationError


INVALID_NAME_PATTERN = re.compile(r"[\\/\x00]")


def validate_node_name(name: str) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError("Name cannot be empty.", code="INVALID_NAME")
    if len(cleaned) > 255:
        raise ValidationError("Name must be <= 255 characters.", code="INVALID_NAME")
    if INVALID_NAME_PATTERN.search(cleaned):
        raise ValidationError("Name contains invalid characters.", code="INVALID_NAME")
    if cleaned in {".", ".."}:
        raise ValidationError("Reserved name.", code="INVALID_NAME")
    return cleaned


def upload_filename(raw: str | None) -> str:
    return validate_node_name(PurePosixPath((raw or "").replace("\\", "/")).name)


def split_relative_dirs(relative_path: str | None) -> list[str]:
    if not relative_path:
        return []
    parts = [part for part in relative_path.replace("\\", "/").split("/") if part.strip()]
    return [validate_node_name(part) for part in parts[:-1]]

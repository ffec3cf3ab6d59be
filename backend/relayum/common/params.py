from __future__ import annotations

from .errors import ValidationError


def parse_int(value: str | int | None, field_name: str, default: int | None = None) -> int:
    if value in (None, "") and default is not None:
        return default
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as error:
        raise ValidationError(f"{field_name} must be an integer.", code="INVALID_PARAMETER") from error


def parse_nullable_int(value: str | int | None, field_name: str) -> int | None:
    if value in (None, "", "null"):
        return None
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as error:
        raise ValidationError(f"{field_name} must be an integer or null.", code="INVALID_PARAMETER") from error

from __future__ import annotations

import re


SIZE_UNITS = {
    "": 1,
    "B": 1,
    "K": 1024,
    "KB": 1024,
    "M": 1024**2,
    "MB": 1024**2,
    "G": 1024**3,
    "GB": 1024**3,
    "T": 1024**4,
    "TB": 1024**4,
}

SIZE_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([A-Za-z]*)\s*$")


def parse_file_size(value: str | int) -> int:
    if isinstance(value, int):
        if value < 0:
            raise ValueError("Size cannot be negative.")
        return value

    match = SIZE_PATTERN.match(value or "")
    if match is None:
        raise ValueError(f"Invalid size: {value!r}")

    number, unit = match.groups()
    multiplier = SIZE_UNITS.get(unit.upper())
    if multiplier is None:
        raise ValueError(f"Unknown size unit: {unit!r}")
    return int(float(number) * multiplier)


def format_file_size(size: int) -> str:
    value = float(max(0, size))
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024:
            return f"{int(value)} {unit}" if unit == "B" else f"{value:.2f} {unit}"
        value /= 1024
    return f"{value:.2f} TB"

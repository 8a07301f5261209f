"""Human readable byte sizes."""

from __future__ import annotations

import re

_UNITS = {
    "": 1,
    "b": 1,
    "k": 1000,
    "kb": 1000,
    "ki": 1024,
    "kib": 1024,
    "m": 1000**2,
    "mb": 1000**2,
    "mi": 1024**2,
    "mib": 1024**2,
    "g": 1000**3,
    "gb": 1000**3,
    "gi": 1024**3,
    "gib": 1024**3,
    "t": 1000**4,
    "tb": 1000**4,
    "ti": 1024**4,
    "tib": 1024**4,
}

_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([a-zA-Z]*)\s*$")


def format_size(size: float) -> str:
    """Format a byte count with binary units (e.g. ``1.50 GiB``)."""
    if size < 1024:
        return f"{int(size)} B"
    for unit in ["KiB", "MiB", "GiB", "TiB"]:
        size /= 1024.0
        if size < 1024.0:
            return f"{size:.2f} {unit}"
    return f"{size / 1024.0:.2f} PiB"


def parse_size(text: str | int) -> int:
    """Parse sizes such as ``"5 GiB"``, ``"700MB"`` or ``"1024"`` into bytes.

    Raises:
        ValueError: If the text is not a recognised size

    """
    if isinstance(text, int):
        if text < 0:
            msg = f"Size must be non-negative: {text}"
            raise ValueError(msg)
        return text
    match = _SIZE_RE.match(text)
    if match is None:
        msg = f"Invalid size: {text!r}"
        raise ValueError(msg)
    number, unit = match.groups()
    multiplier = _UNITS.get(unit.lower())
    if multiplier is None:
        msg = f"Unknown size unit in {text!r}"
        raise ValueError(msg)
    return int(float(number) * multiplier)

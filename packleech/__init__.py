"""packleech - leech selected files of a content pack from HTTP webseeds."""

from __future__ import annotations

__version__ = "0.1.0"

from packleech.core.metadata import load_metadata, parse_metadata  # noqa: E402
from packleech.models import RunResult, RunStatus  # noqa: E402
from packleech.session.pipeline import leech, leech_in_batches  # noqa: E402

__all__ = [
    "RunResult",
    "RunStatus",
    "__version__",
    "leech",
    "leech_in_batches",
    "load_metadata",
    "parse_metadata",
]

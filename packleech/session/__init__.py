"""Run orchestration and the leech pipeline."""

from __future__ import annotations

from packleech.session.pipeline import leech, leech_in_batches
from packleech.session.orchestrator import Orchestrator

__all__ = ["Orchestrator", "leech", "leech_in_batches"]

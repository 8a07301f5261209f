"""Resume state persistence.

The record lives at ``<output_dir>/.packleech/<info_hash>.resume.json`` and
lists, for every verified piece of one pack, the files its bytes were written
into. It is rewritten atomically (temporary file, fsync, rename) every time a
piece is verified, so a crash leaves either the previous record or the new
one.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import os
import time
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

from pydantic import ValidationError as PydanticValidationError

from packleech.models import ResumeState
from packleech.utils.exceptions import ResumeStateError
from packleech.utils.logging_config import get_logger

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from packleech.models import PackMetadata

logger = get_logger(__name__)

RESUME_DIR = ".packleech"
RESUME_VERSION = 2


def resume_path(output_dir: str | Path, info_hash: bytes) -> Path:
    """Location of the resume record for a pack."""
    return Path(output_dir) / RESUME_DIR / f"{info_hash.hex()}.resume.json"


class ResumeStore:
    """Verified-piece record for one pack in one output directory.

    A piece verified while only some of the files it overlaps were selected
    is complete for those files only, so each entry keeps the file indices
    that received the piece's bytes.

    The store is not locked; its single writer is the orchestrator, which
    serializes updates.
    """

    def __init__(
        self,
        output_dir: str | Path,
        metadata: PackMetadata,
        discard_invalid: bool = False,
    ):
        """Initialize store.

        Args:
            output_dir: Directory holding the output files
            metadata: Pack the record belongs to
            discard_invalid: Ignore a corrupt or foreign record instead of
                raising :class:`ResumeStateError`

        """
        self.metadata = metadata
        self.path = resume_path(output_dir, metadata.info_hash)
        self.discard_invalid = discard_invalid
        self.verified: dict[int, set[int]] = {}
        self.loaded = False

    def load(self) -> set[int]:
        """Read the record and return the verified piece indices.

        A missing file means nothing is verified yet.
        """
        self.loaded = True
        self.verified = {}
        if not self.path.exists():
            return set()
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            state = ResumeState.model_validate(raw)
            self._check_matches(state)
        except (OSError, ValueError, PydanticValidationError, ResumeStateError) as e:
            if not self.discard_invalid:
                if isinstance(e, ResumeStateError):
                    raise
                msg = f"Corrupt resume state {self.path}: {e}"
                raise ResumeStateError(msg, {"path": str(self.path)}) from e
            logger.warning("Discarding unusable resume state %s: %s", self.path, e)
            return set()

        self.verified = {index: set(files) for index, files in state.verified.items()}
        logger.info(
            "Loaded resume state: %d of %d pieces verified",
            len(self.verified),
            self.metadata.num_pieces,
        )
        return set(self.verified)

    def _check_matches(self, state: ResumeState) -> None:
        meta = self.metadata
        problems = []
        if state.version != RESUME_VERSION:
            problems.append(f"version {state.version}")
        if state.info_hash != meta.info_hash.hex():
            problems.append(f"info hash {state.info_hash}")
        if state.num_pieces != meta.num_pieces or state.piece_length != meta.piece_length:
            problems.append(f"{state.num_pieces} pieces of {state.piece_length} bytes")
        if any(not 0 <= i < meta.num_pieces for i in state.verified):
            problems.append("piece index out of range")
        if any(
            not 0 <= f < len(meta.files)
            for files in state.verified.values()
            for f in files
        ):
            problems.append("file index out of range")
        if problems:
            msg = f"Resume state {self.path} does not belong to pack {meta.name}: " + ", ".join(problems)
            raise ResumeStateError(msg, {"path": str(self.path)})

    def is_verified(self, index: int) -> bool:
        """Whether a piece is recorded as verified for at least one file."""
        return index in self.verified

    def covers(self, index: int, files: Iterable[int]) -> bool:
        """Whether piece ``index`` was written into every file of ``files``."""
        written = self.verified.get(index)
        return written is not None and written.issuperset(files)

    def snapshot(self) -> ResumeState:
        """Current record as a model."""
        return ResumeState(
            version=RESUME_VERSION,
            info_hash=self.metadata.info_hash.hex(),
            name=self.metadata.name,
            num_pieces=self.metadata.num_pieces,
            piece_length=self.metadata.piece_length,
            verified={index: sorted(files) for index, files in self.verified.items()},
            updated_at=time.time(),
        )

    def save(self) -> None:
        """Write the record atomically."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        payload = self.snapshot().model_dump(mode="json")
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except OSError as e:
            msg = f"Failed to write resume state {self.path}: {e}"
            raise ResumeStateError(msg, {"path": str(self.path)}) from e

    async def save_async(self) -> None:
        """Run :meth:`save` in a worker thread."""
        await asyncio.to_thread(self.save)

    async def mark_verified(self, index: int, files: Iterable[int]) -> None:
        """Record durably that piece ``index`` was written into ``files``."""
        self.verified.setdefault(index, set()).update(files)
        await self.save_async()

    def forget_files(self, files: Iterable[int]) -> set[int]:
        """Forget every piece written into ``files``; their bytes are gone.

        Pieces left without any written file are dropped. Returns the pieces
        that lost at least one file.
        """
        gone = set(files)
        touched = {index for index, written in self.verified.items() if written & gone}
        if not touched:
            return set()
        for index in touched:
            self.verified[index] -= gone
            if not self.verified[index]:
                del self.verified[index]
        self.save()
        return touched

    def clear(self) -> None:
        """Delete the record."""
        self.verified = {}
        self.path.unlink(missing_ok=True)
        # Directory may still hold records of other packs
        with contextlib.suppress(OSError):
            self.path.parent.rmdir()
        logger.debug("Cleared resume state %s", self.path)

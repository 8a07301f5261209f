"""Piece hash verification."""

from __future__ import annotations

import asyncio
import hashlib
import hmac

from packleech.utils.exceptions import HashMismatchError

# Above this size hashing is moved off the event loop.
THREAD_THRESHOLD = 256 * 1024


class PieceVerifier:
    """Hashes assembled piece buffers and compares them with the metadata.

    Stateless: one instance can be shared by every in-flight task.
    """

    def __init__(self, algorithm: str = "sha1"):
        """Initialize with a hashlib algorithm name."""
        hashlib.new(algorithm)
        self.algorithm = algorithm

    def digest(self, data: bytes) -> bytes:
        """Digest of ``data``."""
        return hashlib.new(self.algorithm, data).digest()

    def verify(self, index: int, data: bytes, expected: bytes) -> None:
        """Raise :class:`HashMismatchError` unless ``data`` hashes to ``expected``."""
        actual = self.digest(data)
        if not hmac.compare_digest(actual, expected):
            raise HashMismatchError(index, expected, actual)

    async def verify_async(self, index: int, data: bytes, expected: bytes) -> None:
        """Like :meth:`verify`, hashing large buffers in a worker thread."""
        if len(data) >= THREAD_THRESHOLD:
            await asyncio.to_thread(self.verify, index, data, expected)
        else:
            self.verify(index, data, expected)

"""Pytest configuration and shared fixtures for packleech tests."""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

import pytest

from packleech.config import config as config_module
from packleech.core.bencode import encode
from packleech.core.metadata import parse_metadata
from packleech.extensions.webseed import RangeRequest, resolve_webseed_url
from packleech.models import PackMetadata

WEBSEED = "http://seed.test/data/"
PLENTY_OF_SPACE = 1 << 50


def pytest_configure(config):
    """Register all project markers to avoid warnings when ini isn't loaded."""
    markers = [
        ("unit", "marks tests as unit tests"),
        ("core", "marks tests as core functionality tests"),
        ("piece", "marks tests as piece management tests"),
        ("disk", "marks tests as disk I/O tests"),
        ("network", "marks tests as network tests"),
        ("session", "marks tests as session management tests"),
        ("property", "marks tests as property-based tests"),
        ("cli", "marks tests as CLI tests"),
        ("config", "marks tests as configuration tests"),
        ("integration", "marks tests as integration tests"),
    ]
    for name, desc in markers:
        config.addinivalue_line("markers", f"{name}: {desc}")


@pytest.fixture(autouse=True)
def cleanup_logging():
    """Clean up packleech logging handlers after each test."""
    yield
    logger = logging.getLogger("packleech")
    for handler in logger.handlers[:]:
        handler.close()
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)
    logger.propagate = True


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path):
    """Keep the global configuration and config file search out of the user's home."""
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.chdir(tmp_path)
    for name in config_module.ENV_MAPPINGS:
        monkeypatch.delenv(name, raising=False)
    config_module.reset_config()
    yield
    config_module.reset_config()


@dataclass
class BuiltPack:
    """A synthetic pack: metadata bytes, parsed metadata and the true content."""

    raw: bytes
    metadata: PackMetadata
    blob: bytes
    contents: dict[str, bytes]
    sources: dict[str, bytes]


def build_pack(
    files: Sequence[tuple[Any, ...]] | bytes,
    name: str = "pack",
    piece_length: int = 16,
    webseeds: Sequence[str] = (WEBSEED,),
    extra: dict[bytes, Any] | None = None,
) -> BuiltPack:
    """Build bencoded metadata for ``files``.

    ``files`` is either the bytes of a single-file pack or a sequence of
    ``(relative_path, content)`` / ``(relative_path, content, attr)`` tuples.
    """
    if isinstance(files, bytes):
        blob = files
        info: dict[bytes, Any] = {b"name": name.encode(), b"length": len(blob)}
    else:
        entries = []
        for item in files:
            path, content = item[0], item[1]
            entry: dict[bytes, Any] = {
                b"length": len(content),
                b"path": [p.encode() for p in path.split("/")],
            }
            if len(item) > 2:
                entry[b"attr"] = item[2].encode()
            entries.append(entry)
        blob = b"".join(item[1] for item in files)
        info = {b"name": name.encode(), b"files": entries}

    info[b"piece length"] = piece_length
    info[b"pieces"] = b"".join(
        hashlib.sha1(blob[i : i + piece_length]).digest()  # nosec B324
        for i in range(0, len(blob), piece_length)
    )
    root: dict[bytes, Any] = {b"info": info, b"announce": b"http://tracker.test/announce"}
    if webseeds:
        root[b"url-list"] = [w.encode() for w in webseeds]
    if extra:
        root.update(extra)
    raw = encode(root)
    metadata = parse_metadata(raw)

    contents = {
        entry.path: blob[entry.offset : entry.end] for entry in metadata.files
    }
    sources = {
        resolve_webseed_url(seed, metadata, entry): contents[entry.path]
        for seed in webseeds
        for entry in metadata.files
    }
    return BuiltPack(raw=raw, metadata=metadata, blob=blob, contents=contents, sources=sources)


@dataclass
class MemoryFetcher:
    """In-memory fetcher serving ``sources`` by URL.

    ``actions`` maps a piece index to a queue consumed one fetch call at a
    time: an exception instance is raised, ``"corrupt"`` flips the first byte
    of the returned data.
    """

    sources: dict[str, bytes]
    actions: dict[int, list[Any]] = field(default_factory=dict)
    requests: list[RangeRequest] = field(default_factory=list)
    on_fetch: Callable[[RangeRequest], None] | None = None

    async def fetch(self, request: RangeRequest) -> bytes:
        self.requests.append(request)
        if self.on_fetch is not None:
            self.on_fetch(request)
        queue = self.actions.get(request.piece_index)
        data = self.sources[request.urls[0]][request.start : request.start + request.length]
        if queue:
            action = queue.pop(0)
            if isinstance(action, Exception):
                raise action
            if action == "corrupt":
                return bytes([data[0] ^ 0xFF]) + data[1:]
        return data

    @property
    def pieces_requested(self) -> list[int]:
        return [r.piece_index for r in self.requests]


@pytest.fixture
def pack_factory():
    """Factory building synthetic packs."""
    return build_pack


@pytest.fixture
def fetcher_factory():
    """Factory building in-memory fetchers for a pack."""

    def _make(pack: BuiltPack, **kwargs: Any) -> MemoryFetcher:
        return MemoryFetcher(sources=dict(pack.sources), **kwargs)

    return _make


@pytest.fixture
def multi_pack():
    """Three files straddling piece boundaries (piece length 16).

    Layout: a.bin [0, 20), b.bin [20, 40), c.bin [40, 70); pieces 0-4, the last
    one 6 bytes long.
    """
    return build_pack(
        [
            ("a.bin", bytes(range(20))),
            ("sub/b.bin", bytes(range(100, 120))),
            ("c.bin", bytes(range(200, 230))),
        ],
        name="pack",
        piece_length=16,
    )


@pytest.fixture
def plenty_of_space():
    """Free space probe that never runs out."""
    return lambda _path: PLENTY_OF_SPACE

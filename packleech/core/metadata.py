"""Pack metadata parsing.

Turns the bencoded metadata file into a validated :class:`PackMetadata`:
ordered piece hashes, piece length, and the ordered file list with offsets
in the concatenated pack byte-space.
"""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from packleech.core.bencode import BencodeDecoder
from packleech.models import HASH_LENGTH, FileEntry, PackMetadata
from packleech.utils.exceptions import MetadataParseError
from packleech.utils.logging_config import get_logger

logger = get_logger(__name__)

_FORBIDDEN_COMPONENTS = {"", ".", ".."}


def _text(value: Any, field: str) -> str:
    if not isinstance(value, bytes):
        msg = f"Field '{field}' must be a byte string"
        raise MetadataParseError(msg)
    try:
        return value.decode("utf-8")
    except UnicodeDecodeError as e:
        msg = f"Field '{field}' is not valid UTF-8"
        raise MetadataParseError(msg) from e


def _length(value: Any, field: str) -> int:
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        msg = f"Field '{field}' must be a non-negative integer"
        raise MetadataParseError(msg)
    return value


def _component(raw: Any, field: str) -> str:
    part = _text(raw, field)
    if part in _FORBIDDEN_COMPONENTS or "/" in part or "\\" in part or "\x00" in part:
        msg = f"Unsafe path component {part!r} in '{field}'"
        raise MetadataParseError(msg)
    return part


class MetadataParser:
    """Parser for bencoded pack metadata."""

    def parse(self, data: bytes) -> PackMetadata:
        """Parse raw metadata bytes.

        Args:
            data: Bencoded metadata

        Returns:
            Validated pack metadata

        Raises:
            MetadataParseError: If the structure is malformed, required fields
                are missing, or piece hashes disagree with the total length

        """
        decoder = BencodeDecoder(data)
        root = decoder.decode_all()
        if not isinstance(root, dict):
            msg = "Metadata must be a dictionary"
            raise MetadataParseError(msg)

        info = root.get(b"info")
        if not isinstance(info, dict):
            msg = "Missing or invalid 'info' dictionary"
            raise MetadataParseError(msg)

        info_hash = hashlib.sha1(decoder.raw_value(b"info")).digest()  # nosec B324 - protocol mandated

        piece_length = info.get(b"piece length")
        if not isinstance(piece_length, int) or isinstance(piece_length, bool) or piece_length <= 0:
            msg = "Missing or invalid 'piece length'"
            raise MetadataParseError(msg)

        pieces_raw = info.get(b"pieces")
        if not isinstance(pieces_raw, bytes):
            msg = "Missing or invalid 'pieces'"
            raise MetadataParseError(msg)
        if len(pieces_raw) % HASH_LENGTH != 0:
            msg = f"'pieces' length {len(pieces_raw)} is not a multiple of {HASH_LENGTH}"
            raise MetadataParseError(msg)
        pieces = [
            pieces_raw[i : i + HASH_LENGTH]
            for i in range(0, len(pieces_raw), HASH_LENGTH)
        ]

        if b"name" not in info:
            msg = "Missing 'name'"
            raise MetadataParseError(msg)
        name = _component(info[b"name"], "name")

        has_length = b"length" in info
        has_files = b"files" in info
        if has_length == has_files:
            msg = "Metadata must specify exactly one of 'length' or 'files'"
            raise MetadataParseError(msg)

        files = (
            [FileEntry(index=0, path=name, offset=0, length=_length(info[b"length"], "length"))]
            if has_length
            else self._parse_files(info[b"files"], name)
        )

        total_length = sum(entry.length for entry in files)
        expected_pieces = -(-total_length // piece_length)
        if expected_pieces != len(pieces):
            msg = (
                f"Pack of {total_length} bytes with piece length {piece_length} "
                f"needs {expected_pieces} piece hashes, found {len(pieces)}"
            )
            raise MetadataParseError(
                msg,
                {"total_length": total_length, "piece_count": len(pieces)},
            )

        try:
            metadata = PackMetadata(
                name=name,
                piece_length=piece_length,
                pieces=pieces,
                files=files,
                info_hash=info_hash,
                single_file=has_length,
                announce=self._optional_text(root, b"announce"),
                webseeds=self._webseeds(root),
                comment=self._optional_text(root, b"comment"),
                created_by=self._optional_text(root, b"created by"),
                is_private=info.get(b"private") == 1,
            )
        except PydanticValidationError as e:
            msg = f"Inconsistent pack metadata: {e}"
            raise MetadataParseError(msg) from e

        logger.info(
            "Parsed pack %s: %d files, %d bytes, %d pieces of %d bytes",
            metadata.name,
            len(metadata.files),
            metadata.total_length,
            metadata.num_pieces,
            metadata.piece_length,
        )
        return metadata

    def _parse_files(self, raw_files: Any, name: str) -> list[FileEntry]:
        if not isinstance(raw_files, list) or not raw_files:
            msg = "'files' must be a non-empty list"
            raise MetadataParseError(msg)

        files: list[FileEntry] = []
        seen: set[str] = set()
        offset = 0
        for index, raw in enumerate(raw_files):
            if not isinstance(raw, dict):
                msg = f"File entry {index} is not a dictionary"
                raise MetadataParseError(msg)
            if b"length" not in raw or b"path" not in raw:
                msg = f"File entry {index} is missing 'length' or 'path'"
                raise MetadataParseError(msg)
            length = _length(raw[b"length"], f"files[{index}].length")
            path_parts = raw[b"path"]
            if not isinstance(path_parts, list) or not path_parts:
                msg = f"File entry {index} has an empty path"
                raise MetadataParseError(msg)
            parts = [_component(p, f"files[{index}].path") for p in path_parts]
            path = "/".join([name, *parts])
            if path in seen:
                msg = f"Duplicate file path {path}"
                raise MetadataParseError(msg)
            seen.add(path)
            attr = raw.get(b"attr")
            files.append(
                FileEntry(
                    index=index,
                    path=path,
                    offset=offset,
                    length=length,
                    attributes=_text(attr, f"files[{index}].attr") if attr is not None else None,
                )
            )
            offset += length
        return files

    def _optional_text(self, root: dict[bytes, Any], key: bytes) -> str | None:
        value = root.get(key)
        if not isinstance(value, bytes):
            return None
        return value.decode("utf-8", errors="replace")

    def _webseeds(self, root: dict[bytes, Any]) -> list[str]:
        raw = root.get(b"url-list")
        if isinstance(raw, bytes):
            raw = [raw]
        if not isinstance(raw, list):
            return []
        urls = []
        for item in raw:
            if isinstance(item, bytes) and item:
                url = item.decode("utf-8", errors="replace")
                if url.startswith(("http://", "https://")):
                    urls.append(url)
        return urls


def parse_metadata(data: bytes) -> PackMetadata:
    """Parse raw metadata bytes into :class:`PackMetadata`."""
    return MetadataParser().parse(data)


def load_metadata(path: str | Path) -> PackMetadata:
    """Read and parse a metadata file from disk."""
    path = Path(path)
    try:
        data = path.read_bytes()
    except OSError as e:
        msg = f"Cannot read metadata file {path}: {e}"
        raise MetadataParseError(msg) from e
    return parse_metadata(data)

"""Metadata decoding: bencode and pack metadata parsing."""

from __future__ import annotations

from packleech.core.bencode import BencodeDecoder, BencodeEncoder, decode, encode
from packleech.core.metadata import MetadataParser, load_metadata, parse_metadata

__all__ = [
    "BencodeDecoder",
    "BencodeEncoder",
    "MetadataParser",
    "decode",
    "encode",
    "load_metadata",
    "parse_metadata",
]

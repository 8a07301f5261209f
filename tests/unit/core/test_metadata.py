"""Tests for pack metadata parsing."""

from __future__ import annotations

import hashlib

import pytest

pytestmark = [pytest.mark.unit, pytest.mark.core]

from packleech.core.bencode import encode
from packleech.core.metadata import MetadataParser, load_metadata, parse_metadata
from packleech.utils.exceptions import MetadataParseError


def _info(overrides=None):
    info = {
        b"name": b"pack",
        b"piece length": 16,
        b"pieces": b"\x11" * 20 * 2,
        b"files": [
            {b"length": 10, b"path": [b"a.txt"]},
            {b"length": 12, b"path": [b"dir", b"b.txt"]},
        ],
    }
    info.update(overrides or {})
    return {k: v for k, v in info.items() if v is not None}


class TestMetadataParser:
    """MetadataParser tests."""

    def test_multi_file_layout(self, multi_pack):
        meta = multi_pack.metadata
        assert meta.name == "pack"
        assert not meta.single_file
        assert [f.path for f in meta.files] == ["pack/a.bin", "pack/sub/b.bin", "pack/c.bin"]
        assert [f.offset for f in meta.files] == [0, 20, 40]
        assert meta.total_length == 70
        assert meta.num_pieces == 5
        assert meta.piece_size(4) == 6
        assert meta.piece_size(0) == 16
        assert meta.webseeds == ["http://seed.test/data/"]
        assert meta.announce == "http://tracker.test/announce"

    def test_single_file(self, pack_factory):
        pack = pack_factory(b"x" * 40, name="file.iso", piece_length=16)
        meta = pack.metadata
        assert meta.single_file
        assert len(meta.files) == 1
        assert meta.files[0].path == "file.iso"
        assert meta.num_pieces == 3
        assert meta.piece_size(2) == 8

    def test_info_hash_is_hash_of_raw_info(self):
        info = _info()
        raw = encode({b"info": info})
        meta = parse_metadata(raw)
        assert meta.info_hash == hashlib.sha1(encode(info)).digest()

    def test_exact_multiple_final_piece(self, pack_factory):
        meta = pack_factory(b"y" * 32, piece_length=16).metadata
        assert meta.num_pieces == 2
        assert meta.piece_size(1) == 16

    def test_piece_size_out_of_range(self, multi_pack):
        with pytest.raises(IndexError):
            multi_pack.metadata.piece_size(5)

    def test_optional_fields(self):
        raw = encode(
            {
                b"info": _info({b"private": 1}),
                b"comment": b"hello",
                b"created by": b"tool",
                b"url-list": b"https://mirror.test/pack/",
            }
        )
        meta = parse_metadata(raw)
        assert meta.comment == "hello"
        assert meta.created_by == "tool"
        assert meta.is_private
        assert meta.webseeds == ["https://mirror.test/pack/"]

    def test_non_http_webseeds_ignored(self):
        raw = encode({b"info": _info(), b"url-list": [b"ftp://x/", b"http://ok/"]})
        assert parse_metadata(raw).webseeds == ["http://ok/"]

    def test_padding_attribute(self, pack_factory):
        pack = pack_factory(
            [("a", b"a" * 10), (".pad/6", b"\x00" * 6, "p"), ("b", b"b" * 4)]
        )
        padding = [f.is_padding for f in pack.metadata.files]
        assert padding == [False, True, False]


class TestMetadataErrors:
    """Malformed metadata is rejected."""

    def test_not_a_dict(self):
        with pytest.raises(MetadataParseError, match="dictionary"):
            parse_metadata(encode([1, 2]))

    def test_truncated(self, multi_pack):
        with pytest.raises(MetadataParseError):
            parse_metadata(multi_pack.raw[:-5])

    def test_deeply_nested(self):
        with pytest.raises(MetadataParseError, match="Nesting"):
            parse_metadata(b"d4:info" + b"l" * 100000 + b"e" * 100000 + b"e")

    def test_missing_info(self):
        with pytest.raises(MetadataParseError, match="info"):
            parse_metadata(encode({b"announce": b"x"}))

    @pytest.mark.parametrize(
        "overrides, match",
        [
            ({b"piece length": None}, "piece length"),
            ({b"piece length": 0}, "piece length"),
            ({b"pieces": None}, "pieces"),
            ({b"pieces": b"\x00" * 19}, "multiple"),
            ({b"name": None}, "name"),
            ({b"name": b".."}, "Unsafe"),
            ({b"length": 22}, "exactly one"),
            ({b"files": []}, "non-empty"),
            ({b"files": [{b"length": 22}]}, "missing"),
            ({b"files": [{b"length": 22, b"path": []}]}, "empty path"),
            ({b"files": [{b"length": -1, b"path": [b"a"]}]}, "non-negative"),
            ({b"files": [{b"length": 22, b"path": [b"../etc"]}]}, "Unsafe"),
        ],
    )
    def test_invalid_fields(self, overrides, match):
        with pytest.raises(MetadataParseError, match=match):
            parse_metadata(encode({b"info": _info(overrides)}))

    def test_duplicate_paths(self):
        files = [
            {b"length": 11, b"path": [b"a"]},
            {b"length": 11, b"path": [b"a"]},
        ]
        with pytest.raises(MetadataParseError, match="Duplicate"):
            parse_metadata(encode({b"info": _info({b"files": files})}))

    def test_piece_count_mismatch(self):
        info = _info({b"pieces": b"\x11" * 20 * 3})
        with pytest.raises(MetadataParseError, match="needs 2 piece hashes") as exc:
            parse_metadata(encode({b"info": info}))
        assert exc.value.details["piece_count"] == 3

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(MetadataParseError, match="Cannot read"):
            load_metadata(tmp_path / "missing.meta")

    def test_load_from_disk(self, tmp_path, multi_pack):
        path = tmp_path / "pack.meta"
        path.write_bytes(multi_pack.raw)
        assert load_metadata(path) == MetadataParser().parse(multi_pack.raw)

"""Tests for resume state persistence."""

from __future__ import annotations

import json

import pytest

pytestmark = [pytest.mark.unit, pytest.mark.disk]

from packleech.storage.resume import RESUME_DIR, RESUME_VERSION, ResumeStore, resume_path
from packleech.utils.exceptions import ResumeStateError


@pytest.fixture
def store(tmp_path, multi_pack):
    return ResumeStore(tmp_path, multi_pack.metadata)


def test_resume_path(tmp_path, multi_pack):
    path = resume_path(tmp_path, multi_pack.metadata.info_hash)
    assert path.parent == tmp_path / RESUME_DIR
    assert path.name == f"{multi_pack.metadata.info_hash.hex()}.resume.json"


def test_missing_file_means_nothing_verified(store):
    assert store.load() == set()
    assert store.loaded


@pytest.mark.asyncio
async def test_mark_verified_persists(tmp_path, multi_pack, store):
    store.load()
    await store.mark_verified(3, [2])
    await store.mark_verified(1, [1, 0])

    raw = json.loads(store.path.read_text(encoding="utf-8"))
    assert raw["version"] == RESUME_VERSION
    assert raw["verified"] == {"1": [0, 1], "3": [2]}
    assert raw["info_hash"] == multi_pack.metadata.info_hash.hex()
    assert not store.path.with_name(store.path.name + ".tmp").exists()

    reloaded = ResumeStore(tmp_path, multi_pack.metadata)
    assert reloaded.load() == {1, 3}
    assert reloaded.is_verified(3)
    assert not reloaded.is_verified(0)
    assert reloaded.verified[1] == {0, 1}


@pytest.mark.asyncio
async def test_mark_verified_adds_files_to_existing_piece(store):
    await store.mark_verified(1, [0])
    await store.mark_verified(1, [1])
    assert store.verified == {1: {0, 1}}


def test_covers_requires_every_file(store):
    store.verified = {1: {0}}
    assert store.covers(1, {0})
    assert not store.covers(1, {0, 1})
    assert not store.covers(1, {1})
    assert not store.covers(2, {1})


def test_corrupt_file_raises(store):
    store.path.parent.mkdir(parents=True)
    store.path.write_text("{not json", encoding="utf-8")
    with pytest.raises(ResumeStateError, match="Corrupt"):
        store.load()


def test_corrupt_file_discarded_when_asked(tmp_path, multi_pack, store):
    store.path.parent.mkdir(parents=True)
    store.path.write_text("{not json", encoding="utf-8")
    assert ResumeStore(tmp_path, multi_pack.metadata, discard_invalid=True).load() == set()


def test_record_without_file_indices_is_rejected(store):
    # Older records listed verified pieces only
    store.verified = {0: {0}}
    store.save()
    raw = json.loads(store.path.read_text(encoding="utf-8"))
    raw["version"] = 1
    raw["verified"] = [0, 1]
    store.path.write_text(json.dumps(raw), encoding="utf-8")
    with pytest.raises(ResumeStateError):
        store.load()


def test_foreign_pack_rejected(tmp_path, multi_pack, pack_factory, store):
    store.verified = {0: {0}, 1: {0, 1}}
    store.save()
    other = pack_factory(b"z" * 70, name="other", piece_length=16)
    foreign = ResumeStore(tmp_path, other.metadata)
    # Same file name, different pack
    foreign.path = store.path
    with pytest.raises(ResumeStateError, match="does not belong"):
        foreign.load()


def test_out_of_range_index_rejected(store):
    store.verified = {99: {0}}
    store.save()
    with pytest.raises(ResumeStateError, match="piece index out of range"):
        store.load()


def test_out_of_range_file_rejected(store):
    store.verified = {0: {7}}
    store.save()
    with pytest.raises(ResumeStateError, match="file index out of range"):
        store.load()


def test_forget_files(store):
    store.verified = {0: {0}, 1: {0, 1}, 2: {1, 2}}
    assert store.forget_files([0]) == {0, 1}
    assert store.verified == {1: {1}, 2: {1, 2}}
    saved = json.loads(store.path.read_text(encoding="utf-8"))["verified"]
    assert saved == {"1": [1], "2": [1, 2]}


def test_forget_untouched_files_does_not_write(store):
    store.verified = {0: {0}}
    assert store.forget_files([2]) == set()
    assert not store.path.exists()


def test_clear(tmp_path, store):
    store.verified = {0: {0}}
    store.save()
    store.clear()
    assert not store.path.exists()
    assert not (tmp_path / RESUME_DIR).exists()
    assert store.verified == {}

"""Tests for file selection predicates and batch planning."""

from __future__ import annotations

import pytest

pytestmark = [pytest.mark.unit, pytest.mark.piece]

from packleech.piece.file_selection import (
    AllOf,
    GlobPredicate,
    MatchAll,
    PathListPredicate,
    RegexPredicate,
    SelectionPredicate,
    SelectionSet,
    SizePredicate,
    plan_batches,
    select_files,
)
from packleech.utils.exceptions import SelectionEmptyError


@pytest.fixture
def media_pack(pack_factory):
    return pack_factory(
        [
            ("video/movie.MKV", b"m" * 50),
            ("video/extra.mp4", b"e" * 20),
            ("subs/en.srt", b"s" * 5),
            ("readme.txt", b"r" * 3),
        ],
        name="media",
    )


def _paths(selection):
    return [f.path for f in selection]


class TestPredicates:
    """Selection predicate behaviour."""

    def test_predicates_satisfy_protocol(self):
        for predicate in (
            MatchAll(),
            GlobPredicate(("*",)),
            RegexPredicate("x"),
            SizePredicate(),
            PathListPredicate.of([]),
            AllOf(()),
        ):
            assert isinstance(predicate, SelectionPredicate)

    def test_glob_matches_name_case_insensitive(self, media_pack):
        selection = select_files(media_pack.metadata, GlobPredicate(("*.mkv",)))
        assert _paths(selection) == ["media/video/movie.MKV"]

    def test_glob_case_sensitive(self, media_pack):
        with pytest.raises(SelectionEmptyError):
            select_files(
                media_pack.metadata, GlobPredicate(("*.mkv",), case_sensitive=True)
            )

    def test_glob_matches_path(self, media_pack):
        selection = select_files(media_pack.metadata, GlobPredicate(("media/video/*",)))
        assert _paths(selection) == ["media/video/movie.MKV", "media/video/extra.mp4"]

    def test_regex(self, media_pack):
        selection = select_files(media_pack.metadata, RegexPredicate(r"\.(srt|txt)$"))
        assert _paths(selection) == ["media/subs/en.srt", "media/readme.txt"]

    def test_size_bounds_are_inclusive(self, media_pack):
        selection = select_files(media_pack.metadata, SizePredicate(min_size=5, max_size=20))
        assert _paths(selection) == ["media/video/extra.mp4", "media/subs/en.srt"]

    def test_path_list_with_or_without_pack_dir(self, media_pack):
        predicate = PathListPredicate.of(["subs/en.srt", "/media/readme.txt"])
        selection = select_files(media_pack.metadata, predicate)
        assert _paths(selection) == ["media/subs/en.srt", "media/readme.txt"]

    def test_all_of(self, media_pack):
        predicate = AllOf((GlobPredicate(("video/*", "*.mp4", "*.mkv")), SizePredicate(max_size=30)))
        assert _paths(select_files(media_pack.metadata, predicate)) == ["media/video/extra.mp4"]

    def test_selection_preserves_pack_order(self, media_pack):
        predicate = PathListPredicate.of(["readme.txt", "video/movie.MKV"])
        selection = select_files(media_pack.metadata, predicate)
        assert [f.index for f in selection] == [0, 3]


class TestSelectFiles:
    """select_files and SelectionSet."""

    def test_empty_selection_raises(self, media_pack):
        with pytest.raises(SelectionEmptyError) as exc:
            select_files(media_pack.metadata, GlobPredicate(("*.iso",)))
        assert exc.value.details["files_in_pack"] == 4

    def test_padding_files_never_selected(self, pack_factory):
        pack = pack_factory([("a", b"a" * 10), (".pad/6", b"\x00" * 6, "p"), ("b", b"b")])
        selection = select_files(pack.metadata, MatchAll())
        assert _paths(selection) == ["pack/a", "pack/b"]

    def test_selection_set_properties(self, media_pack):
        selection = select_files(media_pack.metadata, MatchAll())
        assert len(selection) == 4
        assert selection.total_length == 78
        assert selection.indices == frozenset({0, 1, 2, 3})

    def test_selection_set_must_not_be_empty(self):
        with pytest.raises(SelectionEmptyError):
            SelectionSet(())


class TestPlanBatches:
    """Batch planning under a disk budget."""

    def test_consecutive_batches(self, media_pack):
        selection = select_files(media_pack.metadata, MatchAll())
        plan = plan_batches(selection, 50)
        assert [_paths(b) for b in plan.batches] == [
            ["media/video/movie.MKV"],
            ["media/video/extra.mp4", "media/subs/en.srt", "media/readme.txt"],
        ]
        assert plan.skipped == []

    def test_oversized_files_skipped(self, media_pack):
        selection = select_files(media_pack.metadata, MatchAll())
        plan = plan_batches(selection, 25)
        assert [f.path for f in plan.skipped] == ["media/video/movie.MKV"]
        assert [_paths(b) for b in plan.batches] == [
            ["media/video/extra.mp4", "media/subs/en.srt"],
            ["media/readme.txt"],
        ]

    def test_oversized_files_included_alone(self, media_pack):
        selection = select_files(media_pack.metadata, MatchAll())
        plan = plan_batches(selection, 25, include_oversized=True)
        assert len(plan) == 3
        assert _paths(plan.batches[0]) == ["media/video/movie.MKV"]

    def test_every_file_oversized(self, media_pack):
        selection = select_files(media_pack.metadata, GlobPredicate(("*.MKV",)))
        with pytest.raises(SelectionEmptyError):
            plan_batches(selection, 10)

    def test_budget_must_be_positive(self, media_pack):
        selection = select_files(media_pack.metadata, MatchAll())
        with pytest.raises(ValueError, match="positive"):
            plan_batches(selection, 0)

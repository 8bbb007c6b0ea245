"""
Tests for Heatmap Models and Data Sources
=========================================
"""

import pytest

from heatmap.models import Change, Range, SetWitness, VisualizationInfo, Witness, Note
from heatmap.sources import MemoryDataSource

from conftest import SET_ID


class TestRange:
    """Tests for Range."""

    def test_length_and_contains(self):
        r = Range(3, 7)
        assert r.length == 4
        assert r.contains(3)
        assert not r.contains(7)

    def test_rejects_invalid_bounds(self):
        with pytest.raises(ValueError):
            Range(5, 4)
        with pytest.raises(ValueError):
            Range(-1, 2)

    def test_zero_length_is_allowed(self):
        assert Range(5, 5).length == 0

    def test_ordering_and_hashing(self):
        assert sorted([Range(4, 9), Range(2, 8), Range(2, 3)]) == [Range(2, 3), Range(2, 8), Range(4, 9)]
        assert {Range(1, 2): 'a'}[Range(1, 2)] == 'a'

    def test_overlaps(self):
        assert Range(0, 5).overlaps(Range(4, 6))
        assert not Range(0, 5).overlaps(Range(5, 6))


class TestChange:
    """Tests for Change."""

    def test_merge_change(self):
        first = Change(index=0, range=Range(10, 15), group=1, witnesses=[2])
        second = Change(index=1, range=Range(16, 20), group=1, witnesses=[3])

        first.merge_change(second)

        assert first.range == Range(10, 20)
        assert first.witnesses == [2, 3]
        assert first.difference_frequency == 2

    def test_witness_matching_ignores_order(self):
        a = Change(index=0, range=Range(0, 1), witnesses=[2, 3])
        b = Change(index=1, range=Range(2, 3), witnesses=[3, 2])
        assert a.has_matching_witnesses(b)

    def test_add_witness_is_idempotent(self):
        change = Change(index=0, range=Range(0, 1))
        change.add_witness(2)
        change.add_witness(2)
        assert change.difference_frequency == 1


class TestSetWitness:
    """Tests for SetWitness."""

    def test_change_index(self):
        sw = SetWitness(Witness(2, "Two"), base_length=200)
        sw.add_diff_length(24)
        assert sw.change_index == pytest.approx(0.12)
        assert sw.to_dict() == {'id': 2, 'ci': '0.12'}

    def test_zero_base_length(self):
        sw = SetWitness(Witness(2), base_length=0, total_diff_length=5)
        assert sw.change_index == 0.0


class TestVisualizationInfo:
    """Tests for VisualizationInfo keys."""

    def test_key_is_deterministic(self):
        assert VisualizationInfo(1, 2, [4, 3]).key == VisualizationInfo(1, 2, [3, 4, 3]).key

    def test_base_is_never_filtered(self):
        info = VisualizationInfo(1, 2, [2, 3])
        assert info.witness_filter == [3]
        assert info == VisualizationInfo(1, 2, [3])

    def test_distinct_inputs_have_distinct_keys(self):
        keys = {
            VisualizationInfo(1, 2).key,
            VisualizationInfo(1, 2, [3]).key,
            VisualizationInfo(1, 2, [3, 4]).key,
            VisualizationInfo(1, 3).key,
            VisualizationInfo(2, 2).key,
            VisualizationInfo(1, 2, [34]).key,
        }
        assert len(keys) == 6


class TestMemoryDataSource:
    """Tests for the in-memory data source."""

    def test_set_lookup(self, source):
        assert source.get_set(SET_ID).name == "Sample"
        assert [w.id for w in source.get_witnesses(SET_ID)] == [1, 2, 3]
        assert source.get_set(99) is None
        assert source.get_witnesses(99) == []

    def test_unknown_witness_in_set(self):
        data = MemoryDataSource()
        with pytest.raises(KeyError):
            data.add_set(1, [1])

    def test_alignments_are_ordered_by_first_witness(self, source):
        alignments = source.list_alignments(SET_ID, 1, 3, 0, 10)
        starts = [a.witness_annotation(1).range.start for a in alignments]
        assert starts == [4, 31, 43]

    def test_alignments_paging(self, source):
        assert len(source.list_alignments(SET_ID, 1, 2, 0, 2)) == 2
        assert len(source.list_alignments(SET_ID, 1, 2, 2, 2)) == 1
        assert source.list_alignments(SET_ID, 1, 2, 4, 2) == []

    def test_next_token_start(self, source):
        assert source.find_next_token_start(1, 15) == 16
        assert source.find_next_token_start(1, 16) == 16
        assert source.find_next_token_start(1, 43) == 43
        assert source.find_next_token_start(1, 64) == 64

    def test_tokenized_length(self, source):
        assert source.get_tokenized_length(SET_ID, 1) == 64
        source.set_tokenized_length(SET_ID, 1, 0)
        assert source.get_tokenized_length(SET_ID, 1) == 0

    def test_content_stream(self, source):
        assert source.open_content(1).read().startswith("The quick")
        with pytest.raises(KeyError):
            source.open_content(42)

    def test_notes_are_sorted(self, source):
        source.add_note(1, Note(2, Range(20, 25), "later"))
        source.add_note(1, Note(1, Range(4, 9), "earlier"))
        assert [n.id for n in source.get_notes(1)] == [1, 2]
        assert source.has_notes(1)
        assert not source.has_revisions(1)
        assert not source.has_breaks(1)

"""
Heatmap Change List Builder v1.0.0
==================================
Folds the pairwise difference alignments of a comparison set into one
ordered list of Change records expressed against the base witness.

Alignments are first collected into one raw record per base range, each
holding every witness that differs there. The renderable list is then
built from copies of those records: zero-length insertion points are
widened to the next token so they stay visible, and neighbouring changes
with the same group, frequency and witnesses are merged into one region.
The raw records are never widened or merged, so the result does not
depend on the order in which witnesses are folded in.
"""

from typing import Callable, Dict, Iterator, List, Optional

from config_logging import get_logger, RenderCanceled, DEFAULT_BATCH_SIZE

from .models import Alignment, Change, Range, SetWitness, VisualizationInfo, Witness
from .sources import HeatmapDataSource

logger = get_logger('heatmap.changelist')


class ChangeListBuilder:
    """
    Builds the heatmap change list for one base witness.

    A builder keeps per-build state (change indexes, the raw records keyed
    by base range) and is meant to be used by a single render job.
    """

    def __init__(
        self,
        source: HeatmapDataSource,
        batch_size: int = DEFAULT_BATCH_SIZE,
        cancel_check: Optional[Callable[[], bool]] = None
    ):
        """
        Args:
            source: Collation data source
            batch_size: Alignments fetched per page
            cancel_check: Returns True when the owning job was cancelled
        """
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.source = source
        self.batch_size = batch_size
        self.cancel_check = cancel_check
        self._next_index = 0

    def build(
        self,
        set_id: int,
        base: Witness,
        base_length: int,
        witnesses: List[SetWitness],
        info: VisualizationInfo
    ) -> List[Change]:
        """
        Generate the change list of base against every unfiltered witness.

        Difference lengths are accumulated into the matching SetWitness
        entries as a side effect; they feed the change index.

        Args:
            set_id: Comparison set id
            base: Base witness
            base_length: Length of the base text
            witnesses: All witnesses of the set, base included
            info: Visualization identity carrying the witness filter

        Returns:
            Changes ordered by range start, then creation index
        """
        self._next_index = 0
        records: Dict[Range, Change] = {}
        changes: List[Change] = []
        lookup = {sw.id: sw for sw in witnesses}

        for set_witness in witnesses:
            if set_witness.id == base.id:
                continue
            if info.is_filtered(set_witness.id):
                logger.debug(f"Witness {set_witness.id} filtered out of heatmap", set_id=set_id)
                continue
            self._check_cancelled()

            logger.info(f"Generate heatmap data for {base.id} vs {set_witness.id}", set_id=set_id)
            for alignment in self._iter_alignments(set_id, base.id, set_witness.id):
                self._fold_alignment(alignment, base.id, lookup, info, records)

            changes = self._merged_changes(records, base.id, base_length)

        logger.info(f"Changelist generated: {len(changes)} changes", set_id=set_id)
        return changes

    def _merged_changes(self, records: Dict[Range, Change], base_id: int,
                        base_length: int) -> List[Change]:
        """Sort, widen and merge copies of every record collected so far."""
        changes = sorted((record.copy() for record in records.values()),
                         key=lambda c: c.sort_key)
        changes = self._merge_pass(changes, base_id)
        self._widen_last(changes, base_id, base_length)
        changes.sort(key=lambda c: c.sort_key)
        return changes

    def _iter_alignments(self, set_id: int, base_id: int, witness_id: int) -> Iterator[Alignment]:
        """Page through alignments until a short batch signals the end."""
        start = 0
        while True:
            batch = self.source.list_alignments(set_id, base_id, witness_id, start, self.batch_size)
            for alignment in batch:
                yield alignment
            if len(batch) < self.batch_size:
                break
            start += self.batch_size
            self._check_cancelled()

    def _fold_alignment(
        self,
        alignment: Alignment,
        base_id: int,
        lookup: Dict[int, SetWitness],
        info: VisualizationInfo,
        records: Dict[Range, Change]
    ):
        base_anno = alignment.witness_annotation(base_id)
        if base_anno is None:
            logger.debug(f"Alignment {alignment.id} has no base annotation; skipped")
            return

        witness_anno = alignment.counterpart(base_id)
        set_witness = lookup.get(witness_anno.witness_id) if witness_anno else None
        if set_witness is None:
            logger.debug(f"Alignment {alignment.id} is missing its witness half; skipped")
            return

        if info.is_filtered(set_witness.id):
            logger.debug("Skipping diff from witness that was filtered out")
            return

        record = records.get(base_anno.range)
        if record is None:
            record = Change(index=self._next_index, range=base_anno.range, group=alignment.group)
            self._next_index += 1
            records[base_anno.range] = record

        # Always add on the longest side of the difference
        set_witness.add_diff_length(max(base_anno.range.length, witness_anno.range.length))
        record.add_witness(set_witness.id)

    def _merge_pass(self, changes: List[Change], base_id: int) -> List[Change]:
        """Widen empty ranges and merge adjacent, same intensity changes."""
        merged: List[Change] = []
        for current in changes:
            if not merged:
                merged.append(current)
                continue

            prior = merged[-1]
            if prior.range.length == 0:
                self._widen(prior, base_id)
                # widened prior runs into the current change: drop it
                if current.range.start <= prior.range.start:
                    merged[-1] = current
                    continue

            if self._can_merge(prior, current):
                if current.range.length == 0:
                    self._widen(current, base_id)
                prior.merge_change(current)
                continue

            merged.append(current)
        return merged

    @staticmethod
    def _can_merge(prior: Change, current: Change) -> bool:
        return (current.has_matching_group(prior)
                and current.has_matching_witnesses(prior)
                and current.difference_frequency == prior.difference_frequency)

    def _widen(self, change: Change, base_id: int):
        start = change.range.start
        if start == 0:
            change.adjust_range(0, 1)
        else:
            new_start = self.source.find_next_token_start(base_id, start)
            change.adjust_range(new_start, new_start + 1)

    def _widen_last(self, changes: List[Change], base_id: int, text_length: int):
        """Make a trailing zero-length change visible."""
        if not changes:
            return
        last = changes[-1]
        if last.range.length != 0:
            return

        start = last.range.start
        if start < text_length:
            new_start = self.source.find_next_token_start(base_id, start)
            if new_start == start:
                last.adjust_range(start, start + 1)
            else:
                last.adjust_range(new_start, new_start + 1)
        elif start > 0:
            # nothing follows end-of-text; step back onto the last character
            last.adjust_range(start - 1, start)

    def _check_cancelled(self):
        if self.cancel_check is not None and self.cancel_check():
            raise RenderCanceled("Change list generation cancelled")


def generate_change_list(
    source: HeatmapDataSource,
    set_id: int,
    base: Witness,
    base_length: int,
    witnesses: List[SetWitness],
    info: VisualizationInfo,
    batch_size: int = DEFAULT_BATCH_SIZE
) -> List[Change]:
    """Convenience wrapper around ChangeListBuilder.build."""
    builder = ChangeListBuilder(source, batch_size=batch_size)
    return builder.build(set_id, base, base_length, witnesses, info)

"""
Heatmap Data Sources
====================
Read-only accessors for the collation data a heatmap is built from.

HeatmapDataSource is the interface the heatmap core consumes: comparison
sets and witnesses, paginated difference alignments, a token index, the
witness content stream, and the notes, revisions and page breaks of a
witness. MemoryDataSource implements it over in-memory texts and is used by
the test suite and the local development server.
"""

import io
import re
import threading
from abc import ABC, abstractmethod
from bisect import bisect_left
from typing import Dict, List, Optional, TextIO, Tuple

from .models import (
    AlignedAnnotation,
    Alignment,
    ComparisonSet,
    Note,
    PageBreak,
    Range,
    Revision,
    Witness,
)

# Annotation kinds that describe a difference between two witnesses
DIFFERENCE_KINDS = frozenset(('difference', 'change', 'addDel', 'transposition'))


class HeatmapDataSource(ABC):
    """
    Interface to the stored collation data of a workspace.

    All sequences are returned in ascending position order.
    """

    @abstractmethod
    def get_set(self, set_id: int) -> Optional[ComparisonSet]:
        """Comparison set by id, or None."""
        pass

    @abstractmethod
    def get_witnesses(self, set_id: int) -> List[Witness]:
        """Witnesses of a set, in set order."""
        pass

    @abstractmethod
    def get_tokenized_length(self, set_id: int, witness_id: int) -> int:
        """Cached tokenized length of a witness; 0 when collation data is missing."""
        pass

    @abstractmethod
    def list_alignments(self, set_id: int, witness_a: int, witness_b: int,
                        start: int, limit: int) -> List[Alignment]:
        """
        One page of difference alignments between two witnesses.

        Args:
            set_id: Comparison set
            witness_a: Witness whose positions order the results
            witness_b: The other witness
            start: Offset into the ordered result list
            limit: Maximum number of alignments returned
        """
        pass

    @abstractmethod
    def find_next_token_start(self, witness_id: int, offset: int) -> int:
        """Start of the first token at or after offset (offset itself if none)."""
        pass

    @abstractmethod
    def open_content(self, witness_id: int) -> TextIO:
        """Text stream of the witness content."""
        pass

    @abstractmethod
    def get_notes(self, witness_id: int) -> List[Note]:
        pass

    @abstractmethod
    def get_revisions(self, witness_id: int) -> List[Revision]:
        pass

    @abstractmethod
    def get_page_breaks(self, witness_id: int) -> List[PageBreak]:
        pass

    def has_notes(self, witness_id: int) -> bool:
        return len(self.get_notes(witness_id)) > 0

    def has_revisions(self, witness_id: int) -> bool:
        return len(self.get_revisions(witness_id)) > 0

    def has_breaks(self, witness_id: int) -> bool:
        return len(self.get_page_breaks(witness_id)) > 0


class MemoryDataSource(HeatmapDataSource):
    """
    In-memory collation store.

    Tokens are runs of word characters or single punctuation characters,
    which is what the token index answers next-token queries against.
    """

    TOKEN_PATTERN = re.compile(r"\w+|[^\w\s]")

    def __init__(self):
        self._lock = threading.RLock()
        self._witnesses: Dict[int, Witness] = {}
        self._texts: Dict[int, str] = {}
        self._token_starts: Dict[int, List[int]] = {}
        self._sets: Dict[int, ComparisonSet] = {}
        self._alignments: Dict[int, List[Alignment]] = {}
        self._lengths: Dict[Tuple[int, int], int] = {}
        self._notes: Dict[int, List[Note]] = {}
        self._revisions: Dict[int, List[Revision]] = {}
        self._breaks: Dict[int, List[PageBreak]] = {}
        self._next_alignment_id = 1

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def add_witness(self, witness_id: int, text: str, name: str = "") -> Witness:
        with self._lock:
            witness = Witness(id=witness_id, name=name or f"witness-{witness_id}", length=len(text))
            self._witnesses[witness_id] = witness
            self._texts[witness_id] = text
            self._token_starts[witness_id] = [m.start() for m in self.TOKEN_PATTERN.finditer(text)]
            return witness

    def add_set(self, set_id: int, witness_ids: List[int], name: str = "") -> ComparisonSet:
        with self._lock:
            missing = [w for w in witness_ids if w not in self._witnesses]
            if missing:
                raise KeyError(f"Unknown witnesses: {missing}")
            comparison_set = ComparisonSet(
                id=set_id,
                name=name or f"set-{set_id}",
                witnesses=[self._witnesses[w] for w in witness_ids]
            )
            self._sets[set_id] = comparison_set
            self._alignments.setdefault(set_id, [])
            return comparison_set

    def add_alignment(self, set_id: int, alignment: Alignment):
        with self._lock:
            self._alignments.setdefault(set_id, []).append(alignment)

    def add_difference(self, set_id: int, group: int,
                       first: Tuple[int, int, int], second: Tuple[int, int, int],
                       name: str = "difference") -> Alignment:
        """
        Record a difference between two witnesses.

        Args:
            first: (witness_id, start, end) of one side
            second: (witness_id, start, end) of the other side
        """
        with self._lock:
            alignment = Alignment(
                id=self._next_alignment_id,
                group=group,
                name=name,
                annotations=(
                    AlignedAnnotation(first[0], Range(first[1], first[2]), name),
                    AlignedAnnotation(second[0], Range(second[1], second[2]), name),
                )
            )
            self._next_alignment_id += 1
            self.add_alignment(set_id, alignment)
            return alignment

    def set_tokenized_length(self, set_id: int, witness_id: int, length: int):
        with self._lock:
            self._lengths[(set_id, witness_id)] = length

    def add_note(self, witness_id: int, note: Note):
        with self._lock:
            notes = self._notes.setdefault(witness_id, [])
            notes.append(note)
            notes.sort(key=lambda n: (n.anchor.start, n.id))

    def add_revision(self, witness_id: int, revision: Revision):
        with self._lock:
            revisions = self._revisions.setdefault(witness_id, [])
            revisions.append(revision)
            revisions.sort(key=lambda r: (r.range.start, r.id))

    def add_page_break(self, witness_id: int, page_break: PageBreak):
        with self._lock:
            breaks = self._breaks.setdefault(witness_id, [])
            breaks.append(page_break)
            breaks.sort(key=lambda b: (b.offset, b.id))

    # ------------------------------------------------------------------
    # HeatmapDataSource
    # ------------------------------------------------------------------

    def get_set(self, set_id: int) -> Optional[ComparisonSet]:
        with self._lock:
            return self._sets.get(set_id)

    def get_witnesses(self, set_id: int) -> List[Witness]:
        with self._lock:
            comparison_set = self._sets.get(set_id)
            return list(comparison_set.witnesses) if comparison_set else []

    def get_tokenized_length(self, set_id: int, witness_id: int) -> int:
        with self._lock:
            if (set_id, witness_id) in self._lengths:
                return self._lengths[(set_id, witness_id)]
            return len(self._texts.get(witness_id, ""))

    def list_alignments(self, set_id: int, witness_a: int, witness_b: int,
                        start: int, limit: int) -> List[Alignment]:
        with self._lock:
            pair = {witness_a, witness_b}
            matches = [
                a for a in self._alignments.get(set_id, [])
                if a.name in DIFFERENCE_KINDS
                and {anno.witness_id for anno in a.annotations} == pair
            ]

        def position(alignment: Alignment):
            anno = alignment.witness_annotation(witness_a)
            return (anno.range.start, anno.range.end, alignment.id)

        matches.sort(key=position)
        return matches[start:start + limit]

    def find_next_token_start(self, witness_id: int, offset: int) -> int:
        starts = self._token_starts.get(witness_id, [])
        idx = bisect_left(starts, offset)
        if idx < len(starts):
            return starts[idx]
        return offset

    def open_content(self, witness_id: int) -> TextIO:
        with self._lock:
            if witness_id not in self._texts:
                raise KeyError(f"No content for witness {witness_id}")
            return io.StringIO(self._texts[witness_id])

    def get_notes(self, witness_id: int) -> List[Note]:
        with self._lock:
            return list(self._notes.get(witness_id, []))

    def get_revisions(self, witness_id: int) -> List[Revision]:
        with self._lock:
            return list(self._revisions.get(witness_id, []))

    def get_page_breaks(self, witness_id: int) -> List[PageBreak]:
        with self._lock:
            return list(self._breaks.get(witness_id, []))

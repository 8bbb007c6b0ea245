"""
Heatmap Models v1.0.0
=====================
Data classes for heatmap change lists and the annotation data that is
injected into a rendered base witness.
"""

import hashlib
from dataclasses import dataclass, field
from typing import List, Dict, Optional, Any, Iterable, Tuple


@dataclass(frozen=True, order=True)
class Range:
    """
    Half-open interval [start, end) over character offsets of a witness.

    Ranges order by (start, end) and are hashable so they can key the
    change lookup table.
    """
    start: int
    end: int

    def __post_init__(self):
        if self.start < 0:
            raise ValueError(f"Range start must not be negative: {self.start}")
        if self.end < self.start:
            raise ValueError(f"Range end {self.end} precedes start {self.start}")

    @property
    def length(self) -> int:
        return self.end - self.start

    def contains(self, offset: int) -> bool:
        return self.start <= offset < self.end

    def overlaps(self, other: 'Range') -> bool:
        return self.start < other.end and other.start < self.end

    def to_dict(self) -> Dict[str, int]:
        return {'start': self.start, 'end': self.end}


@dataclass
class Witness:
    """One text among those being compared."""
    id: int
    name: str = ""
    length: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {'id': self.id, 'name': self.name, 'length': self.length}


@dataclass
class ComparisonSet:
    """A named group of witnesses collated against each other."""
    id: int
    name: str = ""
    witnesses: List[Witness] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'witnesses': [w.to_dict() for w in self.witnesses]
        }


@dataclass(frozen=True)
class AlignedAnnotation:
    """One side of a pairwise alignment."""
    witness_id: int
    range: Range
    name: str = "difference"


@dataclass(frozen=True)
class Alignment:
    """
    A detected difference between spans of two witnesses.

    Attributes:
        id: Alignment identifier from the collation store
        group: Difference group; only changes from the same group merge
        annotations: Aligned annotations, one per witness
        name: Annotation kind ('difference', 'transposition', ...)
    """
    id: int
    group: int
    annotations: Tuple[AlignedAnnotation, ...]
    name: str = "difference"

    def witness_annotation(self, witness_id: int) -> Optional[AlignedAnnotation]:
        """Annotation belonging to the given witness, if any."""
        for anno in self.annotations:
            if anno.witness_id == witness_id:
                return anno
        return None

    def counterpart(self, witness_id: int) -> Optional[AlignedAnnotation]:
        """Annotation on the other side of the alignment, if any."""
        for anno in self.annotations:
            if anno.witness_id != witness_id:
                return anno
        return None


@dataclass
class Change:
    """
    A merged, renderable record of one difference region in the base text.

    Attributes:
        index: Creation order; tie-break when two changes start together
        range: Current extent in the base text (widened and merged in place)
        group: Difference group of the first alignment seen for the range
        witnesses: Ids of the witnesses that differ from the base here
    """
    index: int
    range: Range
    group: int = 0
    witnesses: List[int] = field(default_factory=list)

    @property
    def difference_frequency(self) -> int:
        """How many witnesses disagree with the base over this range."""
        return len(self.witnesses)

    @property
    def sort_key(self) -> Tuple[int, int]:
        return (self.range.start, self.index)

    def add_witness(self, witness_id: int):
        if witness_id not in self.witnesses:
            self.witnesses.append(witness_id)

    def has_matching_group(self, other: 'Change') -> bool:
        return self.group == other.group

    def has_matching_witnesses(self, other: 'Change') -> bool:
        return set(self.witnesses) == set(other.witnesses)

    def merge_change(self, other: 'Change'):
        """Absorb another change's witnesses and extent."""
        for witness_id in other.witnesses:
            self.add_witness(witness_id)
        self.range = Range(min(self.range.start, other.range.start),
                           max(self.range.end, other.range.end))

    def adjust_range(self, start: int, end: int):
        self.range = Range(start, end)

    def copy(self) -> 'Change':
        """Independent copy with witness ids in ascending order."""
        return Change(index=self.index, range=self.range, group=self.group,
                      witnesses=sorted(self.witnesses))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'index': self.index,
            'range': self.range.to_dict(),
            'group': self.group,
            'frequency': self.difference_frequency,
            'witnesses': list(self.witnesses)
        }


@dataclass
class SetWitness:
    """
    A witness decorated with its change index for one rendering.

    change_index is the witness's accumulated difference length divided by
    the tokenized length of the base witness.
    """
    witness: Witness
    base_length: int
    is_base: bool = False
    total_diff_length: int = 0

    @property
    def id(self) -> int:
        return self.witness.id

    @property
    def name(self) -> str:
        return self.witness.name

    def add_diff_length(self, longest_diff: int):
        self.total_diff_length += longest_diff

    @property
    def change_index(self) -> float:
        if self.base_length <= 0:
            return 0.0
        return self.total_diff_length / self.base_length

    def to_dict(self) -> Dict[str, Any]:
        """Entry of the change index list embedded in rendered output."""
        return {'id': self.id, 'ci': f"{self.change_index:.2f}"}


@dataclass
class Note:
    """A footnote anchored to a range of the witness text."""
    id: int
    anchor: Range
    content: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {'id': self.id, 'anchor': self.anchor.to_dict(), 'content': self.content}


@dataclass
class Revision:
    """An add or delete revision mark recorded in the witness source."""
    id: int
    range: Range
    kind: str = "add"  # 'add', 'delete'

    def to_dict(self) -> Dict[str, Any]:
        return {'id': self.id, 'range': self.range.to_dict(), 'kind': self.kind}


@dataclass
class PageBreak:
    """A page break at a single offset of the witness text."""
    id: int
    offset: int
    label: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {'id': self.id, 'offset': self.offset, 'label': self.label}


class VisualizationInfo:
    """
    Identity of a cacheable rendering: set, base witness, excluded witnesses.

    The key is a SHA-1 digest over exactly those three inputs. Filter ids are
    sorted and de-duplicated first, and the base is never part of its own
    filter, so equal requests always share a key.
    """

    def __init__(self, set_id: int, base_id: int, witness_filter: Optional[Iterable[int]] = None):
        self.set_id = set_id
        self.base_id = base_id
        self.witness_filter = sorted({w for w in (witness_filter or []) if w != base_id})
        self._key = None

    @property
    def key(self) -> str:
        if self._key is None:
            filter_part = ",".join(str(w) for w in self.witness_filter)
            raw = f"{self.set_id}|{self.base_id}|{filter_part}"
            self._key = hashlib.sha1(raw.encode('utf-8')).hexdigest()
        return self._key

    def is_filtered(self, witness_id: int) -> bool:
        return witness_id in self.witness_filter

    def __eq__(self, other):
        return isinstance(other, VisualizationInfo) and self.key == other.key

    def __hash__(self):
        return hash(self.key)

    def __repr__(self):
        return (f"VisualizationInfo(set_id={self.set_id}, base_id={self.base_id}, "
                f"witness_filter={self.witness_filter})")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'set_id': self.set_id,
            'base_id': self.base_id,
            'witness_filter': list(self.witness_filter),
            'key': self.key
        }

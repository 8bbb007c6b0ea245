"""
Heatmap Injectors v1.0.0
========================
Stateful annotators that add markup to the base text while it streams.

Each injector owns an ascending list of events for one base witness and a
forward-only cursor. The renderer asks every injector at every character
position whether it has content there, then lets them close marks (innermost
first) and open marks (outermost first).

All markup is written through a MarkupBuffer, which keeps output well-nested
when ranges from different injectors cross each other.
"""

import html
import math
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Tuple

from config_logging import get_logger

from .models import Change, Note, PageBreak, Range, Revision

logger = get_logger('heatmap.injectors')

HEAT_LEVELS = 5


def _attrs(attributes: Dict[str, Any]) -> str:
    parts = []
    for name, value in attributes.items():
        if value is None:
            continue
        parts.append(f' {name}="{html.escape(str(value), quote=True)}"')
    return "".join(parts)


class MarkupBuffer:
    """
    Accumulates escaped text and markup, tracking which marks are open.

    Marks are identified by a key unique among open marks. Closing a mark
    that has younger marks still open closes those first and reopens them
    afterwards.
    """

    def __init__(self):
        self._parts: List[str] = []
        self._open: List[Tuple[str, str, str]] = []  # (key, open tag, close tag)

    @property
    def open_marks(self) -> List[str]:
        return [key for key, _, _ in self._open]

    def write(self, text: str):
        self._parts.append(text)

    def write_text(self, text: str):
        self._parts.append(html.escape(text, quote=False))

    def open(self, key: str, tag: str, attributes: Dict[str, Any]):
        open_tag = f"<{tag}{_attrs(attributes)}>"
        self._open.append((key, open_tag, f"</{tag}>"))
        self._parts.append(open_tag)

    def close(self, key: str) -> bool:
        """Close the mark with this key. Returns False if it is not open."""
        for idx in range(len(self._open) - 1, -1, -1):
            if self._open[idx][0] == key:
                break
        else:
            return False

        younger = self._open[idx + 1:]
        for _, _, close_tag in reversed(younger):
            self._parts.append(close_tag)
        self._parts.append(self._open[idx][2])
        for _, open_tag, _ in younger:
            self._parts.append(open_tag)
        del self._open[idx]
        return True

    def close_all(self):
        while self._open:
            _, _, close_tag = self._open.pop()
            self._parts.append(close_tag)

    def drain(self) -> str:
        """Return buffered output and clear it; open marks stay open."""
        text = "".join(self._parts)
        self._parts = []
        return text

    def getvalue(self) -> str:
        return "".join(self._parts)


class Injector(ABC):
    """Adds markup to a base text at character positions."""

    @abstractmethod
    def has_content(self, position: int) -> bool:
        """True if a mark starts or ends at position and was not emitted yet."""
        pass

    @abstractmethod
    def inject_start(self, buffer: MarkupBuffer, position: int):
        pass

    @abstractmethod
    def inject_end(self, buffer: MarkupBuffer, position: int):
        pass

    def inject_trailing(self, buffer: MarkupBuffer) -> bool:
        """Emit data that is not anchored inside the text."""
        return False


class RangeInjector(Injector):
    """
    Base for injectors whose events cover a range of the text.

    Subclasses supply the range, the mark key and the opening tag of an event.
    """

    def __init__(self, events: Sequence[Any]):
        self._events = sorted(events, key=lambda e: (self.event_range(e).start, self.event_range(e).end))
        self._cursor = 0
        self._open: List[Any] = []

    @abstractmethod
    def event_range(self, event) -> Range:
        pass

    @abstractmethod
    def mark_key(self, event) -> str:
        pass

    @abstractmethod
    def mark_tag(self, event) -> Tuple[str, Dict[str, Any]]:
        pass

    def _skip_passed(self, position: int):
        while self._cursor < len(self._events) and self.event_range(self._events[self._cursor]).start < position:
            logger.debug(f"Skipping {self.mark_key(self._events[self._cursor])}; start already passed")
            self._cursor += 1

    def has_content(self, position: int) -> bool:
        self._skip_passed(position)
        if any(self.event_range(e).end <= position for e in self._open):
            return True
        return (self._cursor < len(self._events)
                and self.event_range(self._events[self._cursor]).start == position)

    def inject_start(self, buffer: MarkupBuffer, position: int):
        while (self._cursor < len(self._events)
               and self.event_range(self._events[self._cursor]).start == position):
            event = self._events[self._cursor]
            self._cursor += 1
            tag, attributes = self.mark_tag(event)
            buffer.open(self.mark_key(event), tag, attributes)
            self._open.append(event)

    def inject_end(self, buffer: MarkupBuffer, position: int):
        for event in reversed(list(self._open)):
            if self.event_range(event).end <= position:
                buffer.close(self.mark_key(event))
                self._open.remove(event)


class RevisionInjector(RangeInjector):
    """Marks add/delete revisions recorded in the witness source."""

    def __init__(self, revisions: Sequence[Revision]):
        super().__init__(revisions)

    def event_range(self, event: Revision) -> Range:
        return event.range

    def mark_key(self, event: Revision) -> str:
        return f"revision-{event.id}"

    def mark_tag(self, event: Revision):
        return 'span', {'class': f"revision {event.kind}", 'id': f"revision-{event.id}"}


class BreakInjector(Injector):
    """Emits a marker at each page break offset."""

    def __init__(self, breaks: Sequence[PageBreak]):
        self._breaks = sorted(breaks, key=lambda b: (b.offset, b.id))
        self._cursor = 0

    def has_content(self, position: int) -> bool:
        while self._cursor < len(self._breaks) and self._breaks[self._cursor].offset < position:
            self._cursor += 1
        return self._cursor < len(self._breaks) and self._breaks[self._cursor].offset == position

    def inject_start(self, buffer: MarkupBuffer, position: int):
        while self._cursor < len(self._breaks) and self._breaks[self._cursor].offset == position:
            page_break = self._breaks[self._cursor]
            self._cursor += 1
            buffer.write(f'<span class="page-break"{_attrs({"title": page_break.label})}>|</span>')

    def inject_end(self, buffer: MarkupBuffer, position: int):
        pass


class NoteInjector(RangeInjector):
    """
    Marks note anchors in the text.

    Notes anchored at or past the end of the text cannot be placed inline;
    they are emitted as trailing notes after the final line.
    """

    def __init__(self, notes: Sequence[Note], text_length: int):
        inline = [n for n in notes if n.anchor.start < text_length]
        self._trailing = [n for n in notes if n.anchor.start >= text_length]
        super().__init__(inline)

    @property
    def data(self) -> List[Note]:
        """Inline-anchored notes, in anchor order, for the note margin."""
        return list(self._events)

    @property
    def trailing(self) -> List[Note]:
        return list(self._trailing)

    def event_range(self, event: Note) -> Range:
        return event.anchor

    def mark_key(self, event: Note) -> str:
        return f"note-anchor-{event.id}"

    def mark_tag(self, event: Note):
        return 'span', {'class': 'note-anchor', 'id': f"note-anchor-{event.id}"}

    def inject_trailing(self, buffer: MarkupBuffer) -> bool:
        if not self._trailing:
            return False
        buffer.write('<div class="trailing-notes">')
        for note in self._trailing:
            buffer.write(f'<div class="note"{_attrs({"id": f"note-{note.id}"})}>')
            buffer.write_text(note.content)
            buffer.write('</div>')
        buffer.write('</div>')
        return True


class ChangeInjector(RangeInjector):
    """Wraps each change in a span whose heat class reflects its frequency."""

    def __init__(self, changes: Sequence[Change], compared_count: int):
        super().__init__(changes)
        self.compared_count = max(1, compared_count)

    def heat_level(self, change: Change) -> int:
        level = math.ceil(HEAT_LEVELS * change.difference_frequency / self.compared_count)
        return min(HEAT_LEVELS, max(1, level))

    def event_range(self, event: Change) -> Range:
        return event.range

    def mark_key(self, event: Change) -> str:
        return f"change-{event.index}"

    def mark_tag(self, event: Change):
        return 'span', {
            'id': f"change-{event.index}",
            'class': f"change heat{self.heat_level(event)}",
            'data-group': event.group,
            'data-witnesses': ",".join(str(w) for w in event.witnesses),
        }


def build_injectors(
    changes: Sequence[Change],
    compared_count: int,
    text_length: int,
    notes: Optional[Sequence[Note]] = None,
    revisions: Optional[Sequence[Revision]] = None,
    breaks: Optional[Sequence[PageBreak]] = None
) -> List[Injector]:
    """Injectors in declared order: revision, page break, note, change."""
    return [
        RevisionInjector(revisions or []),
        BreakInjector(breaks or []),
        NoteInjector(notes or [], text_length),
        ChangeInjector(changes, compared_count),
    ]

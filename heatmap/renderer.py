"""
Heatmap Renderer v1.0.0
=======================
Streams a base witness through the injector pipeline into an HTML body,
then wraps the body in the heatmap document template.
"""

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, TextIO

from jinja2 import Environment, PackageLoader, select_autoescape

from config_logging import get_logger, RenderCanceled, RenderResourceError

from .injectors import Injector, MarkupBuffer
from .models import Note, SetWitness

logger = get_logger('heatmap.renderer')

RESOURCE_MESSAGE = (
    "The server has insufficient resources to generate this visualization. "
    "Try again later. If this fails, try breaking large witnesses up into smaller segments."
)

LINE_END = "<br/>\n"

_template_env = Environment(
    loader=PackageLoader('heatmap', 'templates'),
    autoescape=select_autoescape(['html'])
)


class HeatmapRenderer:
    """
    Renders one base witness with heatmap markup.

    Usage:
        renderer = HeatmapRenderer(temp_dir=config.temp_dir, cancel_check=job_is_cancelled)
        body = renderer.render_body(source.open_content(base.id), injectors)
        html = renderer.assemble(body, base_name="A", witnesses=set_witnesses)
    """

    CHUNK_SIZE = 8192

    def __init__(self, temp_dir: Optional[Path] = None,
                 cancel_check: Optional[Callable[[], bool]] = None,
                 progress: Optional[Callable[[int], Any]] = None):
        """
        Args:
            temp_dir: Directory for body files; system default when None
            cancel_check: Returns True when the owning job was cancelled
            progress: Called with the text position after every flushed line
        """
        self.temp_dir = temp_dir
        self.cancel_check = cancel_check
        self.progress = progress

    def render_body(self, content: TextIO, injectors: List[Injector]) -> Path:
        """
        Stream content into a temporary UTF-8 file of HTML lines.

        Returns:
            Path of the body file; the caller removes it when done.

        Raises:
            RenderCanceled: Cancellation was requested while streaming
            RenderResourceError: Ran out of memory
        """
        if self.temp_dir is not None:
            Path(self.temp_dir).mkdir(parents=True, exist_ok=True)
        fd, name = tempfile.mkstemp(prefix='heatmap-', suffix='.html', dir=self.temp_dir)
        path = Path(name)
        try:
            with open(fd, 'w', encoding='utf-8') as out:
                lines = self._stream(content, injectors, out)
        except RenderCanceled:
            self._discard(path)
            raise
        except MemoryError:
            self._discard(path)
            logger.error("Out of memory while rendering heatmap body")
            raise RenderResourceError(RESOURCE_MESSAGE)
        except Exception:
            self._discard(path)
            raise
        finally:
            content.close()

        logger.debug(f"Rendered {lines} lines to {path.name}")
        return path

    def _stream(self, content: TextIO, injectors: List[Injector], out) -> int:
        buffer = MarkupBuffer()
        position = 0
        lines = 0
        self._check_cancelled()

        while True:
            chunk = content.read(self.CHUNK_SIZE)
            if not chunk:
                break
            for char in chunk:
                self._inject(injectors, buffer, position)
                if char == '\n':
                    buffer.write(LINE_END)
                    out.write(buffer.drain())
                    lines += 1
                    if self.progress is not None:
                        self.progress(position + 1)
                    self._check_cancelled()
                else:
                    buffer.write_text(char)
                position += 1

        # end-of-text is a position too
        self._inject(injectors, buffer, position)
        buffer.close_all()
        buffer.write(LINE_END)
        out.write(buffer.drain())
        lines += 1

        for injector in injectors:
            injector.inject_trailing(buffer)
        out.write(buffer.drain())
        return lines

    @staticmethod
    def _inject(injectors: List[Injector], buffer: MarkupBuffer, position: int):
        while any(injector.has_content(position) for injector in injectors):
            for injector in reversed(injectors):
                injector.inject_end(buffer, position)
            for injector in injectors:
                injector.inject_start(buffer, position)

    def assemble(
        self,
        body_path: Path,
        base_name: str,
        witnesses: Sequence[SetWitness],
        compared_count: int,
        notes: Optional[Sequence[Note]] = None,
        condensed: bool = False
    ) -> str:
        """
        Wrap a rendered body in the heatmap document.

        Condensed output leaves out the note margin and the change index list.
        """
        context: Dict[str, Any] = {
            'base_name': base_name,
            'condensed': condensed,
            'compared_count': compared_count,
            'notes': [] if condensed else list(notes or []),
            'change_index': None,
        }
        if not condensed:
            context['change_index'] = json.dumps(
                [w.to_dict() for w in witnesses if not w.is_base]
            )

        try:
            body = body_path.read_text(encoding='utf-8')
            return _template_env.get_template('heatmap_text.html').render(body=body, **context)
        except MemoryError:
            logger.error("Out of memory while assembling heatmap document")
            raise RenderResourceError(RESOURCE_MESSAGE)

    def _check_cancelled(self):
        if self.cancel_check is not None and self.cancel_check():
            raise RenderCanceled("Heatmap rendering cancelled")

    @staticmethod
    def _discard(path: Path):
        try:
            os.remove(path)
        except FileNotFoundError:
            pass

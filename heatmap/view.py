"""
Heatmap View v1.0.0
===================
Entry point for heatmap visualizations: serve from cache, or schedule (or
join) a background render and tell the caller to poll.
"""

import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from config_logging import (
    get_logger, get_config, handle_errors, AppConfig,
    DataIntegrityError, NotFoundError, ValidationError, RenderResourceError,
    RenderCanceled,
)
from job_manager import Job, JobManager, JobPhase, JobStatus

from .cache import HeatmapCache
from .changelist import ChangeListBuilder
from .injectors import NoteInjector, build_injectors
from .models import ComparisonSet, SetWitness, VisualizationInfo, Witness
from .renderer import HeatmapRenderer, RESOURCE_MESSAGE
from .sources import HeatmapDataSource

logger = get_logger('heatmap.view')

STATUS_READY = 'ready'
STATUS_RENDERING = 'rendering'
STATUS_UNAVAILABLE = 'unavailable'
STATUS_ERROR = 'error'

TOO_FEW_WITNESSES = "This set contains less than two witnesses. Unable to view heatmap."
MISSING_BASE_LENGTH = "Missing length of base witness. Please re-collate."


def generate_task_id(set_id: int, visualization_key: str, condensed: bool) -> str:
    """Deterministic task id for one (set, visualization, mode) rendering."""
    raw = f"{set_id}:{visualization_key}:{int(bool(condensed))}"
    return "heatmap-" + hashlib.sha1(raw.encode('utf-8')).hexdigest()[:16]


@dataclass
class HeatmapResponse:
    """Result of a visualization request."""
    status: str
    content: Optional[str] = None
    task_id: Optional[str] = None
    message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_ready(self) -> bool:
        return self.status == STATUS_READY

    def to_dict(self, include_content: bool = False) -> Dict[str, Any]:
        data = {
            'status': self.status,
            'task_id': self.task_id,
            'message': self.message,
            'metadata': self.metadata
        }
        if include_content:
            data['content'] = self.content
        return data


class HeatmapTask:
    """
    One background rendering of a base witness.

    Everything mutable (SetWitness totals, changes, injectors) is created
    inside run(), so concurrent tasks never share state.
    """

    job_type = 'heatmap'

    def __init__(
        self,
        task_id: str,
        source: HeatmapDataSource,
        cache: HeatmapCache,
        manager: JobManager,
        comparison_set: ComparisonSet,
        base: Witness,
        base_length: int,
        info: VisualizationInfo,
        condensed: bool = False,
        batch_size: int = 5000,
        temp_dir: Optional[Path] = None
    ):
        self.task_id = task_id
        self.source = source
        self.cache = cache
        self.manager = manager
        self.comparison_set = comparison_set
        self.base = base
        self.base_length = base_length
        self.info = info
        self.condensed = condensed
        self.batch_size = batch_size
        self.temp_dir = temp_dir
        self.metadata = {
            'set_id': comparison_set.id,
            'base_id': base.id,
            'visualization_key': info.key,
            'condensed': condensed
        }

    def run(self, job: Job) -> Dict[str, Any]:
        set_id = self.comparison_set.id
        logger.info(f"Rendering heatmap for set {set_id}", set_id=set_id, task_id=self.task_id)

        def cancelled() -> bool:
            return job.is_cancelled

        witnesses = self.source.get_witnesses(set_id)
        set_witnesses = [
            SetWitness(w, self.base_length, is_base=(w.id == self.base.id))
            for w in witnesses
        ]
        compared = [sw for sw in set_witnesses
                    if not sw.is_base and not self.info.is_filtered(sw.id)]

        self.manager.update_phase(job, JobPhase.BUILDING_CHANGES, "Generating change list")
        builder = ChangeListBuilder(self.source, batch_size=self.batch_size, cancel_check=cancelled)
        with logger.log_operation("build_change_list", set_id=set_id, task_id=self.task_id):
            changes = builder.build(set_id, self.base, self.base_length, set_witnesses, self.info)

        text_length = self.base.length or self.base_length
        self.manager.update_phase(job, JobPhase.STREAMING, f"Streaming {len(changes)} changes")
        injectors = build_injectors(
            changes,
            compared_count=len(compared),
            text_length=text_length,
            notes=self.source.get_notes(self.base.id),
            revisions=self.source.get_revisions(self.base.id),
            breaks=self.source.get_page_breaks(self.base.id)
        )
        note_injector = next(i for i in injectors if isinstance(i, NoteInjector))

        def streamed(position: int):
            self.manager.update_phase_progress(job, 100.0 * position / text_length)

        renderer = HeatmapRenderer(temp_dir=self.temp_dir, cancel_check=cancelled,
                                   progress=streamed)
        body_path = renderer.render_body(self.source.open_content(self.base.id), injectors)
        try:
            document = renderer.assemble(
                body_path,
                base_name=self.base.name,
                witnesses=set_witnesses,
                compared_count=len(compared),
                notes=note_injector.data,
                condensed=self.condensed
            )
        finally:
            body_path.unlink(missing_ok=True)

        if job.is_cancelled:
            raise RenderCanceled("Heatmap rendering cancelled")

        metadata = {
            'base_id': self.base.id,
            'base_name': self.base.name,
            'visualization_key': self.info.key,
            'witness_filter': list(self.info.witness_filter),
            'witnesses': [sw.to_dict() for sw in set_witnesses if not sw.is_base],
            'change_count': len(changes),
            'has_notes': self.source.has_notes(self.base.id),
            'has_breaks': self.source.has_breaks(self.base.id),
            'has_revisions': self.source.has_revisions(self.base.id),
        }

        self.manager.update_phase(job, JobPhase.CACHING, "Caching heatmap")
        committed = self.manager.commit(job, lambda: self.cache.put(
            set_id, self.info.key, self.condensed, document, metadata))
        if not committed:
            raise RenderCanceled("Heatmap rendering cancelled before caching")

        logger.info(f"Heatmap for set {set_id} cached", set_id=set_id, task_id=self.task_id)
        return {'change_count': len(changes), 'size': len(document)}


class HeatmapView:
    """
    Render-or-join entry point for heatmap visualizations.

    The request path never waits on a worker: a cache hit returns content,
    anything else returns a task id to poll.
    """

    def __init__(
        self,
        source: HeatmapDataSource,
        cache: HeatmapCache,
        manager: JobManager,
        config: Optional[AppConfig] = None
    ):
        self.source = source
        self.cache = cache
        self.manager = manager
        self.config = config or get_config()

    @handle_errors(logger)
    def render(
        self,
        set_id: int,
        base_id: Optional[int] = None,
        condensed: bool = False,
        witness_filter: Optional[Iterable[int]] = None,
        refresh: bool = False
    ) -> HeatmapResponse:
        """
        Get a heatmap, scheduling its rendering when it is not cached yet.

        Args:
            set_id: Comparison set id
            base_id: Base witness; defaults to the first witness of the set
            condensed: Render the condensed variant
            witness_filter: Witness ids left out of the visualization
            refresh: Drop the set's cached renderings first

        Raises:
            NotFoundError: Unknown set or base witness
            ValidationError: Filter names a witness outside the set
        """
        comparison_set = self.source.get_set(set_id)
        if comparison_set is None:
            raise NotFoundError(f"Comparison set {set_id} does not exist", resource='set')

        if refresh:
            self.cache.delete_set(set_id)

        witnesses = self.source.get_witnesses(set_id)
        if len(witnesses) < 2:
            return HeatmapResponse(status=STATUS_UNAVAILABLE, message=TOO_FEW_WITNESSES)

        base = self._resolve_base(witnesses, base_id)
        info = VisualizationInfo(set_id, base.id, self._check_filter(witnesses, witness_filter))

        try:
            base_length = self._base_length(set_id, base)
        except DataIntegrityError as e:
            return HeatmapResponse(status=STATUS_ERROR, message=e.message,
                                   metadata={'code': e.code})

        try:
            cached = self.cache.get(set_id, info.key, condensed)
        except MemoryError:
            logger.error("Out of memory reading cached heatmap", set_id=set_id)
            error = RenderResourceError(RESOURCE_MESSAGE)
            return HeatmapResponse(status=STATUS_ERROR, message=error.message,
                                   metadata={'code': error.code})
        if cached is not None:
            return HeatmapResponse(status=STATUS_READY, content=cached.content,
                                   metadata=cached.metadata)

        task_id = generate_task_id(set_id, info.key, condensed)

        failed = self._take_failure(task_id)
        if failed is not None:
            return HeatmapResponse(status=STATUS_ERROR, task_id=task_id, message=failed.error,
                                   metadata={'code': failed.error_code or 'RENDER_FAILED'})

        task = HeatmapTask(
            task_id, self.source, self.cache, self.manager, comparison_set, base, base_length,
            info, condensed=condensed,
            batch_size=self.config.heatmap_batch_size,
            temp_dir=self.config.temp_dir
        )
        job = self.manager.submit(task)
        return HeatmapResponse(status=STATUS_RENDERING, task_id=job.job_id,
                               message=f"RENDERING {job.job_id}")

    @handle_errors(logger)
    def delete(self, set_id: int) -> int:
        """Invalidate every cached heatmap of a set, e.g. after re-collation."""
        return self.cache.delete_set(set_id)

    @handle_errors(logger)
    def task_status(self, task_id: str) -> Dict[str, Any]:
        job = self.manager.get_job(task_id)
        if job is None:
            raise NotFoundError(f"Task {task_id} not found", resource='task')
        return job.to_dict()

    @handle_errors(logger)
    def cancel(self, task_id: str) -> bool:
        """Request cancellation. False when the task already finished."""
        job = self.manager.get_job(task_id)
        if job is None:
            raise NotFoundError(f"Task {task_id} not found", resource='task')
        return self.manager.cancel_job(task_id)

    def _resolve_base(self, witnesses: List[Witness], base_id: Optional[int]) -> Witness:
        if base_id is None:
            return witnesses[0]
        for witness in witnesses:
            if witness.id == base_id:
                return witness
        raise NotFoundError(f"Witness {base_id} is not part of this set", resource='witness')

    @staticmethod
    def _check_filter(witnesses: List[Witness], witness_filter: Optional[Iterable[int]]) -> List[int]:
        ids = list(witness_filter or [])
        known = {w.id for w in witnesses}
        unknown = sorted(set(ids) - known)
        if unknown:
            raise ValidationError(f"Filter names witnesses outside the set: {unknown}",
                                  field='filter')
        return ids

    def _base_length(self, set_id: int, base: Witness) -> int:
        length = self.source.get_tokenized_length(set_id, base.id)
        if not length:
            logger.error(f"Missing tokenized length of witness {base.id}", set_id=set_id)
            raise DataIntegrityError(MISSING_BASE_LENGTH, witness_id=base.id)
        return length

    def _take_failure(self, task_id: str) -> Optional[Job]:
        """Report a failed render once; the next request schedules a new one."""
        job = self.manager.get_job(task_id)
        if job is None or job.status != JobStatus.FAILED:
            return None
        return self.manager.discard_job(task_id)

"""
Tests for the Heatmap View
==========================
Render-or-join behaviour, cache use and invalidation.
"""

import threading

import pytest

from config_logging import NotFoundError, ProcessingError, ValidationError
from heatmap.models import Note, Range, VisualizationInfo
from heatmap.renderer import RESOURCE_MESSAGE
from heatmap.sources import MemoryDataSource
from heatmap.view import (
    HeatmapView,
    MISSING_BASE_LENGTH,
    STATUS_ERROR,
    STATUS_READY,
    STATUS_RENDERING,
    STATUS_UNAVAILABLE,
    TOO_FEW_WITNESSES,
    generate_task_id,
)
from job_manager import JobStatus

from conftest import SET_ID, ExhaustedSource


class GatedSource(MemoryDataSource):
    """Holds every render at the content stream until the gate opens."""

    def __init__(self, source: MemoryDataSource):
        super().__init__()
        self.__dict__.update({k: v for k, v in source.__dict__.items() if k != '_lock'})
        self.gate = threading.Event()
        self.reached = threading.Event()

    def open_content(self, witness_id):
        self.reached.set()
        self.gate.wait(5)
        return super().open_content(witness_id)


class BrokenSource(MemoryDataSource):
    """Content stream that cannot be read."""

    def __init__(self, source: MemoryDataSource):
        super().__init__()
        self.__dict__.update({k: v for k, v in source.__dict__.items() if k != '_lock'})
        self.broken = True

    def open_content(self, witness_id):
        if self.broken:
            raise RuntimeError("content store offline")
        return super().open_content(witness_id)


class UnreachableSource(MemoryDataSource):
    """Set lookup that fails with an unexpected error."""

    def get_set(self, set_id):
        raise KeyError(set_id)


@pytest.fixture
def view(source, cache, manager, config):
    return HeatmapView(source, cache, manager, config)


def _render_ready(view, manager, **kwargs):
    first = view.render(SET_ID, **kwargs)
    assert first.status == STATUS_RENDERING
    job = manager.wait(first.task_id, timeout=10)
    assert job.status == JobStatus.FINISHED, job.error
    return view.render(SET_ID, **kwargs)


class TestHeatmapViewRender:
    """Tests for HeatmapView.render."""

    def test_first_request_schedules_render(self, view):
        response = view.render(SET_ID)

        info = VisualizationInfo(SET_ID, 1)
        assert response.status == STATUS_RENDERING
        assert response.task_id == generate_task_id(SET_ID, info.key, False)
        assert response.message == f"RENDERING {response.task_id}"

    def test_rendered_heatmap_is_served_from_cache(self, view, manager, cache):
        response = _render_ready(view, manager)

        assert response.status == STATUS_READY
        assert response.is_ready
        assert 'class="change heat' in response.content
        assert 'data-base="Base"' in response.content
        assert response.metadata['has_notes'] is False
        assert response.metadata['change_count'] == 6
        assert response.metadata['witnesses'] == [
            {'id': 2, 'ci': '0.23'},
            {'id': 3, 'ci': '0.14'},
        ]
        assert cache.exists(SET_ID, VisualizationInfo(SET_ID, 1).key, False)

    def test_condensed_is_cached_separately(self, view, manager, cache):
        _render_ready(view, manager)
        response = view.render(SET_ID, condensed=True)
        assert response.status == STATUS_RENDERING
        manager.wait(response.task_id, timeout=10)

        ready = view.render(SET_ID, condensed=True)
        assert ready.status == STATUS_READY
        assert 'change-index' not in ready.content

    def test_notes_are_rendered(self, source, view, manager):
        source.add_note(1, Note(1, Range(4, 9), "speed"))

        response = _render_ready(view, manager)

        assert 'id="note-anchor-1"' in response.content
        assert 'speed' in response.content
        assert response.metadata['has_notes'] is True

    def test_base_defaults_to_first_witness(self, view, manager):
        default = _render_ready(view, manager)
        explicit = view.render(SET_ID, base_id=1)
        assert explicit.status == STATUS_READY
        assert explicit.content == default.content

    def test_other_base(self, view, manager):
        response = view.render(SET_ID, base_id=2)
        assert response.task_id != view.render(SET_ID).task_id

    def test_filter_changes_key_and_output(self, view, manager):
        response = _render_ready(view, manager, witness_filter=[3])

        assert response.metadata['witness_filter'] == [3]
        assert 'data-witnesses="3"' not in response.content
        assert 'data-witnesses="2"' in response.content

    def test_fewer_than_two_witnesses(self, source, cache, manager, config):
        source.add_set(5, [1])
        view = HeatmapView(source, cache, manager, config)

        response = view.render(5)

        assert response.status == STATUS_UNAVAILABLE
        assert response.message == TOO_FEW_WITNESSES
        assert manager.list_jobs() == []

    def test_missing_base_length(self, source, view, manager):
        source.set_tokenized_length(SET_ID, 1, 0)

        response = view.render(SET_ID)

        assert response.status == STATUS_ERROR
        assert response.message == MISSING_BASE_LENGTH
        assert response.metadata['code'] == 'DATA_INTEGRITY'
        assert manager.list_jobs() == []

    def test_unknown_set(self, view):
        with pytest.raises(NotFoundError):
            view.render(404)

    def test_unknown_base(self, view):
        with pytest.raises(NotFoundError):
            view.render(SET_ID, base_id=9)

    def test_filter_outside_set(self, view):
        with pytest.raises(ValidationError):
            view.render(SET_ID, witness_filter=[9])


class TestConcurrentRequests:
    """Tests for request dedup."""

    def test_identical_requests_share_one_job(self, source, cache, manager, config):
        gated = GatedSource(source)
        view = HeatmapView(gated, cache, manager, config)

        first = view.render(SET_ID)
        gated.reached.wait(5)
        second = view.render(SET_ID)

        assert first.status == second.status == STATUS_RENDERING
        assert first.task_id == second.task_id
        assert len(manager.list_jobs()) == 1

        gated.gate.set()
        manager.wait(first.task_id, timeout=10)

        assert view.render(SET_ID).content == view.render(SET_ID).content
        assert view.render(SET_ID).status == STATUS_READY

    def test_parallel_callers(self, source, cache, manager, config):
        gated = GatedSource(source)
        view = HeatmapView(gated, cache, manager, config)
        responses = []

        def request():
            responses.append(view.render(SET_ID))

        threads = [threading.Thread(target=request) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(5)

        assert len({r.task_id for r in responses}) == 1
        assert len(manager.list_jobs()) == 1
        gated.gate.set()
        manager.wait(responses[0].task_id, timeout=10)
        assert view.render(SET_ID).status == STATUS_READY

    def test_cancelled_render_writes_nothing(self, source, cache, manager, config):
        gated = GatedSource(source)
        view = HeatmapView(gated, cache, manager, config)

        response = view.render(SET_ID)
        gated.reached.wait(5)
        assert view.cancel(response.task_id) is True
        gated.gate.set()
        job = manager.wait(response.task_id, timeout=10)

        assert job.status == JobStatus.CANCELLED
        assert not cache.exists(SET_ID, VisualizationInfo(SET_ID, 1).key, False)
        assert view.task_status(response.task_id)['status'] == 'cancelled'
        assert view.render(SET_ID).status == STATUS_RENDERING


class TestFailuresAndInvalidation:
    """Tests for failure reporting, refresh and delete."""

    def test_failed_render_is_reported_once(self, source, cache, manager, config):
        broken = BrokenSource(source)
        view = HeatmapView(broken, cache, manager, config)

        first = view.render(SET_ID)
        manager.wait(first.task_id, timeout=10)

        failed = view.render(SET_ID)
        assert failed.status == STATUS_ERROR
        assert failed.message == "content store offline"

        broken.broken = False
        retry = view.render(SET_ID)
        assert retry.status == STATUS_RENDERING

    def test_refresh_drops_cache(self, view, manager):
        _render_ready(view, manager)

        response = view.render(SET_ID, refresh=True)

        assert response.status == STATUS_RENDERING
        manager.wait(response.task_id, timeout=10)

    def test_delete(self, view, manager, cache):
        _render_ready(view, manager)
        _render_ready(view, manager, condensed=True)

        assert view.delete(SET_ID) == 2
        assert view.render(SET_ID).status == STATUS_RENDERING

    def test_task_status_and_cancel_unknown(self, view):
        with pytest.raises(NotFoundError):
            view.task_status('heatmap-missing')
        with pytest.raises(NotFoundError):
            view.cancel('heatmap-missing')

    def test_out_of_memory_render_reports_resource_code(self, source, cache, manager, config):
        view = HeatmapView(ExhaustedSource(source), cache, manager, config)

        first = view.render(SET_ID)
        job = manager.wait(first.task_id, timeout=10)
        assert job.status == JobStatus.FAILED

        failed = view.render(SET_ID)
        assert failed.status == STATUS_ERROR
        assert failed.message == RESOURCE_MESSAGE
        assert failed.metadata['code'] == 'INSUFFICIENT_RESOURCES'

    def test_unexpected_error_becomes_processing_error(self, cache, manager, config):
        view = HeatmapView(UnreachableSource(), cache, manager, config)

        with pytest.raises(ProcessingError):
            view.render(SET_ID)

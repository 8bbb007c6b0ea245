#!/usr/bin/env python3
"""
WitnessHeatmap - Job Manager Module
===================================
Version: 1.0.0

Runs long heatmap renders in a background worker pool with phase-based
progress tracking.

Features:
- Job registry keyed by deterministic task id
- Duplicate submissions join the job until its worker has let go of it
- Phase-based progress tracking (queued → building changes → streaming → caching)
- Status polling endpoint support
- Elapsed time and ETA calculation
- Cooperative job cancellation
- Thread-safe job storage
"""

import time
import threading
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List, Callable, Union
from datetime import datetime

from config_logging import get_logger, HeatmapError, RenderCanceled

__version__ = "1.0.0"

logger = get_logger('job_manager')


class JobPhase(Enum):
    """Processing phases for a heatmap render."""
    QUEUED = "queued"
    BUILDING_CHANGES = "building_changes"
    STREAMING = "streaming"
    CACHING = "caching"
    FINISHED = "finished"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobStatus(Enum):
    """Overall job status."""
    PENDING = "pending"
    RUNNING = "running"
    FINISHED = "finished"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (JobStatus.FINISHED, JobStatus.FAILED, JobStatus.CANCELLED)

# Phase weights for progress calculation (total = 100)
PHASE_WEIGHTS = {
    JobPhase.QUEUED: 0,
    JobPhase.BUILDING_CHANGES: 40,
    JobPhase.STREAMING: 50,
    JobPhase.CACHING: 10,
    JobPhase.FINISHED: 100,
    JobPhase.FAILED: 0,
    JobPhase.CANCELLED: 0,
}

# Cumulative progress at start of each phase
PHASE_PROGRESS_START = {
    JobPhase.QUEUED: 0,
    JobPhase.BUILDING_CHANGES: 0,
    JobPhase.STREAMING: 40,
    JobPhase.CACHING: 90,
    JobPhase.FINISHED: 100,
}


@dataclass
class JobProgress:
    """Progress tracking for a job."""
    phase: JobPhase = JobPhase.QUEUED
    phase_progress: float = 0.0  # 0-100 within current phase
    overall_progress: float = 0.0  # 0-100 overall
    last_log: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "phase_progress": round(self.phase_progress, 1),
            "overall_progress": round(self.overall_progress, 1),
            "last_log": self.last_log
        }


@dataclass
class Job:
    """Represents a background job."""
    job_id: str
    job_type: str  # 'heatmap', 'heatmap_condensed'
    status: JobStatus = JobStatus.PENDING
    progress: JobProgress = field(default_factory=JobProgress)
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    notes: List[str] = field(default_factory=list)
    _cancelled: bool = False
    _committed: bool = False
    _done: threading.Event = field(default_factory=threading.Event, repr=False, compare=False)

    @property
    def elapsed_seconds(self) -> float:
        """Get elapsed time in seconds."""
        if self.started_at is None:
            return 0.0
        end_time = self.completed_at or time.time()
        return end_time - self.started_at

    @property
    def elapsed_formatted(self) -> str:
        """Get formatted elapsed time (e.g., '1m 23s')."""
        elapsed = self.elapsed_seconds
        if elapsed < 60:
            return f"{elapsed:.1f}s"
        minutes = int(elapsed // 60)
        seconds = int(elapsed % 60)
        return f"{minutes}m {seconds}s"

    @property
    def eta_seconds(self) -> Optional[float]:
        """Estimate remaining time based on progress."""
        if self.progress.overall_progress <= 0:
            return None
        if self.progress.overall_progress >= 100:
            return 0.0
        elapsed = self.elapsed_seconds
        if elapsed <= 0:
            return None
        rate = self.progress.overall_progress / elapsed
        remaining_progress = 100 - self.progress.overall_progress
        return remaining_progress / rate if rate > 0 else None

    @property
    def eta_formatted(self) -> Optional[str]:
        """Get formatted ETA (e.g., '~2m 15s')."""
        eta = self.eta_seconds
        if eta is None:
            return None
        if eta < 60:
            return f"~{int(eta)}s"
        minutes = int(eta // 60)
        seconds = int(eta % 60)
        return f"~{minutes}m {seconds}s"

    @property
    def is_cancelled(self) -> bool:
        """Check if job was cancelled."""
        return self._cancelled

    @property
    def is_active(self) -> bool:
        return self.status in (JobStatus.PENDING, JobStatus.RUNNING)

    @property
    def is_done(self) -> bool:
        """True once the worker has let go of the job."""
        return self._done.is_set()

    @property
    def is_committed(self) -> bool:
        """True once the job's side effect ran; it can no longer be cancelled."""
        return self._committed

    def cancel(self):
        """Mark job as cancelled."""
        self._cancelled = True
        self.status = JobStatus.CANCELLED
        self.progress.phase = JobPhase.CANCELLED
        self.completed_at = time.time()

    def to_dict(self, include_result: bool = False) -> Dict[str, Any]:
        """Convert to dictionary for API response."""
        data = {
            "job_id": self.job_id,
            "job_type": self.job_type,
            "status": self.status.value,
            "progress": self.progress.to_dict(),
            "created_at": datetime.fromtimestamp(self.created_at).isoformat(),
            "started_at": datetime.fromtimestamp(self.started_at).isoformat() if self.started_at else None,
            "completed_at": datetime.fromtimestamp(self.completed_at).isoformat() if self.completed_at else None,
            "elapsed": self.elapsed_formatted,
            "eta": self.eta_formatted,
            "error": self.error,
            "error_code": self.error_code,
            "notes": list(self.notes),
            "metadata": self.metadata
        }
        if include_result and self.result is not None:
            data["result"] = self.result
        return data


JobRef = Union[str, Job]


class JobManager:
    """
    Thread-safe job registry with a worker pool.

    A submitted task is any object with ``task_id``, ``job_type``,
    ``metadata`` and a ``run(job)`` method returning an optional result dict.

    Usage:
        manager = JobManager(max_workers=2)
        manager.start()
        job = manager.submit(task)

        # Inside task.run(job):
        manager.update_phase(job, JobPhase.STREAMING, "Streaming base text")
        if job.is_cancelled:
            raise RenderCanceled()

        manager.shutdown()
    """

    def __init__(self, max_workers: int = 2, max_jobs: int = 100, job_ttl: float = 3600):
        """
        Initialize job manager.

        Args:
            max_workers: Worker threads in the pool
            max_jobs: Maximum jobs to keep in memory
            job_ttl: Time-to-live for finished jobs (seconds)
        """
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.RLock()
        self._max_workers = max_workers
        self._max_jobs = max_jobs
        self._job_ttl = job_ttl
        self._executor: Optional[ThreadPoolExecutor] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._executor is not None

    def start(self):
        """Start the worker pool. Calling start on a running manager is a no-op."""
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._max_workers,
                    thread_name_prefix='heatmap-render'
                )
                logger.info(f"Job manager started with {self._max_workers} workers")

    def shutdown(self, wait: bool = True, cancel_pending: bool = False):
        """
        Stop the worker pool.

        Args:
            wait: Block until running jobs are done
            cancel_pending: Cancel jobs that have not started yet
        """
        with self._lock:
            executor = self._executor
            self._executor = None
            if cancel_pending:
                for job in self._jobs.values():
                    if job.status == JobStatus.PENDING:
                        job.cancel()
        if executor is not None:
            executor.shutdown(wait=wait)
            logger.info("Job manager stopped")

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(self, task) -> Job:
        """
        Schedule a task, or join the job already working on it.

        A job with the same task id is returned as is until its worker has
        let go of it, cancelled jobs included. Only then is it replaced by
        a fresh job.
        """
        with self._lock:
            if self._executor is None:
                raise RuntimeError("JobManager is not running; call start() first")

            existing = self._jobs.get(task.task_id)
            if existing is not None and not existing.is_done:
                logger.debug(f"Joining job {task.task_id}", task_id=task.task_id)
                return existing

            self._cleanup_old_jobs()
            job = Job(
                job_id=task.task_id,
                job_type=getattr(task, 'job_type', 'heatmap'),
                metadata=dict(getattr(task, 'metadata', {}) or {})
            )
            self._jobs[job.job_id] = job
            self._executor.submit(self._run, job, task)
            logger.info(f"Submitted job {job.job_id}", task_id=job.job_id)
            return job

    def _run(self, job: Job, task):
        try:
            if not self.start_job(job):
                logger.info(f"Job {job.job_id} cancelled before start", task_id=job.job_id)
                return
            try:
                result = task.run(job)
            except RenderCanceled:
                self.cancel_job(job)
                logger.info(f"Job {job.job_id} stopped after cancellation", task_id=job.job_id)
            except HeatmapError as e:
                logger.error(f"Job {job.job_id} failed: {e.message}", exc_info=True,
                             task_id=job.job_id, code=e.code)
                self.fail_job(job, e.message, code=e.code)
            except Exception as e:
                logger.exception(f"Job {job.job_id} failed: {e}", task_id=job.job_id)
                self.fail_job(job, str(e) or type(e).__name__)
            else:
                self.complete_job(job, result)
        finally:
            job._done.set()

    def wait(self, job_ref: JobRef, timeout: Optional[float] = None) -> Optional[Job]:
        """Block until the worker has let go of the job. Returns the job, or None."""
        job = self._resolve(job_ref)
        if job is None:
            return None
        job._done.wait(timeout)
        return job

    def commit(self, job_ref: JobRef, action: Callable[[], Any]) -> bool:
        """
        Run action unless the job was cancelled.

        A committed job refuses later cancellation, so a cancelled job
        never has its side effect applied.
        """
        with self._lock:
            job = self._resolve(job_ref)
            if job is None or job.is_cancelled:
                return False
            action()
            job._committed = True
            return True

    # ------------------------------------------------------------------
    # Status sink
    # ------------------------------------------------------------------

    def _resolve(self, job_ref: JobRef) -> Optional[Job]:
        if isinstance(job_ref, Job):
            return job_ref
        return self._jobs.get(job_ref)

    def get_job(self, job_id: str) -> Optional[Job]:
        """Get job by ID."""
        with self._lock:
            return self._jobs.get(job_id)

    def start_job(self, job_ref: JobRef) -> bool:
        """Mark job as started. Returns False for unknown or cancelled jobs."""
        with self._lock:
            job = self._resolve(job_ref)
            if not job or job.status != JobStatus.PENDING:
                return False
            job.status = JobStatus.RUNNING
            job.started_at = time.time()
            job.progress.phase = JobPhase.QUEUED
            return True

    def update_phase(self, job_ref: JobRef, phase: JobPhase, log_message: Optional[str] = None) -> bool:
        """
        Update job to a new phase.

        Args:
            job_ref: Job or job ID
            phase: New phase
            log_message: Optional note recorded with the phase change
        """
        with self._lock:
            job = self._resolve(job_ref)
            if not job or job.status != JobStatus.RUNNING:
                return False

            job.progress.phase = phase
            job.progress.phase_progress = 0.0
            job.progress.overall_progress = PHASE_PROGRESS_START.get(phase, 0)

            if log_message:
                job.progress.last_log = log_message
                job.notes.append(log_message)

            return True

    def update_phase_progress(self, job_ref: JobRef, progress: float, log_message: Optional[str] = None) -> bool:
        """
        Update progress within current phase (0-100).

        Args:
            job_ref: Job or job ID
            progress: Progress within phase (0-100)
            log_message: Optional log message
        """
        with self._lock:
            job = self._resolve(job_ref)
            if not job or job.status != JobStatus.RUNNING:
                return False

            job.progress.phase_progress = min(100, max(0, progress))

            phase = job.progress.phase
            phase_start = PHASE_PROGRESS_START.get(phase, 0)
            phase_weight = PHASE_WEIGHTS.get(phase, 0)
            phase_contribution = (job.progress.phase_progress / 100) * phase_weight
            job.progress.overall_progress = phase_start + phase_contribution

            if log_message:
                job.progress.last_log = log_message

            return True

    def add_note(self, job_ref: JobRef, message: str) -> bool:
        """Attach a free-text status note to a job."""
        with self._lock:
            job = self._resolve(job_ref)
            if not job:
                return False
            job.notes.append(message)
            job.progress.last_log = message
            return True

    def complete_job(self, job_ref: JobRef, result: Optional[Dict[str, Any]] = None) -> bool:
        """
        Mark job as finished with optional result.

        Args:
            job_ref: Job or job ID
            result: Job result data
        """
        with self._lock:
            job = self._resolve(job_ref)
            if not job or job.status != JobStatus.RUNNING:
                return False

            job.status = JobStatus.FINISHED
            job.progress.phase = JobPhase.FINISHED
            job.progress.overall_progress = 100
            job.progress.phase_progress = 100
            job.completed_at = time.time()
            job.result = result
            job.progress.last_log = "Finished"

            return True

    def fail_job(self, job_ref: JobRef, error: str, code: str = "RENDER_FAILED") -> bool:
        """
        Mark job as failed with error message.

        Args:
            job_ref: Job or job ID
            error: Error message
            code: Machine readable error code reported to clients
        """
        with self._lock:
            job = self._resolve(job_ref)
            if not job or job.status != JobStatus.RUNNING:
                return False

            job.status = JobStatus.FAILED
            job.progress.phase = JobPhase.FAILED
            job.completed_at = time.time()
            job.error = error
            job.error_code = code
            job.progress.last_log = f"Error: {error}"

            return True

    def cancel_job(self, job_ref: JobRef) -> bool:
        """
        Request cancellation of a pending or running job.

        A job whose result was already committed cannot be cancelled.

        Args:
            job_ref: Job or job ID
        """
        with self._lock:
            job = self._resolve(job_ref)
            if not job:
                return False

            if not job.is_active or job.is_committed:
                return False

            job.cancel()
            logger.info(f"Cancelled job {job.job_id}", task_id=job.job_id)
            return True

    def discard_job(self, job_id: str) -> Optional[Job]:
        """Remove a job its worker has let go of. Other jobs are kept."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or not job.is_done:
                return None
            del self._jobs[job_id]
            return job

    def list_jobs(self, status: Optional[JobStatus] = None,
                  job_type: Optional[str] = None,
                  limit: int = 20) -> List[Dict[str, Any]]:
        """
        List jobs with optional filtering.

        Args:
            status: Filter by status
            job_type: Filter by job type
            limit: Maximum results

        Returns:
            List of job dictionaries
        """
        with self._lock:
            jobs = list(self._jobs.values())

            if status:
                jobs = [j for j in jobs if j.status == status]
            if job_type:
                jobs = [j for j in jobs if j.job_type == job_type]

            jobs.sort(key=lambda j: j.created_at, reverse=True)
            return [j.to_dict() for j in jobs[:limit]]

    def _cleanup_old_jobs(self):
        """Remove old finished jobs."""
        with self._lock:
            now = time.time()
            to_remove = []

            for job_id, job in self._jobs.items():
                if job.status in TERMINAL_STATUSES and job.is_done:
                    if job.completed_at and (now - job.completed_at) > self._job_ttl:
                        to_remove.append(job_id)

            for job_id in to_remove:
                del self._jobs[job_id]

            # If still over capacity, remove oldest finished jobs
            if len(self._jobs) >= self._max_jobs:
                finished = [(jid, j) for jid, j in self._jobs.items()
                            if j.status in TERMINAL_STATUSES and j.is_done]
                finished.sort(key=lambda x: x[1].completed_at or 0)

                while len(self._jobs) >= self._max_jobs and finished:
                    jid, _ = finished.pop(0)
                    del self._jobs[jid]

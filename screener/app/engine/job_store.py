"""
Screening Job Store

Background screening runs for the HTTP API.  A run against a live FHIR
server can take minutes, so ``POST /api/jobs/submit`` returns a job id
at once and the caller polls ``GET /api/jobs/{job_id}``.

At most one screening run is active at a time; a second submit while
one is pending or running is refused with ``ScreeningJobConflict``.
Only the most recent ``history_limit`` finished runs are kept, oldest
evicted first.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import OrderedDict
from datetime import datetime, timezone
from enum import Enum
from functools import lru_cache
from typing import Callable, Optional

from pydantic import BaseModel, Field

from screener.app.config import get_settings
from screener.app.schema.screening_schema import ScreeningRequest, ScreeningRunResponse

logger = logging.getLogger(__name__)

ScreeningRunner = Callable[[ScreeningRequest], ScreeningRunResponse]


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ScreeningJob(BaseModel):
    """One background screening run and, once finished, its outcome."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    status: JobStatus = JobStatus.PENDING
    request: ScreeningRequest = Field(default_factory=ScreeningRequest)
    description: str = ""
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: Optional[ScreeningRunResponse] = None
    error: Optional[str] = None

    @property
    def finished(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)


class ScreeningJobConflict(Exception):
    """Raised when a screening run is submitted while another is active."""

    def __init__(self, active: ScreeningJob) -> None:
        super().__init__(
            f"Screening job {active.id} is already {active.status.value}"
        )
        self.active = active


class ScreeningJobStore:
    """Thread-safe registry of background screening runs."""

    def __init__(self, history_limit: int = 20) -> None:
        if history_limit < 1:
            raise ValueError(f"history_limit must be at least 1, got {history_limit}")
        self.history_limit = history_limit
        self._jobs: OrderedDict[str, ScreeningJob] = OrderedDict()
        self._lock = threading.Lock()

    def submit(
        self,
        request: ScreeningRequest,
        runner: ScreeningRunner,
        description: str = "",
    ) -> ScreeningJob:
        """Register a run and start *runner* on a daemon thread.

        The active-run check and the registration happen under one lock,
        so of two concurrent submits exactly one is accepted.
        """
        with self._lock:
            active = self._active()
            if active is not None:
                raise ScreeningJobConflict(active.model_copy())
            job = ScreeningJob(request=request, description=description)
            self._jobs[job.id] = job
            snapshot = job.model_copy()

        threading.Thread(
            target=self._run,
            args=(job.id, runner),
            name=f"screening-job-{job.id[:8]}",
            daemon=True,
        ).start()
        logger.info(
            "Screening job %s submitted (max patients: %s)",
            job.id, request.max_patients or "default",
        )
        return snapshot

    def get(self, job_id: str) -> Optional[ScreeningJob]:
        """Snapshot of a job, or ``None`` if unknown or evicted."""
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy() if job is not None else None

    def active(self) -> Optional[ScreeningJob]:
        with self._lock:
            job = self._active()
            return job.model_copy() if job is not None else None

    def recent(self) -> list[ScreeningJob]:
        """Every retained job, newest first."""
        with self._lock:
            return [job.model_copy() for job in reversed(self._jobs.values())]

    def clear(self) -> None:
        with self._lock:
            self._jobs.clear()

    # Private helpers
    def _run(self, job_id: str, runner: ScreeningRunner) -> None:
        with self._lock:
            job = self._jobs[job_id]
            job.status = JobStatus.RUNNING
            job.started_at = datetime.now(timezone.utc)
            request = job.request

        try:
            result = runner(request)
        except Exception as exc:
            logger.exception("Screening job %s failed: %s", job_id, exc)
            self._finish(job_id, JobStatus.FAILED, error=f"{type(exc).__name__}: {exc}")
            return

        logger.info("Screening job %s completed: %s", job_id, result.message or result.status)
        self._finish(job_id, JobStatus.COMPLETED, result=result)

    def _finish(
        self,
        job_id: str,
        status: JobStatus,
        result: Optional[ScreeningRunResponse] = None,
        error: Optional[str] = None,
    ) -> None:
        with self._lock:
            job = self._jobs[job_id]
            job.result = result
            job.error = error
            job.completed_at = datetime.now(timezone.utc)
            job.status = status
            self._evict()

    def _active(self) -> Optional[ScreeningJob]:
        # Caller holds the lock.
        for job in self._jobs.values():
            if not job.finished:
                return job
        return None

    def _evict(self) -> None:
        # Caller holds the lock.
        finished = [job_id for job_id, job in self._jobs.items() if job.finished]
        for job_id in finished[: max(0, len(finished) - self.history_limit)]:
            del self._jobs[job_id]
            logger.debug("Evicted finished screening job %s", job_id)


@lru_cache(maxsize=1)
def get_job_store() -> ScreeningJobStore:
    """Return the process-wide job store."""
    return ScreeningJobStore(history_limit=get_settings().job_history_limit)

"""
Job API Routes

Background screening runs.  Submitting returns the job id at once; the
client polls ``GET /api/jobs/{job_id}`` until the status is
``completed`` (the structured report is in ``result``) or ``failed``.

Endpoints
---------
POST  /api/jobs/submit          - start a screening run (409 while one is active)
GET   /api/jobs                 - retained jobs, newest first
GET   /api/jobs/{job_id}        - job status / result
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from screener.app.engine.job_store import (
    ScreeningJob,
    ScreeningJobConflict,
    get_job_store,
)
from screener.app.routes.screening.screening_route import run_screening
from screener.app.schema.screening_schema import ScreeningRequest, ScreeningRunResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


class JobSubmitRequest(ScreeningRequest):
    description: str = ""


class JobResponse(BaseModel):
    job_id: str
    status: str
    max_patients: Optional[int] = None
    description: str = ""
    created_at: str
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    result: Optional[ScreeningRunResponse] = None
    error: Optional[str] = None


def _job_to_response(job: ScreeningJob) -> JobResponse:
    return JobResponse(
        job_id=job.id,
        status=job.status.value,
        max_patients=job.request.max_patients,
        description=job.description,
        created_at=job.created_at.isoformat(),
        started_at=job.started_at.isoformat() if job.started_at else None,
        completed_at=job.completed_at.isoformat() if job.completed_at else None,
        result=job.result,
        error=job.error,
    )


@router.post("/submit", response_model=JobResponse, status_code=202)
def submit_job(request: JobSubmitRequest) -> JobResponse:
    """Start a background screening run."""
    screening = ScreeningRequest(max_patients=request.max_patients)
    try:
        job = get_job_store().submit(screening, run_screening, request.description)
    except ScreeningJobConflict as exc:
        raise HTTPException(
            status_code=409,
            detail=f"{exc}. Poll /api/jobs/{exc.active.id} until it finishes.",
        )
    return _job_to_response(job)


@router.get("", response_model=list[JobResponse])
def list_jobs() -> list[JobResponse]:
    return [_job_to_response(job) for job in get_job_store().recent()]


@router.get("/{job_id}", response_model=JobResponse)
def get_job(job_id: str) -> JobResponse:
    job = get_job_store().get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job '{job_id}' not found.")
    return _job_to_response(job)

"""
Screening API Routes

Runs the NSCLC eligibility screening synchronously and returns the
structured report.  For long runs against a remote server prefer the
background job endpoints in ``job_route``.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException

from screener.app.config import ScreenerSettings, get_settings
from screener.app.engine.screening_engine import TrialScreener, close_port, create_port
from screener.app.report.report_generator import generate_json_report
from screener.app.schema.screening_schema import ScreeningRequest, ScreeningRunResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/screening", tags=["screening"])

NO_CANDIDATES_MESSAGE = "No lung cancer patients found for screening."


def run_screening(
    request: ScreeningRequest, settings: Optional[ScreenerSettings] = None
) -> ScreeningRunResponse:
    """Discover and screen candidates, returning the structured report."""
    settings = settings or get_settings()
    port = create_port(settings)
    try:
        run = TrialScreener(port, settings).run(request.max_patients)
    finally:
        close_port(port)

    screening_date = run.screening_date.isoformat()
    if run.candidate_count == 0:
        return ScreeningRunResponse(
            trial_name=run.trial_name,
            screening_date=screening_date,
            status="no_candidates",
            message=NO_CANDIDATES_MESSAGE,
        )

    message = f"Screened {len(run.assessments)} of {run.candidate_count} candidate(s)"
    if run.dropped_patient_ids:
        message += f"; {len(run.dropped_patient_ids)} dropped after errors"
    return ScreeningRunResponse(
        trial_name=run.trial_name,
        screening_date=screening_date,
        status="completed",
        message=message,
        report=generate_json_report(run.assessments, run.trial_name, run.screening_date),
    )


@router.post("/run", response_model=ScreeningRunResponse)
def screen_patients(request: ScreeningRequest) -> ScreeningRunResponse:
    """Run one screening round and return the structured report."""
    try:
        return run_screening(request)
    except Exception as exc:
        logger.exception("Screening run failed: %s", exc)
        raise HTTPException(
            status_code=500,
            detail=f"Screening run failed: {exc}",
        )

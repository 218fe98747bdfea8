"""Screening route package exports."""

from screener.app.routes.screening.job_route import router as job_router
from screener.app.routes.screening.screening_route import router as screening_router

__all__ = ["job_router", "screening_router"]

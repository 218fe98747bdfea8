"""
NSCLC Trial Screener - API Layer

Entry point for the HTTP server:

    uvicorn screener.app.main:app
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from screener.app.config import get_settings
from screener.app.engine.screening_engine import close_port, create_port
from screener.app.routes.screening import job_router, screening_router

# Logging
logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)

logger = logging.getLogger(__name__)


def _endpoint_label() -> str:
    settings = get_settings()
    if settings.fhir_bundle_dir is not None:
        return str(settings.fhir_bundle_dir)
    return settings.fhir_server_url


# Application lifespan (startup / shutdown)
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Run startup and shutdown logic for the FastAPI application."""
    # --- Startup ---
    logger.info("Starting NSCLC Trial Screener...")
    port = create_port(get_settings())
    try:
        port.check_ready()
    finally:
        close_port(port)
    logger.info("All preflight checks passed.")

    yield  # Application runs here.

    # --- Shutdown ---
    logger.info("Shutting down NSCLC Trial Screener.")


# Application
app = FastAPI(
    title="NSCLC Trial Screener",
    description="Eligibility screening of FHIR patients for an advanced NSCLC trial",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routes
app.include_router(screening_router)
app.include_router(job_router)


# Health check
@app.get("/health")
def health_check():
    """Liveness probe: also verifies the clinical-data endpoint."""
    port = create_port(get_settings())
    try:
        reachable = port.is_available()
    finally:
        close_port(port)

    return {
        "status": "healthy" if reachable else "degraded",
        "fhir_connected": reachable,
        "endpoint": _endpoint_label(),
    }

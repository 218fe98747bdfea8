"""
Screening Engine

End-to-end screening run for the configured trial:

1. Discover candidate patient ids (single-threaded).
2. Fan the candidates out through the ``ScreeningScheduler``.
3. Collect the assessments into a ``ScreeningRun``.

The engine owns no network logic of its own; everything remote goes
through the ``ResourcePort`` it is given, wrapped in one shared
``ResilientFetcher``.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Callable, Optional

from screener.app.config import ScreenerSettings
from screener.app.engine.criteria_evaluator import CriteriaEvaluator
from screener.app.engine.scheduler import ScreeningScheduler
from screener.app.engine.status_aggregator import aggregate_status
from screener.app.fhir.assembler import PatientRecordAssembler
from screener.app.fhir.bundle_port import LocalBundlePort
from screener.app.fhir.client import FhirClient, ResourcePort
from screener.app.fhir.discovery import PatientDiscovery
from screener.app.fhir.fetcher import ResilientFetcher
from screener.app.schema.screening_schema import ScreeningRun

logger = logging.getLogger(__name__)


def create_port(settings: ScreenerSettings) -> ResourcePort:
    """Local bundles when ``fhir_bundle_dir`` is set, else the FHIR server."""
    if settings.fhir_bundle_dir is not None:
        logger.info("Using local FHIR bundles from %s", settings.fhir_bundle_dir)
        return LocalBundlePort(settings.fhir_bundle_dir)
    logger.info("Using FHIR server %s", settings.fhir_server_url)
    return FhirClient(settings.fhir_server_url, timeout=settings.request_timeout)


def close_port(port: ResourcePort) -> None:
    """Release the port's connections, if it holds any."""
    close = getattr(port, "close", None)
    if callable(close):
        close()


class TrialScreener:
    """Runs discovery and concurrent screening against one resource port.

    Parameters
    ----------
    port : ResourcePort
        Shared read-only by every worker.
    settings : ScreenerSettings
        Retry policy, pool width, recency windows and trial name.
    sleep : callable | None
        Backoff sleep override (tests).
    today : date | None
        Reference date for age and recency rules (tests).
    """

    def __init__(
        self,
        port: ResourcePort,
        settings: ScreenerSettings,
        sleep: Optional[Callable[[float], None]] = None,
        today: Optional[date] = None,
    ) -> None:
        self.settings = settings
        if sleep is None:
            self.fetcher = ResilientFetcher(port, settings)
        else:
            self.fetcher = ResilientFetcher(port, settings, sleep=sleep)
        self.discovery = PatientDiscovery(self.fetcher)
        self.assembler = PatientRecordAssembler(self.fetcher)
        self.evaluator = CriteriaEvaluator(settings, today=today)
        self.scheduler = ScreeningScheduler(settings.max_workers)
        self._today = today

    def run(self, max_patients: Optional[int] = None) -> ScreeningRun:
        max_patients = max_patients or self.settings.default_max_patients
        logger.info(
            "Starting screening for %s (max patients: %d)",
            self.settings.trial_name, max_patients,
        )

        patient_ids = self.discovery.discover(max_patients)
        run = ScreeningRun(
            trial_name=self.settings.trial_name,
            screening_date=self._today or date.today(),
            candidate_count=len(patient_ids),
        )
        if not patient_ids:
            logger.info("No lung cancer patients found for screening")
            return run

        # Sorted for reproducible submission order; completion order still varies.
        outcome = self.scheduler.run(
            sorted(patient_ids),
            self.assembler.assemble,
            self.evaluator.evaluate,
            aggregate_status,
        )
        run.assessments = outcome.assessments
        run.dropped_patient_ids = outcome.dropped_ids
        return run

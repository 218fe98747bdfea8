"""
Command-line entry point.

    trial-screener [max_patients]

Discovers lung-cancer candidates, screens them concurrently and prints
the eligibility report.  The FHIR endpoint (or a local bundle
directory), worker count and trial name come from ``SCREENER_*``
environment settings.  Exit status is 0 on success (including "no
candidates") and 1 on any fatal error.
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Optional, Sequence

from screener.app.config import get_settings
from screener.app.engine.screening_engine import TrialScreener, close_port, create_port
from screener.app.report.report_generator import generate_report

logger = logging.getLogger(__name__)

NO_CANDIDATES_MESSAGE = "No lung cancer patients found for screening."


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="trial-screener",
        description="Screen FHIR patients for the advanced NSCLC trial.",
    )
    # Kept as a string so an invalid value falls back to the default.
    parser.add_argument(
        "max_patients",
        nargs="?",
        help="Maximum number of candidate patients to screen.",
    )
    return parser


def parse_max_patients(value: Optional[str], default: int) -> int:
    """Positive integer from *value*, or *default* with a warning."""
    if value is None:
        logger.info("Using default max patients: %d", default)
        return default
    try:
        max_patients = int(value)
    except ValueError:
        logger.warning("Invalid max patients argument: %s, using default: %d", value, default)
        return default
    if max_patients <= 0:
        logger.warning("Max patients must be positive, using default: %d", default)
        return default
    logger.info("Using max patients from command line: %d", max_patients)
    return max_patients


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = get_settings()
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    )
    logger.info("Starting FHIR Clinical Trial Eligibility Screener")
    max_patients = parse_max_patients(args.max_patients, settings.default_max_patients)

    port = create_port(settings)
    try:
        port.check_ready()
        run = TrialScreener(port, settings).run(max_patients)
    except Exception as exc:
        logger.error("Fatal error in trial screener: %s", exc, exc_info=True)
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        close_port(port)

    if run.candidate_count == 0:
        logger.warning("No lung cancer patients found")
        print(NO_CANDIDATES_MESSAGE)
        return 0

    print(generate_report(run.assessments, run.trial_name, run.screening_date))

    logger.info("FHIR Clinical Trial Eligibility Screener completed successfully")
    return 0


if __name__ == "__main__":
    sys.exit(main())

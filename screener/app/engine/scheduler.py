"""
Concurrent Screening Scheduler

Fans candidate ids out over a fixed-width thread pool.  Each unit runs
``assemble -> evaluate -> aggregate`` for one patient; a unit that fails
is logged and its id dropped from the result (retries have already been
spent inside the fetcher).  Results are gathered on the calling thread
in completion order.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Iterable, Sequence

from screener.app.engine.status_aggregator import aggregate_status
from screener.app.schema.screening_schema import (
    Assessment,
    Criterion,
    PatientRecord,
    StatusSummary,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 10

AssembleFn = Callable[[str], PatientRecord]
EvaluateFn = Callable[[PatientRecord], Sequence[Criterion]]
AggregateFn = Callable[[Sequence[Criterion]], StatusSummary]


@dataclass
class ScheduleResult:
    assessments: list[Assessment] = field(default_factory=list)
    dropped_ids: list[str] = field(default_factory=list)


def screen_patient(
    patient_id: str,
    assemble: AssembleFn,
    evaluate: EvaluateFn,
    aggregate: AggregateFn = aggregate_status,
) -> Assessment:
    """One scheduling unit: assemble, evaluate and aggregate in order."""
    record = assemble(patient_id)
    criteria = evaluate(record)
    summary = aggregate(criteria)
    return Assessment.finalize(patient_id, criteria, summary)


class ScreeningScheduler:
    """Bounded-parallelism runner for per-patient screening units."""

    def __init__(self, max_workers: int = DEFAULT_MAX_WORKERS) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.max_workers = max_workers

    def screen(
        self,
        patient_ids: Iterable[str],
        assemble: AssembleFn,
        evaluate: EvaluateFn,
        aggregate: AggregateFn = aggregate_status,
    ) -> list[Assessment]:
        """Screen every id; blocks until all units finish or fail."""
        return self.run(patient_ids, assemble, evaluate, aggregate).assessments

    def run(
        self,
        patient_ids: Iterable[str],
        assemble: AssembleFn,
        evaluate: EvaluateFn,
        aggregate: AggregateFn = aggregate_status,
    ) -> ScheduleResult:
        """Like :meth:`screen` but also reports which ids were dropped."""
        ids = list(patient_ids)
        result = ScheduleResult()
        if not ids:
            return result

        logger.info(
            "Screening %d patient(s) with %d worker(s)",
            len(ids), min(self.max_workers, len(ids)),
        )

        with ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="screening"
        ) as executor:
            future_to_id = {
                executor.submit(screen_patient, pid, assemble, evaluate, aggregate): pid
                for pid in ids
            }

            for future in as_completed(future_to_id):
                patient_id = future_to_id[future]
                try:
                    assessment = future.result()
                except Exception:
                    logger.exception("Error screening patient %s; dropping", patient_id)
                    result.dropped_ids.append(patient_id)
                    continue
                logger.info(
                    "Screened patient %s: %s",
                    patient_id, assessment.overall_status.value,
                )
                result.assessments.append(assessment)

        logger.info(
            "Screening complete: %d assessed, %d dropped",
            len(result.assessments), len(result.dropped_ids),
        )
        return result

"""
Status Aggregator

Reduces an ordered criterion list to one overall eligibility status.

Priority (first applicable wins):

1. No criteria at all          -> POTENTIALLY_ELIGIBLE ("No criteria evaluated")
2. Any inclusion ``NOT_MET``   -> NOT_ELIGIBLE, naming the first one
3. Any exclusion ``NOT_MET``   -> NOT_ELIGIBLE, naming the first one
4. Any ``UNKNOWN``             -> POTENTIALLY_ELIGIBLE with the missing data
5. Otherwise                   -> ELIGIBLE

A definite failure always outranks missing data.
"""

from __future__ import annotations

from typing import Sequence

from screener.app.schema.screening_schema import (
    Criterion,
    CriterionKind,
    CriterionOutcome,
    EligibilityStatus,
    StatusSummary,
)

NO_CRITERIA_REASON = "No criteria evaluated"


def _first_failure(criteria: Sequence[Criterion], kind: CriterionKind) -> Criterion | None:
    for criterion in criteria:
        if criterion.kind is kind and criterion.outcome is CriterionOutcome.NOT_MET:
            return criterion
    return None


def collect_missing_data(criteria: Sequence[Criterion]) -> tuple[str, ...]:
    """Missing-data names of every UNKNOWN criterion, plus the criterion name.

    Duplicates are dropped; first-seen order is kept.
    """
    seen: dict[str, None] = {}
    for criterion in criteria:
        if criterion.outcome is not CriterionOutcome.UNKNOWN:
            continue
        for element in criterion.missing_data:
            seen.setdefault(element, None)
        seen.setdefault(criterion.name, None)
    return tuple(seen)


def aggregate_status(criteria: Sequence[Criterion]) -> StatusSummary:
    """Derive the overall status for one patient's evaluated criteria."""
    if not criteria:
        return StatusSummary(
            overall_status=EligibilityStatus.POTENTIALLY_ELIGIBLE,
            ineligibility_reason=NO_CRITERIA_REASON,
        )

    failed = _first_failure(criteria, CriterionKind.INCLUSION)
    if failed is not None:
        return StatusSummary(
            overall_status=EligibilityStatus.NOT_ELIGIBLE,
            ineligibility_reason=f"Inclusion criterion not met: {failed.name}",
        )

    failed = _first_failure(criteria, CriterionKind.EXCLUSION)
    if failed is not None:
        return StatusSummary(
            overall_status=EligibilityStatus.NOT_ELIGIBLE,
            ineligibility_reason=f"Exclusion criterion present: {failed.name}",
        )

    missing = collect_missing_data(criteria)
    if any(c.outcome is CriterionOutcome.UNKNOWN for c in criteria):
        return StatusSummary(
            overall_status=EligibilityStatus.POTENTIALLY_ELIGIBLE,
            missing_data_elements=missing,
        )

    return StatusSummary(overall_status=EligibilityStatus.ELIGIBLE)

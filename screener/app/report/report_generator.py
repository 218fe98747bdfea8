"""
Report Generator

Pure formatting of screening assessments:

- ``generate_report``       - fixed-width text report for the console.
- ``generate_json_report``  - JSON-serialisable dict for the API.

Neither function touches the network or mutates its input.
"""

from __future__ import annotations

from collections import Counter
from datetime import date
from typing import Any, Optional, Sequence

from screener.app.config import DEFAULT_TRIAL_NAME
from screener.app.schema.screening_schema import (
    Assessment,
    Criterion,
    CriterionOutcome,
    EligibilityStatus,
)

SEPARATOR = "=" * 80
SUB_SEPARATOR = "-" * 80
NO_PATIENTS = "No patients assessed."

STATUS_LABELS = {
    EligibilityStatus.ELIGIBLE: "ELIGIBLE",
    EligibilityStatus.NOT_ELIGIBLE: "NOT ELIGIBLE",
    EligibilityStatus.POTENTIALLY_ELIGIBLE: "POTENTIALLY ELIGIBLE - DATA MISSING",
}

OUTCOME_SYMBOLS = {
    CriterionOutcome.MET: "✓",
    CriterionOutcome.NOT_MET: "✗",
    CriterionOutcome.UNKNOWN: "?",
}


# Text report

def generate_report(
    assessments: Optional[Sequence[Assessment]],
    trial_name: str = DEFAULT_TRIAL_NAME,
    screening_date: Optional[date] = None,
) -> str:
    """Render the full console report; ``"No patients assessed."`` when empty."""
    if not assessments:
        return NO_PATIENTS

    screening_date = screening_date or date.today()
    lines = [
        SEPARATOR,
        "CLINICAL TRIAL ELIGIBILITY SCREENING REPORT",
        f"Trial: {trial_name}",
        f"Date: {screening_date.isoformat()}",
        SEPARATOR,
        "",
        "PATIENT SCREENING RESULTS",
        SUB_SEPARATOR,
        "",
    ]

    for assessment in assessments:
        lines.extend(format_assessment(assessment))
        lines.extend(["", SUB_SEPARATOR, ""])

    lines.extend(_summary_lines(assessments))
    lines.append("")
    lines.extend(_missing_data_lines(assessments))
    lines.append(SEPARATOR)
    return "\n".join(lines) + "\n"


def format_assessment(assessment: Assessment) -> list[str]:
    lines = [
        f"Patient ID: {assessment.patient_id}",
        f"Overall Status: {STATUS_LABELS[assessment.overall_status]}",
    ]
    if assessment.ineligibility_reason:
        lines.append(f"Reason: {assessment.ineligibility_reason}")
    lines.append("")

    for title, criteria in (
        ("Inclusion Criteria:", assessment.inclusion_criteria),
        ("Exclusion Criteria:", assessment.exclusion_criteria),
    ):
        if not criteria:
            continue
        lines.append(title)
        lines.extend(format_criterion(c) for c in criteria)
        lines.append("")

    if assessment.missing_data_elements:
        lines.append("Missing Data: " + ", ".join(assessment.missing_data_elements))
    return lines


def format_criterion(criterion: Criterion) -> str:
    """``  ✓ Name: MET (detail)``"""
    line = f"  {OUTCOME_SYMBOLS[criterion.outcome]} {criterion.name}: {criterion.outcome.name}"
    if criterion.detail:
        line += f" ({criterion.detail})"
    return line


def _summary_lines(assessments: Sequence[Assessment]) -> list[str]:
    counts = status_counts(assessments)
    return [
        SEPARATOR,
        "SUMMARY",
        SEPARATOR,
        "",
        f"Total Patients Screened: {len(assessments)}",
        f"  - Eligible: {counts[EligibilityStatus.ELIGIBLE]}",
        f"  - Not Eligible: {counts[EligibilityStatus.NOT_ELIGIBLE]}",
        "  - Potentially Eligible (Data Missing): "
        f"{counts[EligibilityStatus.POTENTIALLY_ELIGIBLE]}",
    ]


def _missing_data_lines(assessments: Sequence[Assessment]) -> list[str]:
    counts = missing_data_counts(assessments)
    if not counts:
        return []
    lines = ["", "Common Missing Data Elements:"]
    for element, count in counts:
        noun = "patient" if count == 1 else "patients"
        lines.append(f"  - {element}: {count} {noun}")
    return lines


# Shared tallies

def status_counts(assessments: Sequence[Assessment]) -> Counter:
    counts: Counter = Counter({status: 0 for status in EligibilityStatus})
    counts.update(a.overall_status for a in assessments)
    return counts


def missing_data_counts(assessments: Sequence[Assessment]) -> list[tuple[str, int]]:
    """Per-element patient counts, most frequent first (ties keep first-seen order)."""
    counter: Counter = Counter()
    for assessment in assessments:
        counter.update(assessment.missing_data_elements)
    return counter.most_common()


# Structured report

def generate_json_report(
    assessments: Optional[Sequence[Assessment]],
    trial_name: str = DEFAULT_TRIAL_NAME,
    screening_date: Optional[date] = None,
) -> dict[str, Any]:
    screening_date = screening_date or date.today()
    if not assessments:
        return {
            "message": "No patients assessed",
            "trial_name": trial_name,
            "screening_date": screening_date.isoformat(),
        }

    counts = status_counts(assessments)
    return {
        "trial_name": trial_name,
        "screening_date": screening_date.isoformat(),
        "summary": {
            "total_screened": len(assessments),
            "eligible": counts[EligibilityStatus.ELIGIBLE],
            "not_eligible": counts[EligibilityStatus.NOT_ELIGIBLE],
            "potentially_eligible": counts[EligibilityStatus.POTENTIALLY_ELIGIBLE],
        },
        "common_missing_data": [
            {"element": element, "patients": count}
            for element, count in missing_data_counts(assessments)
        ],
        "assessments": [a.model_dump(mode="json") for a in assessments],
    }

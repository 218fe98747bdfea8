"""
Screening Schema

Pydantic models for the per-patient screening pipeline:

- ``PatientRecord``  - everything retrieved for one candidate patient.
- ``Criterion``      - one evaluated trial-eligibility rule.
- ``Assessment``     - the finalised outcome of all criteria for a patient.

Plus the request / response bodies exposed by the screening API.
"""

from __future__ import annotations

from datetime import date
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from screener.app.schema.fhir_schema import (
    Condition,
    MedicationStatement,
    Observation,
    Patient,
    Procedure,
)


# Closed enumerations
class CriterionKind(str, Enum):
    """Whether a rule must hold (inclusion) or must not be present (exclusion)."""
    INCLUSION = "inclusion"
    EXCLUSION = "exclusion"


class CriterionOutcome(str, Enum):
    """Three-state result of one rule.  ``UNKNOWN`` means the data was absent."""
    MET     = "met"
    NOT_MET = "not_met"
    UNKNOWN = "unknown"


class EligibilityStatus(str, Enum):
    ELIGIBLE             = "eligible"
    NOT_ELIGIBLE         = "not_eligible"
    POTENTIALLY_ELIGIBLE = "potentially_eligible"


# Patient record
class PatientRecord(BaseModel):
    """Best-effort bundle of clinical facts for one candidate patient.

    Any resource type that could not be retrieved is an empty tuple;
    ``patient`` is ``None`` when the demographic record was unavailable.
    """

    model_config = ConfigDict(frozen=True)

    patient_id: str
    patient: Optional[Patient] = None
    conditions: tuple[Condition, ...] = ()
    observations: tuple[Observation, ...] = ()
    medications: tuple[MedicationStatement, ...] = ()
    procedures: tuple[Procedure, ...] = ()

    @property
    def birth_date(self) -> Optional[str]:
        return self.patient.birth_date if self.patient else None


# Criterion
class Criterion(BaseModel):
    """A single evaluated inclusion or exclusion rule.

    For exclusion rules the outcome is phrased from the patient's side:
    ``MET`` means the excluding condition is absent, ``NOT_MET`` means it
    is present.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Stable rule key, e.g. 'Age ≥18 years'.")
    kind: CriterionKind
    outcome: CriterionOutcome
    detail: str = Field("", description="Human-readable evidence for the outcome.")
    missing_data: tuple[str, ...] = Field(
        default=(),
        description="Named data elements that were absent (UNKNOWN only).",
    )

    @model_validator(mode="after")
    def _missing_data_only_when_unknown(self) -> "Criterion":
        if self.missing_data and self.outcome is not CriterionOutcome.UNKNOWN:
            raise ValueError(
                f"Criterion '{self.name}' lists missing data but is {self.outcome.value}"
            )
        return self


# Aggregated status
class StatusSummary(BaseModel):
    """What the status aggregator derives from a criterion list."""

    model_config = ConfigDict(frozen=True)

    overall_status: EligibilityStatus
    ineligibility_reason: Optional[str] = None
    missing_data_elements: tuple[str, ...] = ()


# Assessment
class Assessment(BaseModel):
    """Finalised per-patient screening outcome (immutable)."""

    model_config = ConfigDict(frozen=True)

    patient_id: str
    criteria: tuple[Criterion, ...]
    overall_status: EligibilityStatus
    ineligibility_reason: Optional[str] = None
    missing_data_elements: tuple[str, ...] = ()

    @classmethod
    def finalize(
        cls,
        patient_id: str,
        criteria: list[Criterion] | tuple[Criterion, ...],
        summary: StatusSummary,
    ) -> "Assessment":
        """Freeze evaluated criteria together with their aggregated status."""
        return cls(
            patient_id=patient_id,
            criteria=tuple(criteria),
            overall_status=summary.overall_status,
            ineligibility_reason=summary.ineligibility_reason,
            missing_data_elements=summary.missing_data_elements,
        )

    @property
    def inclusion_criteria(self) -> list[Criterion]:
        return [c for c in self.criteria if c.kind is CriterionKind.INCLUSION]

    @property
    def exclusion_criteria(self) -> list[Criterion]:
        return [c for c in self.criteria if c.kind is CriterionKind.EXCLUSION]

    def criterion(self, name: str) -> Optional[Criterion]:
        for c in self.criteria:
            if c.name == name:
                return c
        return None


# Screening run (engine output)
class ScreeningRun(BaseModel):
    """Result of one end-to-end screening run."""

    trial_name: str
    screening_date: date
    candidate_count: int = 0
    assessments: list[Assessment] = Field(default_factory=list)
    dropped_patient_ids: list[str] = Field(
        default_factory=list,
        description="Candidates whose screening unit failed and were skipped.",
    )

    def count(self, status: EligibilityStatus) -> int:
        return sum(1 for a in self.assessments if a.overall_status is status)


# API request / response bodies
class ScreeningRequest(BaseModel):
    max_patients: Optional[int] = Field(
        None,
        ge=1,
        le=1000,
        description="Maximum candidates to discover (defaults to settings).",
    )


class ScreeningRunResponse(BaseModel):
    """Structured report returned by the screening API."""

    trial_name: str
    screening_date: str
    status: str = Field(
        "completed", description="'completed' | 'no_candidates'."
    )
    message: str = ""
    report: dict[str, Any] = Field(default_factory=dict)

"""
FHIR Resource Schema

Typed pydantic views over the five FHIR R4 resource kinds the screener
consumes (Patient, Condition, Observation, MedicationStatement,
Procedure).  Only the elements the evaluator actually reads are
modelled; everything else in the server payload is ignored.

Raw JSON coming back from a resource port is resolved into one of these
models exactly once, at the fetcher boundary, via the ``resourceType``
discriminator.  Callers downstream never re-check resource kinds.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Annotated, Any, Iterable, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

LOINC_SYSTEM = "http://loinc.org"
SNOMED_SYSTEM = "http://snomed.info/sct"


class FhirModel(BaseModel):
    """Base for all FHIR element models (camelCase on the wire)."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )


# Data types

class Coding(FhirModel):
    system: Optional[str] = None
    code: Optional[str] = None
    display: Optional[str] = None


class CodeableConcept(FhirModel):
    coding: list[Coding] = Field(default_factory=list)
    text: Optional[str] = None

    def search_text(self) -> str:
        """Lower-cased concatenation of ``text`` and every coding display."""
        parts = [self.text or ""]
        parts.extend(c.display for c in self.coding if c.display)
        return " ".join(parts).lower().strip()

    def has_code(self, codes: Iterable[str], system: Optional[str] = None) -> bool:
        """Return ``True`` if any coding carries one of *codes*.

        When *system* is given, codings that declare a different system
        do not match; codings without a system are accepted.
        """
        wanted = set(codes)
        for coding in self.coding:
            if coding.code not in wanted:
                continue
            if system and coding.system and coding.system != system:
                continue
            return True
        return False

    def display_name(self) -> Optional[str]:
        """Preferred human label: ``text`` first, then the first display."""
        if self.text:
            return self.text
        for coding in self.coding:
            if coding.display:
                return coding.display
        return None


class Quantity(FhirModel):
    value: Optional[float] = None
    unit: Optional[str] = None
    system: Optional[str] = None
    code: Optional[str] = None


class Reference(FhirModel):
    reference: Optional[str] = None
    display: Optional[str] = None

    @property
    def id_part(self) -> Optional[str]:
        return reference_id(self.reference)


class Period(FhirModel):
    start: Optional[str] = None
    end: Optional[str] = None


class ConditionStage(FhirModel):
    summary: Optional[CodeableConcept] = None
    type: Optional[CodeableConcept] = None


# Resources

class Patient(FhirModel):
    resource_type: Literal["Patient"] = "Patient"
    id: Optional[str] = None
    birth_date: Optional[str] = None
    gender: Optional[str] = None


class Condition(FhirModel):
    resource_type: Literal["Condition"] = "Condition"
    id: Optional[str] = None
    subject: Optional[Reference] = None
    code: Optional[CodeableConcept] = None
    clinical_status: Optional[CodeableConcept] = None
    stage: list[ConditionStage] = Field(default_factory=list)
    onset_date_time: Optional[str] = None


class Observation(FhirModel):
    resource_type: Literal["Observation"] = "Observation"
    id: Optional[str] = None
    status: Optional[str] = None
    subject: Optional[Reference] = None
    category: list[CodeableConcept] = Field(default_factory=list)
    code: Optional[CodeableConcept] = None
    value_quantity: Optional[Quantity] = None
    value_integer: Optional[int] = None
    value_codeable_concept: Optional[CodeableConcept] = None
    value_string: Optional[str] = None
    effective_date_time: Optional[str] = None
    effective_period: Optional[Period] = None

    @property
    def effective_at(self) -> Optional[datetime]:
        """Recorded timestamp of the observation, if any."""
        if self.effective_date_time:
            return parse_fhir_datetime(self.effective_date_time)
        if self.effective_period and self.effective_period.start:
            return parse_fhir_datetime(self.effective_period.start)
        return None


class MedicationStatement(FhirModel):
    resource_type: Literal["MedicationStatement"] = "MedicationStatement"
    id: Optional[str] = None
    status: Optional[str] = None
    subject: Optional[Reference] = None
    medication_codeable_concept: Optional[CodeableConcept] = None
    medication_reference: Optional[Reference] = None
    reason_code: list[CodeableConcept] = Field(default_factory=list)

    def search_text(self) -> str:
        parts: list[str] = []
        if self.medication_codeable_concept:
            parts.append(self.medication_codeable_concept.search_text())
        if self.medication_reference and self.medication_reference.display:
            parts.append(self.medication_reference.display.lower())
        return " ".join(p for p in parts if p)

    def display_name(self) -> str:
        if self.medication_codeable_concept:
            name = self.medication_codeable_concept.display_name()
            if name:
                return name
        if self.medication_reference and self.medication_reference.display:
            return self.medication_reference.display
        return "Unknown medication"


class Procedure(FhirModel):
    resource_type: Literal["Procedure"] = "Procedure"
    id: Optional[str] = None
    status: Optional[str] = None
    subject: Optional[Reference] = None
    code: Optional[CodeableConcept] = None
    performed_date_time: Optional[str] = None
    performed_period: Optional[Period] = None

    @property
    def performed_at(self) -> Optional[datetime]:
        if self.performed_date_time:
            return parse_fhir_datetime(self.performed_date_time)
        if self.performed_period and self.performed_period.start:
            return parse_fhir_datetime(self.performed_period.start)
        return None


FhirResource = Annotated[
    Union[Patient, Condition, Observation, MedicationStatement, Procedure],
    Field(discriminator="resource_type"),
]

_RESOURCE_ADAPTER: TypeAdapter[Any] = TypeAdapter(FhirResource)

RESOURCE_TYPES: tuple[str, ...] = (
    "Patient",
    "Condition",
    "Observation",
    "MedicationStatement",
    "Procedure",
)


def parse_resource(raw: Any) -> Optional[FhirModel]:
    """Resolve a raw FHIR JSON object into its typed model.

    Returns ``None`` for resource kinds the screener does not use
    (e.g. ``OperationOutcome``) and for malformed payloads.
    """
    if not isinstance(raw, dict):
        return None
    if raw.get("resourceType") not in RESOURCE_TYPES:
        logger.debug("Skipping unsupported resource type %r", raw.get("resourceType"))
        return None
    try:
        return _RESOURCE_ADAPTER.validate_python(raw)
    except ValidationError as exc:
        logger.debug(
            "Skipping malformed %s/%s: %s",
            raw.get("resourceType"), raw.get("id"), exc.error_count(),
        )
        return None


# Helpers

def reference_id(reference: Optional[str]) -> Optional[str]:
    """Extract the logical id from ``Patient/123`` style references.

    Absolute URLs and ``_history`` suffixes are handled:
    ``https://srv/fhir/Patient/123/_history/2`` -> ``123``.
    """
    if not reference:
        return None
    parts = [p for p in reference.split("/") if p]
    if "_history" in parts:
        parts = parts[: parts.index("_history")]
    if len(parts) < 2:
        return None
    return parts[-1]


def parse_fhir_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse a FHIR ``date`` / ``dateTime`` / ``instant`` into an aware datetime.

    Partial dates (``YYYY`` and ``YYYY-MM``) resolve to the first day of
    the period.  Naive values are assumed to be UTC.  Unparseable input
    yields ``None``.
    """
    if not value:
        return None
    text = value.strip()
    try:
        if len(text) == 4:
            parsed = datetime(int(text), 1, 1)
        elif len(text) == 7:
            parsed = datetime(int(text[:4]), int(text[5:7]), 1)
        else:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_fhir_date(value: Optional[str]) -> Optional[date]:
    parsed = parse_fhir_datetime(value)
    return parsed.date() if parsed else None

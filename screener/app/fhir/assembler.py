"""
Patient Record Assembler

Retrieves the five resource types needed to screen one patient and
merges them into an immutable ``PatientRecord``.

Every retrieval goes through the ``ResilientFetcher``, so a failed
resource type simply comes back empty.  Partial data is the normal case;
``assemble`` itself never fails.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from screener.app.fhir.fetcher import ResilientFetcher
from screener.app.schema.fhir_schema import (
    Condition,
    MedicationStatement,
    Observation,
    Patient,
    Procedure,
)
from screener.app.schema.screening_schema import PatientRecord

logger = logging.getLogger(__name__)

PAGE_SIZE = 100
VITAL_PAGE_SIZE = 50

# Fallback thresholds: below these counts an unfiltered search is merged in.
MIN_OBSERVATIONS = 10
MIN_MEDICATIONS = 5

LAB_CATEGORY = "laboratory"
VITAL_CATEGORIES = "vital-signs,exam,survey"
MEDICATION_STATUSES = "active,completed,intended,on-hold"


class PatientRecordAssembler:
    """Builds a best-effort ``PatientRecord`` for one candidate id."""

    def __init__(self, fetcher: ResilientFetcher) -> None:
        self.fetcher = fetcher

    def assemble(self, patient_id: str) -> PatientRecord:
        logger.info("Retrieving patient data for patient: %s", patient_id)

        record = PatientRecord(
            patient_id=patient_id,
            patient=self.get_patient(patient_id),
            conditions=tuple(self.get_conditions(patient_id)),
            observations=tuple(self.get_observations(patient_id)),
            medications=tuple(self.get_medications(patient_id)),
            procedures=tuple(self.get_procedures(patient_id)),
        )

        logger.debug(
            "Patient %s: %d conditions, %d observations, %d medications, %d procedures",
            patient_id,
            len(record.conditions),
            len(record.observations),
            len(record.medications),
            len(record.procedures),
        )
        return record

    # Per-type retrieval
    def get_patient(self, patient_id: str) -> Optional[Patient]:
        resource = self.fetcher.read("Patient", patient_id)
        return resource if isinstance(resource, Patient) else None

    def get_conditions(self, patient_id: str) -> list[Condition]:
        return self._search(
            "Condition",
            {"patient": patient_id, "_sort": "-onset-date"},
            PAGE_SIZE,
            f"retrieve Conditions for patient {patient_id}",
        )

    def get_observations(self, patient_id: str) -> list[Observation]:
        observations = self._search(
            "Observation",
            {"patient": patient_id, "category": LAB_CATEGORY, "_sort": "-date"},
            PAGE_SIZE,
            f"retrieve laboratory Observations for patient {patient_id}",
        )
        # Vital-signs / exam / survey may carry the ECOG score.
        observations += self._search(
            "Observation",
            {"patient": patient_id, "category": VITAL_CATEGORIES, "_sort": "-date"},
            VITAL_PAGE_SIZE,
            f"retrieve vital-signs/exam Observations for patient {patient_id}",
        )

        if len(observations) < MIN_OBSERVATIONS:
            unfiltered = self._search(
                "Observation",
                {"patient": patient_id, "_sort": "-date"},
                PAGE_SIZE,
                f"retrieve all Observations for patient {patient_id}",
            )
            observations = merge_by_id(observations, unfiltered)

        return observations

    def get_medications(self, patient_id: str) -> list[MedicationStatement]:
        medications = self._search(
            "MedicationStatement",
            {"patient": patient_id, "status": MEDICATION_STATUSES},
            PAGE_SIZE,
            f"retrieve MedicationStatements for patient {patient_id}",
        )

        if len(medications) < MIN_MEDICATIONS:
            unfiltered = self._search(
                "MedicationStatement",
                {"patient": patient_id},
                PAGE_SIZE,
                f"retrieve all MedicationStatements for patient {patient_id}",
            )
            medications = merge_by_id(medications, unfiltered)

        return medications

    def get_procedures(self, patient_id: str) -> list[Procedure]:
        return self._search(
            "Procedure",
            {"patient": patient_id, "_sort": "-date"},
            PAGE_SIZE,
            f"retrieve Procedures for patient {patient_id}",
        )

    def _search(
        self, resource_type: str, params: dict[str, str], count: int, description: str
    ) -> list:
        return list(self.fetcher.search_all(resource_type, params, count, description) or [])


def merge_by_id(existing: Sequence, additional: Sequence) -> list:
    """Append resources from *additional* whose id is not already present.

    Resources without an id cannot be matched and are always appended.
    """
    merged = list(existing)
    seen = {r.id for r in existing if r.id}
    for resource in additional:
        if resource.id and resource.id in seen:
            continue
        merged.append(resource)
        if resource.id:
            seen.add(resource.id)
    return merged

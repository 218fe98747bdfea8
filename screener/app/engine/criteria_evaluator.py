"""
Criteria Evaluator
==================

Applies the nine trial-eligibility rules of the Phase II advanced NSCLC
study to one ``PatientRecord``.

Inclusion (in order)
--------------------
1. Age ≥18 years
2. NSCLC diagnosis
3. Stage IIIB/IV disease
4. ECOG performance status 0-2
5. Hemoglobin ≥9.0 g/dL
6. Absolute neutrophil count ≥1,500/µL
7. Platelet count ≥100,000/µL

Exclusion (in order)
--------------------
8. No prior systemic therapy for advanced disease
9. No active brain metastases

Every rule is three-state.  When the data point cannot be located the
outcome is ``UNKNOWN`` and the absent element is named in
``missing_data``; absent data is never read as a pass or a fail.

The evaluator is a pure function of the record (and of "today"): it holds
no state between calls.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date
from typing import Callable, Iterable, Optional

from screener.app.config import ScreenerSettings
from screener.app.fhir.errors import InvalidRecordError
from screener.app.schema.fhir_schema import (
    LOINC_SYSTEM,
    Condition,
    MedicationStatement,
    Observation,
    Procedure,
    Quantity,
    parse_fhir_date,
)
from screener.app.schema.screening_schema import (
    Criterion,
    CriterionKind,
    CriterionOutcome,
    PatientRecord,
)

logger = logging.getLogger(__name__)

# ── Criterion names (stable keys, in evaluation order) ───────────────────
AGE = "Age ≥18 years"
DIAGNOSIS = "NSCLC Diagnosis"
STAGE = "Stage IIIB/IV Disease"
ECOG = "ECOG Performance Status 0-2"
HEMOGLOBIN = "Hemoglobin ≥9.0 g/dL"
NEUTROPHILS = "Absolute Neutrophil Count ≥1,500/µL"
PLATELETS = "Platelet Count ≥100,000/µL"
PRIOR_THERAPY = "No Prior Systemic Therapy"
BRAIN_METASTASES = "No Active Brain Metastases"

INCLUSION_CRITERIA: tuple[str, ...] = (
    AGE, DIAGNOSIS, STAGE, ECOG, HEMOGLOBIN, NEUTROPHILS, PLATELETS,
)
EXCLUSION_CRITERIA: tuple[str, ...] = (PRIOR_THERAPY, BRAIN_METASTASES)
CRITERIA_ORDER: tuple[str, ...] = INCLUSION_CRITERIA + EXCLUSION_CRITERIA

MIN_AGE = 18

# ── Codes ────────────────────────────────────────────────────────────────
SNOMED_NSCLC = "254637007"
SNOMED_LUNG_CANCER = "424132000"
SNOMED_BRAIN_METASTASES = "94225005"
NSCLC_CODES = frozenset({SNOMED_NSCLC, SNOMED_LUNG_CANCER})

LOINC_ECOG = "89247-1"
LOINC_HEMOGLOBIN = "718-7"
LOINC_NEUTROPHIL = "751-8"
LOINC_PLATELET = "777-3"

NSCLC_TERMS = ("non-small cell lung cancer", "nsclc")
LUNG_CANCER_TERMS = NSCLC_TERMS + ("lung cancer",)

# ── Staging patterns ─────────────────────────────────────────────────────
STAGE_IIIB_PATTERN = re.compile(r"(stage\s*)?(IIIB|3B|three\s*B)", re.IGNORECASE)
STAGE_IV_PATTERN = re.compile(r"(stage\s*)?(IV|4|four|metastatic)", re.IGNORECASE)
STAGE_IN_TEXT_PATTERN = re.compile(
    r"\bstage\s*(?:IV|I{1,3}|[0-4])[A-C]?\b", re.IGNORECASE
)

# ── Systemic therapy agents ──────────────────────────────────────────────
CHEMOTHERAPY_AGENTS = (
    "cisplatin", "carboplatin", "paclitaxel", "docetaxel", "gemcitabine",
    "pemetrexed", "etoposide", "vinorelbine", "irinotecan", "topotecan",
)
IMMUNOTHERAPY_AGENTS = (
    "pembrolizumab", "nivolumab", "atezolizumab", "durvalumab", "ipilimumab",
    "keytruda", "opdivo", "tecentriq", "imfinzi",
)
TARGETED_AGENTS = (
    "erlotinib", "gefitinib", "afatinib", "osimertinib", "crizotinib",
    "alectinib", "ceritinib", "brigatinib", "tarceva", "iressa", "tagrisso",
)
GENERIC_THERAPY_TERMS = ("chemotherapy", "immunotherapy", "targeted therapy")
ADVANCED_REASON_TERMS = ("metastatic", "advanced", "stage iv", "stage 4")
EARLY_REASON_TERMS = ("adjuvant", "neoadjuvant", "early stage", "early-stage", "curative")

# ── Brain metastases ─────────────────────────────────────────────────────
BRAIN_METASTASES_TERMS = ("brain metasta", "cerebral metasta", "brain met", "cns metasta")
ACTIVE_STATUSES = frozenset({"active", "recurrence", "relapse"})
BRAIN_PROCEDURE_TERMS = (
    "brain radiation", "cranial radiation", "whole brain radiation",
    "stereotactic radiosurgery", "gamma knife", "cyberknife",
    "brain surgery", "craniotomy", "brain resection",
    "srs", "wbrt",
)

# ── Lab units ────────────────────────────────────────────────────────────
THOUSANDS_UNIT_MARKERS = ("10*3", "10^3", "x10e3", "10e3", "k/", "thou", "10*9/l", "10^9/l")


def _unknown(name: str, kind: CriterionKind, detail: str, *missing: str) -> Criterion:
    return Criterion(
        name=name,
        kind=kind,
        outcome=CriterionOutcome.UNKNOWN,
        detail=detail,
        missing_data=missing,
    )


def _result(name: str, kind: CriterionKind, met: bool, detail: str) -> Criterion:
    return Criterion(
        name=name,
        kind=kind,
        outcome=CriterionOutcome.MET if met else CriterionOutcome.NOT_MET,
        detail=detail,
    )


# Condition matching

def _condition_text(condition: Condition) -> str:
    return condition.code.search_text() if condition.code else ""


def is_nsclc_diagnosis(condition: Condition) -> bool:
    if condition.code is None:
        return False
    if condition.code.has_code(NSCLC_CODES):
        return True
    text = _condition_text(condition)
    return any(term in text for term in NSCLC_TERMS)


def is_lung_cancer_condition(condition: Condition) -> bool:
    if condition.code is None:
        return False
    if condition.code.has_code(NSCLC_CODES):
        return True
    text = _condition_text(condition)
    return any(term in text for term in LUNG_CANCER_TERMS)


def extract_stage(condition: Condition) -> Optional[str]:
    """Stage label from the structured ``stage`` element, else from the text."""
    for stage in condition.stage:
        if stage.summary is None:
            continue
        if stage.summary.text:
            return stage.summary.text
        for coding in stage.summary.coding:
            if coding.display:
                return coding.display

    if condition.code is None:
        return None
    candidates = [condition.code.text or ""]
    candidates.extend(c.display or "" for c in condition.code.coding)
    for text in candidates:
        match = STAGE_IN_TEXT_PATTERN.search(text)
        if match:
            return match.group(0)
    return None


def is_advanced_stage(stage: str) -> bool:
    return bool(STAGE_IIIB_PATTERN.search(stage) or STAGE_IV_PATTERN.search(stage))


def is_brain_metastases(condition: Condition) -> bool:
    if condition.code is None:
        return False
    if condition.code.has_code([SNOMED_BRAIN_METASTASES]):
        return True
    text = _condition_text(condition)
    return any(term in text for term in BRAIN_METASTASES_TERMS)


def is_active_condition(condition: Condition) -> bool:
    """Active, recurrence or relapse.  No status at all counts as active."""
    status = condition.clinical_status
    if status is None or not status.coding:
        return True
    return any(
        (coding.code or "").lower() in ACTIVE_STATUSES for coding in status.coding
    )


def is_brain_metastases_procedure(procedure: Procedure) -> bool:
    if procedure.code is None:
        return False
    text = procedure.code.search_text()
    if any(term in text for term in BRAIN_PROCEDURE_TERMS):
        return True
    mentions_brain = any(t in text for t in ("brain", "cranial", "cerebral"))
    return mentions_brain and "met" in text


# Medication matching

def is_systemic_cancer_therapy(medication: MedicationStatement) -> bool:
    text = medication.search_text()
    if not text:
        return False
    for agents in (CHEMOTHERAPY_AGENTS, IMMUNOTHERAPY_AGENTS, TARGETED_AGENTS):
        if any(agent in text for agent in agents):
            return True
    return any(term in text for term in GENERIC_THERAPY_TERMS)


def indicates_advanced_disease(medication: MedicationStatement) -> bool:
    """Whether a systemic therapy should be read as treating advanced disease.

    An explicit metastatic / advanced reason confirms it; an explicit
    adjuvant / early-stage reason contradicts it.  Without either, the
    therapy is assumed to be for advanced disease.
    """
    reasons = [r.search_text() for r in medication.reason_code]
    if any(term in reason for reason in reasons for term in ADVANCED_REASON_TERMS):
        return True
    if any(term in reason for reason in reasons for term in EARLY_REASON_TERMS):
        return False
    return True


# Lab helpers

def has_loinc_code(observation: Observation, loinc_code: str) -> bool:
    return observation.code is not None and observation.code.has_code(
        [loinc_code], system=LOINC_SYSTEM
    )


def latest_observation(
    observations: Iterable[Observation], loinc_code: str
) -> Optional[Observation]:
    """Most recent observation for *loinc_code*; undated ones are ignored."""
    dated = [
        obs for obs in observations
        if has_loinc_code(obs, loinc_code) and obs.effective_at is not None
    ]
    if not dated:
        return None
    return max(dated, key=lambda obs: obs.effective_at)


def _unit_of(quantity: Quantity) -> str:
    return (quantity.unit or quantity.code or "").strip().lower().replace(" ", "")


def normalize_hemoglobin(quantity: Quantity) -> Optional[float]:
    """Value in g/dL (g/L results are divided by 10)."""
    if quantity.value is None:
        return None
    if _unit_of(quantity) == "g/l":
        return round(quantity.value / 10, 2)
    return quantity.value


def normalize_cell_count(quantity: Quantity) -> Optional[float]:
    """Value in cells/µL.

    Counts reported in thousands (``10*3/uL``, ``K/uL``, ``10*9/L``...) are
    multiplied by 1,000.  Without any unit, values below 1,000 are assumed
    to be in thousands as well.
    """
    if quantity.value is None:
        return None
    unit = _unit_of(quantity)
    if unit:
        if any(marker in unit for marker in THOUSANDS_UNIT_MARKERS):
            return quantity.value * 1000
        return quantity.value
    if quantity.value < 1000:
        return quantity.value * 1000
    return quantity.value


@dataclass(frozen=True)
class LabRule:
    """Threshold rule over the latest result of one LOINC-coded lab."""

    name: str
    loinc_code: str
    label: str
    threshold: float
    normalize: Callable[[Quantity], Optional[float]]
    value_format: str
    requirement: str


LAB_RULES: tuple[LabRule, ...] = (
    LabRule(
        name=HEMOGLOBIN,
        loinc_code=LOINC_HEMOGLOBIN,
        label="Hemoglobin",
        threshold=9.0,
        normalize=normalize_hemoglobin,
        value_format="{:.1f} g/dL",
        requirement="≥9.0",
    ),
    LabRule(
        name=NEUTROPHILS,
        loinc_code=LOINC_NEUTROPHIL,
        label="Neutrophil count",
        threshold=1500,
        normalize=normalize_cell_count,
        value_format="{:.0f}/µL",
        requirement="≥1,500",
    ),
    LabRule(
        name=PLATELETS,
        loinc_code=LOINC_PLATELET,
        label="Platelet count",
        threshold=100_000,
        normalize=normalize_cell_count,
        value_format="{:.0f}/µL",
        requirement="≥100,000",
    ),
)

_MISSING_LAB_NAMES = {
    HEMOGLOBIN: "Hemoglobin",
    NEUTROPHILS: "Absolute neutrophil count",
    PLATELETS: "Platelet count",
}


def age_in_years(birth_date: date, today: date) -> int:
    """Whole-year difference between two dates."""
    years = today.year - birth_date.year
    if (today.month, today.day) < (birth_date.month, birth_date.day):
        years -= 1
    return years


class CriteriaEvaluator:
    """Evaluates the fixed nine-criterion trial definition.

    Parameters
    ----------
    settings : ScreenerSettings | None
        Supplies the lab and procedure recency windows.
    today : date | None
        Reference date for ages and recency.  Defaults to the current
        date at each call; tests pin it for reproducibility.
    """

    def __init__(
        self,
        settings: ScreenerSettings | None = None,
        today: date | None = None,
    ) -> None:
        self.settings = settings or ScreenerSettings()
        self._today = today

    @property
    def today(self) -> date:
        return self._today or date.today()

    def evaluate(self, record: Optional[PatientRecord]) -> list[Criterion]:
        """Return the nine criteria for *record* in their fixed order."""
        if record is None:
            raise InvalidRecordError("PatientRecord cannot be None")

        today = self.today
        criteria = [
            self.evaluate_age(record, today),
            self.evaluate_diagnosis(record),
            self.evaluate_staging(record),
            self.evaluate_ecog(record),
        ]
        criteria.extend(self.evaluate_lab(record, rule, today) for rule in LAB_RULES)
        criteria.append(self.evaluate_prior_therapy(record))
        criteria.append(self.evaluate_brain_metastases(record, today))
        return criteria

    # Inclusion criteria

    def evaluate_age(self, record: PatientRecord, today: date) -> Criterion:
        birth_date = parse_fhir_date(record.birth_date)
        if birth_date is None:
            return _unknown(
                AGE, CriterionKind.INCLUSION,
                "Birth date not available", "Patient birth date",
            )

        age = age_in_years(birth_date, today)
        if age >= MIN_AGE:
            return _result(AGE, CriterionKind.INCLUSION, True, f"Age: {age} years")
        return _result(
            AGE, CriterionKind.INCLUSION, False, f"Age: {age} years (under {MIN_AGE})"
        )

    def evaluate_diagnosis(self, record: PatientRecord) -> Criterion:
        if not record.conditions:
            return _unknown(
                DIAGNOSIS, CriterionKind.INCLUSION,
                "No condition data available", "Condition/diagnosis information",
            )

        for condition in record.conditions:
            if is_nsclc_diagnosis(condition):
                label = condition.code.display_name() if condition.code else None
                return _result(
                    DIAGNOSIS, CriterionKind.INCLUSION, True,
                    f"Confirmed NSCLC: {label or 'Non-small cell lung cancer'}",
                )

        return _result(
            DIAGNOSIS, CriterionKind.INCLUSION, False,
            "No NSCLC diagnosis found in patient records",
        )

    def evaluate_staging(self, record: PatientRecord) -> Criterion:
        lung_cancer = [c for c in record.conditions if is_lung_cancer_condition(c)]
        if not lung_cancer:
            return _unknown(
                STAGE, CriterionKind.INCLUSION,
                "No lung cancer conditions found for staging",
                "Disease staging information",
            )

        for condition in lung_cancer:
            stage = extract_stage(condition)
            if stage is None:
                continue
            if is_advanced_stage(stage):
                return _result(STAGE, CriterionKind.INCLUSION, True, f"Stage: {stage}")
            return _result(
                STAGE, CriterionKind.INCLUSION, False,
                f"Stage: {stage} (requires Stage IIIB or IV)",
            )

        return _unknown(
            STAGE, CriterionKind.INCLUSION,
            "Staging information not available", "Disease stage",
        )

    def evaluate_ecog(self, record: PatientRecord) -> Criterion:
        observation = latest_observation(record.observations, LOINC_ECOG)
        if observation is None:
            return _unknown(
                ECOG, CriterionKind.INCLUSION,
                "ECOG performance status not recorded", "ECOG performance status",
            )

        value = extract_ecog_value(observation)
        if value is None:
            return _unknown(
                ECOG, CriterionKind.INCLUSION,
                "ECOG value could not be extracted", "ECOG performance status value",
            )

        if 0 <= value <= 2:
            return _result(ECOG, CriterionKind.INCLUSION, True, f"ECOG: {value}")
        if 3 <= value <= 5:
            return _result(
                ECOG, CriterionKind.INCLUSION, False, f"ECOG: {value} (requires 0-2)"
            )
        return _unknown(
            ECOG, CriterionKind.INCLUSION,
            f"ECOG: {value} (invalid value)", "ECOG performance status value",
        )

    def evaluate_lab(self, record: PatientRecord, rule: LabRule, today: date) -> Criterion:
        kind = CriterionKind.INCLUSION
        lab = _MISSING_LAB_NAMES[rule.name]
        observation = latest_observation(record.observations, rule.loinc_code)
        if observation is None:
            return _unknown(
                rule.name, kind,
                f"{rule.label} result not available", f"{lab} lab result",
            )

        observed_on = observation.effective_at.date()
        window = self.settings.lab_recency_days
        if window is not None:
            age_days = (today - observed_on).days
            if age_days < 0 or age_days > window:
                return _unknown(
                    rule.name, kind,
                    f"{rule.label} result is older than {window} days",
                    f"Recent {rule.label.lower()} lab result",
                )

        value = None
        if observation.value_quantity is not None:
            value = rule.normalize(observation.value_quantity)
        if value is None:
            return _unknown(
                rule.name, kind,
                f"{rule.label} value could not be extracted", f"{rule.label} value",
            )

        shown = f"{rule.label}: {rule.value_format.format(value)} on {observed_on.isoformat()}"
        if value >= rule.threshold:
            return _result(rule.name, kind, True, shown)
        return _result(rule.name, kind, False, f"{shown} (requires {rule.requirement})")

    # Exclusion criteria

    def evaluate_prior_therapy(self, record: PatientRecord) -> Criterion:
        kind = CriterionKind.EXCLUSION
        if not record.medications:
            return _unknown(
                PRIOR_THERAPY, kind,
                "Medication history not available", "Medication history",
            )

        for medication in record.medications:
            if is_systemic_cancer_therapy(medication) and indicates_advanced_disease(medication):
                return _result(
                    PRIOR_THERAPY, kind, False,
                    f"Prior systemic therapy found: {medication.display_name()}",
                )

        return _result(
            PRIOR_THERAPY, kind, True,
            "No prior systemic therapy for advanced disease found",
        )

    def evaluate_brain_metastases(self, record: PatientRecord, today: date) -> Criterion:
        kind = CriterionKind.EXCLUSION
        if not record.conditions and not record.procedures:
            return _unknown(
                BRAIN_METASTASES, kind,
                "Condition and procedure data not available",
                "Brain metastases information",
            )

        for condition in record.conditions:
            if is_brain_metastases(condition) and is_active_condition(condition):
                return _result(
                    BRAIN_METASTASES, kind, False, "Active brain metastases found"
                )

        for procedure in record.procedures:
            if is_brain_metastases_procedure(procedure) and self._is_recent_procedure(
                procedure, today
            ):
                name = procedure.code.display_name() if procedure.code else None
                return _result(
                    BRAIN_METASTASES, kind, False,
                    f"Recent brain metastases treatment found: {name or 'Unknown procedure'}",
                )

        return _result(BRAIN_METASTASES, kind, True, "No active brain metastases found")

    def _is_recent_procedure(self, procedure: Procedure, today: date) -> bool:
        performed = procedure.performed_at
        if performed is None:
            return True
        days = (today - performed.date()).days
        return 0 <= days <= self.settings.procedure_recency_days


def extract_ecog_value(observation: Observation) -> Optional[int]:
    """Integer score from ``valueInteger`` or a numeric coded answer."""
    if observation.value_integer is not None:
        return observation.value_integer
    concept = observation.value_codeable_concept
    if concept is not None:
        for coding in concept.coding:
            if coding.code is None:
                continue
            try:
                return int(coding.code)
            except ValueError:
                continue
    return None

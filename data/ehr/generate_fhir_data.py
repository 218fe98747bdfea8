"""
Generate Synthetic NSCLC FHIR Patient Bundles

Creates FHIR R4 Bundle JSON files (one per patient) in ``nsclc/`` for
offline screening with ``SCREENER_FHIR_BUNDLE_DIR=data/ehr/nsclc``.

Each bundle contains:
- Patient resource (demographics, birth date; occasionally missing)
- Condition resources (lung cancer with staging, comorbidities,
  sometimes brain metastases)
- Observation resources (ECOG score and CBC labs in varied units)
- MedicationStatement resources (oncology and non-oncology drugs)
- Procedure resources (brain-directed radiotherapy / surgery)

Generation is seeded, so the same bundles are produced on every run.
"""

from __future__ import annotations

import json
import random
from datetime import date, timedelta
from pathlib import Path
from typing import Optional

# Paths
_DATA_DIR = Path(__file__).resolve().parent
_OUTPUT_DIR = _DATA_DIR / "nsclc"

_SNOMED = "http://snomed.info/sct"
_LOINC = "http://loinc.org"
_RXNORM = "http://www.nlm.nih.gov/research/umls/rxnorm"
_UCUM = "http://unitsofmeasure.org"
_CLINICAL_STATUS = "http://terminology.hl7.org/CodeSystem/condition-clinical"
_OBS_CATEGORY = "http://terminology.hl7.org/CodeSystem/observation-category"

_REFERENCE_DATE = date(2026, 6, 1)

# Clinical data pools with proper coding systems

_LUNG_CANCERS = [
    {"snomed": "254637007", "display": "Non-small cell lung cancer"},
    {"snomed": "424132000", "display": "Non-small cell carcinoma of lung, TNM stage 4"},
    {"snomed": "423121009", "display": "Adenocarcinoma of lung"},
    {"snomed": "254632001", "display": "Small cell carcinoma of lung"},
]

_STAGES = [
    "Stage IA", "Stage IIB", "Stage IIIA", "Stage IIIB", "Stage IIIB",
    "Stage IV", "Stage IV", "Stage IVA", None,
]

_COMORBIDITIES = [
    {"snomed": "44054006",  "display": "Type 2 diabetes mellitus"},
    {"snomed": "38341003",  "display": "Essential hypertension"},
    {"snomed": "13645005",  "display": "Chronic obstructive pulmonary disease"},
    {"snomed": "709044004", "display": "Chronic kidney disease"},
]

_BRAIN_METASTASES = {"snomed": "94225005", "display": "Metastatic malignant neoplasm to brain"}

# (loinc, display, {unit: (lo, hi)})
_LABS = [
    ("718-7", "Hemoglobin [Mass/volume] in Blood",
     {"g/dL": (7.5, 16.0), "g/L": (75.0, 160.0)}),
    ("751-8", "Neutrophils [#/volume] in Blood by Automated count",
     {"10*3/uL": (0.8, 7.5), "/uL": (800.0, 7500.0), "": (0.8, 7.5)}),
    ("777-3", "Platelets [#/volume] in Blood by Automated count",
     {"10*3/uL": (60.0, 400.0), "/uL": (60000.0, 400000.0)}),
]

_ONCOLOGY_MEDICATIONS = [
    {"name": "Carboplatin",    "rxnorm": "40048"},
    {"name": "Pemetrexed",     "rxnorm": "68446"},
    {"name": "Pembrolizumab",  "rxnorm": "1547545"},
    {"name": "Osimertinib",    "rxnorm": "1721560"},
]

_OTHER_MEDICATIONS = [
    {"name": "Metformin",      "rxnorm": "6809"},
    {"name": "Lisinopril",     "rxnorm": "29046"},
    {"name": "Atorvastatin",   "rxnorm": "83367"},
    {"name": "Tiotropium",     "rxnorm": "274783"},
    {"name": "Omeprazole",     "rxnorm": "7646"},
]

_BRAIN_PROCEDURES = [
    {"snomed": "384692006", "display": "Stereotactic radiosurgery"},
    {"snomed": "108290001", "display": "Whole brain radiation therapy"},
    {"snomed": "25353009",  "display": "Craniotomy"},
]

_GENDERS = ["male", "female"]


def _random_date(rng: random.Random, days_back_lo: int, days_back_hi: int) -> str:
    days = rng.randint(days_back_lo, days_back_hi)
    return (_REFERENCE_DATE - timedelta(days=days)).isoformat()


def _concept(system: str, code: str, display: str) -> dict:
    return {"coding": [{"system": system, "code": code, "display": display}], "text": display}


def _condition(rid: str, patient_id: str, code: dict, rng: random.Random,
               stage: Optional[str] = None, status: str = "active") -> dict:
    resource = {
        "resourceType": "Condition",
        "id": rid,
        "subject": {"reference": f"Patient/{patient_id}"},
        "code": _concept(_SNOMED, code["snomed"], code["display"]),
        "clinicalStatus": {"coding": [{"system": _CLINICAL_STATUS, "code": status}]},
        "onsetDateTime": _random_date(rng, 60, 900),
    }
    if stage:
        resource["stage"] = [{"summary": {"text": stage}}]
    return resource


def _observation(rid: str, patient_id: str, category: str, code: str, display: str,
                 value: dict, effective: str) -> dict:
    return {
        "resourceType": "Observation",
        "id": rid,
        "status": "final",
        "subject": {"reference": f"Patient/{patient_id}"},
        "category": [{"coding": [{"system": _OBS_CATEGORY, "code": category}]}],
        "code": _concept(_LOINC, code, display),
        "effectiveDateTime": effective,
        **value,
    }


def _build_patient_bundle(patient_id: str, rng: random.Random) -> dict:
    """Build a FHIR R4 Bundle for a single patient."""
    entries: list[dict] = []
    counter = 0

    def next_id(prefix: str) -> str:
        nonlocal counter
        counter += 1
        return f"{patient_id}-{prefix}{counter}"

    # Patient resource (about 1 in 15 without a birth date)
    patient = {"resourceType": "Patient", "id": patient_id, "gender": rng.choice(_GENDERS)}
    if rng.random() > 0.07:
        age = rng.randint(16, 88)
        patient["birthDate"] = (
            f"{_REFERENCE_DATE.year - age}-{rng.randint(1, 12):02d}-{rng.randint(1, 28):02d}"
        )
    entries.append(patient)

    # Lung cancer condition, usually staged
    cancer = rng.choice(_LUNG_CANCERS)
    entries.append(
        _condition(next_id("cond"), patient_id, cancer, rng, stage=rng.choice(_STAGES))
    )

    # Comorbidities (0-2)
    for cond in rng.sample(_COMORBIDITIES, k=rng.randint(0, 2)):
        entries.append(_condition(next_id("cond"), patient_id, cond, rng))

    # Brain metastases (about 1 in 6; some resolved)
    if rng.random() < 0.17:
        status = rng.choice(["active", "active", "resolved", "remission"])
        entries.append(
            _condition(next_id("cond"), patient_id, _BRAIN_METASTASES, rng, status=status)
        )

    # ECOG (about 1 in 8 without a score)
    if rng.random() > 0.12:
        entries.append(_observation(
            next_id("obs"), patient_id, "survey", "89247-1", "ECOG Performance Status score",
            {"valueInteger": rng.choices(range(5), weights=[30, 35, 20, 10, 5])[0]},
            _random_date(rng, 1, 60),
        ))

    # CBC labs, 1-3 draws each, some labs skipped
    for loinc, display, units in _LABS:
        if rng.random() < 0.1:
            continue
        unit = rng.choice(list(units))
        lo, hi = units[unit]
        for _ in range(rng.randint(1, 3)):
            quantity = {"value": round(rng.uniform(lo, hi), 1)}
            if unit:
                quantity.update({"unit": unit, "system": _UCUM, "code": unit})
            entries.append(_observation(
                next_id("obs"), patient_id, "laboratory", loinc, display,
                {"valueQuantity": quantity}, _random_date(rng, 1, 200),
            ))

    # Medications: non-oncology always, systemic therapy for about 1 in 4
    meds = rng.sample(_OTHER_MEDICATIONS, k=rng.randint(0, 3))
    if rng.random() < 0.25:
        meds.append(rng.choice(_ONCOLOGY_MEDICATIONS))
    for med in meds:
        entries.append({
            "resourceType": "MedicationStatement",
            "id": next_id("med"),
            "status": rng.choice(["active", "completed"]),
            "subject": {"reference": f"Patient/{patient_id}"},
            "medicationCodeableConcept": _concept(_RXNORM, med["rxnorm"], med["name"]),
            "effectivePeriod": {"start": _random_date(rng, 100, 700)},
        })

    # Brain-directed procedures (about 1 in 10, recent or old)
    if rng.random() < 0.1:
        proc = rng.choice(_BRAIN_PROCEDURES)
        entries.append({
            "resourceType": "Procedure",
            "id": next_id("proc"),
            "status": "completed",
            "subject": {"reference": f"Patient/{patient_id}"},
            "code": _concept(_SNOMED, proc["snomed"], proc["display"]),
            "performedDateTime": _random_date(rng, 10, 800),
        })

    return {
        "resourceType": "Bundle",
        "type": "collection",
        "entry": [{"fullUrl": f"urn:uuid:{r['id']}", "resource": r} for r in entries],
    }


def generate_bundles(output_dir: Path, n_patients: int, seed: int) -> list[Path]:
    """Write *n_patients* bundles into *output_dir*, replacing old ones."""
    rng = random.Random(seed)
    output_dir.mkdir(parents=True, exist_ok=True)

    for old_file in output_dir.glob("patient_*.json"):
        old_file.unlink()

    print(f"\nGenerating NSCLC FHIR bundles in {output_dir} ({n_patients} patients) ...")

    written = []
    for i in range(1, n_patients + 1):
        pid = f"NSCLC{seed:02d}{i:04d}"
        bundle = _build_patient_bundle(pid, rng)
        filepath = output_dir / f"patient_{pid}.json"
        with open(filepath, "w", encoding="utf-8") as f:
            json.dump(bundle, f, indent=2)
        written.append(filepath)

    print(f"  [OK] {n_patients} FHIR bundles written to {output_dir}")
    return written


if __name__ == "__main__":
    generate_bundles(_OUTPUT_DIR, n_patients=40, seed=42)
    print("\n[DONE] NSCLC patient bundles generated successfully.")

"""
Patient Discovery

Builds the set of candidate patient ids for screening by escalating
through three Condition searches of increasing recall and decreasing
precision:

1. **Code search** - SNOMED CT codes for NSCLC and related lung
   malignancies, asking for ~3x the target to absorb duplicates.
2. **Text search** - one ``_text`` query per free-text diagnosis phrase.
3. **Broad filter** - a large generic batch of Conditions, filtered on
   the client by lung-related keywords.

Later strategies only run while the id set is still short of the
target, and every strategy stops as soon as the target is reached.
Ids collapse across strategies (set semantics); no ranking is implied.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from screener.app.fhir.fetcher import ResilientFetcher
from screener.app.schema.fhir_schema import Condition

logger = logging.getLogger(__name__)

# Advanced-stage and NSCLC-specific codes first.
LUNG_CANCER_SNOMED_CODES: tuple[str, ...] = (
    "254637007",  # Non-small cell lung cancer
    "424132000",  # Malignant tumor of lung
    "93880001",   # Primary malignant neoplasm of lung
    "162573006",  # Suspected lung cancer
    "254632001",  # Small cell carcinoma of lung
    "423121009",  # Adenocarcinoma of lung
    "35917007",   # Squamous cell carcinoma of lung
    "94222008",   # Secondary malignant neoplasm of lung
    "315058005",  # Metastatic malignant neoplasm to lung
)

TEXT_SEARCH_TERMS: tuple[str, ...] = (
    "lung cancer",
    "non-small cell lung cancer",
    "NSCLC",
    "lung carcinoma",
    "pulmonary carcinoma",
)

LUNG_KEYWORDS: tuple[str, ...] = (
    "lung",
    "pulmonary",
    "bronch",
    "respiratory",
    "thoracic",
)

CODE_SEARCH_FACTOR = 3
BROAD_SEARCH_FACTOR = 5


def is_potentially_lung_related(condition: Condition) -> bool:
    """Keyword match over a condition's coded text and displays."""
    if condition.code is None:
        return False
    text = condition.code.search_text()
    return any(keyword in text for keyword in LUNG_KEYWORDS)


class PatientDiscovery:
    """Strategy-escalating candidate search over Condition resources."""

    def __init__(self, fetcher: ResilientFetcher) -> None:
        self.fetcher = fetcher

    def discover(self, max_count: int) -> set[str]:
        """Return up to roughly *max_count* distinct candidate patient ids."""
        logger.info("Searching for lung cancer patients (max: %d)", max_count)
        patient_ids: set[str] = set()

        self.search_by_code(patient_ids, max_count)

        if len(patient_ids) < max_count:
            logger.info(
                "Found %d patients by code, searching by text to find more",
                len(patient_ids),
            )
            self.search_by_text(patient_ids, max_count)

        if len(patient_ids) < max_count:
            logger.info(
                "Found %d patients so far, broadening search to lung conditions",
                len(patient_ids),
            )
            self.search_broad(patient_ids, max_count)

        logger.info("Found %d unique lung cancer patients total", len(patient_ids))
        return patient_ids

    # Strategies
    def search_by_code(self, patient_ids: set[str], max_count: int) -> None:
        limit = max_count * CODE_SEARCH_FACTOR
        conditions = self.fetcher.search_all(
            "Condition",
            {"code": ",".join(LUNG_CANCER_SNOMED_CODES)},
            count=limit,
            description="search for lung cancer patients by code",
            limit=limit,
        )
        _add_subjects(patient_ids, conditions, max_count)

    def search_by_text(self, patient_ids: set[str], max_count: int) -> None:
        for term in TEXT_SEARCH_TERMS:
            if len(patient_ids) >= max_count:
                break
            try:
                conditions = self.fetcher.search_all(
                    "Condition",
                    {"_text": term},
                    count=max_count,
                    description=f"search for lung cancer patients by text: {term}",
                    limit=max_count,
                )
                _add_subjects(patient_ids, conditions, max_count)
            except Exception as exc:
                logger.debug("Text search failed for term '%s': %s", term, exc)

    def search_broad(self, patient_ids: set[str], max_count: int) -> None:
        limit = max_count * BROAD_SEARCH_FACTOR
        try:
            conditions = self.fetcher.search_all(
                "Condition",
                {},
                count=limit,
                description="search for broad conditions",
                limit=limit,
            )
        except Exception as exc:
            logger.debug("Broad condition search failed: %s", exc)
            return
        lung_related = [c for c in conditions or [] if is_potentially_lung_related(c)]
        _add_subjects(patient_ids, lung_related, max_count)


def _add_subjects(
    patient_ids: set[str],
    conditions: Optional[Iterable[Condition]],
    max_count: int,
) -> None:
    """Add each condition's subject id until *max_count* is reached."""
    for condition in conditions or []:
        if len(patient_ids) >= max_count:
            break
        if condition.subject is None:
            continue
        patient_id = condition.subject.id_part
        if patient_id:
            patient_ids.add(patient_id)

"""Tests for typed FHIR resource parsing and helpers."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from screener.app.schema.fhir_schema import (
    CodeableConcept,
    Condition,
    MedicationStatement,
    Observation,
    parse_fhir_date,
    parse_fhir_datetime,
    parse_resource,
    reference_id,
)


class TestParseResource:

    def test_resolves_by_resource_type(self):
        resource = parse_resource({
            "resourceType": "Observation",
            "id": "o1",
            "code": {"coding": [{"system": "http://loinc.org", "code": "718-7"}]},
            "valueQuantity": {"value": 11.2, "unit": "g/dL"},
            "effectivePeriod": {"start": "2026-02-03T10:00:00Z"},
        })
        assert isinstance(resource, Observation)
        assert resource.value_quantity.value == 11.2
        assert resource.effective_at == datetime(2026, 2, 3, 10, tzinfo=timezone.utc)

    def test_unsupported_kind_skipped(self):
        assert parse_resource({"resourceType": "Encounter", "id": "e1"}) is None

    def test_malformed_resource_skipped(self):
        assert parse_resource({"resourceType": "Condition", "code": "lung"}) is None

    def test_unknown_elements_ignored(self):
        condition = parse_resource({
            "resourceType": "Condition",
            "meta": {"versionId": "3"},
            "code": {"text": "NSCLC"},
        })
        assert isinstance(condition, Condition)

    def test_medication_display_fallbacks(self):
        by_reference = parse_resource({
            "resourceType": "MedicationStatement",
            "medicationReference": {"reference": "Medication/9", "display": "Nivolumab"},
        })
        assert isinstance(by_reference, MedicationStatement)
        assert by_reference.display_name() == "Nivolumab"
        assert "nivolumab" in by_reference.search_text()
        bare = parse_resource({"resourceType": "MedicationStatement"})
        assert bare.display_name() == "Unknown medication"


class TestHelpers:

    @pytest.mark.parametrize("reference,expected", [
        ("Patient/123", "123"),
        ("https://srv/fhir/Patient/123/_history/2", "123"),
        ("Patient", None),
        (None, None),
    ])
    def test_reference_id(self, reference, expected):
        assert reference_id(reference) == expected

    @pytest.mark.parametrize("value,expected", [
        ("2024", datetime(2024, 1, 1, tzinfo=timezone.utc)),
        ("2024-07", datetime(2024, 7, 1, tzinfo=timezone.utc)),
        ("2024-07-15", datetime(2024, 7, 15, tzinfo=timezone.utc)),
        ("not a date", None),
        ("", None),
    ])
    def test_parse_fhir_datetime(self, value, expected):
        assert parse_fhir_datetime(value) == expected

    def test_parse_fhir_date(self):
        assert parse_fhir_date("1960-03-15").isoformat() == "1960-03-15"

    def test_concept_search_text_and_codes(self):
        concept = CodeableConcept.model_validate({
            "text": "Lung Cancer",
            "coding": [{"system": "http://snomed.info/sct", "code": "254637007",
                        "display": "Non-small cell lung cancer"}],
        })
        assert concept.search_text() == "lung cancer non-small cell lung cancer"
        assert concept.has_code(["254637007"])
        assert concept.has_code(["254637007"], system="http://snomed.info/sct")
        assert not concept.has_code(["254637007"], system="http://loinc.org")
        assert concept.display_name() == "Lung Cancer"

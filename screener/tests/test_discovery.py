"""Tests for the strategy-escalating patient discovery."""

from __future__ import annotations

import pytest

from fhir_factory import FakePort, make_condition, no_sleep
from screener.app.config import ScreenerSettings
from screener.app.fhir.client import Page
from screener.app.fhir.discovery import (
    LUNG_CANCER_SNOMED_CODES,
    TEXT_SEARCH_TERMS,
    PatientDiscovery,
    is_potentially_lung_related,
)
from screener.app.fhir.errors import TransientFhirError
from screener.app.fhir.fetcher import ResilientFetcher
from screener.app.schema.fhir_schema import parse_resource


def _conditions(*patient_ids: str, text: str = "Non-small cell lung cancer") -> list[dict]:
    return [make_condition(pid, text=text, code=None) for pid in patient_ids]


class ConditionServer:
    """Answers Condition searches by strategy: code, ``_text`` or broad."""

    def __init__(self, by_code=(), by_text=None, broad=(), failing_terms=()):
        self.by_code = list(by_code)
        self.by_text = by_text or {}
        self.broad = list(broad)
        self.failing_terms = set(failing_terms)

    def __call__(self, params, count):
        if "code" in params:
            return Page(self.by_code)
        if "_text" in params:
            if params["_text"] in self.failing_terms:
                raise TransientFhirError("search timed out")
            return Page(self.by_text.get(params["_text"], []))
        return Page(self.broad)


def _discovery(server: ConditionServer) -> tuple[PatientDiscovery, FakePort]:
    port = FakePort()
    port.searches["Condition"] = server
    fetcher = ResilientFetcher(port, ScreenerSettings(), sleep=no_sleep())
    return PatientDiscovery(fetcher), port


class TestDiscover:

    def test_code_search_alone_when_enough(self):
        discovery, port = _discovery(ConditionServer(by_code=_conditions("A", "B", "C")))
        assert discovery.discover(2) <= {"A", "B", "C"}
        assert len(discovery.discover(2)) == 2
        searched = [c[2] for c in port.calls_of("search")]
        assert all("code" in params for params in searched)

    def test_code_search_parameters(self):
        discovery, port = _discovery(ConditionServer(by_code=_conditions("A")))
        discovery.search_by_code(set(), 10)
        _, resource_type, params, count = port.calls_of("search")[0]
        assert resource_type == "Condition"
        assert params["code"] == ",".join(LUNG_CANCER_SNOMED_CODES)
        assert count == 30

    def test_duplicates_collapse(self):
        discovery, _ = _discovery(ConditionServer(by_code=_conditions("A", "A", "B")))
        assert discovery.discover(5) == {"A", "B"}

    def test_escalates_to_text_search(self):
        server = ConditionServer(
            by_code=_conditions("A"),
            by_text={"lung cancer": _conditions("B"), "NSCLC": _conditions("C")},
        )
        discovery, _ = _discovery(server)
        assert discovery.discover(3) == {"A", "B", "C"}

    def test_failed_text_term_does_not_stop_others(self):
        server = ConditionServer(
            by_text={"NSCLC": _conditions("C")},
            failing_terms={"lung cancer"},
        )
        discovery, _ = _discovery(server)
        assert "C" in discovery.discover(1)

    def test_broad_search_filters_by_keyword(self):
        server = ConditionServer(broad=(
            _conditions("L", text="Pulmonary nodule")
            + _conditions("H", text="Essential hypertension")
        ))
        discovery, _ = _discovery(server)
        assert discovery.discover(5) == {"L"}

    def test_broad_search_limit(self):
        discovery, port = _discovery(ConditionServer())
        discovery.search_broad(set(), 4)
        _, _, params, count = port.calls_of("search")[0]
        assert params == {}
        assert count == 20

    def test_nothing_found(self):
        discovery, port = _discovery(ConditionServer())
        assert discovery.discover(10) == set()
        searches = port.calls_of("search")
        assert len(searches) == 1 + len(TEXT_SEARCH_TERMS) + 1

    def test_conditions_without_subject_skipped(self):
        server = ConditionServer(by_code=[{"resourceType": "Condition", "code": {"text": "NSCLC"}}])
        discovery, _ = _discovery(server)
        assert discovery.discover(3) == set()

    @pytest.mark.parametrize("smaller,larger", [(1, 3), (2, 10)])
    def test_monotonic_in_max_count(self, smaller, larger):
        server = ConditionServer(
            by_code=_conditions("A", "B"),
            by_text={"lung carcinoma": _conditions("C", "D")},
            broad=_conditions("E", text="Bronchial neoplasm"),
        )
        discovery, _ = _discovery(server)
        assert len(discovery.discover(larger)) >= len(discovery.discover(smaller))

    @pytest.mark.parametrize("max_count", [1, 2, 3, 4, 6, 20])
    def test_escalation_keeps_code_matches(self, max_count):
        server = ConditionServer(
            by_code=_conditions("A", "B", "A")
            + [{"resourceType": "Condition", "code": {"text": "NSCLC"}}],
            by_text={
                "lung cancer": _conditions("B", "C"),
                "NSCLC": _conditions("A", "D"),
            },
            broad=_conditions("C", "E", "A", text="Bronchial neoplasm")
            + _conditions("H", text="Essential hypertension"),
        )
        discovery, _ = _discovery(server)

        code_only: set[str] = set()
        discovery.search_by_code(code_only, max_count)
        discovered = discovery.discover(max_count)

        assert code_only <= discovered
        assert len(discovered) <= max_count
        assert "H" not in discovered


class TestKeywordFilter:

    @pytest.mark.parametrize("text,expected", [
        ("Bronchogenic carcinoma", True),
        ("Thoracic mass", True),
        ("Type 2 diabetes mellitus", False),
    ])
    def test_is_potentially_lung_related(self, text, expected):
        condition = parse_resource(make_condition(text=text, code=None))
        assert is_potentially_lung_related(condition) is expected

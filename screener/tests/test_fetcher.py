"""
Tests for the resilient fetcher: retry policy, backoff and pagination.

Uses a scripted in-memory port and a recording ``sleep`` so nothing
touches the network or actually waits.
"""

from __future__ import annotations

import pytest

from fhir_factory import FakePort, make_condition, make_patient, no_sleep
from screener.app.config import ScreenerSettings
from screener.app.fhir.client import Page
from screener.app.fhir.errors import (
    FatalFhirError,
    ResourceNotFoundError,
    TransientFhirError,
)
from screener.app.fhir.fetcher import ResilientFetcher, typed_resources
from screener.app.schema.fhir_schema import Condition, Patient


@pytest.fixture()
def port() -> FakePort:
    return FakePort()


@pytest.fixture()
def sleep():
    return no_sleep()


@pytest.fixture()
def fetcher(port, sleep) -> ResilientFetcher:
    return ResilientFetcher(port, ScreenerSettings(), sleep=sleep)


class TestRetryPolicy:

    def test_success_first_try(self, port, fetcher, sleep):
        port.reads[("Patient", "P1")] = [make_patient("P1")]
        patient = fetcher.read("Patient", "P1")
        assert isinstance(patient, Patient)
        assert patient.id == "P1"
        assert sleep.delays == []

    def test_recovers_after_transient_failures(self, port, fetcher, sleep):
        port.reads[("Patient", "P1")] = [
            TransientFhirError("timeout"),
            TransientFhirError("timeout"),
            make_patient("P1"),
        ]
        assert fetcher.read("Patient", "P1") is not None
        assert sleep.delays == [1.0, 2.0]
        assert len(port.calls_of("read")) == 3

    def test_gives_up_after_three_attempts(self, port, fetcher, sleep):
        port.reads[("Patient", "P1")] = [TransientFhirError("down")]
        assert fetcher.read("Patient", "P1") is None
        assert len(port.calls_of("read")) == 3
        # No sleep after the final attempt.
        assert sleep.delays == [1.0, 2.0]

    def test_fatal_errors_are_retried_too(self, port, fetcher):
        port.reads[("Patient", "P1")] = [FatalFhirError("bad body"), make_patient("P1")]
        assert fetcher.read("Patient", "P1") is not None
        assert len(port.calls_of("read")) == 2

    def test_not_found_is_not_retried(self, port, fetcher, sleep):
        port.reads[("Patient", "P1")] = [ResourceNotFoundError("gone")]
        assert fetcher.read("Patient", "P1") is None
        assert len(port.calls_of("read")) == 1
        assert sleep.delays == []

    def test_unexpected_exception_contained(self, port, fetcher):
        port.reads[("Patient", "P1")] = [KeyError("boom")]
        assert fetcher.read("Patient", "P1") is None

    def test_custom_schedule_reuses_last_delay(self, port, sleep):
        settings = ScreenerSettings(max_attempts=4, backoff_schedule=(0.5,))
        fetcher = ResilientFetcher(port, settings, sleep=sleep)
        port.reads[("Patient", "P1")] = [TransientFhirError("down")]
        assert fetcher.read("Patient", "P1") is None
        assert sleep.delays == [0.5, 0.5, 0.5]

    def test_execute_returns_operation_value(self, fetcher):
        assert fetcher.execute(lambda: 42, "compute") == 42


class TestPagination:

    def test_follows_every_page(self, port, fetcher):
        port.searches["Condition"] = [
            Page([make_condition("P1", rid="c1")], next_token="t1"),
        ]
        port.pages["t1"] = [Page([make_condition("P2", rid="c2")], next_token="t2")]
        port.pages["t2"] = [Page([make_condition("P3", rid="c3")])]

        conditions = fetcher.search_all("Condition", {}, 1, "search")
        assert [c.id for c in conditions] == ["c1", "c2", "c3"]
        assert all(isinstance(c, Condition) for c in conditions)

    def test_later_page_failure_keeps_partial_result(self, port, fetcher, sleep):
        port.searches["Condition"] = [
            Page([make_condition("P1", rid="c1")], next_token="t1"),
        ]
        port.pages["t1"] = [TransientFhirError("reset")]

        conditions = fetcher.search_all("Condition", {}, 1, "search")
        assert [c.id for c in conditions] == ["c1"]
        assert len(port.calls_of("next_page")) == 3

    def test_first_page_failure_returns_none(self, port, fetcher):
        port.searches["Condition"] = [TransientFhirError("down")]
        assert fetcher.search_all("Condition", {}, 10, "search") is None

    def test_limit_stops_pagination(self, port, fetcher):
        port.searches["Condition"] = [
            Page([make_condition("P1", rid="c1"), make_condition("P2", rid="c2")],
                 next_token="t1"),
        ]
        port.pages["t1"] = [Page([make_condition("P3", rid="c3")])]

        conditions = fetcher.search_all("Condition", {}, 2, "search", limit=2)
        assert len(conditions) == 2
        assert port.calls_of("next_page") == []

    def test_page_retry_recovers(self, port, fetcher):
        port.searches["Condition"] = [Page([], next_token="t1")]
        port.pages["t1"] = [TransientFhirError("blip"), Page([make_condition(rid="c9")])]
        conditions = fetcher.search_all("Condition", {}, 10, "search")
        assert [c.id for c in conditions] == ["c9"]


class TestTypedResources:

    def test_keeps_only_requested_kind(self):
        raw = [
            make_condition(rid="c1"),
            make_patient("P1"),
            {"resourceType": "OperationOutcome", "issue": []},
            {"resourceType": "Condition", "stage": "not-a-list"},
        ]
        typed = typed_resources(raw, "Condition")
        assert [c.id for c in typed] == ["c1"]

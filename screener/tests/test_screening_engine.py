"""End-to-end screening runs over local FHIR bundles."""

from __future__ import annotations

from fhir_factory import TODAY, FakePort, no_sleep
from screener.app.config import ScreenerSettings
from screener.app.engine.screening_engine import TrialScreener, create_port
from screener.app.fhir.bundle_port import LocalBundlePort
from screener.app.fhir.client import FhirClient
from screener.app.schema.screening_schema import EligibilityStatus


def _screener(settings: ScreenerSettings) -> TrialScreener:
    return TrialScreener(create_port(settings), settings, sleep=no_sleep(), today=TODAY)


class TestTrialScreener:

    def test_run_over_bundles(self, bundle_settings):
        run = _screener(bundle_settings).run(10)

        assert run.trial_name == "Phase II Advanced NSCLC Study"
        assert run.screening_date == TODAY
        assert run.candidate_count == 3
        statuses = {a.patient_id: a.overall_status for a in run.assessments}
        assert statuses == {
            "P001": EligibilityStatus.ELIGIBLE,
            "P002": EligibilityStatus.NOT_ELIGIBLE,
            "P003": EligibilityStatus.POTENTIALLY_ELIGIBLE,
        }
        assert run.count(EligibilityStatus.ELIGIBLE) == 1
        assert run.dropped_patient_ids == []

    def test_partial_record_reports_missing_data(self, bundle_settings):
        run = _screener(bundle_settings).run(10)
        partial = next(a for a in run.assessments if a.patient_id == "P003")
        assert "ECOG performance status" in partial.missing_data_elements
        assert "Hemoglobin lab result" in partial.missing_data_elements

    def test_max_patients_caps_candidates(self, bundle_settings):
        run = _screener(bundle_settings).run(2)
        assert run.candidate_count == 2
        assert len(run.assessments) == 2

    def test_failing_unit_is_dropped(self, bundle_settings, monkeypatch):
        screener = _screener(bundle_settings)
        original = screener.assembler.assemble

        def assemble(patient_id):
            if patient_id == "P002":
                raise RuntimeError("unexpected payload")
            return original(patient_id)

        monkeypatch.setattr(screener.assembler, "assemble", assemble)
        run = screener.run(10)
        assert run.dropped_patient_ids == ["P002"]
        assert {a.patient_id for a in run.assessments} == {"P001", "P003"}

    def test_no_candidates(self):
        settings = ScreenerSettings(backoff_schedule=(0.0,))
        run = TrialScreener(FakePort(), settings, sleep=no_sleep(), today=TODAY).run(5)
        assert run.candidate_count == 0
        assert run.assessments == []

    def test_default_max_patients_from_settings(self, bundle_settings):
        settings = bundle_settings.model_copy(update={"default_max_patients": 1})
        run = _screener(settings).run()
        assert run.candidate_count == 1


class TestCreatePort:

    def test_bundle_dir_selects_local_port(self, bundle_settings):
        assert isinstance(create_port(bundle_settings), LocalBundlePort)

    def test_server_url_selects_http_client(self):
        port = create_port(ScreenerSettings(fhir_server_url="https://fhir.test/r4"))
        try:
            assert isinstance(port, FhirClient)
            assert port.base_url == "https://fhir.test/r4"
        finally:
            port.close()

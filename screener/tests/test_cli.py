"""Tests for the ``trial-screener`` command-line entry point."""

from __future__ import annotations

import pytest

from screener.app.cli import build_parser, main, parse_max_patients
from screener.app.config import get_settings


@pytest.fixture()
def screener_env(monkeypatch, tmp_path):
    """Set ``SCREENER_*`` variables and rebuild the cached settings."""
    monkeypatch.chdir(tmp_path)

    def configure(**env):
        for name, value in env.items():
            monkeypatch.setenv(f"SCREENER_{name.upper()}", str(value))
        get_settings.cache_clear()

    yield configure
    get_settings.cache_clear()


class TestParseMaxPatients:

    @pytest.mark.parametrize("value,expected", [
        (None, 100),
        ("25", 25),
        ("abc", 100),
        ("0", 100),
        ("-5", 100),
    ])
    def test_fallback_to_default(self, value, expected):
        assert parse_max_patients(value, 100) == expected

    def test_invalid_value_logs_warning(self, caplog):
        with caplog.at_level("WARNING"):
            parse_max_patients("lots", 100)
        assert "Invalid max patients argument" in caplog.text


class TestArguments:

    def test_single_optional_positional(self):
        assert vars(build_parser().parse_args(["5"])) == {"max_patients": "5"}
        assert vars(build_parser().parse_args([])) == {"max_patients": None}

    @pytest.mark.parametrize("argv", [
        ["5", "--workers", "3"],
        ["--json"],
        ["--server-url", "http://x"],
        ["5", "6"],
    ])
    def test_flags_rejected(self, argv):
        with pytest.raises(SystemExit) as excinfo:
            build_parser().parse_args(argv)
        assert excinfo.value.code == 2


class TestMain:

    def test_text_report(self, bundle_dir, screener_env, capsys):
        screener_env(fhir_bundle_dir=bundle_dir, max_workers=2)
        exit_code = main(["10"])
        out = capsys.readouterr().out
        assert exit_code == 0
        assert "CLINICAL TRIAL ELIGIBILITY SCREENING REPORT" in out
        assert "Patient ID: P001" in out
        assert "Total Patients Screened: 3" in out

    def test_invalid_count_uses_default(self, bundle_dir, screener_env, capsys):
        screener_env(fhir_bundle_dir=bundle_dir)
        assert main(["many"]) == 0
        assert "Total Patients Screened: 3" in capsys.readouterr().out

    def test_no_candidates(self, tmp_path, screener_env, capsys):
        empty = tmp_path / "empty"
        empty.mkdir()
        screener_env(fhir_bundle_dir=empty)
        exit_code = main([])
        assert exit_code == 0
        assert capsys.readouterr().out.strip() == "No lung cancer patients found for screening."

    def test_unusable_endpoint_exits_nonzero(self, tmp_path, screener_env, capsys):
        screener_env(fhir_bundle_dir=tmp_path / "missing")
        exit_code = main([])
        assert exit_code == 1
        assert "Error:" in capsys.readouterr().err

    def test_invalid_settings_exit_nonzero(self, bundle_dir, screener_env, capsys):
        screener_env(fhir_bundle_dir=bundle_dir, max_workers=0)
        exit_code = main([])
        assert exit_code == 1
        assert "Error:" in capsys.readouterr().err

"""Shared fixtures for the screener test suite."""

from __future__ import annotations

from pathlib import Path

import pytest

from fhir_factory import (
    eligible_resources,
    make_condition,
    make_medication,
    make_patient,
    write_bundle,
)
from screener.app.config import ScreenerSettings


@pytest.fixture()
def bundle_dir(tmp_path: Path) -> Path:
    """Four patients: eligible, under-age, missing labs, and non-lung."""
    directory = tmp_path / "bundles"
    write_bundle(directory, "P001", eligible_resources("P001"))

    young = eligible_resources("P002")
    young[0] = make_patient("P002", birth_date="2015-04-01")
    write_bundle(directory, "P002", young)

    write_bundle(directory, "P003", [
        make_patient("P003"),
        make_condition("P003", stage="Stage IV", rid="P003-c1"),
        make_medication("P003", rid="P003-m1"),
    ])
    write_bundle(directory, "P004", [
        make_patient("P004"),
        make_condition("P004", "Essential hypertension", "38341003", rid="P004-c1"),
    ])
    return directory


@pytest.fixture()
def bundle_settings(bundle_dir: Path) -> ScreenerSettings:
    return ScreenerSettings(fhir_bundle_dir=bundle_dir, max_workers=2, backoff_schedule=(0.0,))

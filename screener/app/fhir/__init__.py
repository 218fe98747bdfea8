"""
FHIR Access Module

Everything that talks to the clinical-data service:

- **Resource ports** (``FhirClient`` over HTTP, ``LocalBundlePort`` over
  a directory of bundles) issue single calls and report failures as
  not-found / transient / fatal.
- The **Resilient Fetcher** adds retry with backoff and pagination, and
  turns exhausted failures into "no data".
- **Patient Discovery** finds candidate patient ids.
- The **Record Assembler** gathers one patient's clinical facts.

Retrieval failures never escape this package; they surface downstream
only as missing data.
"""

from screener.app.fhir.assembler import PatientRecordAssembler
from screener.app.fhir.bundle_port import LocalBundlePort
from screener.app.fhir.client import FhirClient, Page, ResourcePort
from screener.app.fhir.discovery import PatientDiscovery
from screener.app.fhir.fetcher import ResilientFetcher

__all__ = [
    "FhirClient",
    "LocalBundlePort",
    "Page",
    "PatientDiscovery",
    "PatientRecordAssembler",
    "ResilientFetcher",
    "ResourcePort",
]

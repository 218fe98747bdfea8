"""
Local Bundle Port

Resource port that serves FHIR resources from a directory of
``patient_*.json`` Bundles instead of a live server.  Used for offline
screening runs, demos over the synthetic data in ``data/ehr`` and
end-to-end tests.

Supported search parameters: ``patient``, ``code``, ``category``,
``status`` (comma-separated ``OR`` lists) and ``_text`` (substring over
the coded text).  Other parameters such as ``_sort`` are accepted and
ignored.  Results are paged with self-describing continuation tokens.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Iterable
from urllib.parse import parse_qsl, urlencode

from screener.app.fhir.client import Page
from screener.app.fhir.errors import FatalFhirError, ResourceNotFoundError
from screener.app.schema.fhir_schema import reference_id

logger = logging.getLogger(__name__)


def _codings(concept: Any) -> list[dict[str, Any]]:
    if not isinstance(concept, dict):
        return []
    return [c for c in concept.get("coding") or [] if isinstance(c, dict)]


def _concepts(value: Any) -> list[Any]:
    return value if isinstance(value, list) else [value]


def _concept_text(concept: Any) -> str:
    if not isinstance(concept, dict):
        return ""
    parts = [concept.get("text") or ""]
    parts.extend(c.get("display") or "" for c in _codings(concept))
    return " ".join(parts).lower()


def _matches_code(concepts: Iterable[Any], wanted: set[str]) -> bool:
    for concept in concepts:
        for coding in _codings(concept):
            code = coding.get("code")
            system = coding.get("system")
            if code in wanted or (system and f"{system}|{code}" in wanted):
                return True
    return False


class LocalBundlePort:
    """In-memory resource port over a directory of FHIR Bundles."""

    def __init__(self, bundle_dir: Path) -> None:
        self.bundle_dir = Path(bundle_dir)
        self._resources: dict[str, list[dict[str, Any]]] = {}
        self._by_id: dict[tuple[str, str], dict[str, Any]] = {}
        self.errors: list[str] = []
        self._load_bundles()

    # Health checks
    def is_available(self) -> bool:
        return self.bundle_dir.is_dir()

    def check_ready(self) -> None:
        """Raise ``RuntimeError`` if the bundle directory is unusable."""
        if not self.bundle_dir.is_dir():
            raise RuntimeError(f"FHIR bundle directory not found: {self.bundle_dir}")
        logger.info(
            "Serving %d resource(s) from %s",
            sum(len(v) for v in self._resources.values()),
            self.bundle_dir,
        )

    # Resource port
    def read(self, resource_type: str, resource_id: str) -> dict[str, Any]:
        resource = self._by_id.get((resource_type, resource_id))
        if resource is None:
            raise ResourceNotFoundError(f"{resource_type}/{resource_id} not found")
        return resource

    def search(
        self, resource_type: str, params: dict[str, str], count: int
    ) -> Page:
        if count < 1:
            raise FatalFhirError(f"Invalid page size: {count}")
        return self._page(resource_type, params, 0, count)

    def next_page(self, token: str) -> Page:
        """Resolve a ``Type?params&_count=n&_offset=k`` continuation token.

        Tokens carry the whole query; the port keeps no paging state.
        """
        resource_type, _, query = token.partition("?")
        params = dict(parse_qsl(query, keep_blank_values=True))
        try:
            count = int(params.pop("_count"))
            offset = int(params.pop("_offset"))
        except (KeyError, ValueError) as exc:
            raise FatalFhirError(f"Malformed continuation token: {token}") from exc
        if not resource_type or count < 1 or offset < 0:
            raise FatalFhirError(f"Malformed continuation token: {token}")
        return self._page(resource_type, params, offset, count)

    # Private helpers
    def _page(
        self, resource_type: str, params: dict[str, str], offset: int, count: int
    ) -> Page:
        matches = [
            r for r in self._resources.get(resource_type, [])
            if self._matches(resource_type, r, params)
        ]
        end = offset + count
        next_token = None
        if end < len(matches):
            query = urlencode({**params, "_count": count, "_offset": end})
            next_token = f"{resource_type}?{query}"
        return Page(resources=matches[offset:end], next_token=next_token)

    def _matches(
        self, resource_type: str, resource: dict[str, Any], params: dict[str, str]
    ) -> bool:
        for name, value in params.items():
            wanted = {v.strip() for v in value.split(",") if v.strip()}
            if name == "patient":
                if resource_type == "Patient":
                    owner = resource.get("id")
                else:
                    owner = reference_id((resource.get("subject") or {}).get("reference"))
                if owner not in wanted:
                    return False
            elif name == "code":
                concept = resource.get("code") or resource.get("medicationCodeableConcept")
                if not _matches_code(_concepts(concept), wanted):
                    return False
            elif name == "category":
                if not _matches_code(_concepts(resource.get("category") or []), wanted):
                    return False
            elif name == "status":
                if resource.get("status") not in wanted:
                    return False
            elif name == "_text":
                concept = resource.get("code") or resource.get("medicationCodeableConcept")
                if value.lower() not in _concept_text(concept):
                    return False
        return True

    def _load_bundles(self) -> None:
        """Index every resource found in ``patient_*.json`` bundles."""
        if not self.bundle_dir.exists():
            self.errors.append(f"Directory not found: {self.bundle_dir}")
            return

        json_files = sorted(self.bundle_dir.glob("patient_*.json"))
        if not json_files:
            self.errors.append(f"No patient_*.json files found in {self.bundle_dir}")
            return

        for filepath in json_files:
            try:
                with open(filepath, "r", encoding="utf-8") as f:
                    bundle = json.load(f)
            except (OSError, ValueError) as exc:
                msg = f"Failed to load {filepath.name}: {exc}"
                self.errors.append(msg)
                logger.warning(msg)
                continue

            for entry in bundle.get("entry") or []:
                resource = entry.get("resource") if isinstance(entry, dict) else None
                if not isinstance(resource, dict) or "resourceType" not in resource:
                    continue
                resource_type = resource["resourceType"]
                self._resources.setdefault(resource_type, []).append(resource)
                if resource.get("id"):
                    self._by_id[(resource_type, resource["id"])] = resource

        logger.info(
            "Loaded %d FHIR bundle(s) from %s", len(json_files), self.bundle_dir,
        )

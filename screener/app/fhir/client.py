"""
FHIR Client

HTTP resource port for a FHIR R4 REST server, built on ``httpx``.

This gives us a single place to:

* Configure the server URL, timeout and headers.
* Validate that the server is reachable before a screening run.
* Translate HTTP outcomes into the screener's error taxonomy
  (not found / transient / fatal) so that the fetcher can decide
  what to retry.

The client performs exactly one network call per method and never
retries on its own; retry and pagination policy live in
``ResilientFetcher``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import httpx

from screener.app.config import DEFAULT_FHIR_SERVER_URL
from screener.app.fhir.errors import (
    FatalFhirError,
    ResourceNotFoundError,
    TransientFhirError,
)

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = {404, 410}
_TRANSIENT_CODES = {408, 425, 429}


@dataclass(frozen=True)
class Page:
    """One page of search results plus an optional continuation token."""

    resources: list[dict[str, Any]] = field(default_factory=list)
    next_token: Optional[str] = None


class ResourcePort(Protocol):
    """Capability the screener needs from a clinical-data service."""

    def read(self, resource_type: str, resource_id: str) -> dict[str, Any]:
        ...

    def search(
        self, resource_type: str, params: dict[str, str], count: int
    ) -> Page:
        ...

    def next_page(self, token: str) -> Page:
        ...


def bundle_to_page(bundle: Any) -> Page:
    """Split a searchset Bundle into its resources and ``next`` link."""
    if not isinstance(bundle, dict) or bundle.get("resourceType") != "Bundle":
        raise FatalFhirError("Search response is not a FHIR Bundle")

    resources = [
        entry["resource"]
        for entry in bundle.get("entry") or []
        if isinstance(entry, dict) and isinstance(entry.get("resource"), dict)
    ]
    next_token = None
    for link in bundle.get("link") or []:
        if link.get("relation") == "next" and link.get("url"):
            next_token = link["url"]
            break
    return Page(resources=resources, next_token=next_token)


class FhirClient:
    """Thin, reusable wrapper over a FHIR server's REST API.

    Parameters
    ----------
    base_url : str | None
        FHIR base URL.  Defaults to ``DEFAULT_FHIR_SERVER_URL``.
    timeout : float
        Per-request timeout in seconds.
    transport : httpx.BaseTransport | None
        Optional transport override (used by tests).

    Usage
    -----
    ::

        with FhirClient("https://hapi.fhir.org/baseR4") as client:
            page = client.search("Condition", {"code": "254637007"}, count=50)
    """

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or DEFAULT_FHIR_SERVER_URL).rstrip("/")
        self._http = httpx.Client(
            base_url=self.base_url,
            timeout=timeout,
            headers={"Accept": "application/fhir+json"},
            follow_redirects=True,
            transport=transport,
        )
        logger.info("FhirClient initialised with server URL: %s", self.base_url)

    # Lifecycle
    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "FhirClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # Health checks
    def is_available(self) -> bool:
        """Return ``True`` if the server answers its capability statement."""
        try:
            self._get("metadata")
            return True
        except Exception:
            return False

    def check_ready(self) -> None:
        """Raise ``RuntimeError`` if the FHIR server cannot be reached.

        Designed to be called once at startup.
        """
        try:
            statement = self._get("metadata")
        except Exception as exc:
            raise RuntimeError(
                f"Cannot reach FHIR server at {self.base_url}.  Error: {exc}"
            ) from exc
        logger.info(
            "FHIR server reachable (FHIR version %s).",
            statement.get("fhirVersion", "unknown"),
        )

    # Resource port
    def read(self, resource_type: str, resource_id: str) -> dict[str, Any]:
        return self._get(f"{resource_type}/{resource_id}")

    def search(
        self, resource_type: str, params: dict[str, str], count: int
    ) -> Page:
        query = dict(params)
        query["_count"] = str(count)
        return bundle_to_page(self._get(resource_type, params=query))

    def next_page(self, token: str) -> Page:
        # The token is the absolute ``next`` URL the server handed out.
        return bundle_to_page(self._get(token))

    # Private helpers
    def _get(
        self, url: str, params: dict[str, str] | None = None
    ) -> dict[str, Any]:
        try:
            response = self._http.get(url, params=params)
        except httpx.TransportError as exc:
            raise TransientFhirError(f"GET {url}: {exc}") from exc

        status = response.status_code
        if status in _NOT_FOUND_CODES:
            raise ResourceNotFoundError(f"GET {url}: HTTP {status}")
        if status in _TRANSIENT_CODES or status >= 500:
            raise TransientFhirError(f"GET {url}: HTTP {status}")
        if status >= 400:
            raise FatalFhirError(f"GET {url}: HTTP {status} {response.text[:200]}")

        try:
            payload = response.json()
        except ValueError as exc:
            raise FatalFhirError(f"GET {url}: response is not JSON") from exc
        if not isinstance(payload, dict):
            raise FatalFhirError(f"GET {url}: unexpected JSON payload")
        return payload

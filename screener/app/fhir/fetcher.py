"""
Resilient Fetcher

Wraps a ``ResourcePort`` with bounded retry / backoff and full
pagination traversal.

Contract
--------
* ``NotFound`` is a valid answer: return ``None`` at once, no retry.
* Any other failure is retried up to ``max_attempts`` total attempts,
  sleeping ``backoff_schedule[i]`` seconds after failed attempt ``i``.
* After the last attempt the failure is logged and ``None`` is
  returned.  Nothing raises past this layer.
* Pagination follows continuation tokens (each page fetch under the same
  retry policy) and keeps whatever was collected if a later page fails.

Raw resources are resolved into typed models here, once, so callers
receive ``Condition`` / ``Observation`` / ... instances directly.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional, TypeVar

from screener.app.config import ScreenerSettings
from screener.app.fhir.client import Page, ResourcePort
from screener.app.fhir.errors import ResourceNotFoundError, TransientFhirError
from screener.app.schema.fhir_schema import FhirModel, parse_resource

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ResilientFetcher:
    """Retrying, paginating front-end over a resource port.

    Parameters
    ----------
    port : ResourcePort
        The underlying clinical-data service (shared read-only).
    settings : ScreenerSettings
        Supplies ``max_attempts`` and ``backoff_schedule``.
    sleep : callable
        Injected for tests; defaults to ``time.sleep``.
    """

    def __init__(
        self,
        port: ResourcePort,
        settings: ScreenerSettings,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.port = port
        self.settings = settings
        self._sleep = sleep

    # Retry core
    def execute(self, operation: Callable[[], T], description: str) -> Optional[T]:
        """Run *operation* under the retry policy; ``None`` on failure."""
        max_attempts = self.settings.max_attempts
        last_error: Optional[Exception] = None

        for attempt in range(max_attempts):
            try:
                return operation()
            except ResourceNotFoundError as exc:
                logger.warning("Resource not found while attempting to %s: %s", description, exc)
                return None
            except TransientFhirError as exc:
                last_error = exc
                logger.warning(
                    "Connection error on attempt %d while attempting to %s: %s",
                    attempt + 1, description, exc,
                )
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "Error on attempt %d while attempting to %s: %s",
                    attempt + 1, description, exc,
                )

            if attempt < max_attempts - 1:
                delay = self.settings.backoff_delay(attempt)
                logger.info("Retrying in %.1f s...", delay)
                self._sleep(delay)

        logger.error(
            "Failed to %s after %d attempts. Last error: %s",
            description, max_attempts, last_error,
        )
        return None

    # Typed operations
    def read(self, resource_type: str, resource_id: str) -> Optional[FhirModel]:
        """Read one resource by id; ``None`` when absent or unreachable."""
        raw = self.execute(
            lambda: self.port.read(resource_type, resource_id),
            f"retrieve {resource_type} resource {resource_id}",
        )
        if raw is None:
            return None
        return parse_resource(raw)

    def search_all(
        self,
        resource_type: str,
        params: dict[str, str],
        count: int,
        description: str,
        limit: Optional[int] = None,
    ) -> Optional[list[FhirModel]]:
        """Search and follow every page, in arrival order.

        Returns ``None`` only when the initial search fails; later page
        failures return the partial result.  When *limit* is given,
        pagination stops once that many resources have been collected.
        """
        first = self.execute(
            lambda: self.port.search(resource_type, params, count),
            description,
        )
        if first is None:
            return None
        raw = self.collect_pages(first, limit=limit)
        return typed_resources(raw, resource_type)

    def collect_pages(
        self, first: Page, limit: Optional[int] = None
    ) -> list[dict[str, Any]]:
        """Concatenate *first* and every following page."""
        collected: list[dict[str, Any]] = list(first.resources)
        page = first

        while page.next_token:
            if limit is not None and len(collected) >= limit:
                break
            token = page.next_token
            logger.debug("Following next link for pagination: %s", token)
            next_page = self.execute(
                lambda: self.port.next_page(token),
                "load next page of results",
            )
            if next_page is None:
                logger.warning(
                    "Failed to load next page after retries, "
                    "keeping %d resource(s) collected so far",
                    len(collected),
                )
                break
            collected.extend(next_page.resources)
            page = next_page

        return collected


def typed_resources(raw: list[dict[str, Any]], resource_type: str) -> list[Any]:
    """Parse raw JSON, keeping only resources of *resource_type*."""
    typed: list[Any] = []
    for item in raw:
        resource = parse_resource(item)
        if resource is not None and getattr(resource, "resource_type", None) == resource_type:
            typed.append(resource)
    return typed

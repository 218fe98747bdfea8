"""
FHIR access error taxonomy.

Resource ports raise these; the resilient fetcher is the only layer
that catches them and converts them into "no data".
"""

from __future__ import annotations


class FhirError(Exception):
    """Base class for every failure reported by a resource port."""


class ResourceNotFoundError(FhirError):
    """The requested resource does not exist.  Never retried."""


class TransientFhirError(FhirError):
    """Connectivity / protocol-level failure that may succeed on retry."""


class FatalFhirError(FhirError):
    """Unexpected failure from the server or an undecodable response."""


class InvalidRecordError(ValueError):
    """A caller passed an absent or malformed record to the evaluator."""

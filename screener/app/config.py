"""
Screener Configuration

Centralised settings for the eligibility screener, loaded from
environment variables (prefix ``SCREENER_``) with sensible defaults.

The retry schedule, worker-pool width and recency windows live here
rather than as module constants so that every component receives them
at construction time and tests can inject their own values.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_FHIR_SERVER_URL = "https://hapi.fhir.org/baseR4"
DEFAULT_TRIAL_NAME = "Phase II Advanced NSCLC Study"


class ScreenerSettings(BaseSettings):
    """Runtime configuration shared (read-only) by every screening unit."""

    model_config = SettingsConfigDict(
        env_prefix="SCREENER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Remote endpoint ──────────────────────────────────────
    fhir_server_url: str = Field(
        DEFAULT_FHIR_SERVER_URL, description="FHIR R4 base URL."
    )
    fhir_bundle_dir: Optional[Path] = Field(
        None,
        description="Screen local patient_*.json bundles instead of the server.",
    )
    request_timeout: float = Field(30.0, gt=0)

    # ── Retry policy ─────────────────────────────────────────
    max_attempts: int = Field(3, ge=1)
    backoff_schedule: tuple[float, ...] = Field(
        (1.0, 2.0, 4.0),
        description="Seconds to wait after each failed attempt.",
    )

    # ── Scheduling ───────────────────────────────────────────
    max_workers: int = Field(10, ge=1)
    default_max_patients: int = Field(100, ge=1)
    job_history_limit: int = Field(
        20, ge=1, description="Finished background screening jobs kept for polling."
    )

    # ── Evaluation windows ───────────────────────────────────
    lab_recency_days: Optional[int] = Field(
        None,
        ge=0,
        description="When set, lab results older than this are treated as missing.",
    )
    procedure_recency_days: int = Field(365, ge=0)

    # ── Reporting / logging ──────────────────────────────────
    trial_name: str = DEFAULT_TRIAL_NAME
    log_level: str = "INFO"

    @field_validator("backoff_schedule")
    @classmethod
    def _non_empty_schedule(cls, value: tuple[float, ...]) -> tuple[float, ...]:
        if not value:
            raise ValueError("backoff_schedule must contain at least one delay")
        if any(delay < 0 for delay in value):
            raise ValueError("backoff_schedule delays must be non-negative")
        return value

    def backoff_delay(self, attempt: int) -> float:
        """Delay after the given zero-based failed attempt.

        The last entry of the schedule is reused when there are more
        attempts than configured delays.
        """
        index = min(attempt, len(self.backoff_schedule) - 1)
        return self.backoff_schedule[index]


@lru_cache(maxsize=1)
def get_settings() -> ScreenerSettings:
    """Return the process-wide settings instance."""
    return ScreenerSettings()

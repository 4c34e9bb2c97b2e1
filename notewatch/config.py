"""Runtime configuration resolved from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

from platformdirs import user_data_dir

APP_NAME = "Notewatch"

DEFAULT_LOGIN_URL = "https://login.ezinfra.net/api/login"
DEFAULT_REFRESH_URL = "https://login.ezinfra.net/api/refresh"
DEFAULT_API_BASE = "https://srvprod.ezinfra.net/"
DEFAULT_CLINIC_ID = "44b62760-50a1-488c-92ed-e0c7aa3cde92"
DEFAULT_PRACTICE_ID = "4cc96922-4d83-4183-863b-748d69de621f"

FINGERPRINT_ALGORITHMS = ("sha256", "rolling32")


@dataclass(frozen=True)
class Settings:
    """Resolved configuration for the job system."""

    database_url: str
    login_url: str = DEFAULT_LOGIN_URL
    refresh_url: str = DEFAULT_REFRESH_URL
    api_base: str = DEFAULT_API_BASE
    clinic_id: str = DEFAULT_CLINIC_ID
    practice_id: str = DEFAULT_PRACTICE_ID
    emr_timezone: str = "America/Detroit"
    emr_username: Optional[str] = None
    emr_password: Optional[str] = None
    http_timeout_seconds: int = 10
    token_ttl_seconds: int = 600
    staleness_hours: int = 6
    note_min_age_hours: int = 2
    scan_interval_seconds: int = 300
    vitals_interval_seconds: int = 10
    check_concurrency: int = 3
    check_stagger_seconds: int = 2
    check_stagger_cap_seconds: int = 120
    job_attempts: int = 3
    job_backoff_seconds: int = 5
    fingerprint_algorithm: str = "sha256"
    checked_by: str = "notewatch"
    openai_model: str = "gpt-4o-mini"
    log_level: str = "INFO"

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @property
    def has_service_credentials(self) -> bool:
        return bool(self.emr_username and self.emr_password)


def _get_int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer; got {raw!r}") from exc


def _normalise_postgres_url(url: str) -> str:
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


def _default_sqlite_url() -> str:
    data_dir = Path(os.getenv("NOTEWATCH_DATA_DIR") or user_data_dir(APP_NAME, APP_NAME))
    data_dir.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{data_dir / 'notewatch.db'}"


def _database_url() -> str:
    url = os.getenv("NOTEWATCH_DATABASE_URL") or os.getenv("DATABASE_URL")
    if url:
        return _normalise_postgres_url(url)
    return _default_sqlite_url()


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the active settings derived from the environment."""

    algorithm = (os.getenv("NOTEWATCH_FINGERPRINT_ALGORITHM") or "sha256").strip().lower()
    if algorithm not in FINGERPRINT_ALGORITHMS:
        raise ValueError(
            f"NOTEWATCH_FINGERPRINT_ALGORITHM must be one of {FINGERPRINT_ALGORITHMS}; got {algorithm!r}"
        )

    return Settings(
        database_url=_database_url(),
        login_url=os.getenv("NOTEWATCH_EMR_LOGIN_URL", DEFAULT_LOGIN_URL),
        refresh_url=os.getenv("NOTEWATCH_EMR_REFRESH_URL", DEFAULT_REFRESH_URL),
        api_base=os.getenv("NOTEWATCH_EMR_API_BASE", DEFAULT_API_BASE),
        clinic_id=os.getenv("NOTEWATCH_EMR_CLINIC_ID", DEFAULT_CLINIC_ID),
        practice_id=os.getenv("NOTEWATCH_EMR_PRACTICE_ID", DEFAULT_PRACTICE_ID),
        emr_timezone=os.getenv("NOTEWATCH_EMR_TIMEZONE", "America/Detroit"),
        emr_username=os.getenv("NOTEWATCH_EMR_USERNAME") or None,
        emr_password=os.getenv("NOTEWATCH_EMR_PASSWORD") or None,
        http_timeout_seconds=_get_int_env("NOTEWATCH_HTTP_TIMEOUT_SECONDS", 10),
        token_ttl_seconds=_get_int_env("NOTEWATCH_TOKEN_TTL_SECONDS", 600),
        staleness_hours=_get_int_env("NOTEWATCH_STALENESS_HOURS", 6),
        note_min_age_hours=_get_int_env("NOTEWATCH_NOTE_MIN_AGE_HOURS", 2),
        scan_interval_seconds=_get_int_env("NOTEWATCH_SCAN_INTERVAL_SECONDS", 300),
        vitals_interval_seconds=_get_int_env("NOTEWATCH_VITALS_INTERVAL_SECONDS", 10),
        check_concurrency=_get_int_env("NOTEWATCH_CHECK_CONCURRENCY", 3),
        check_stagger_seconds=_get_int_env("NOTEWATCH_CHECK_STAGGER_SECONDS", 2),
        check_stagger_cap_seconds=_get_int_env("NOTEWATCH_CHECK_STAGGER_CAP_SECONDS", 120),
        job_attempts=_get_int_env("NOTEWATCH_JOB_ATTEMPTS", 3),
        job_backoff_seconds=_get_int_env("NOTEWATCH_JOB_BACKOFF_SECONDS", 5),
        fingerprint_algorithm=algorithm,
        checked_by=os.getenv("NOTEWATCH_CHECKED_BY", "notewatch"),
        openai_model=os.getenv("NOTEWATCH_OPENAI_MODEL", "gpt-4o-mini"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )


__all__ = ["APP_NAME", "Settings", "get_settings"]

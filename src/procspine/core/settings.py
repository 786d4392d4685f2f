"""
Centralized settings for procspine.

One validated, cached settings object resolves environment variables
(``PROCSPINE_*``) and ``.env`` files in a single place. The engine itself
never reads the environment; callers pass ``get_settings()`` (or a
hand-built instance in tests) to the components that need it.

Tags:
    procspine-core, configuration, settings, pydantic, caching, validation
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class StorageBackend(str, Enum):
    """Where entity records and event instances are kept."""

    MEMORY = "memory"
    SQLITE = "sqlite"


class ProcSpineSettings(BaseSettings):
    """procspine configuration.

    Fields
    ──────
    log_level              : structlog log level
    log_format             : ``json`` or ``console``
    service_name           : service.name stamped on every log line
    storage_backend        : ``memory`` or ``sqlite``
    database_path          : SQLite file used when storage_backend=sqlite
    max_action_attempts    : attempts before an action step becomes Failed
    backoff_base_seconds   : first delay between attempts (worker cadence)
    backoff_max_seconds    : delay cap between attempts
    worker_max_workers     : thread pool size of the process worker
    worker_poll_interval   : seconds between worker polls
    """

    model_config = SettingsConfigDict(
        env_prefix="PROCSPINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Observability ────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")
    service_name: str = Field(default="procspine")

    # ── Storage ──────────────────────────────────────────────────
    storage_backend: StorageBackend = Field(default=StorageBackend.MEMORY)
    database_path: Path = Field(default=Path("data/procspine.db"))

    # ── Process engine ───────────────────────────────────────────
    max_action_attempts: int = Field(default=3, ge=1)
    backoff_base_seconds: float = Field(default=1.0, ge=0)
    backoff_max_seconds: float = Field(default=300.0, ge=0)

    # ── Worker ───────────────────────────────────────────────────
    worker_max_workers: int = Field(default=4, ge=1)
    worker_poll_interval: float = Field(default=2.0, gt=0)

    @model_validator(mode="after")
    def _validate_backoff(self) -> ProcSpineSettings:
        if self.backoff_max_seconds < self.backoff_base_seconds:
            raise ValueError("backoff_max_seconds must be >= backoff_base_seconds")
        if self.log_format not in ("json", "console"):
            raise ValueError(f"log_format must be 'json' or 'console', got {self.log_format!r}")
        return self


# ── Settings factory with caching ────────────────────────────────────────

_settings_cache: dict[str, ProcSpineSettings] = {}


def get_settings() -> ProcSpineSettings:
    """Return the cached process-wide settings, building them on first use."""
    if "default" not in _settings_cache:
        _settings_cache["default"] = ProcSpineSettings()
    return _settings_cache["default"]


def clear_settings_cache() -> None:
    """Drop cached settings so the next ``get_settings()`` re-reads the environment."""
    _settings_cache.clear()


__all__ = [
    "ProcSpineSettings",
    "StorageBackend",
    "get_settings",
    "clear_settings_cache",
]

"""Runtime configuration for the renewal hub."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from urllib.parse import urlparse


@dataclass(slots=True)
class DatabaseSettings:
    """SQLite storage settings."""

    path: Path = Path(".renewal_hub.db")
    busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class SchedulerSettings:
    """Renewal detector and lease policy."""

    detector_enabled: bool = True
    tick_seconds: float = 60.0
    lease_timeout_seconds: int = 600
    renewal_cooldown_minutes: int = 240
    failure_cooldown_minutes: int = 15

    @property
    def lease_timeout(self) -> timedelta:
        return timedelta(seconds=self.lease_timeout_seconds)

    @property
    def renewal_cooldown(self) -> timedelta:
        return timedelta(minutes=self.renewal_cooldown_minutes)

    @property
    def failure_cooldown(self) -> timedelta:
        return timedelta(minutes=self.failure_cooldown_minutes)


@dataclass(slots=True)
class ValiditySettings:
    """Credential validity windows.

    Renewed credentials are short-lived; credentials registered by an operator
    without an explicit expiry get the long initial window.
    """

    renewal_validity_hours: int = 6
    initial_validity_days: int = 30

    @property
    def renewal_validity(self) -> timedelta:
        return timedelta(hours=self.renewal_validity_hours)

    @property
    def initial_validity(self) -> timedelta:
        return timedelta(days=self.initial_validity_days)


@dataclass(slots=True)
class DirectorySettings:
    """External provisioning directory API."""

    base_url: str = ""
    api_key: str = ""
    timeout_seconds: float = 10.0
    max_retries: int = 2

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.api_key)


@dataclass(slots=True)
class ServerSettings:
    """HTTP gateway settings."""

    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8000
    worker_key: str = ""
    log_level: str = "INFO"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    validity: ValiditySettings = field(default_factory=ValiditySettings)
    directory: DirectorySettings = field(default_factory=DirectorySettings)
    server: ServerSettings = field(default_factory=ServerSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            database=DatabaseSettings(
                path=db_path or Path(os.getenv("RENEWAL_HUB_DB_PATH", ".renewal_hub.db")),
                busy_timeout_ms=int(os.getenv("RENEWAL_HUB_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            ),
            scheduler=SchedulerSettings(
                detector_enabled=_env_bool("RENEWAL_HUB_DETECTOR_ENABLED", default=True),
                tick_seconds=float(os.getenv("RENEWAL_HUB_DETECTOR_TICK_SECONDS", "60")),
                lease_timeout_seconds=int(os.getenv("RENEWAL_HUB_LEASE_TIMEOUT_SECONDS", "600")),
                renewal_cooldown_minutes=int(
                    os.getenv("RENEWAL_HUB_RENEWAL_COOLDOWN_MINUTES", "240"),
                ),
                failure_cooldown_minutes=int(
                    os.getenv("RENEWAL_HUB_FAILURE_COOLDOWN_MINUTES", "15"),
                ),
            ),
            validity=ValiditySettings(
                renewal_validity_hours=int(os.getenv("RENEWAL_HUB_RENEWAL_VALIDITY_HOURS", "6")),
                initial_validity_days=int(os.getenv("RENEWAL_HUB_INITIAL_VALIDITY_DAYS", "30")),
            ),
            directory=DirectorySettings(
                base_url=os.getenv("RENEWAL_HUB_DIRECTORY_BASE_URL", "").strip(),
                api_key=os.getenv("RENEWAL_HUB_DIRECTORY_API_KEY", "").strip(),
                timeout_seconds=float(os.getenv("RENEWAL_HUB_DIRECTORY_TIMEOUT_SECONDS", "10")),
                max_retries=int(os.getenv("RENEWAL_HUB_DIRECTORY_MAX_RETRIES", "2")),
            ),
            server=ServerSettings(
                host=os.getenv("RENEWAL_HUB_HOST", "0.0.0.0"),  # noqa: S104
                port=int(os.getenv("RENEWAL_HUB_PORT", "8000")),
                worker_key=os.getenv("RENEWAL_HUB_WORKER_KEY", "").strip(),
                log_level=os.getenv("RENEWAL_HUB_LOG_LEVEL", "INFO").strip().upper(),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the scheduler cannot work with."""

        if self.scheduler.tick_seconds <= 0:
            raise ValueError("RENEWAL_HUB_DETECTOR_TICK_SECONDS must be > 0.")
        if self.scheduler.lease_timeout_seconds <= 0:
            raise ValueError("RENEWAL_HUB_LEASE_TIMEOUT_SECONDS must be > 0.")
        if self.scheduler.renewal_cooldown_minutes < 0:
            raise ValueError("RENEWAL_HUB_RENEWAL_COOLDOWN_MINUTES must be >= 0.")
        if self.scheduler.failure_cooldown_minutes < 0:
            raise ValueError("RENEWAL_HUB_FAILURE_COOLDOWN_MINUTES must be >= 0.")
        if self.validity.renewal_validity_hours <= 0:
            raise ValueError("RENEWAL_HUB_RENEWAL_VALIDITY_HOURS must be > 0.")
        if self.validity.initial_validity_days <= 0:
            raise ValueError("RENEWAL_HUB_INITIAL_VALIDITY_DAYS must be > 0.")
        if self.directory.base_url:
            _validate_base_url(self.directory.base_url)

    def validate_for_server(self) -> None:
        """Validate settings and require the worker shared secret."""

        self.validate()
        if not self.server.worker_key:
            raise ValueError(
                "RENEWAL_HUB_WORKER_KEY is required to serve the worker gateway.",
            )


def _validate_base_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid RENEWAL_HUB_DIRECTORY_BASE_URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")

"""Domain models for automation config and log."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from renewal_hub.errors import InvalidRequestError

MAX_BATCH_SIZE = 100


class LogStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    INFO = "info"


@dataclass(slots=True)
class AutomationConfigView:
    """Singleton automation settings row."""

    enabled: bool
    batch_size: int
    interval_minutes: int
    advance_minutes: int
    last_batch_at: datetime | None
    total_generated: int
    updated_at: datetime

    @property
    def advance(self) -> timedelta:
        return timedelta(minutes=self.advance_minutes)

    @property
    def interval(self) -> timedelta:
        return timedelta(minutes=self.interval_minutes)

    def batch_due(self, now: datetime) -> bool:
        """True when the generation interval elapsed since the last batch."""

        if self.last_batch_at is None:
            return True
        return now - self.last_batch_at >= self.interval


@dataclass(slots=True)
class AutomationConfigUpdate:
    """Partial update; None leaves a field unchanged."""

    enabled: bool | None = None
    batch_size: int | None = None
    interval_minutes: int | None = None
    advance_minutes: int | None = None

    def validate(self) -> None:
        if self.batch_size is not None and not 1 <= self.batch_size <= MAX_BATCH_SIZE:
            raise InvalidRequestError(f"batchSize must be between 1 and {MAX_BATCH_SIZE}.")
        if self.interval_minutes is not None and self.interval_minutes < 1:
            raise InvalidRequestError("intervalMinutes must be >= 1.")
        if self.advance_minutes is not None and self.advance_minutes < 0:
            raise InvalidRequestError("advanceMinutes must be >= 0.")

    def changes(self) -> dict[str, object]:
        values = {
            "enabled": self.enabled,
            "batch_size": self.batch_size,
            "interval_minutes": self.interval_minutes,
            "advance_minutes": self.advance_minutes,
        }
        return {key: value for key, value in values.items() if value is not None}


@dataclass(slots=True)
class AutomationLogView:
    id: int
    task_kind: str
    status: LogStatus
    username: str | None
    message: str | None
    created_at: datetime


@dataclass(slots=True)
class GeneratedCredentialView:
    id: int
    task_id: str | None
    username: str
    secret: str
    source: str
    created_at: datetime

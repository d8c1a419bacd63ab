"""Domain models for the task queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from renewal_hub.registry.models import Credentials, SystemView


class TaskKind(str, Enum):
    """Work the remote worker knows how to perform."""

    RENEWAL = "renewal"
    SINGLE_GENERATION = "single_generation"
    BATCH_GENERATION = "batch_generation"

    @classmethod
    def _missing_(cls, value: object) -> TaskKind | None:
        # Workers may send the hyphenated spelling, e.g. "batch-generation".
        if isinstance(value, str) and "-" in value:
            return cls.__members__.get(value.replace("-", "_").upper())
        return None


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    LEASED = "leased"
    COMPLETED = "completed"
    FAILED = "failed"


LIVE_STATUSES = (TaskStatus.PENDING, TaskStatus.LEASED)
TERMINAL_STATUSES = (TaskStatus.COMPLETED, TaskStatus.FAILED)
GENERATION_KINDS = (TaskKind.SINGLE_GENERATION, TaskKind.BATCH_GENERATION)

# Lease order: renewal work first, then generation.
KIND_PRIORITY = {
    TaskKind.RENEWAL: 0,
    TaskKind.SINGLE_GENERATION: 1,
    TaskKind.BATCH_GENERATION: 2,
}

CANCELED_REASON = "canceled"


def dedup_key(kind: TaskKind, system_id: int | None) -> str:
    """Key shared by tasks that must never be live twice."""

    return f"{kind.value}:{system_id if system_id is not None else '-'}"


def renewal_payload(system: SystemView) -> dict[str, Any]:
    """Payload the worker needs to log in and renew a system."""

    return {
        "externalId": system.external_id,
        "username": system.username,
        "secret": system.secret,
    }


@dataclass(slots=True)
class TaskView:
    """Readable task view for the gateway, CLI and tests."""

    id: str
    kind: TaskKind
    status: TaskStatus
    system_id: int | None
    payload: dict[str, Any]
    result: dict[str, Any]
    error: str | None
    lease_count: int
    created_at: datetime
    leased_at: datetime | None
    completed_at: datetime | None
    updated_at: datetime

    @property
    def live(self) -> bool:
        return self.status in LIVE_STATUSES


@dataclass(slots=True)
class TaskResult:
    """Outcome reported by the worker for a completed task."""

    credentials: Credentials | None = None
    generated: list[Credentials] = field(default_factory=list)

    def to_json(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.credentials is not None:
            data["username"] = self.credentials.username
        if self.generated:
            data["generated"] = [item.username for item in self.generated]
        return data


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task with its event stream."""

    task: TaskView
    events: list[TaskEventView]


@dataclass(slots=True)
class QueueStats:
    """Task counts grouped by status and by live kind."""

    by_status: dict[str, int] = field(default_factory=dict)
    live_by_kind: dict[str, int] = field(default_factory=dict)

    @property
    def pending(self) -> int:
        return self.by_status.get(TaskStatus.PENDING.value, 0)

    @property
    def leased(self) -> int:
        return self.by_status.get(TaskStatus.LEASED.value, 0)

"""Pydantic schemas for the HTTP surface (camelCase on the wire)."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from renewal_hub.allocation.models import DistributionMode
from renewal_hub.automation.models import MAX_BATCH_SIZE
from renewal_hub.registry.models import RenewalState
from renewal_hub.tasks.models import TaskKind


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CredentialsBody(ApiModel):
    """Credentials reported by the worker; ``password`` is accepted for ``secret``."""

    username: str = ""
    secret: str = Field(default="", validation_alias=AliasChoices("secret", "password"))


class WorkerTask(ApiModel):
    id: str
    kind: TaskKind
    system_ref: int | None = None
    payload: dict[str, Any] | None = None


class NextTaskResponse(ApiModel):
    enabled: bool
    has_task: bool
    task: WorkerTask | None = None


class TaskCompleteRequest(ApiModel):
    task_id: str
    kind: TaskKind | None = None
    credentials: CredentialsBody | None = None
    generated: list[CredentialsBody] = Field(default_factory=list)
    error: str | None = None

    @field_validator("kind", mode="before")
    @classmethod
    def _normalize_kind(cls, value: Any) -> Any:
        return value.replace("-", "_") if isinstance(value, str) else value


class TaskCompleteResponse(ApiModel):
    accepted: bool


class AutomationConfigResponse(ApiModel):
    enabled: bool
    batch_size: int
    interval_minutes: int
    advance_minutes: int
    last_batch_at: datetime | None = None
    total_generated: int = 0


class AutomationConfigPatch(ApiModel):
    enabled: bool | None = None
    batch_size: Annotated[int | None, Field(ge=1, le=MAX_BATCH_SIZE)] = None
    interval_minutes: Annotated[int | None, Field(ge=1)] = None
    advance_minutes: Annotated[int | None, Field(ge=0)] = None


class DistributeRequest(ApiModel):
    mode: DistributionMode
    points_per_system: Annotated[int | None, Field(ge=1)] = None
    reserved_system_ids: list[int] = Field(default_factory=list)


class BindingDetailResponse(ApiModel):
    system_id: int
    external_id: int
    capacity: int
    bound_count: int
    point_ids: list[int]
    created: bool


class DistributeResponse(ApiModel):
    systems_created: int
    points_bound: int
    details: list[BindingDetailResponse]


class TaskRefResponse(ApiModel):
    task_id: str


class SystemCreateRequest(ApiModel):
    external_id: Annotated[int, Field(ge=1)]
    username: Annotated[str, Field(min_length=1)]
    secret: Annotated[str, Field(min_length=1)]
    capacity: Annotated[int, Field(ge=1)] = 1
    expires_at: datetime | None = None
    auto_renewal_enabled: bool = True


class SystemResponse(ApiModel):
    id: int
    external_id: int
    username: str
    expires_at: datetime
    capacity: int
    bound_count: int
    renewal_state: RenewalState
    auto_renewal_enabled: bool
    reserved: bool
    last_renewed_at: datetime | None = None
    renewal_count: int


class DeleteResponse(ApiModel):
    deleted: bool


class CancelResponse(ApiModel):
    canceled_tasks: int


class GenerateRequest(ApiModel):
    quantity: Annotated[int, Field(ge=1, le=MAX_BATCH_SIZE)] = 1


class ScheduleEntry(ApiModel):
    system_id: int
    external_id: int
    renewal_state: RenewalState
    expires_at: datetime
    due_at: datetime
    minutes_until_expiry: int
    expired: bool
    due: bool


class QueueResponse(ApiModel):
    by_status: dict[str, int]
    live_by_kind: dict[str, int]
    schedule: list[ScheduleEntry]


class LogEntry(ApiModel):
    id: int
    task_kind: str
    status: str
    username: str | None = None
    message: str | None = None
    created_at: datetime


class HealthResponse(ApiModel):
    status: str

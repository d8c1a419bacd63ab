"""HTTP routes for the worker gateway and operator actions."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query

from renewal_hub.allocation.models import DistributionRequest
from renewal_hub.automation.models import AutomationConfigUpdate, AutomationConfigView
from renewal_hub.gateway.schemas import (
    AutomationConfigPatch,
    AutomationConfigResponse,
    BindingDetailResponse,
    CancelResponse,
    DeleteResponse,
    DistributeRequest,
    DistributeResponse,
    GenerateRequest,
    HealthResponse,
    LogEntry,
    NextTaskResponse,
    QueueResponse,
    ScheduleEntry,
    SystemCreateRequest,
    SystemResponse,
    TaskCompleteRequest,
    TaskCompleteResponse,
    TaskRefResponse,
    WorkerTask,
)
from renewal_hub.gateway.service import TaskReport
from renewal_hub.registry.models import Credentials, SystemCreate, SystemView
from renewal_hub.services import ServiceContext

router = APIRouter()
health_router = APIRouter()


def get_services() -> ServiceContext:
    """Dependency to get services - will be overridden at app creation."""

    raise NotImplementedError("Services not configured")


Services = Annotated[ServiceContext, Depends(get_services)]


@health_router.get("/health", response_model=HealthResponse)
def health_check() -> HealthResponse:
    return HealthResponse(status="ok")


@router.get("/automation/next-task", response_model=NextTaskResponse, tags=["worker"])
def next_task(services: Services) -> NextTaskResponse:
    """Lease one task to the polling worker, if any is available."""

    result = services.gateway.poll()
    task = result.task
    return NextTaskResponse(
        enabled=result.enabled,
        has_task=task is not None,
        task=(
            WorkerTask(
                id=task.id,
                kind=task.kind,
                system_ref=task.system_id,
                payload=task.payload or None,
            )
            if task is not None
            else None
        ),
    )


@router.post("/automation/task-complete", response_model=TaskCompleteResponse, tags=["worker"])
def task_complete(body: TaskCompleteRequest, services: Services) -> TaskCompleteResponse:
    """Ingest the worker's report for a leased task."""

    credentials = (
        Credentials(username=body.credentials.username, secret=body.credentials.secret)
        if body.credentials is not None
        else None
    )
    accepted = services.gateway.report(
        TaskReport(
            task_id=body.task_id,
            kind=body.kind,
            credentials=credentials,
            generated=[
                Credentials(username=item.username, secret=item.secret) for item in body.generated
            ],
            error=body.error,
        ),
    )
    return TaskCompleteResponse(accepted=accepted)


@router.get("/automation/config", response_model=AutomationConfigResponse, tags=["automation"])
def get_config(services: Services) -> AutomationConfigResponse:
    return _config_response(services.automation.get_config())


@router.put("/automation/config", response_model=AutomationConfigResponse, tags=["automation"])
def update_config(body: AutomationConfigPatch, services: Services) -> AutomationConfigResponse:
    config = services.automation.update_config(
        AutomationConfigUpdate(
            enabled=body.enabled,
            batch_size=body.batch_size,
            interval_minutes=body.interval_minutes,
            advance_minutes=body.advance_minutes,
        ),
    )
    return _config_response(config)


@router.post("/automation/generate", response_model=TaskRefResponse, tags=["automation"])
def request_generation(body: GenerateRequest, services: Services) -> TaskRefResponse:
    task = services.gateway.request_generation(body.quantity)
    return TaskRefResponse(task_id=task.id)


@router.get("/automation/queue", response_model=QueueResponse, tags=["automation"])
def queue_overview(services: Services) -> QueueResponse:
    """Task counts plus the expiry outlook of every system."""

    stats = services.tasks.queue_stats()
    return QueueResponse(
        by_status=stats.by_status,
        live_by_kind=stats.live_by_kind,
        schedule=[
            ScheduleEntry(
                system_id=item.system_id,
                external_id=item.external_id,
                renewal_state=item.renewal_state,
                expires_at=item.expires_at,
                due_at=item.due_at,
                minutes_until_expiry=item.minutes_until_expiry,
                expired=item.expired,
                due=item.due,
            )
            for item in services.detector.renewal_schedule()
        ],
    )


@router.get("/automation/logs", response_model=list[LogEntry], tags=["automation"])
def automation_logs(
    services: Services,
    limit: Annotated[int, Query(ge=1, le=500)] = 50,
) -> list[LogEntry]:
    return [
        LogEntry(
            id=entry.id,
            task_kind=entry.task_kind,
            status=entry.status.value,
            username=entry.username,
            message=entry.message,
            created_at=entry.created_at,
        )
        for entry in services.automation.list_logs(limit=limit)
    ]


@router.post("/points/distribute", response_model=DistributeResponse, tags=["points"])
def distribute_points(body: DistributeRequest, services: Services) -> DistributeResponse:
    result = services.allocator.distribute(
        DistributionRequest(
            mode=body.mode,
            points_per_system=body.points_per_system,
            reserved_system_ids=list(body.reserved_system_ids),
        ),
    )
    return DistributeResponse(
        systems_created=result.systems_created,
        points_bound=result.points_bound,
        details=[
            BindingDetailResponse(
                system_id=detail.system_id,
                external_id=detail.external_id,
                capacity=detail.capacity,
                bound_count=detail.bound_count,
                point_ids=detail.point_ids,
                created=detail.created,
            )
            for detail in result.details
        ],
    )


@router.get("/systems", response_model=list[SystemResponse], tags=["systems"])
def list_systems(services: Services) -> list[SystemResponse]:
    return [_system_response(system) for system in services.registry.list_systems()]


@router.post("/systems", response_model=SystemResponse, status_code=201, tags=["systems"])
def create_system(body: SystemCreateRequest, services: Services) -> SystemResponse:
    system = services.gateway.create_system(
        SystemCreate(
            external_id=body.external_id,
            username=body.username,
            secret=body.secret,
            capacity=body.capacity,
            expires_at=body.expires_at,
            auto_renewal_enabled=body.auto_renewal_enabled,
        ),
    )
    return _system_response(system)


@router.delete("/systems/{system_id}", response_model=DeleteResponse, tags=["systems"])
def delete_system(system_id: int, services: Services) -> DeleteResponse:
    services.gateway.delete_system(system_id)
    return DeleteResponse(deleted=True)


@router.post("/systems/{system_id}/renew", response_model=TaskRefResponse, tags=["systems"])
def force_renewal(system_id: int, services: Services) -> TaskRefResponse:
    task = services.gateway.force_renewal(system_id)
    return TaskRefResponse(task_id=task.id)


@router.delete("/systems/{system_id}/renewal", response_model=CancelResponse, tags=["systems"])
def clear_renewal(system_id: int, services: Services) -> CancelResponse:
    return CancelResponse(canceled_tasks=services.gateway.clear_renewal(system_id))


def _config_response(config: AutomationConfigView) -> AutomationConfigResponse:
    return AutomationConfigResponse(
        enabled=config.enabled,
        batch_size=config.batch_size,
        interval_minutes=config.interval_minutes,
        advance_minutes=config.advance_minutes,
        last_batch_at=config.last_batch_at,
        total_generated=config.total_generated,
    )


def _system_response(system: SystemView) -> SystemResponse:
    return SystemResponse(
        id=system.id,
        external_id=system.external_id,
        username=system.username,
        expires_at=system.expires_at,
        capacity=system.capacity,
        bound_count=system.bound_count,
        renewal_state=system.renewal_state,
        auto_renewal_enabled=system.auto_renewal_enabled,
        reserved=system.reserved,
        last_renewed_at=system.last_renewed_at,
        renewal_count=system.renewal_count,
    )

"""Controllers for renewal-hub CLI commands."""

from __future__ import annotations

import logging
import sys
import threading
from dataclasses import dataclass
from pathlib import Path

import uvicorn

from renewal_hub.allocation.models import DistributionMode, DistributionRequest
from renewal_hub.config import Settings
from renewal_hub.gateway.app import create_app
from renewal_hub.services import build_services, open_services
from renewal_hub.tasks.models import TaskKind, TaskStatus

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DbCommand:
    """CLI input for commands that only need the database."""

    db_path: Path | None


@dataclass(slots=True)
class ServeCommand:
    db_path: Path | None
    host: str | None
    port: int | None
    detector: bool | None


@dataclass(slots=True)
class DetectorRunCommand:
    db_path: Path | None
    interval_seconds: float | None


@dataclass(slots=True)
class ListTasksCommand:
    """CLI input for task listing."""

    db_path: Path | None
    status: str | None
    kind: str | None
    limit: int


@dataclass(slots=True)
class InspectTaskCommand:
    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class SystemCommand:
    db_path: Path | None
    system_id: int


@dataclass(slots=True)
class DistributeCommand:
    """CLI input for a manual point distribution."""

    db_path: Path | None
    mode: str
    points_per_system: int | None
    reserved_system_ids: tuple[int, ...]


class RenewalHubCliController:
    """Coordinates server, detector, queue and allocation CLI operations."""

    def serve(self, command: ServeCommand) -> None:
        settings = Settings.from_env(db_path=command.db_path)
        if command.host is not None:
            settings.server.host = command.host
        if command.port is not None:
            settings.server.port = command.port
        if command.detector is not None:
            settings.scheduler.detector_enabled = command.detector
        settings.validate_for_server()

        logging.basicConfig(
            level=settings.server.log_level,
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
            stream=sys.stdout,
            force=True,
        )
        services = build_services(settings)
        try:
            services.database.init_schema()
            logger.info(
                "Serving on %s:%d (detector %s)",
                settings.server.host,
                settings.server.port,
                "on" if settings.scheduler.detector_enabled else "off",
            )
            uvicorn.run(
                create_app(services),
                host=settings.server.host,
                port=settings.server.port,
                log_level=settings.server.log_level.lower(),
            )
        finally:
            services.close()

    def detector_tick(self, command: DbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_services(settings) as services:
            summary = services.detector.tick()
        return [
            "Detector tick completed:",
            f"  enqueued={summary.enqueued}",
            f"  duplicates={summary.duplicates}",
            f"  healed={summary.healed}",
            f"  reclaimed={summary.reclaimed}",
            f"  released={summary.released}",
        ]

    def detector_run(self, command: DetectorRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        interval = command.interval_seconds or settings.scheduler.tick_seconds
        stop_event = threading.Event()
        with open_services(settings) as services:
            try:
                services.detector.run_forever(stop_event, interval_seconds=interval)
            except KeyboardInterrupt:
                stop_event.set()
        return ["Detector stopped."]

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = TaskStatus(command.status) if command.status else None
        kind = TaskKind(command.kind) if command.kind else None
        with open_services(settings) as services:
            tasks = services.tasks.list_tasks(status=status, kind=kind, limit=command.limit)

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.id} kind={task.kind.value} status={task.status.value} "
                f"system={task.system_id if task.system_id is not None else '-'} "
                f"leases={task.lease_count} created_at={task.created_at.isoformat()}",
            )
        return lines

    def inspect_task(self, command: InspectTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_services(settings) as services:
            details = services.tasks.get_details(command.task_id)
        if details is None:
            return [f"Task not found: {command.task_id}"]

        task = details.task
        lines = [
            f"Task: {task.id}",
            f"Kind: {task.kind.value}",
            f"Status: {task.status.value}",
            f"System: {task.system_id if task.system_id is not None else '-'}",
            f"Leases: {task.lease_count}",
            f"Error: {task.error or '-'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def reap_tasks(self, command: DbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_services(settings) as services:
            reclaimed = services.tasks.reap_abandoned(settings.scheduler.lease_timeout)
        return [f"Reclaimed abandoned leases: {reclaimed}"]

    def list_systems(self, command: DbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_services(settings) as services:
            systems = services.registry.list_systems()

        lines = [f"Systems: {len(systems)}"]
        for system in systems:
            lines.append(
                f"  #{system.id} external={system.external_id} user={system.username} "
                f"state={system.renewal_state.value} bound={system.bound_count}/{system.capacity} "
                f"expires_at={system.expires_at.isoformat()}"
                f"{' reserved' if system.reserved else ''}",
            )
        return lines

    def renew_system(self, command: SystemCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_services(settings) as services:
            task = services.gateway.force_renewal(command.system_id)
        return [f"Renewal task for system {command.system_id}: {task.id} ({task.status.value})"]

    def distribute(self, command: DistributeCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        request = DistributionRequest(
            mode=DistributionMode(command.mode),
            points_per_system=command.points_per_system,
            reserved_system_ids=list(command.reserved_system_ids),
        )
        with open_services(settings) as services:
            result = services.allocator.distribute(request)

        lines = [
            f"Distribution ({result.mode.value}) completed:",
            f"  systems_created={result.systems_created}",
            f"  points_bound={result.points_bound}",
        ]
        for detail in result.details:
            lines.append(
                f"  system #{detail.system_id} external={detail.external_id} "
                f"bound={detail.bound_count}/{detail.capacity}"
                f"{' (new)' if detail.created else ''}",
            )
        return lines

    def sync(self, command: DbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_services(settings) as services:
            if not services.synchronizer.enabled:
                return ["Directory not configured; nothing to sync."]
            stats = services.synchronizer.reconcile(services.registry)
        return [
            "Directory sync completed:",
            f"  attempted={stats.attempted}",
            f"  succeeded={stats.succeeded}",
            f"  failed={stats.failed}",
            f"  skipped={stats.skipped}",
        ]

    def show_config(self, command: DbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_services(settings) as services:
            config = services.automation.get_config()
            revision = services.database.schema_revision()
        last_batch = config.last_batch_at.isoformat() if config.last_batch_at else "-"
        return [
            "Automation config:",
            f"  enabled={config.enabled}",
            f"  batch_size={config.batch_size}",
            f"  interval_minutes={config.interval_minutes}",
            f"  advance_minutes={config.advance_minutes}",
            f"  last_batch_at={last_batch}",
            f"  total_generated={config.total_generated}",
            "Scheduler:",
            f"  tick_seconds={settings.scheduler.tick_seconds}",
            f"  lease_timeout_seconds={settings.scheduler.lease_timeout_seconds}",
            f"  renewal_cooldown_minutes={settings.scheduler.renewal_cooldown_minutes}",
            f"  failure_cooldown_minutes={settings.scheduler.failure_cooldown_minutes}",
            f"  renewal_validity_hours={settings.validity.renewal_validity_hours}",
            f"  directory={'configured' if settings.directory.configured else 'off'}",
            f"  schema_revision={revision or '-'}",
        ]

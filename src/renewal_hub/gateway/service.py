"""Use-case service behind the worker poll/report protocol."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from renewal_hub.automation.models import MAX_BATCH_SIZE, LogStatus
from renewal_hub.automation.repository import AutomationRepository
from renewal_hub.directory.synchronizer import DirectorySynchronizer
from renewal_hub.errors import InvalidRequestError, NotFoundError
from renewal_hub.events import EventChannel, RenewalFailed, SystemRenewed
from renewal_hub.registry.models import Credentials, SystemCreate, SystemView
from renewal_hub.registry.repository import SystemRegistry
from renewal_hub.storage.common import utc_now
from renewal_hub.tasks.models import GENERATION_KINDS, TaskKind, TaskResult, TaskView
from renewal_hub.tasks.repository import TaskQueue

logger = logging.getLogger(__name__)

MALFORMED_REASON = "malformed report: missing username or secret"


@dataclass(slots=True)
class PollResult:
    enabled: bool
    task: TaskView | None = None


@dataclass(slots=True)
class TaskReport:
    """Completion report as sent by the worker."""

    task_id: str
    kind: TaskKind | None = None
    credentials: Credentials | None = None
    generated: list[Credentials] = field(default_factory=list)
    error: str | None = None


class WorkerGateway:
    """Serves tasks to the remote worker and ingests its reports."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        registry: SystemRegistry,
        tasks: TaskQueue,
        automation: AutomationRepository,
        synchronizer: DirectorySynchronizer,
        events: EventChannel,
        lease_timeout: timedelta,
    ) -> None:
        self.registry = registry
        self.tasks = tasks
        self.automation = automation
        self.synchronizer = synchronizer
        self.events = events
        self.lease_timeout = lease_timeout

    def poll(self, now: datetime | None = None) -> PollResult:
        """Lease at most one task for the worker; never blocks.

        With automation disabled only renewal work is handed out. With it
        enabled and nothing queued, a batch generation task is created once
        the configured interval has passed.
        """

        now = now or utc_now()
        self.tasks.reap_abandoned(self.lease_timeout, now=now)
        config = self.automation.get_config()
        if not config.enabled:
            return PollResult(enabled=False, task=self.tasks.lease([TaskKind.RENEWAL], now=now))

        task = self.tasks.lease(now=now)
        if task is None and config.batch_due(now):
            queued = self.tasks.enqueue(
                TaskKind.BATCH_GENERATION,
                payload={"quantity": config.batch_size},
                now=now,
            )
            if queued is not None:
                self.automation.mark_batch_enqueued(now=now)
                logger.info(
                    "Batch generation task %s enqueued (quantity=%d)",
                    queued.id,
                    config.batch_size,
                )
            task = self.tasks.lease(now=now)
        if task is not None:
            logger.info("Task %s (%s) leased to worker", task.id, task.kind.value)
        return PollResult(enabled=True, task=task)

    def report(self, report: TaskReport, now: datetime | None = None) -> bool:
        """Ingest a worker report; returns whether it was accepted.

        Reports for tasks already terminal are accepted without mutation.
        A renewal report lacking username or secret fails the task and is
        not accepted, and neither is any later report for that task.
        """

        now = now or utc_now()
        task = self.tasks.get(report.task_id)
        if task is None:
            raise NotFoundError(f"Task not found: {report.task_id}")
        if report.kind is not None and report.kind != task.kind:
            raise InvalidRequestError(
                f"Report kind {report.kind.value} does not match task kind {task.kind.value}.",
            )
        if not task.live:
            logger.info("Duplicate report for %s task %s ignored", task.status.value, task.id)
            return task.error != MALFORMED_REASON

        if report.error:
            self._fail(task, report.error, malformed=False, now=now)
            return True

        if task.kind == TaskKind.RENEWAL:
            return self._complete_renewal(task, report, now=now)
        return self._complete_generation(task, report, now=now)

    def force_renewal(self, system_id: int) -> TaskView:
        """Operator-requested renewal; returns the live task if one exists."""

        self.registry.require_system(system_id)
        task = self.tasks.enqueue(TaskKind.RENEWAL, system_id)
        if task is None:
            task = self.tasks.live_task_for_system(system_id)
        if task is None:
            # The live task finished between the insert and the lookup.
            task = self.tasks.enqueue(TaskKind.RENEWAL, system_id)
        if task is None:
            raise InvalidRequestError(f"Could not enqueue renewal for system {system_id}.")
        logger.info("Manual renewal requested for system %s (task %s)", system_id, task.id)
        return task

    def request_generation(self, quantity: int) -> TaskView:
        if not 1 <= quantity <= MAX_BATCH_SIZE:
            raise InvalidRequestError(f"quantity must be between 1 and {MAX_BATCH_SIZE}.")
        kind = TaskKind.SINGLE_GENERATION if quantity == 1 else TaskKind.BATCH_GENERATION
        task = self.tasks.enqueue(kind, payload={"quantity": quantity})
        if task is None:
            task = self.tasks.find_live(kind)
        if task is None:
            raise InvalidRequestError(f"Could not enqueue {kind.value} task.")
        return task

    def clear_renewal(self, system_id: int) -> int:
        return self.tasks.cancel_for_system(system_id)

    def create_system(self, payload: SystemCreate) -> SystemView:
        system = self.registry.create_system(payload)
        self.synchronizer.push_system(system)
        return system

    def delete_system(self, system_id: int) -> SystemView:
        """Retire a system locally, then remove it from the directory."""

        points = self.registry.points_for_system(system_id)
        deleted = self.registry.delete_system(system_id)
        self.synchronizer.remove_system(deleted)
        for point in points:
            if point.directory_user_id is not None:
                self.synchronizer.push_point_binding(point, None)
        return deleted

    def _complete_renewal(self, task: TaskView, report: TaskReport, *, now: datetime) -> bool:
        credentials = report.credentials
        if credentials is None or not credentials.complete:
            self._fail(task, MALFORMED_REASON, malformed=True, now=now)
            return False

        if not self.tasks.complete(task.id, TaskResult(credentials=credentials), now=now):
            return True
        if task.system_id is None:
            return True
        system = self.registry.get_system(task.system_id)
        if system is None:
            logger.error("Renewed system %s disappeared before mirroring", task.system_id)
            return True

        self.synchronizer.push_system(system)
        self.events.publish(
            SystemRenewed(
                system_id=system.id,
                external_id=system.external_id,
                username=system.username,
                expires_at=system.expires_at,
                task_id=task.id,
            ),
        )
        self.automation.append_log(
            task_kind=task.kind.value,
            status=LogStatus.SUCCESS,
            username=system.username,
            message=f"System {system.external_id} renewed until {system.expires_at.isoformat()}",
        )
        logger.info("System %s renewed by task %s", system.external_id, task.id)
        return True

    def _complete_generation(self, task: TaskView, report: TaskReport, *, now: datetime) -> bool:
        generated = [item for item in report.generated if item.complete]
        primary = report.credentials
        if primary is not None and primary.complete and primary not in generated:
            generated.insert(0, primary)
        if not generated:
            self._fail(task, MALFORMED_REASON, malformed=True, now=now)
            return False

        if not self.tasks.complete(task.id, TaskResult(generated=generated), now=now):
            return True
        self.automation.append_log(
            task_kind=task.kind.value,
            status=LogStatus.SUCCESS,
            username=generated[0].username,
            message=f"{len(generated)} credential(s) generated",
        )
        logger.info("Task %s generated %d credential(s)", task.id, len(generated))
        return True

    def _fail(self, task: TaskView, reason: str, *, malformed: bool, now: datetime) -> None:
        if not self.tasks.fail(task.id, reason, malformed=malformed, now=now):
            return
        username = task.payload.get("username") if task.kind not in GENERATION_KINDS else None
        self.automation.append_log(
            task_kind=task.kind.value,
            status=LogStatus.FAILED,
            username=username,
            message=reason,
        )
        if task.kind == TaskKind.RENEWAL and task.system_id is not None:
            self.events.publish(
                RenewalFailed(
                    system_id=task.system_id,
                    task_id=task.id,
                    reason=reason,
                    malformed=malformed,
                ),
            )
        logger.warning("Task %s failed: %s", task.id, reason)

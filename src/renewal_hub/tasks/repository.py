"""SQLite-backed task queue with lease semantics."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from sqlalchemy import case, func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from renewal_hub.automation.repository import record_generated_credentials
from renewal_hub.errors import InvalidRequestError, NotFoundError
from renewal_hub.registry.models import IN_FLIGHT_STATES, RenewalState, SystemView
from renewal_hub.registry.repository import (
    apply_renewal,
    set_renewal_state,
    system_view_from_row,
)
from renewal_hub.storage.common import (
    dump_json,
    load_json,
    optional_aware,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from renewal_hub.storage.database import Database
from renewal_hub.storage.sqlmodel_models import SystemRecord, TaskEventRecord, TaskRecord
from renewal_hub.tasks.models import (
    CANCELED_REASON,
    GENERATION_KINDS,
    KIND_PRIORITY,
    LIVE_STATUSES,
    QueueStats,
    TaskDetails,
    TaskEventView,
    TaskKind,
    TaskResult,
    TaskStatus,
    TaskView,
    dedup_key,
    renewal_payload,
)

logger = logging.getLogger(__name__)

_LIVE_VALUES = [status.value for status in LIVE_STATUSES]


class TaskQueue:
    """Task persistence facade; every transition is a status-guarded UPDATE."""

    def __init__(
        self,
        database: Database,
        *,
        renewal_validity: timedelta = timedelta(hours=6),
    ) -> None:
        self.database = database
        self.engine = database.engine
        self.renewal_validity = renewal_validity

    def enqueue(
        self,
        kind: TaskKind,
        system_id: int | None = None,
        payload: dict[str, Any] | None = None,
        *,
        now: datetime | None = None,
        from_states: tuple[RenewalState, ...] | None = None,
        eligible: Callable[[SystemView], bool] | None = None,
    ) -> TaskView | None:
        """Create a pending task, or return None when a live duplicate exists.

        Renewal tasks move their system to ``queued`` in the same transaction.
        ``from_states`` and ``eligible`` are re-checked against the system row
        once the insert holds the write lock; a system that no longer matches
        gets no task.
        """

        if kind == TaskKind.RENEWAL and system_id is None:
            raise InvalidRequestError("Renewal tasks require a system.")
        if kind != TaskKind.RENEWAL and system_id is not None:
            raise InvalidRequestError(f"{kind.value} tasks are not bound to a system.")

        now = now or utc_now()
        task_id = str(uuid4())
        with Session(self.engine) as session:
            system = None
            if system_id is not None:
                system = session.get(SystemRecord, system_id)
                if system is None:
                    raise NotFoundError(f"System not found: {system_id}")

            row = TaskRecord(
                id=task_id,
                kind=kind.value,
                status=TaskStatus.PENDING.value,
                system_id=system_id,
                dedup_key=dedup_key(kind, system_id),
                payload_json=dump_json(payload),
                lease_count=0,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            try:
                session.flush()
            except IntegrityError:
                session.rollback()
                logger.debug(
                    "Live %s task already exists for system %s; enqueue skipped",
                    kind.value,
                    system_id,
                )
                return None

            if system is not None:
                session.refresh(system)
                current = system_view_from_row(system)
                if (from_states is not None and current.renewal_state not in from_states) or (
                    eligible is not None and not eligible(current)
                ):
                    session.rollback()
                    logger.info(
                        "System %s changed before enqueue (%s); renewal skipped",
                        current.id,
                        current.renewal_state.value,
                    )
                    return None
                if payload is None:
                    row.payload_json = dump_json(renewal_payload(current))
                set_renewal_state(
                    session,
                    system_id=current.id,
                    state=RenewalState.QUEUED,
                    now=now,
                )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="enqueued",
                status_from=None,
                status_to=TaskStatus.PENDING,
                details={"kind": kind.value, "system_id": system_id},
                now=now,
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def lease(
        self,
        kinds: Sequence[TaskKind] | None = None,
        *,
        now: datetime | None = None,
    ) -> TaskView | None:
        """Atomically lease the oldest pending task, renewal work first."""

        allowed = [kind.value for kind in (kinds or tuple(TaskKind))]
        priority = case(
            {kind.value: rank for kind, rank in KIND_PRIORITY.items()},
            value=col(TaskRecord.kind),
            else_=len(KIND_PRIORITY),
        )
        while True:
            now = now or utc_now()
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(TaskRecord)
                    .where(
                        TaskRecord.status == TaskStatus.PENDING.value,
                        col(TaskRecord.kind).in_(allowed),
                    )
                    .order_by(
                        priority,
                        col(TaskRecord.created_at).asc(),
                        col(TaskRecord.id).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None
                lease_count = candidate.lease_count + 1

                result = session.exec(
                    sa_update(TaskRecord)
                    .where(
                        col(TaskRecord.id) == candidate.id,
                        col(TaskRecord.status) == TaskStatus.PENDING.value,
                    )
                    .values(
                        status=TaskStatus.LEASED.value,
                        leased_at=to_db_datetime(now),
                        lease_count=lease_count,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                if candidate.kind == TaskKind.RENEWAL.value and candidate.system_id is not None:
                    set_renewal_state(
                        session,
                        system_id=candidate.system_id,
                        state=RenewalState.RENEWING,
                        now=now,
                    )
                self._add_event(
                    session=session,
                    task_id=candidate.id,
                    event_type="leased",
                    status_from=TaskStatus.PENDING,
                    status_to=TaskStatus.LEASED,
                    details={"lease_count": lease_count},
                    now=now,
                )
                session.commit()
                leased = session.exec(
                    select(TaskRecord).where(TaskRecord.id == candidate.id),
                ).one()
                return _to_task_view(leased)

    def complete(
        self,
        task_id: str,
        result: TaskResult,
        *,
        now: datetime | None = None,
    ) -> bool:
        """Mark a live task completed; False when it is already terminal.

        A renewal completion writes the new credentials and expiry to the
        system in the same transaction as the task transition.
        """

        now = now or utc_now()
        with Session(self.engine) as session:
            row = session.get(TaskRecord, task_id)
            if row is None:
                raise NotFoundError(f"Task not found: {task_id}")
            kind = TaskKind(row.kind)
            if kind == TaskKind.RENEWAL and (
                result.credentials is None or not result.credentials.complete
            ):
                raise InvalidRequestError("Renewal results require username and secret.")

            previous = TaskStatus(row.status)
            if previous not in LIVE_STATUSES:
                return False
            system_id = row.system_id

            updated = session.exec(
                sa_update(TaskRecord)
                .where(
                    col(TaskRecord.id) == task_id,
                    col(TaskRecord.status) == previous.value,
                )
                .values(
                    status=TaskStatus.COMPLETED.value,
                    completed_at=to_db_datetime(now),
                    result_json=dump_json(result.to_json()),
                    error=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if updated.rowcount != 1:
                session.rollback()
                return False

            if kind == TaskKind.RENEWAL and system_id is not None and result.credentials:
                applied = apply_renewal(
                    session,
                    system_id=system_id,
                    credentials=result.credentials,
                    renewal_validity=self.renewal_validity,
                    now=now,
                )
                if not applied:
                    logger.error(
                        "Renewal task %s completed for missing system %s",
                        task_id,
                        system_id,
                    )
            elif kind in GENERATION_KINDS:
                record_generated_credentials(
                    session,
                    task_id=task_id,
                    source=kind.value,
                    credentials=result.generated,
                    now=now,
                )

            self._add_event(
                session=session,
                task_id=task_id,
                event_type="completed",
                status_from=previous,
                status_to=TaskStatus.COMPLETED,
                details=result.to_json(),
                now=now,
            )
            session.commit()
            return True

    def fail(
        self,
        task_id: str,
        reason: str,
        *,
        malformed: bool = False,
        now: datetime | None = None,
    ) -> bool:
        """Mark a live task failed; False when it is already terminal.

        The renewal system enters the failure cooldown, except for malformed
        reports where it stays ``queued`` and is re-enqueued on the next tick.
        """

        now = now or utc_now()
        with Session(self.engine) as session:
            row = session.get(TaskRecord, task_id)
            if row is None:
                raise NotFoundError(f"Task not found: {task_id}")
            previous = TaskStatus(row.status)
            if previous not in LIVE_STATUSES:
                return False
            system_id = row.system_id
            kind = TaskKind(row.kind)

            updated = session.exec(
                sa_update(TaskRecord)
                .where(
                    col(TaskRecord.id) == task_id,
                    col(TaskRecord.status) == previous.value,
                )
                .values(
                    status=TaskStatus.FAILED.value,
                    completed_at=to_db_datetime(now),
                    error=reason,
                    updated_at=to_db_datetime(now),
                ),
            )
            if updated.rowcount != 1:
                session.rollback()
                return False

            if kind == TaskKind.RENEWAL and system_id is not None:
                if malformed:
                    set_renewal_state(
                        session,
                        system_id=system_id,
                        state=RenewalState.QUEUED,
                        now=now,
                        from_states=IN_FLIGHT_STATES,
                    )
                else:
                    set_renewal_state(
                        session,
                        system_id=system_id,
                        state=RenewalState.FAILED_COOLDOWN,
                        now=now,
                        from_states=IN_FLIGHT_STATES,
                        mark_failed=True,
                    )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="failed",
                status_from=previous,
                status_to=TaskStatus.FAILED,
                details={"reason": reason, "malformed": malformed},
                now=now,
            )
            session.commit()
            return True

    def reap_abandoned(
        self,
        lease_timeout: timedelta,
        now: datetime | None = None,
    ) -> int:
        """Return leases older than the timeout to the pending pool."""

        now = now or utc_now()
        cutoff = to_db_datetime(now - lease_timeout)
        reclaimed = 0
        with Session(self.engine) as session:
            stale = session.exec(
                select(TaskRecord)
                .where(
                    TaskRecord.status == TaskStatus.LEASED.value,
                    col(TaskRecord.leased_at) < cutoff,
                )
                .order_by(col(TaskRecord.leased_at).asc()),
            ).all()
            for row in stale:
                result = session.exec(
                    sa_update(TaskRecord)
                    .where(
                        col(TaskRecord.id) == row.id,
                        col(TaskRecord.status) == TaskStatus.LEASED.value,
                    )
                    .values(
                        status=TaskStatus.PENDING.value,
                        leased_at=None,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    continue
                if row.kind == TaskKind.RENEWAL.value and row.system_id is not None:
                    set_renewal_state(
                        session,
                        system_id=row.system_id,
                        state=RenewalState.QUEUED,
                        now=now,
                        from_states=(RenewalState.RENEWING,),
                    )
                self._add_event(
                    session=session,
                    task_id=row.id,
                    event_type="reclaimed",
                    status_from=TaskStatus.LEASED,
                    status_to=TaskStatus.PENDING,
                    details={"lease_count": row.lease_count},
                    now=now,
                )
                reclaimed += 1
            session.commit()
        if reclaimed:
            logger.warning("Reclaimed %d abandoned lease(s)", reclaimed)
        return reclaimed

    def cancel_for_system(self, system_id: int, *, now: datetime | None = None) -> int:
        """Fail live renewal tasks of a system and reset it to idle together."""

        now = now or utc_now()
        canceled = 0
        with Session(self.engine) as session:
            if session.get(SystemRecord, system_id) is None:
                raise NotFoundError(f"System not found: {system_id}")
            live_rows = session.exec(
                select(TaskRecord).where(
                    TaskRecord.system_id == system_id,
                    TaskRecord.kind == TaskKind.RENEWAL.value,
                    col(TaskRecord.status).in_(_LIVE_VALUES),
                ),
            ).all()
            for row in live_rows:
                previous = TaskStatus(row.status)
                result = session.exec(
                    sa_update(TaskRecord)
                    .where(
                        col(TaskRecord.id) == row.id,
                        col(TaskRecord.status) == previous.value,
                    )
                    .values(
                        status=TaskStatus.FAILED.value,
                        error=CANCELED_REASON,
                        completed_at=to_db_datetime(now),
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    continue
                self._add_event(
                    session=session,
                    task_id=row.id,
                    event_type="canceled",
                    status_from=previous,
                    status_to=TaskStatus.FAILED,
                    details={},
                    now=now,
                )
                canceled += 1
            set_renewal_state(
                session,
                system_id=system_id,
                state=RenewalState.IDLE,
                now=now,
            )
            session.commit()
        logger.info("Canceled %d renewal task(s) for system %s", canceled, system_id)
        return canceled

    def get(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(TaskRecord, task_id)
            return _to_task_view(row) if row is not None else None

    def live_task_for_system(self, system_id: int) -> TaskView | None:
        return self.find_live(TaskKind.RENEWAL, system_id)

    def find_live(self, kind: TaskKind, system_id: int | None = None) -> TaskView | None:
        """The pending or leased task holding the dedup slot, if any."""

        with Session(self.engine) as session:
            row = session.exec(
                select(TaskRecord).where(
                    TaskRecord.dedup_key == dedup_key(kind, system_id),
                    col(TaskRecord.status).in_(_LIVE_VALUES),
                ),
            ).one_or_none()
            return _to_task_view(row) if row is not None else None

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        kind: TaskKind | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        """List recent tasks, optionally filtered by status and kind."""

        with Session(self.engine) as session:
            statement = (
                select(TaskRecord)
                .order_by(col(TaskRecord.created_at).desc(), col(TaskRecord.id).asc())
                .limit(limit)
            )
            if status is not None:
                statement = statement.where(TaskRecord.status == status.value)
            if kind is not None:
                statement = statement.where(TaskRecord.kind == kind.value)
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def get_task_events(self, task_id: str) -> list[TaskEventView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskEventRecord)
                .where(TaskEventRecord.task_id == task_id)
                .order_by(col(TaskEventRecord.created_at).asc(), col(TaskEventRecord.id).asc()),
            ).all()
        return [
            TaskEventView(
                event_id=row.id or 0,
                task_id=row.task_id,
                event_type=row.event_type,
                status_from=TaskStatus(row.status_from) if row.status_from is not None else None,
                status_to=TaskStatus(row.status_to) if row.status_to is not None else None,
                created_at=to_utc_aware_datetime(row.created_at),
                details=load_json(row.details_json),
            )
            for row in rows
        ]

    def get_details(self, task_id: str) -> TaskDetails | None:
        """Return task details with event stream."""

        task = self.get(task_id)
        if task is None:
            return None
        return TaskDetails(task=task, events=self.get_task_events(task_id))

    def queue_stats(self) -> QueueStats:
        stats = QueueStats()
        with Session(self.engine) as session:
            by_status = session.exec(
                select(TaskRecord.status, func.count()).group_by(TaskRecord.status),
            ).all()
            live_by_kind = session.exec(
                select(TaskRecord.kind, func.count())
                .where(col(TaskRecord.status).in_(_LIVE_VALUES))
                .group_by(TaskRecord.kind),
            ).all()
        for status, count in by_status:
            stats.by_status[status] = int(count)
        for kind, count in live_by_kind:
            stats.live_by_kind[kind] = int(count)
        return stats

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, Any],
        now: datetime,
    ) -> None:
        session.add(
            TaskEventRecord(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=dump_json(details),
                created_at=to_db_datetime(now),
            ),
        )


def _to_task_view(row: TaskRecord) -> TaskView:
    return TaskView(
        id=row.id,
        kind=TaskKind(row.kind),
        status=TaskStatus(row.status),
        system_id=row.system_id,
        payload=load_json(row.payload_json),
        result=load_json(row.result_json),
        error=row.error,
        lease_count=row.lease_count,
        created_at=to_utc_aware_datetime(row.created_at),
        leased_at=optional_aware(row.leased_at),
        completed_at=optional_aware(row.completed_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )

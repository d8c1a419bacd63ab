"""Persistent registry of provisioning systems and device points."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import func
from sqlalchemy import select as sa_select
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from renewal_hub.errors import InvalidRequestError, NotFoundError
from renewal_hub.registry.models import (
    IN_FLIGHT_STATES,
    Credentials,
    PointView,
    RenewalState,
    SystemCreate,
    SystemView,
)
from renewal_hub.storage.common import (
    optional_aware,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from renewal_hub.storage.database import Database
from renewal_hub.storage.sqlmodel_models import PointRecord, SystemRecord, TaskRecord

logger = logging.getLogger(__name__)

_LIVE_TASK_STATUSES = ("pending", "leased")


class SystemRegistry:
    """System and point persistence facade backed by SQLModel + SQLite."""

    def __init__(
        self,
        database: Database,
        *,
        initial_validity: timedelta = timedelta(days=30),
    ) -> None:
        self.database = database
        self.engine = database.engine
        self.initial_validity = initial_validity

    def create_system(self, payload: SystemCreate, *, now: datetime | None = None) -> SystemView:
        """Register a system; without an explicit expiry it gets the initial validity."""

        if payload.capacity < 1:
            raise InvalidRequestError("System capacity must be >= 1.")
        now = now or utc_now()
        expires_at = payload.expires_at or now + self.initial_validity
        with Session(self.engine) as session:
            row = SystemRecord(
                external_id=payload.external_id,
                username=payload.username,
                secret=payload.secret,
                expires_at=to_db_datetime(expires_at),
                capacity=payload.capacity,
                bound_count=0,
                renewal_state=RenewalState.IDLE.value,
                auto_renewal_enabled=payload.auto_renewal_enabled,
                renewal_count=0,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise InvalidRequestError(
                    f"A system with external id {payload.external_id} already exists.",
                ) from error
            session.refresh(row)
            return system_view_from_row(row)

    def get_system(self, system_id: int) -> SystemView | None:
        with Session(self.engine) as session:
            row = session.get(SystemRecord, system_id)
            return system_view_from_row(row) if row is not None else None

    def require_system(self, system_id: int) -> SystemView:
        system = self.get_system(system_id)
        if system is None:
            raise NotFoundError(f"System not found: {system_id}")
        return system

    def list_systems(self, *, state: RenewalState | None = None) -> list[SystemView]:
        with Session(self.engine) as session:
            statement = select(SystemRecord).order_by(col(SystemRecord.id).asc())
            if state is not None:
                statement = statement.where(SystemRecord.renewal_state == state.value)
            rows = session.exec(statement).all()
        return [system_view_from_row(row) for row in rows]

    def list_detection_candidates(self) -> list[SystemView]:
        """Idle systems that take part in automatic renewal."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(SystemRecord)
                .where(
                    SystemRecord.renewal_state == RenewalState.IDLE.value,
                    col(SystemRecord.auto_renewal_enabled).is_(True),
                )
                .order_by(col(SystemRecord.expires_at).asc(), col(SystemRecord.id).asc()),
            ).all()
        return [system_view_from_row(row) for row in rows]

    def list_orphaned_in_flight(self) -> list[SystemView]:
        """Systems marked queued/renewing that have no live renewal task."""

        live_task = (
            sa_select(TaskRecord.id)
            .where(
                col(TaskRecord.system_id) == SystemRecord.id,
                col(TaskRecord.kind) == "renewal",
                col(TaskRecord.status).in_(_LIVE_TASK_STATUSES),
            )
            .exists()
        )
        with Session(self.engine) as session:
            rows = session.exec(
                select(SystemRecord)
                .where(
                    col(SystemRecord.renewal_state).in_(
                        [state.value for state in IN_FLIGHT_STATES],
                    ),
                    ~live_task,
                )
                .order_by(col(SystemRecord.id).asc()),
            ).all()
        return [system_view_from_row(row) for row in rows]

    def release_failed_cooldowns(
        self,
        *,
        cooldown: timedelta,
        now: datetime | None = None,
    ) -> int:
        """Return systems whose failure cooldown elapsed to the idle state."""

        now = now or utc_now()
        cutoff = to_db_datetime(now - cooldown)
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(SystemRecord)
                .where(
                    col(SystemRecord.renewal_state) == RenewalState.FAILED_COOLDOWN.value,
                    (col(SystemRecord.last_failed_at).is_(None))
                    | (col(SystemRecord.last_failed_at) <= cutoff),
                )
                .values(
                    renewal_state=RenewalState.IDLE.value,
                    updated_at=to_db_datetime(now),
                ),
            )
            session.commit()
            return int(result.rowcount or 0)

    def update_credentials(
        self,
        system_id: int,
        credentials: Credentials,
        *,
        expires_at: datetime | None = None,
        now: datetime | None = None,
    ) -> SystemView:
        """Operator credential override; expiry and credentials change in one statement."""

        if not credentials.complete:
            raise InvalidRequestError("Both username and secret are required.")
        now = now or utc_now()
        values: dict[str, object] = {
            "username": credentials.username,
            "secret": credentials.secret,
            "updated_at": to_db_datetime(now),
        }
        if expires_at is not None:
            values["expires_at"] = to_db_datetime(expires_at)
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(SystemRecord)
                .where(col(SystemRecord.id) == system_id)
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                raise NotFoundError(f"System not found: {system_id}")
            session.commit()
        return self.require_system(system_id)

    def set_auto_renewal(self, system_id: int, *, enabled: bool) -> SystemView:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(SystemRecord)
                .where(col(SystemRecord.id) == system_id)
                .values(auto_renewal_enabled=enabled, updated_at=to_db_datetime(utc_now())),
            )
            if result.rowcount != 1:
                session.rollback()
                raise NotFoundError(f"System not found: {system_id}")
            session.commit()
        return self.require_system(system_id)

    def delete_system(self, system_id: int) -> SystemView:
        """Retire a system; its points become unbound and its tasks are dropped."""

        with Session(self.engine) as session:
            row = session.get(SystemRecord, system_id)
            if row is None:
                raise NotFoundError(f"System not found: {system_id}")
            deleted = system_view_from_row(row)
            session.delete(row)
            session.commit()
        logger.info(
            "System %s (external id %s) deleted",
            deleted.id,
            deleted.external_id,
        )
        return deleted

    def create_point(
        self,
        *,
        label: str | None = None,
        active: bool = True,
        directory_user_id: int | None = None,
        system_id: int | None = None,
    ) -> PointView:
        now = utc_now()
        with Session(self.engine) as session:
            if system_id is not None and session.get(SystemRecord, system_id) is None:
                raise NotFoundError(f"System not found: {system_id}")
            row = PointRecord(
                system_id=system_id,
                active=active,
                label=label,
                directory_user_id=directory_user_id,
                created_at=to_db_datetime(now),
            )
            session.add(row)
            session.flush()
            if system_id is not None:
                recount_bound_counts(session)
            session.commit()
            session.refresh(row)
            return point_view_from_row(row)

    def delete_point(self, point_id: int) -> None:
        with Session(self.engine) as session:
            row = session.get(PointRecord, point_id)
            if row is None:
                raise NotFoundError(f"Point not found: {point_id}")
            bound = row.system_id is not None
            session.delete(row)
            session.flush()
            if bound:
                recount_bound_counts(session)
            session.commit()

    def list_points(self, *, active_only: bool = False) -> list[PointView]:
        with Session(self.engine) as session:
            statement = select(PointRecord).order_by(col(PointRecord.id).asc())
            if active_only:
                statement = statement.where(col(PointRecord.active).is_(True))
            rows = session.exec(statement).all()
        return [point_view_from_row(row) for row in rows]

    def recount_bound_points(self) -> None:
        with Session(self.engine) as session:
            recount_bound_counts(session)
            session.commit()

    def points_for_system(self, system_id: int) -> list[PointView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(PointRecord)
                .where(PointRecord.system_id == system_id)
                .order_by(col(PointRecord.id).asc()),
            ).all()
        return [point_view_from_row(row) for row in rows]


def apply_renewal(
    session: Session,
    *,
    system_id: int,
    credentials: Credentials,
    renewal_validity: timedelta,
    now: datetime,
) -> bool:
    """Write renewed credentials, expiry and bookkeeping as one UPDATE."""

    result = session.exec(
        sa_update(SystemRecord)
        .where(col(SystemRecord.id) == system_id)
        .values(
            username=credentials.username,
            secret=credentials.secret,
            expires_at=to_db_datetime(now + renewal_validity),
            renewal_state=RenewalState.IDLE.value,
            last_renewed_at=to_db_datetime(now),
            last_failed_at=None,
            renewal_count=SystemRecord.renewal_count + 1,
            updated_at=to_db_datetime(now),
        ),
    )
    return result.rowcount == 1


def set_renewal_state(
    session: Session,
    *,
    system_id: int,
    state: RenewalState,
    now: datetime,
    from_states: tuple[RenewalState, ...] | None = None,
    mark_failed: bool = False,
) -> bool:
    statement = sa_update(SystemRecord).where(col(SystemRecord.id) == system_id)
    if from_states is not None:
        statement = statement.where(
            col(SystemRecord.renewal_state).in_([item.value for item in from_states]),
        )
    values: dict[str, object] = {
        "renewal_state": state.value,
        "updated_at": to_db_datetime(now),
    }
    if mark_failed:
        values["last_failed_at"] = to_db_datetime(now)
    result = session.exec(statement.values(**values))
    return result.rowcount == 1


def recount_bound_counts(session: Session) -> None:
    """Recompute bound_count from point rows for every system."""

    bound_points = (
        sa_select(func.count(PointRecord.id))
        .where(col(PointRecord.system_id) == SystemRecord.id)
        .scalar_subquery()
    )
    session.exec(
        sa_update(SystemRecord)
        .values(bound_count=bound_points)
        .execution_options(synchronize_session=False),
    )


def system_view_from_row(row: SystemRecord) -> SystemView:
    if row.id is None:
        raise RuntimeError("System row has no primary key yet.")
    return SystemView(
        id=row.id,
        external_id=row.external_id,
        username=row.username,
        secret=row.secret,
        expires_at=to_utc_aware_datetime(row.expires_at),
        capacity=row.capacity,
        bound_count=row.bound_count,
        renewal_state=RenewalState(row.renewal_state),
        auto_renewal_enabled=row.auto_renewal_enabled,
        last_renewed_at=optional_aware(row.last_renewed_at),
        last_failed_at=optional_aware(row.last_failed_at),
        renewal_count=row.renewal_count,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def point_view_from_row(row: PointRecord) -> PointView:
    if row.id is None:
        raise RuntimeError("Point row has no primary key yet.")
    return PointView(
        id=row.id,
        system_id=row.system_id,
        active=row.active,
        label=row.label,
        directory_user_id=row.directory_user_id,
        created_at=to_utc_aware_datetime(row.created_at),
    )

"""Point allocator: rebinds active points onto systems in one transaction."""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from renewal_hub.allocation.models import (
    PLACEHOLDER_SECRET,
    BindingDetail,
    DistributionMode,
    DistributionRequest,
    DistributionResult,
    placeholder_username,
)
from renewal_hub.automation.models import LogStatus
from renewal_hub.automation.repository import AutomationRepository
from renewal_hub.directory.synchronizer import DirectorySynchronizer
from renewal_hub.errors import CapacityError, InvalidRequestError, NotFoundError
from renewal_hub.events import EventChannel, PointsRedistributed
from renewal_hub.registry.models import (
    RESERVED_EXTERNAL_ID_FLOOR,
    PointView,
    RenewalState,
    SystemView,
    is_reserved_external_id,
)
from renewal_hub.registry.repository import (
    point_view_from_row,
    recount_bound_counts,
    system_view_from_row,
)
from renewal_hub.storage.common import to_db_datetime, utc_now
from renewal_hub.storage.database import Database
from renewal_hub.storage.sqlmodel_models import PointRecord, SystemRecord

logger = logging.getLogger(__name__)

DISTRIBUTION_LOG_KIND = "distribution"
PLACEHOLDER_EXPIRED_BY = timedelta(minutes=1)


@dataclass(slots=True)
class _Plan:
    capacity: int
    pool: list[SystemRecord]
    new_external_ids: list[int] = field(default_factory=list)


@dataclass(slots=True)
class _Outcome:
    result: DistributionResult
    new_systems: list[SystemView]
    mirrored: list[tuple[PointView, SystemView | None]]


class PointAllocator:
    """Maps active points onto systems, one per system or up to a fixed cap."""

    def __init__(
        self,
        database: Database,
        *,
        synchronizer: DirectorySynchronizer,
        events: EventChannel,
        automation: AutomationRepository,
    ) -> None:
        self.engine = database.engine
        self.synchronizer = synchronizer
        self.events = events
        self.automation = automation

    def distribute(
        self,
        request: DistributionRequest,
        *,
        now: datetime | None = None,
    ) -> DistributionResult:
        """Rebind every active point according to the requested mode.

        Capacity problems are detected before anything is written; all local
        writes commit together and the directory mirror runs afterwards.
        """

        request.validate()
        now = now or utc_now()
        try:
            outcome = self._apply(request, now=now)
        except CapacityError as error:
            self.automation.append_log(
                task_kind=DISTRIBUTION_LOG_KIND,
                status=LogStatus.FAILED,
                message=error.message,
            )
            raise

        for system in outcome.new_systems:
            self.synchronizer.push_system(system)
        for point, system in outcome.mirrored:
            self.synchronizer.push_point_binding(point, system)

        result = outcome.result
        self.events.publish(
            PointsRedistributed(
                mode=request.mode.value,
                systems_created=result.systems_created,
                points_bound=result.points_bound,
            ),
        )
        self.automation.append_log(
            task_kind=DISTRIBUTION_LOG_KIND,
            status=LogStatus.SUCCESS,
            message=(
                f"{request.mode.value}: {result.points_bound} point(s) bound to "
                f"{sum(1 for detail in result.details if detail.point_ids)} system(s), "
                f"{result.systems_created} created"
            ),
        )
        logger.info(
            "Distribution %s bound %d point(s), created %d system(s)",
            request.mode.value,
            result.points_bound,
            result.systems_created,
        )
        return result

    def _apply(self, request: DistributionRequest, *, now: datetime) -> _Outcome:
        with Session(self.engine) as session:
            points = session.exec(
                select(PointRecord).order_by(col(PointRecord.id).asc()),
            ).all()
            active = [point for point in points if point.active]

            if request.mode == DistributionMode.ONE_PER_POINT:
                plan = self._plan_one_per_point(session, active)
            else:
                plan = self._plan_fixed_capacity(session, active, request)

            created: list[SystemRecord] = []
            for external_id in plan.new_external_ids:
                row = SystemRecord(
                    external_id=external_id,
                    username=placeholder_username(external_id),
                    secret=PLACEHOLDER_SECRET,
                    expires_at=to_db_datetime(now - PLACEHOLDER_EXPIRED_BY),
                    capacity=1,
                    bound_count=0,
                    renewal_state=RenewalState.IDLE.value,
                    auto_renewal_enabled=True,
                    renewal_count=0,
                    created_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                )
                session.add(row)
                created.append(row)
            session.flush()
            pool = plan.pool + created

            session.exec(sa_update(PointRecord).values(system_id=None))
            groups = _group_points(active, pool, request.mode)
            for system, group in zip(pool, groups, strict=True):
                system.capacity = plan.capacity
                system.updated_at = to_db_datetime(now)
                session.add(system)
                for point in group:
                    point.system_id = system.id
                    session.add(point)
            session.flush()
            recount_bound_counts(session)
            session.commit()

            created_ids = {row.id for row in created}
            details = [
                BindingDetail(
                    system_id=system.id or 0,
                    external_id=system.external_id,
                    capacity=plan.capacity,
                    point_ids=[point.id or 0 for point in group],
                    created=system.id in created_ids,
                )
                for system, group in zip(pool, groups, strict=True)
            ]
            new_systems = [system_view_from_row(row) for row in created]
            pool_by_id = {system.id: system_view_from_row(system) for system in pool}
            mirrored = [
                (
                    point_view_from_row(point),
                    pool_by_id.get(point.system_id) if point.system_id is not None else None,
                )
                for point in points
                if point.directory_user_id is not None
            ]

        return _Outcome(
            result=DistributionResult(
                mode=request.mode,
                systems_created=len(created),
                points_bound=sum(detail.bound_count for detail in details),
                details=details,
            ),
            new_systems=new_systems,
            mirrored=mirrored,
        )

    def _plan_one_per_point(self, session: Session, active: Sequence[PointRecord]) -> _Plan:
        eligible = session.exec(
            select(SystemRecord)
            .where(col(SystemRecord.external_id) < RESERVED_EXTERNAL_ID_FLOOR)
            .order_by(col(SystemRecord.id).asc()),
        ).all()
        needed = max(0, len(active) - len(eligible))
        new_ids: list[int] = []
        if needed:
            used = set(session.exec(select(SystemRecord.external_id)).all())
            for candidate in range(1, RESERVED_EXTERNAL_ID_FLOOR):
                if candidate not in used:
                    new_ids.append(candidate)
                    if len(new_ids) == needed:
                        break
            if len(new_ids) < needed:
                raise CapacityError(
                    f"{len(active)} active points need {needed} new systems but only "
                    f"{len(new_ids)} external ids below {RESERVED_EXTERNAL_ID_FLOOR} are free.",
                )
        return _Plan(capacity=1, pool=list(eligible), new_external_ids=new_ids)

    def _plan_fixed_capacity(
        self,
        session: Session,
        active: Sequence[PointRecord],
        request: DistributionRequest,
    ) -> _Plan:
        per_system = request.points_per_system
        if per_system is None:
            raise InvalidRequestError("pointsPerSystem is required for fixed-capacity mode.")

        if request.reserved_system_ids:
            pool: list[SystemRecord] = []
            for system_id in sorted(set(request.reserved_system_ids)):
                row = session.get(SystemRecord, system_id)
                if row is None:
                    raise NotFoundError(f"System not found: {system_id}")
                if not is_reserved_external_id(row.external_id):
                    raise InvalidRequestError(
                        f"System {system_id} (external id {row.external_id}) is not reserved.",
                    )
                pool.append(row)
        else:
            pool = list(
                session.exec(
                    select(SystemRecord)
                    .where(col(SystemRecord.external_id) < RESERVED_EXTERNAL_ID_FLOOR)
                    .order_by(col(SystemRecord.id).asc()),
                ).all(),
            )

        if len(active) > len(pool) * per_system:
            raise CapacityError(
                f"{len(active)} active points exceed capacity of {len(pool)} system(s) "
                f"x {per_system} points.",
            )
        return _Plan(capacity=per_system, pool=pool)


def _group_points(
    points: Sequence[PointRecord],
    pool: Sequence[SystemRecord],
    mode: DistributionMode,
) -> list[list[PointRecord]]:
    """Split points into one group per pool system.

    One-per-point pairs positionally. Fixed capacity uses ceil(N / S)-sized
    chunks and the last system takes whatever remains.
    """

    if not pool:
        return []
    if mode == DistributionMode.ONE_PER_POINT:
        return [list(points[index : index + 1]) for index in range(len(pool))]

    group_size = math.ceil(len(points) / len(pool)) if points else 0
    groups: list[list[PointRecord]] = []
    for index in range(len(pool)):
        start = index * group_size
        if index == len(pool) - 1:
            groups.append(list(points[start:]))
        else:
            groups.append(list(points[start : start + group_size]))
    return groups

from __future__ import annotations

from datetime import datetime, timedelta

import allure
import pytest

from conftest import DirectoryStub, add_system
from renewal_hub.allocation.models import (
    PLACEHOLDER_SECRET,
    DistributionMode,
    DistributionRequest,
)
from renewal_hub.automation.models import LogStatus
from renewal_hub.errors import CapacityError, InvalidRequestError, NotFoundError
from renewal_hub.events import PointsRedistributed
from renewal_hub.services import ServiceContext

pytestmark = [
    allure.epic("Point Allocation"),
    allure.feature("Distribution"),
]


def _points(services: ServiceContext, count: int, **kwargs: object) -> list[int]:
    return [
        services.registry.create_point(label=f"p{index}", **kwargs).id  # type: ignore[arg-type]
        for index in range(count)
    ]


def test_one_per_point_creates_expired_placeholders_for_missing_systems(
    services: ServiceContext,
    now: datetime,
) -> None:
    first = add_system(services, 1)
    second = add_system(services, 2)
    reserved = add_system(services, 1000)
    point_ids = _points(services, 5)

    result = services.allocator.distribute(
        DistributionRequest(mode=DistributionMode.ONE_PER_POINT),
        now=now,
    )

    assert result.systems_created == 3
    assert result.points_bound == 5
    assert [detail.bound_count for detail in result.details] == [1, 1, 1, 1, 1]
    assert [detail.point_ids[0] for detail in result.details] == point_ids
    assert [detail.system_id for detail in result.details[:2]] == [first.id, second.id]

    placeholders = [
        system for system in services.registry.list_systems() if system.id > reserved.id
    ]
    assert [system.external_id for system in placeholders] == [3, 4, 5]
    for system in placeholders:
        assert system.username == f"pending_{system.external_id}"
        assert system.secret == PLACEHOLDER_SECRET
        assert system.expires_at == now - timedelta(minutes=1)
        assert system.capacity == 1
        assert system.bound_count == 1
    assert services.registry.require_system(reserved.id).bound_count == 0


def test_one_per_point_placeholder_ids_skip_taken_external_ids(
    services: ServiceContext,
    now: datetime,
) -> None:
    add_system(services, 1)
    add_system(services, 3)
    _points(services, 4)

    services.allocator.distribute(
        DistributionRequest(mode=DistributionMode.ONE_PER_POINT),
        now=now,
    )

    assert sorted(system.external_id for system in services.registry.list_systems()) == [
        1,
        2,
        3,
        4,
    ]


def test_one_per_point_leaves_extra_systems_empty(services: ServiceContext) -> None:
    systems = [add_system(services, external_id) for external_id in (1, 2, 3)]
    _points(services, 2)

    result = services.allocator.distribute(DistributionRequest(mode=DistributionMode.ONE_PER_POINT))

    assert result.systems_created == 0
    assert [services.registry.require_system(system.id).bound_count for system in systems] == [
        1,
        1,
        0,
    ]


def test_placeholders_are_picked_up_by_the_detector(
    services: ServiceContext,
    now: datetime,
) -> None:
    _points(services, 2)

    services.allocator.distribute(
        DistributionRequest(mode=DistributionMode.ONE_PER_POINT),
        now=now,
    )

    assert services.detector.tick(now=now).enqueued == 2


def test_fixed_capacity_chunks_points_with_remainder_on_last_system(
    services: ServiceContext,
) -> None:
    systems = [add_system(services, external_id) for external_id in (1, 2, 3, 4)]
    _points(services, 10)

    result = services.allocator.distribute(
        DistributionRequest(mode=DistributionMode.FIXED_CAPACITY, points_per_system=3),
    )

    assert result.points_bound == 10
    assert result.systems_created == 0
    assert [detail.bound_count for detail in result.details] == [3, 3, 3, 1]
    stored = [services.registry.require_system(system.id) for system in systems]
    assert [system.bound_count for system in stored] == [3, 3, 3, 1]
    assert {system.capacity for system in stored} == {3}


def test_fixed_capacity_rejects_overflow_without_touching_bindings(
    services: ServiceContext,
) -> None:
    systems = [add_system(services, external_id, capacity=5) for external_id in (1, 2, 3)]
    services.registry.create_point(label="bound", system_id=systems[0].id)
    _points(services, 9)

    with pytest.raises(CapacityError, match="exceed capacity"):
        services.allocator.distribute(
            DistributionRequest(mode=DistributionMode.FIXED_CAPACITY, points_per_system=3),
        )

    assert [services.registry.require_system(system.id).bound_count for system in systems] == [
        1,
        0,
        0,
    ]
    assert {system.capacity for system in services.registry.list_systems()} == {5}
    logs = services.automation.list_logs()
    assert logs[0].task_kind == "distribution"
    assert logs[0].status == LogStatus.FAILED


def test_fixed_capacity_onto_reserved_systems(services: ServiceContext) -> None:
    general = add_system(services, 1)
    reserved = [add_system(services, external_id) for external_id in (1000, 1001)]
    services.registry.create_point(label="old", system_id=general.id)
    _points(services, 3)

    result = services.allocator.distribute(
        DistributionRequest(
            mode=DistributionMode.FIXED_CAPACITY,
            points_per_system=2,
            reserved_system_ids=[system.id for system in reserved],
        ),
    )

    assert [detail.external_id for detail in result.details] == [1000, 1001]
    assert [detail.bound_count for detail in result.details] == [2, 2]
    assert services.registry.require_system(general.id).bound_count == 0


def test_reserved_distribution_validates_system_ids(services: ServiceContext) -> None:
    general = add_system(services, 1)
    _points(services, 1)

    with pytest.raises(InvalidRequestError, match="not reserved"):
        services.allocator.distribute(
            DistributionRequest(
                mode=DistributionMode.FIXED_CAPACITY,
                points_per_system=2,
                reserved_system_ids=[general.id],
            ),
        )
    with pytest.raises(NotFoundError):
        services.allocator.distribute(
            DistributionRequest(
                mode=DistributionMode.FIXED_CAPACITY,
                points_per_system=2,
                reserved_system_ids=[404],
            ),
        )


@pytest.mark.parametrize(
    ("request_", "message"),
    [
        (DistributionRequest(mode=DistributionMode.FIXED_CAPACITY), "required"),
        (
            DistributionRequest(mode=DistributionMode.FIXED_CAPACITY, points_per_system=0),
            ">= 1",
        ),
        (
            DistributionRequest(mode=DistributionMode.ONE_PER_POINT, reserved_system_ids=[1]),
            "only apply",
        ),
    ],
)
def test_invalid_distribution_requests(
    services: ServiceContext,
    request_: DistributionRequest,
    message: str,
) -> None:
    with pytest.raises(InvalidRequestError, match=message):
        services.allocator.distribute(request_)


def test_inactive_points_are_unbound_and_ignored(services: ServiceContext) -> None:
    system = add_system(services, 1, capacity=2)
    inactive = services.registry.create_point(label="off", active=False, system_id=system.id)
    _points(services, 1)

    result = services.allocator.distribute(
        DistributionRequest(mode=DistributionMode.FIXED_CAPACITY, points_per_system=2),
    )

    assert result.points_bound == 1
    stored = {point.id: point for point in services.registry.list_points()}
    assert stored[inactive.id].system_id is None


def test_distribution_publishes_event_and_success_log(services: ServiceContext) -> None:
    subscriber = services.events.subscribe()
    add_system(services, 1)
    _points(services, 1)

    services.allocator.distribute(DistributionRequest(mode=DistributionMode.ONE_PER_POINT))

    event = subscriber.get_nowait()
    assert isinstance(event, PointsRedistributed)
    assert event.mode == "one-per-point"
    assert event.points_bound == 1
    assert services.automation.list_logs()[0].status == LogStatus.SUCCESS


def test_distribution_mirrors_new_systems_and_bindings(
    mirrored_services: ServiceContext,
    directory: DirectoryStub,
) -> None:
    services = mirrored_services
    services.registry.create_point(label="front", directory_user_id=501)
    services.registry.create_point(label="back", directory_user_id=502)
    services.registry.create_point(label="local")

    services.allocator.distribute(DistributionRequest(mode=DistributionMode.ONE_PER_POINT))

    assert sorted(directory.systems) == [1, 2, 3]
    assert directory.systems[1]["username"] == "pending_1"
    assert directory.systems[1]["password"] == PLACEHOLDER_SECRET
    assert directory.user_systems == {501: 1, 502: 2}
    assert services.synchronizer.stats.failed == 0


def test_directory_outage_does_not_undo_local_distribution(
    mirrored_services: ServiceContext,
    directory: DirectoryStub,
) -> None:
    directory.fail_with = 503
    services = mirrored_services
    services.registry.create_point(label="front", directory_user_id=501)

    result = services.allocator.distribute(
        DistributionRequest(mode=DistributionMode.ONE_PER_POINT),
    )

    assert result.points_bound == 1
    assert services.registry.list_points()[0].system_id is not None
    assert services.synchronizer.stats.failed == 2

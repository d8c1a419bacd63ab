from __future__ import annotations

from datetime import datetime, timedelta

import allure
import pytest

from conftest import DirectoryStub, add_system, expiring_system
from renewal_hub.automation.models import AutomationConfigUpdate, LogStatus
from renewal_hub.errors import InvalidRequestError, NotFoundError
from renewal_hub.events import RenewalFailed, SystemRenewed
from renewal_hub.gateway.service import MALFORMED_REASON, TaskReport
from renewal_hub.registry.models import Credentials, RenewalState, SystemCreate
from renewal_hub.services import ServiceContext
from renewal_hub.tasks.models import TaskKind, TaskStatus

pytestmark = [
    allure.epic("Worker Gateway"),
    allure.feature("Poll & Report"),
]


def _enable_automation(services: ServiceContext, **changes: int) -> None:
    services.automation.update_config(AutomationConfigUpdate(enabled=True, **changes))


def _leased_renewal(services: ServiceContext, now: datetime, external_id: int = 1) -> str:
    system = expiring_system(services, external_id, now=now)
    services.detector.tick(now=now)
    result = services.gateway.poll(now=now)
    assert result.task is not None
    assert result.task.system_id == system.id
    return result.task.id


def test_poll_with_automation_disabled_serves_only_renewals(
    services: ServiceContext,
    now: datetime,
) -> None:
    services.tasks.enqueue(TaskKind.SINGLE_GENERATION, payload={"quantity": 1}, now=now)

    empty = services.gateway.poll(now=now)
    expiring_system(services, 1, now=now)
    services.detector.tick(now=now)
    leased = services.gateway.poll(now=now)

    assert empty.enabled is False
    assert empty.task is None
    assert leased.task is not None
    assert leased.task.kind == TaskKind.RENEWAL
    assert services.automation.get_config().last_batch_at is None


def test_poll_with_automation_enabled_schedules_batch_once_per_interval(
    services: ServiceContext,
    now: datetime,
) -> None:
    _enable_automation(services, batch_size=7, interval_minutes=30)

    first = services.gateway.poll(now=now)

    assert first.enabled is True
    assert first.task is not None
    assert first.task.kind == TaskKind.BATCH_GENERATION
    assert first.task.payload == {"quantity": 7}
    assert services.automation.get_config().last_batch_at == now

    services.gateway.report(
        TaskReport(task_id=first.task.id, generated=[Credentials("g1", "p1")]),
        now=now,
    )
    assert services.gateway.poll(now=now + timedelta(minutes=29)).task is None
    later = services.gateway.poll(now=now + timedelta(minutes=30))
    assert later.task is not None
    assert later.task.kind == TaskKind.BATCH_GENERATION


def test_poll_prefers_renewal_when_automation_enabled(
    services: ServiceContext,
    now: datetime,
) -> None:
    _enable_automation(services)
    services.tasks.enqueue(TaskKind.SINGLE_GENERATION, payload={"quantity": 1}, now=now)
    expiring_system(services, 1, now=now)
    services.detector.tick(now=now)

    result = services.gateway.poll(now=now)

    assert result.task is not None
    assert result.task.kind == TaskKind.RENEWAL


def test_poll_reclaims_abandoned_lease_before_leasing(
    services: ServiceContext,
    now: datetime,
) -> None:
    task_id = _leased_renewal(services, now)

    again = services.gateway.poll(now=now + timedelta(minutes=11))

    assert again.task is not None
    assert again.task.id == task_id
    assert again.task.lease_count == 2


def test_renewal_report_updates_system_and_notifies(
    services: ServiceContext,
    now: datetime,
) -> None:
    subscriber = services.events.subscribe()
    task_id = _leased_renewal(services, now, external_id=44)

    accepted = services.gateway.report(
        TaskReport(
            task_id=task_id,
            kind=TaskKind.RENEWAL,
            credentials=Credentials(username="renewed44", secret="new-secret"),
        ),
        now=now,
    )

    assert accepted is True
    system = services.registry.list_systems()[0]
    assert system.username == "renewed44"
    assert system.expires_at == now + timedelta(hours=6)
    assert system.renewal_state == RenewalState.IDLE
    event = subscriber.get_nowait()
    assert isinstance(event, SystemRenewed)
    assert event.external_id == 44
    assert event.task_id == task_id
    log = services.automation.list_logs()[0]
    assert log.status == LogStatus.SUCCESS
    assert log.username == "renewed44"


def test_duplicate_report_is_accepted_without_mutation(
    services: ServiceContext,
    now: datetime,
) -> None:
    task_id = _leased_renewal(services, now)
    services.gateway.report(
        TaskReport(task_id=task_id, credentials=Credentials("first", "one")),
        now=now,
    )

    again = services.gateway.report(
        TaskReport(task_id=task_id, credentials=Credentials("second", "two")),
        now=now + timedelta(minutes=1),
    )

    assert again is True
    system = services.registry.list_systems()[0]
    assert system.username == "first"
    assert system.renewal_count == 1


def test_malformed_renewal_report_is_rejected_and_healed_later(
    services: ServiceContext,
    now: datetime,
) -> None:
    subscriber = services.events.subscribe()
    task_id = _leased_renewal(services, now)

    accepted = services.gateway.report(
        TaskReport(task_id=task_id, credentials=Credentials(username="half", secret="")),
        now=now,
    )

    assert accepted is False
    task = services.tasks.get(task_id)
    assert task is not None
    assert task.status == TaskStatus.FAILED
    assert task.error == MALFORMED_REASON
    system = services.registry.list_systems()[0]
    assert system.username == "user1"
    assert system.renewal_state == RenewalState.QUEUED
    event = subscriber.get_nowait()
    assert isinstance(event, RenewalFailed)
    assert event.malformed is True

    assert services.detector.tick(now=now + timedelta(seconds=10)).healed == 1


def test_repeated_malformed_report_is_still_rejected(
    services: ServiceContext,
    now: datetime,
) -> None:
    task_id = _leased_renewal(services, now)
    report = TaskReport(task_id=task_id, credentials=Credentials(username="half", secret=""))

    first = services.gateway.report(report, now=now)
    second = services.gateway.report(report, now=now + timedelta(seconds=5))

    assert first is False
    assert second is False
    assert [event.event_type for event in services.tasks.get_task_events(task_id)].count(
        "failed",
    ) == 1


def test_error_report_puts_system_into_cooldown(services: ServiceContext, now: datetime) -> None:
    task_id = _leased_renewal(services, now, external_id=3)

    accepted = services.gateway.report(
        TaskReport(task_id=task_id, error="login page timed out"),
        now=now,
    )

    assert accepted is True
    assert services.registry.list_systems()[0].renewal_state == RenewalState.FAILED_COOLDOWN
    log = services.automation.list_logs()[0]
    assert log.status == LogStatus.FAILED
    assert log.username == "user3"
    assert log.message == "login page timed out"


def test_report_validation(services: ServiceContext, now: datetime) -> None:
    task_id = _leased_renewal(services, now)

    with pytest.raises(NotFoundError):
        services.gateway.report(TaskReport(task_id="no-such-task"), now=now)
    with pytest.raises(InvalidRequestError, match="does not match"):
        services.gateway.report(
            TaskReport(task_id=task_id, kind=TaskKind.BATCH_GENERATION),
            now=now,
        )


def test_generation_report_stores_primary_and_listed_credentials(
    services: ServiceContext,
    now: datetime,
) -> None:
    task = services.gateway.request_generation(3)
    services.tasks.lease(now=now)

    accepted = services.gateway.report(
        TaskReport(
            task_id=task.id,
            credentials=Credentials("primary", "p0"),
            generated=[Credentials("extra", "p1"), Credentials("", "skipped")],
        ),
        now=now,
    )

    assert accepted is True
    stored = services.automation.list_generated_credentials()
    assert sorted(item.username for item in stored) == ["extra", "primary"]
    assert services.automation.get_config().total_generated == 2


def test_empty_generation_report_fails_task(services: ServiceContext, now: datetime) -> None:
    task = services.gateway.request_generation(1)

    assert services.gateway.report(TaskReport(task_id=task.id), now=now) is False
    assert services.tasks.get(task.id).status == TaskStatus.FAILED  # type: ignore[union-attr]


def test_request_generation_picks_kind_and_deduplicates(services: ServiceContext) -> None:
    single = services.gateway.request_generation(1)
    batch = services.gateway.request_generation(25)

    assert single.kind == TaskKind.SINGLE_GENERATION
    assert batch.kind == TaskKind.BATCH_GENERATION
    assert batch.payload == {"quantity": 25}
    assert services.gateway.request_generation(40).id == batch.id
    with pytest.raises(InvalidRequestError):
        services.gateway.request_generation(0)
    with pytest.raises(InvalidRequestError):
        services.gateway.request_generation(101)


def test_force_renewal_returns_existing_live_task(services: ServiceContext) -> None:
    system = add_system(services, 8)

    first = services.gateway.force_renewal(system.id)
    second = services.gateway.force_renewal(system.id)

    assert first.id == second.id
    assert services.registry.require_system(system.id).renewal_state == RenewalState.QUEUED
    with pytest.raises(NotFoundError):
        services.gateway.force_renewal(404)


def test_clear_renewal_cancels_and_resets(services: ServiceContext) -> None:
    system = add_system(services, 8)
    services.gateway.force_renewal(system.id)

    assert services.gateway.clear_renewal(system.id) == 1
    assert services.registry.require_system(system.id).renewal_state == RenewalState.IDLE


def test_system_lifecycle_is_mirrored_to_directory(
    mirrored_services: ServiceContext,
    directory: DirectoryStub,
) -> None:
    services = mirrored_services
    system = services.gateway.create_system(
        SystemCreate(external_id=21, username="user21", secret="secret21"),
    )
    services.registry.create_point(directory_user_id=77, system_id=system.id)
    assert directory.systems[21]["username"] == "user21"

    services.gateway.delete_system(system.id)

    assert 21 not in directory.systems
    assert directory.user_systems == {77: None}


def test_renewed_credentials_are_pushed_to_directory(
    mirrored_services: ServiceContext,
    directory: DirectoryStub,
    now: datetime,
) -> None:
    services = mirrored_services
    task_id = _leased_renewal(services, now, external_id=30)

    services.gateway.report(
        TaskReport(task_id=task_id, credentials=Credentials("fresh30", "pw30")),
        now=now,
    )

    assert directory.systems[30]["username"] == "fresh30"
    assert directory.systems[30]["password"] == "pw30"


def test_expiring_system_is_renewed_end_to_end(services: ServiceContext, now: datetime) -> None:
    services.automation.update_config(AutomationConfigUpdate(advance_minutes=10))
    system = expiring_system(services, 1, now=now, minutes=5)

    services.detector.tick(now=now)
    assert services.tasks.queue_stats().pending == 1

    polled = services.gateway.poll(now=now + timedelta(seconds=5))
    assert polled.task is not None
    report = TaskReport(task_id=polled.task.id, credentials=Credentials("u1", "p1"))

    assert services.gateway.report(report, now=now + timedelta(seconds=30)) is True
    renewed = services.registry.require_system(system.id)
    assert (renewed.username, renewed.secret) == ("u1", "p1")
    assert renewed.expires_at == now + timedelta(seconds=30) + timedelta(hours=6)
    completed = services.tasks.get(polled.task.id)
    assert completed is not None
    assert completed.status == TaskStatus.COMPLETED

    assert services.gateway.report(report, now=now + timedelta(minutes=1)) is True
    assert services.registry.require_system(system.id) == renewed

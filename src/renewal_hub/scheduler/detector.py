"""Renewal detector: turns near-expiry systems into renewal tasks."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta

from renewal_hub.automation.repository import AutomationRepository
from renewal_hub.registry.models import IN_FLIGHT_STATES, RenewalState, SystemView
from renewal_hub.registry.repository import SystemRegistry
from renewal_hub.storage.common import utc_now
from renewal_hub.tasks.models import TaskKind
from renewal_hub.tasks.repository import TaskQueue

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DetectorTickSummary:
    """What one detector pass changed."""

    reclaimed: int = 0
    healed: int = 0
    released: int = 0
    enqueued: int = 0
    duplicates: int = 0


@dataclass(slots=True)
class ScheduledRenewal:
    system_id: int
    external_id: int
    username: str
    renewal_state: RenewalState
    expires_at: datetime
    due_at: datetime
    minutes_until_expiry: int
    expired: bool
    due: bool


def is_due(
    system: SystemView,
    *,
    now: datetime,
    advance: timedelta,
    cooldown: timedelta,
) -> bool:
    """Inside the advance window and outside the post-renewal cooldown."""

    if now < system.expires_at - advance:
        return False
    if system.last_renewed_at is None:
        return True
    return now - system.last_renewed_at >= cooldown


class RenewalDetector:
    """One ``tick()`` reclaims stale leases, heals, releases cooldowns, detects."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        registry: SystemRegistry,
        tasks: TaskQueue,
        automation: AutomationRepository,
        lease_timeout: timedelta,
        renewal_cooldown: timedelta,
        failure_cooldown: timedelta,
    ) -> None:
        self.registry = registry
        self.tasks = tasks
        self.automation = automation
        self.lease_timeout = lease_timeout
        self.renewal_cooldown = renewal_cooldown
        self.failure_cooldown = failure_cooldown

    def tick(self, now: datetime | None = None) -> DetectorTickSummary:
        now = now or utc_now()
        summary = DetectorTickSummary()
        summary.reclaimed = self.tasks.reap_abandoned(self.lease_timeout, now=now)

        for system in self.registry.list_orphaned_in_flight():
            logger.error(
                "System %s is %s without a live renewal task; re-enqueueing",
                system.id,
                system.renewal_state.value,
            )
            healed = self.tasks.enqueue(
                TaskKind.RENEWAL,
                system.id,
                now=now,
                from_states=IN_FLIGHT_STATES,
            )
            if healed is not None:
                summary.healed += 1

        summary.released = self.registry.release_failed_cooldowns(
            cooldown=self.failure_cooldown,
            now=now,
        )

        advance = self.automation.get_config().advance

        def still_due(current: SystemView) -> bool:
            return current.auto_renewal_enabled and is_due(
                current,
                now=now,
                advance=advance,
                cooldown=self.renewal_cooldown,
            )

        for system in self.registry.list_detection_candidates():
            if not still_due(system):
                continue
            task = self.tasks.enqueue(
                TaskKind.RENEWAL,
                system.id,
                now=now,
                from_states=(RenewalState.IDLE,),
                eligible=still_due,
            )
            if task is None:
                summary.duplicates += 1
                continue
            summary.enqueued += 1
            logger.info(
                "Renewal task %s enqueued for system %s (expires %s)",
                task.id,
                system.external_id,
                system.expires_at.isoformat(),
            )

        if summary.enqueued or summary.healed or summary.reclaimed or summary.released:
            logger.info(
                "Detector tick: enqueued=%d healed=%d reclaimed=%d released=%d",
                summary.enqueued,
                summary.healed,
                summary.reclaimed,
                summary.released,
            )
        return summary

    def renewal_schedule(self, now: datetime | None = None) -> list[ScheduledRenewal]:
        """Expiry outlook for every system, soonest first."""

        now = now or utc_now()
        advance = self.automation.get_config().advance
        schedule = [
            ScheduledRenewal(
                system_id=system.id,
                external_id=system.external_id,
                username=system.username,
                renewal_state=system.renewal_state,
                expires_at=system.expires_at,
                due_at=system.expires_at - advance,
                minutes_until_expiry=int((system.expires_at - now).total_seconds() // 60),
                expired=system.expires_at <= now,
                due=is_due(system, now=now, advance=advance, cooldown=self.renewal_cooldown),
            )
            for system in self.registry.list_systems()
        ]
        schedule.sort(key=lambda item: (item.expires_at, item.system_id))
        return schedule

    def run_forever(self, stop_event: threading.Event, *, interval_seconds: float) -> None:
        """Tick until ``stop_event`` is set; a failing tick does not stop the loop."""

        logger.info("Renewal detector started (tick every %.1fs)", interval_seconds)
        while not stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Renewal detector tick failed")
            stop_event.wait(timeout=interval_seconds)
        logger.info("Renewal detector stopped")


class DetectorThread:
    """Runs a detector on a daemon thread next to the HTTP server."""

    def __init__(self, detector: RenewalDetector, *, interval_seconds: float) -> None:
        self._detector = detector
        self._interval = interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._detector.run_forever,
            args=(self._stop,),
            kwargs={"interval_seconds": self._interval},
            daemon=True,
            name="renewal-detector",
        )
        self._thread.start()

    def stop(self, timeout: float = 15.0) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout=timeout)
        self._thread = None

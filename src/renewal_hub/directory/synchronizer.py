"""Mirror local system and binding state to the external directory."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from renewal_hub.directory.client import DirectoryClient, DirectoryError, DirectoryNotFoundError
from renewal_hub.registry.models import PointView, SystemView

if TYPE_CHECKING:
    from renewal_hub.registry.repository import SystemRegistry

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SyncStats:
    """Outcome counters for directory mirror calls."""

    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0


class DirectorySynchronizer:
    """Best-effort directory mirror.

    Local state is the source of truth: every failure is logged and counted,
    nothing is raised to the caller. Without a client every call is a skip.
    """

    def __init__(self, client: DirectoryClient | None) -> None:
        self._client = client
        self._lock = threading.Lock()
        self.stats = SyncStats()

    @property
    def enabled(self) -> bool:
        return self._client is not None

    def push_system(self, system: SystemView, *, run: SyncStats | None = None) -> bool:
        """Update the directory record; create it when the directory lacks one."""

        def action(client: DirectoryClient) -> None:
            try:
                client.update_system(
                    system.external_id,
                    username=system.username,
                    secret=system.secret,
                )
            except DirectoryNotFoundError:
                logger.info(
                    "System %s missing in directory; creating it",
                    system.external_id,
                )
                client.create_system(
                    system.external_id,
                    username=system.username,
                    secret=system.secret,
                )

        return self._run(f"push system {system.external_id}", action, run)

    def push_point_binding(
        self,
        point: PointView,
        system: SystemView | None,
        *,
        run: SyncStats | None = None,
    ) -> bool:
        if point.directory_user_id is None:
            self._count_skip(run)
            return False
        user_id = point.directory_user_id
        external_id = system.external_id if system is not None else None
        return self._run(
            f"bind user {user_id} to system {external_id}",
            lambda client: client.assign_user_system(user_id, external_id),
            run,
        )

    def remove_system(self, system: SystemView, *, run: SyncStats | None = None) -> bool:
        def action(client: DirectoryClient) -> None:
            try:
                client.delete_system(system.external_id)
            except DirectoryNotFoundError:
                logger.info("System %s already absent from directory", system.external_id)

        return self._run(f"remove system {system.external_id}", action, run)

    def reconcile(self, registry: SystemRegistry) -> SyncStats:
        """Push every system and every mirrored point binding."""

        run = SyncStats()
        systems = {system.id: system for system in registry.list_systems()}
        for system in systems.values():
            self.push_system(system, run=run)
        for point in registry.list_points():
            if point.directory_user_id is None:
                continue
            system = systems.get(point.system_id) if point.system_id is not None else None
            self.push_point_binding(point, system, run=run)
        logger.info(
            "Directory reconcile: attempted=%d succeeded=%d failed=%d skipped=%d",
            run.attempted,
            run.succeeded,
            run.failed,
            run.skipped,
        )
        return run

    def close(self) -> None:
        if self._client is not None:
            self._client.close()

    def _run(
        self,
        label: str,
        action: Callable[[DirectoryClient], None],
        run: SyncStats | None,
    ) -> bool:
        client = self._client
        if client is None:
            self._count_skip(run)
            return False
        with self._lock:
            self.stats.attempted += 1
            if run is not None:
                run.attempted += 1
        try:
            action(client)
        except DirectoryError as error:
            logger.warning("Directory sync failed (%s): %s", label, error)
            with self._lock:
                self.stats.failed += 1
                if run is not None:
                    run.failed += 1
            return False
        with self._lock:
            self.stats.succeeded += 1
            if run is not None:
                run.succeeded += 1
        return True

    def _count_skip(self, run: SyncStats | None) -> None:
        with self._lock:
            self.stats.skipped += 1
            if run is not None:
                run.skipped += 1

"""Wiring of repositories and services from settings."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

import httpx

from renewal_hub.allocation.allocator import PointAllocator
from renewal_hub.automation.repository import AutomationRepository
from renewal_hub.config import Settings
from renewal_hub.directory.client import DirectoryClient
from renewal_hub.directory.synchronizer import DirectorySynchronizer
from renewal_hub.events import EventChannel
from renewal_hub.gateway.service import WorkerGateway
from renewal_hub.registry.repository import SystemRegistry
from renewal_hub.scheduler.detector import RenewalDetector
from renewal_hub.storage.database import Database
from renewal_hub.tasks.repository import TaskQueue

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ServiceContext:
    """Everything a CLI command or HTTP request needs, sharing one database."""

    settings: Settings
    database: Database
    registry: SystemRegistry
    tasks: TaskQueue
    automation: AutomationRepository
    synchronizer: DirectorySynchronizer
    events: EventChannel
    allocator: PointAllocator
    detector: RenewalDetector
    gateway: WorkerGateway

    def close(self) -> None:
        self.synchronizer.close()
        self.database.close()


def build_services(
    settings: Settings,
    *,
    events: EventChannel | None = None,
    directory_transport: httpx.BaseTransport | None = None,
) -> ServiceContext:
    """Build the service graph; the schema is not touched here."""

    database = Database(
        settings.database.path,
        busy_timeout_ms=settings.database.busy_timeout_ms,
    )
    events = events or EventChannel()
    registry = SystemRegistry(database, initial_validity=settings.validity.initial_validity)
    tasks = TaskQueue(database, renewal_validity=settings.validity.renewal_validity)
    automation = AutomationRepository(database)

    client = None
    if settings.directory.configured:
        client = DirectoryClient(
            base_url=settings.directory.base_url,
            api_key=settings.directory.api_key,
            timeout_seconds=settings.directory.timeout_seconds,
            max_retries=settings.directory.max_retries,
            transport=directory_transport,
        )
    else:
        logger.info("Directory not configured; mirroring disabled")
    synchronizer = DirectorySynchronizer(client)

    return ServiceContext(
        settings=settings,
        database=database,
        registry=registry,
        tasks=tasks,
        automation=automation,
        synchronizer=synchronizer,
        events=events,
        allocator=PointAllocator(
            database,
            synchronizer=synchronizer,
            events=events,
            automation=automation,
        ),
        detector=RenewalDetector(
            registry=registry,
            tasks=tasks,
            automation=automation,
            lease_timeout=settings.scheduler.lease_timeout,
            renewal_cooldown=settings.scheduler.renewal_cooldown,
            failure_cooldown=settings.scheduler.failure_cooldown,
        ),
        gateway=WorkerGateway(
            registry=registry,
            tasks=tasks,
            automation=automation,
            synchronizer=synchronizer,
            events=events,
            lease_timeout=settings.scheduler.lease_timeout,
        ),
    )


@contextmanager
def open_services(
    settings: Settings,
    *,
    directory_transport: httpx.BaseTransport | None = None,
) -> Iterator[ServiceContext]:
    """Migrate the schema, yield the service graph and close it afterwards."""

    settings.validate()
    services = build_services(settings, directory_transport=directory_transport)
    try:
        services.database.init_schema()
        yield services
    finally:
        services.close()

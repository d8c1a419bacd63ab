"""Shared test fixtures."""

from __future__ import annotations

import json
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import httpx
import pytest

from renewal_hub.config import (
    DatabaseSettings,
    DirectorySettings,
    SchedulerSettings,
    ServerSettings,
    Settings,
)
from renewal_hub.registry.models import SystemCreate, SystemView
from renewal_hub.services import ServiceContext, build_services

WORKER_KEY = "test-worker-key"
NOW = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)

_ENV_VARS = (
    "RENEWAL_HUB_DB_PATH",
    "RENEWAL_HUB_SQLITE_BUSY_TIMEOUT_MS",
    "RENEWAL_HUB_DETECTOR_ENABLED",
    "RENEWAL_HUB_DETECTOR_TICK_SECONDS",
    "RENEWAL_HUB_LEASE_TIMEOUT_SECONDS",
    "RENEWAL_HUB_RENEWAL_COOLDOWN_MINUTES",
    "RENEWAL_HUB_FAILURE_COOLDOWN_MINUTES",
    "RENEWAL_HUB_RENEWAL_VALIDITY_HOURS",
    "RENEWAL_HUB_INITIAL_VALIDITY_DAYS",
    "RENEWAL_HUB_DIRECTORY_BASE_URL",
    "RENEWAL_HUB_DIRECTORY_API_KEY",
    "RENEWAL_HUB_DIRECTORY_TIMEOUT_SECONDS",
    "RENEWAL_HUB_DIRECTORY_MAX_RETRIES",
    "RENEWAL_HUB_HOST",
    "RENEWAL_HUB_PORT",
    "RENEWAL_HUB_WORKER_KEY",
    "RENEWAL_HUB_LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer environment variables out of the tests."""

    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        database=DatabaseSettings(path=tmp_path / "renewal_hub.db"),
        scheduler=SchedulerSettings(detector_enabled=False),
        server=ServerSettings(worker_key=WORKER_KEY),
    )


@pytest.fixture()
def services(settings: Settings) -> Iterator[ServiceContext]:
    context = build_services(settings)
    context.database.init_schema()
    try:
        yield context
    finally:
        context.close()


@pytest.fixture()
def now() -> datetime:
    return NOW


def add_system(
    services: ServiceContext,
    external_id: int,
    *,
    expires_at: datetime | None = None,
    capacity: int = 1,
    auto_renewal_enabled: bool = True,
) -> SystemView:
    return services.registry.create_system(
        SystemCreate(
            external_id=external_id,
            username=f"user{external_id}",
            secret=f"secret{external_id}",
            capacity=capacity,
            expires_at=expires_at,
            auto_renewal_enabled=auto_renewal_enabled,
        ),
    )


def expiring_system(
    services: ServiceContext,
    external_id: int,
    *,
    now: datetime,
    minutes: int = 5,
) -> SystemView:
    return add_system(services, external_id, expires_at=now + timedelta(minutes=minutes))


class DirectoryStub:
    """In-memory stand-in for the directory REST API behind httpx.MockTransport."""

    def __init__(self) -> None:
        self.systems: dict[int, dict[str, Any]] = {}
        self.user_systems: dict[int, int | None] = {}
        self.requests: list[tuple[str, str, dict[str, Any] | None]] = []
        self.fail_with: int | None = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        path = request.url.path
        self.requests.append((request.method, path, body))
        if self.fail_with is not None:
            return httpx.Response(self.fail_with, json={"detail": "unavailable"})

        if request.method == "POST" and path.endswith("/system_credentials/adicionar"):
            self.systems[body["system_id"]] = body
            return httpx.Response(201, json=body)
        external_id = int(path.rsplit("/", 1)[-1])
        if "/system_credentials/editar/" in path:
            if external_id not in self.systems:
                return httpx.Response(404)
            self.systems[external_id] = {"system_id": external_id, **body}
            return httpx.Response(200, json=body)
        if "/system_credentials/apagar/" in path:
            if self.systems.pop(external_id, None) is None:
                return httpx.Response(404)
            return httpx.Response(204)
        if "/users/editar/" in path:
            self.user_systems[external_id] = body["system"]
            return httpx.Response(200, json=body)
        return httpx.Response(405)


@pytest.fixture()
def directory() -> DirectoryStub:
    return DirectoryStub()


@pytest.fixture()
def mirrored_services(
    settings: Settings,
    directory: DirectoryStub,
) -> Iterator[ServiceContext]:
    settings.directory = DirectorySettings(base_url="https://directory.test", api_key="dir-key")
    context = build_services(settings, directory_transport=httpx.MockTransport(directory))
    context.database.init_schema()
    try:
        yield context
    finally:
        context.close()

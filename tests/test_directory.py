from __future__ import annotations

import json

import allure
import httpx
import pytest

from conftest import DirectoryStub, add_system
from renewal_hub.directory.client import DirectoryClient, DirectoryError, DirectoryNotFoundError
from renewal_hub.directory.synchronizer import DirectorySynchronizer
from renewal_hub.services import ServiceContext

pytestmark = [
    allure.epic("External Directory"),
    allure.feature("Mirror Sync"),
]


def _client(handler: DirectoryStub) -> DirectoryClient:
    return DirectoryClient(
        base_url="https://directory.test/api/",
        api_key="dir-key",
        transport=httpx.MockTransport(handler),
    )


def test_client_sends_bearer_token_and_json_bodies() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={})

    with DirectoryClient(
        base_url="https://directory.test",
        api_key="dir-key",
        transport=httpx.MockTransport(handler),
    ) as client:
        client.update_system(7, username="bob", secret="pw")
        client.assign_user_system(31, None)

    assert seen[0].method == "PUT"
    assert seen[0].url.path == "/system_credentials/editar/7"
    assert seen[0].headers["Authorization"] == "Bearer dir-key"
    assert json.loads(seen[0].read()) == {"username": "bob", "password": "pw"}
    assert seen[1].url.path == "/users/editar/31"
    assert json.loads(seen[1].read()) == {"system": None}


def test_client_maps_status_codes_to_errors() -> None:
    stub = DirectoryStub()
    client = _client(stub)

    with pytest.raises(DirectoryNotFoundError):
        client.delete_system(99)

    stub.fail_with = 500
    with pytest.raises(DirectoryError) as excinfo:
        client.create_system(1, username="u", secret="s")
    assert excinfo.value.status_code == 500
    assert not isinstance(excinfo.value, DirectoryNotFoundError)
    client.close()


def test_client_wraps_transport_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = DirectoryClient(
        base_url="https://directory.test",
        api_key="dir-key",
        transport=httpx.MockTransport(handler),
    )

    with pytest.raises(DirectoryError, match="failed"):
        client.delete_system(1)
    client.close()


def test_push_system_creates_missing_directory_record(services: ServiceContext) -> None:
    stub = DirectoryStub()
    synchronizer = DirectorySynchronizer(_client(stub))
    system = add_system(services, 5)

    assert synchronizer.push_system(system) is True
    assert [(method, path) for method, path, _ in stub.requests] == [
        ("PUT", "/api/system_credentials/editar/5"),
        ("POST", "/api/system_credentials/adicionar"),
    ]

    assert synchronizer.push_system(system) is True
    assert stub.requests[-1][0] == "PUT"
    assert stub.systems[5]["username"] == "user5"
    assert synchronizer.stats.succeeded == 2
    synchronizer.close()


def test_remove_system_tolerates_missing_record(services: ServiceContext) -> None:
    synchronizer = DirectorySynchronizer(_client(DirectoryStub()))
    system = add_system(services, 5)

    assert synchronizer.remove_system(system) is True
    assert synchronizer.stats.failed == 0
    synchronizer.close()


def test_failures_are_counted_not_raised(services: ServiceContext) -> None:
    stub = DirectoryStub()
    stub.fail_with = 502
    synchronizer = DirectorySynchronizer(_client(stub))
    system = add_system(services, 5)

    assert synchronizer.push_system(system) is False
    assert synchronizer.stats.attempted == 1
    assert synchronizer.stats.failed == 1
    synchronizer.close()


def test_disabled_synchronizer_skips_everything(services: ServiceContext) -> None:
    system = add_system(services, 5)
    point = services.registry.create_point(directory_user_id=9, system_id=system.id)
    synchronizer = DirectorySynchronizer(None)

    assert synchronizer.enabled is False
    assert synchronizer.push_system(system) is False
    assert synchronizer.push_point_binding(point, system) is False
    assert synchronizer.stats.skipped == 2
    assert synchronizer.stats.attempted == 0


def test_point_without_directory_user_is_skipped(services: ServiceContext) -> None:
    stub = DirectoryStub()
    synchronizer = DirectorySynchronizer(_client(stub))
    point = services.registry.create_point(label="local")

    assert synchronizer.push_point_binding(point, None) is False
    assert stub.requests == []
    assert synchronizer.stats.skipped == 1
    synchronizer.close()


def test_reconcile_pushes_systems_and_bindings(
    mirrored_services: ServiceContext,
    directory: DirectoryStub,
) -> None:
    services = mirrored_services
    first = add_system(services, 1)
    add_system(services, 2)
    services.registry.create_point(directory_user_id=40, system_id=first.id)
    services.registry.create_point(directory_user_id=41)
    services.registry.create_point(label="local")

    stats = services.synchronizer.reconcile(services.registry)

    assert stats.attempted == 4
    assert stats.succeeded == 4
    assert stats.failed == 0
    assert sorted(directory.systems) == [1, 2]
    assert directory.user_systems == {40: 1, 41: None}

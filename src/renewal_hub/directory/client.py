"""HTTP client for the provisioning directory REST API."""

from __future__ import annotations

import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_RETRIES = 2


class DirectoryError(Exception):
    """Directory call failed (transport error or non-success status)."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class DirectoryNotFoundError(DirectoryError):
    """Directory has no record with the requested id."""


class DirectoryClient:
    """Thin wrapper over the directory's credential and user endpoints.

    Systems are addressed by their ``external_id``; points by their
    ``directory_user_id``.
    """

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout_seconds),
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            transport=transport or httpx.HTTPTransport(retries=max_retries),
        )

    def update_system(self, external_id: int, *, username: str, secret: str) -> None:
        self._request(
            "PUT",
            f"/system_credentials/editar/{external_id}",
            json={"username": username, "password": secret},
        )

    def create_system(self, external_id: int, *, username: str, secret: str) -> None:
        self._request(
            "POST",
            "/system_credentials/adicionar",
            json={"system_id": external_id, "username": username, "password": secret},
        )

    def delete_system(self, external_id: int) -> None:
        self._request("DELETE", f"/system_credentials/apagar/{external_id}")

    def assign_user_system(self, directory_user_id: int, external_id: int | None) -> None:
        """Point a directory user at a system; None clears the assignment."""

        self._request(
            "PUT",
            f"/users/editar/{directory_user_id}",
            json={"system": external_id},
        )

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
    ) -> httpx.Response:
        try:
            response = self._client.request(method, path, json=json)
        except httpx.TimeoutException as error:
            raise DirectoryError(f"{method} {path} timed out") from error
        except httpx.HTTPError as error:
            raise DirectoryError(f"{method} {path} failed: {error}") from error

        if response.status_code == httpx.codes.NOT_FOUND:
            raise DirectoryNotFoundError(
                f"{method} {path} returned 404",
                status_code=response.status_code,
            )
        if not response.is_success:
            raise DirectoryError(
                f"{method} {path} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        logger.debug("Directory %s %s -> %s", method, path, response.status_code)
        return response

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> DirectoryClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

"""Shared-secret check for the worker gateway."""

from __future__ import annotations

import hmac
from typing import Annotated

from fastapi import Depends, Header

from renewal_hub.errors import UnauthorizedError


def get_worker_key() -> str:
    """Dependency to get the expected key - overridden at app creation."""

    raise NotImplementedError("Worker key not configured")


def require_worker_key(
    expected: Annotated[str, Depends(get_worker_key)],
    x_worker_key: Annotated[str | None, Header()] = None,
) -> None:
    if not expected or not x_worker_key:
        raise UnauthorizedError("Missing X-Worker-Key header.")
    if not hmac.compare_digest(x_worker_key.encode(), expected.encode()):
        raise UnauthorizedError("Invalid worker key.")

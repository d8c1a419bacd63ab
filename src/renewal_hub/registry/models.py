"""Domain models for systems and points."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

RESERVED_EXTERNAL_ID_FLOOR = 1000


class RenewalState(str, Enum):
    """Where a system stands in the renewal cycle."""

    IDLE = "idle"
    QUEUED = "queued"
    RENEWING = "renewing"
    FAILED_COOLDOWN = "failed_cooldown"


IN_FLIGHT_STATES = (RenewalState.QUEUED, RenewalState.RENEWING)


def is_reserved_external_id(external_id: int) -> bool:
    return external_id >= RESERVED_EXTERNAL_ID_FLOOR


@dataclass(slots=True, frozen=True)
class Credentials:
    """Username/secret pair on the provisioning service."""

    username: str
    secret: str

    @property
    def complete(self) -> bool:
        return bool(self.username.strip()) and bool(self.secret.strip())


@dataclass(slots=True)
class SystemCreate:
    """Input payload for registering a system."""

    external_id: int
    username: str
    secret: str
    capacity: int = 1
    expires_at: datetime | None = None
    auto_renewal_enabled: bool = True


@dataclass(slots=True)
class SystemView:
    """Readable system view for the scheduler, allocator and API."""

    id: int
    external_id: int
    username: str
    secret: str
    expires_at: datetime
    capacity: int
    bound_count: int
    renewal_state: RenewalState
    auto_renewal_enabled: bool
    last_renewed_at: datetime | None
    last_failed_at: datetime | None
    renewal_count: int
    created_at: datetime
    updated_at: datetime

    @property
    def reserved(self) -> bool:
        return is_reserved_external_id(self.external_id)

    @property
    def credentials(self) -> Credentials:
        return Credentials(username=self.username, secret=self.secret)


@dataclass(slots=True)
class PointView:
    """Device slot and the system it is bound to."""

    id: int
    system_id: int | None
    active: bool
    label: str | None
    directory_user_id: int | None
    created_at: datetime

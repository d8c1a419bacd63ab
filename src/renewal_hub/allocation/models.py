"""Domain models for point distribution."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from renewal_hub.errors import InvalidRequestError

PLACEHOLDER_SECRET = "pending"  # noqa: S105


class DistributionMode(str, Enum):
    ONE_PER_POINT = "one-per-point"
    FIXED_CAPACITY = "fixed-capacity"


def placeholder_username(external_id: int) -> str:
    return f"pending_{external_id}"


@dataclass(slots=True)
class DistributionRequest:
    """Operator request to rebind every active point."""

    mode: DistributionMode
    points_per_system: int | None = None
    reserved_system_ids: list[int] = field(default_factory=list)

    def validate(self) -> None:
        if self.mode == DistributionMode.FIXED_CAPACITY:
            if self.points_per_system is None:
                raise InvalidRequestError("pointsPerSystem is required for fixed-capacity mode.")
            if self.points_per_system < 1:
                raise InvalidRequestError("pointsPerSystem must be >= 1.")
        elif self.reserved_system_ids:
            raise InvalidRequestError("reservedSystemIds only apply to fixed-capacity mode.")


@dataclass(slots=True)
class BindingDetail:
    """Points a system holds after a distribution."""

    system_id: int
    external_id: int
    capacity: int
    point_ids: list[int]
    created: bool = False

    @property
    def bound_count(self) -> int:
        return len(self.point_ids)


@dataclass(slots=True)
class DistributionResult:
    mode: DistributionMode
    systems_created: int
    points_bound: int
    details: list[BindingDetail] = field(default_factory=list)

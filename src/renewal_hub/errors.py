"""Error taxonomy surfaced to callers as structured responses."""

from __future__ import annotations


class RenewalHubError(Exception):
    """Base error carrying a stable kind string and an HTTP status."""

    kind = "internal_error"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict[str, dict[str, str]]:
        return {"error": {"kind": self.kind, "message": self.message}}


class NotFoundError(RenewalHubError):
    kind = "not_found"
    status_code = 404


class InvalidRequestError(RenewalHubError):
    kind = "invalid_request"
    status_code = 422


class CapacityError(RenewalHubError):
    """Allocation cannot fit the active points into the selected systems."""

    kind = "capacity_violation"
    status_code = 422


class UnauthorizedError(RenewalHubError):
    kind = "unauthorized"
    status_code = 401

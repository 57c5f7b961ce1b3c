"""Shared enums for the redirect service.

This module defines all status and state enums used across the codebase.
Using enums instead of string literals provides type safety and prevents typos.
"""

from enum import StrEnum

__all__ = [
    "HealthStatus",
    "ResolutionOutcome",
    "RequestStatus",
    "Dimension",
    "AggregateScope",
    "DeviceClass",
    "Role",
    "LinkSortField",
    "SortOrder",
    "UNKNOWN_LOCATION",
]

UNKNOWN_LOCATION = "unknown"


class HealthStatus(StrEnum):
    """Health check status values."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    DISABLED = "disabled"


class ResolutionOutcome(StrEnum):
    """Every way a short code lookup can end."""

    RESOLVED = "resolved"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    INACTIVE = "inactive"
    UNAVAILABLE = "unavailable"

    @property
    def http_status(self) -> int:
        return _OUTCOME_HTTP_STATUS[self]


_OUTCOME_HTTP_STATUS = {
    ResolutionOutcome.RESOLVED: 302,
    ResolutionOutcome.NOT_FOUND: 404,
    ResolutionOutcome.EXPIRED: 410,
    ResolutionOutcome.INACTIVE: 403,
    ResolutionOutcome.UNAVAILABLE: 503,
}


class RequestStatus(StrEnum):
    """Request status values for metrics and logging."""

    SUCCESS = "success"
    CONFLICT = "conflict"
    ERROR = "error"


class Dimension(StrEnum):
    """Click event attributes the aggregator can break counts down by."""

    DEVICE = "device"
    LOCATION = "location"


class AggregateScope(StrEnum):
    """What a reporting query is keyed by."""

    LINK = "link"
    OWNER = "owner"
    SYSTEM = "system"


class DeviceClass(StrEnum):
    """Coarse device classification derived from the User-Agent header."""

    DESKTOP = "desktop"
    MOBILE = "mobile"
    TABLET = "tablet"
    BOT = "bot"
    UNKNOWN = "unknown"


class Role(StrEnum):
    """Caller roles forwarded by the authentication gateway."""

    USER = "user"
    STAFF = "staff"
    ADMIN = "admin"

    @property
    def is_staff(self) -> bool:
        return self in (Role.STAFF, Role.ADMIN)

    @classmethod
    def from_str(cls, value: str | None) -> "Role":
        """Parse a role header, falling back to USER for anything unrecognised."""
        try:
            return cls((value or "").lower())
        except ValueError:
            return cls.USER


class LinkSortField(StrEnum):
    CREATED_AT = "created_at"
    CLICK_COUNT = "click_count"
    CODE = "code"


class SortOrder(StrEnum):
    ASC = "asc"
    DESC = "desc"

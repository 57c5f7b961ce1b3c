"""Pydantic schemas for request/response validation in the redirect service.

This module defines Pydantic models for API input validation, output
serialization, the cached redirect payload and the click event payload.

Schema Hierarchy
=================
::
    LinkCreate (Input)
    ├─ destination: str (absolute http/https URL)
    ├─ custom_code: str | None
    ├─ active: bool
    ├─ expires_at: datetime | None (must be in the future)
    └─ tags: list[str]

    LinkUpdate (Input, partial)
    └─ destination / active / expires_at / tags

    LinkResponse, LinkPage (Output)

    ClickRecord (Recorder input, Kafka payload)
    ├─ link_code: str
    ├─ occurred_at: datetime
    └─ client_hint: ClientHint(device, location)

    TimeSeriesResponse, BreakdownResponse, SystemTotals (Reporting output)

Key Behaviours
===============
- URL validation uses the validators library; only http and https are accepted.
- Codes are 3-32 characters of letters, digits, '-' and '_', case-sensitive.
- All datetimes are normalised to UTC.
- Validation failures surface as HTTP 422 and never reach the resolver.
"""

import datetime
import re
from urllib.parse import urlsplit

import validators
from pydantic import BaseModel, Field, field_validator

from redirector.clock import as_utc, utcnow
from redirector.enums import UNKNOWN_LOCATION, DeviceClass, Dimension, HealthStatus, ResolutionOutcome
from redirector.models import CODE_MAX_LENGTH

__all__ = [
    "CODE_PATTERN",
    "is_valid_code",
    "LinkCreate",
    "LinkUpdate",
    "LinkResponse",
    "LinkPage",
    "ClientHint",
    "ClickRecord",
    "CachedLinkPayload",
    "TimeSeriesPoint",
    "TimeSeriesResponse",
    "DimensionCount",
    "BreakdownResponse",
    "SystemTotals",
    "HealthResponse",
    "ErrorResponse",
]

CODE_MIN_LENGTH = 3
CODE_PATTERN = re.compile(rf"^[A-Za-z0-9_-]{{{CODE_MIN_LENGTH},{CODE_MAX_LENGTH}}}$")
TAG_PATTERN = re.compile(r"^[\w.-]{1,64}$")
ALLOWED_SCHEMES = ("http", "https")
MAX_TAGS = 20


def is_valid_code(code: str) -> bool:
    return bool(CODE_PATTERN.match(code))


def _validate_destination(value: str) -> str:
    if not validators.url(value):
        raise ValueError("Invalid URL provided")
    if urlsplit(value).scheme.lower() not in ALLOWED_SCHEMES:
        raise ValueError("Destination must use http or https")
    return value


def _validate_expiry(value: datetime.datetime | None) -> datetime.datetime | None:
    if value is None:
        return None
    value = as_utc(value)
    if value <= utcnow():
        raise ValueError("Expiry must be in the future")
    return value


def _validate_tags(value: list[str]) -> list[str]:
    cleaned: list[str] = []
    for tag in value:
        tag = tag.strip().lower()
        if not TAG_PATTERN.match(tag):
            raise ValueError(f"Invalid tag '{tag}'")
        if tag not in cleaned:
            cleaned.append(tag)
    return sorted(cleaned)


class LinkCreate(BaseModel):
    destination: str
    custom_code: str | None = None
    active: bool = True
    expires_at: datetime.datetime | None = None
    tags: list[str] = Field(default_factory=list, max_length=MAX_TAGS)

    @field_validator("destination")
    @classmethod
    def validate_destination(cls, v: str) -> str:
        return _validate_destination(v)

    @field_validator("custom_code")
    @classmethod
    def validate_custom_code(cls, v: str | None) -> str | None:
        if v is not None and not is_valid_code(v):
            raise ValueError(
                f"Custom code must be {CODE_MIN_LENGTH}-{CODE_MAX_LENGTH} characters "
                "of letters, digits, '-' or '_'"
            )
        return v

    @field_validator("expires_at")
    @classmethod
    def validate_expires_at(cls, v: datetime.datetime | None) -> datetime.datetime | None:
        return _validate_expiry(v)

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v: list[str]) -> list[str]:
        return _validate_tags(v)


class LinkUpdate(BaseModel):
    """Partial update; only fields present in the request body are applied.

    Sending ``"expires_at": null`` clears the expiry and ``"tags": null``
    clears the tags.
    """

    destination: str | None = None
    active: bool | None = None
    expires_at: datetime.datetime | None = None
    tags: list[str] | None = None

    @field_validator("destination")
    @classmethod
    def validate_destination(cls, v: str | None) -> str | None:
        if v is None:
            raise ValueError("Destination cannot be null")
        return _validate_destination(v)

    @field_validator("active")
    @classmethod
    def validate_active(cls, v: bool | None) -> bool | None:
        if v is None:
            raise ValueError("Active cannot be null")
        return v

    @field_validator("expires_at")
    @classmethod
    def validate_expires_at(cls, v: datetime.datetime | None) -> datetime.datetime | None:
        return _validate_expiry(v)

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v: list[str] | None) -> list[str]:
        if v is not None and len(v) > MAX_TAGS:
            raise ValueError(f"At most {MAX_TAGS} tags are allowed")
        return _validate_tags(v or [])

    def changes(self) -> dict:
        return {name: getattr(self, name) for name in self.model_fields_set}


class LinkResponse(BaseModel):
    code: str
    short_url: str
    destination: str
    owner_id: str
    active: bool
    expires_at: datetime.datetime | None
    click_count: int
    tags: list[str]
    created_at: datetime.datetime
    updated_at: datetime.datetime

    @classmethod
    def from_model(cls, link, base_url: str) -> "LinkResponse":
        return cls(
            code=link.code,
            short_url=f"{base_url.rstrip('/')}/r/{link.code}",
            destination=link.destination,
            owner_id=link.owner_id,
            active=link.active,
            expires_at=as_utc(link.expires_at) if link.expires_at else None,
            click_count=link.click_count,
            tags=link.tags,
            created_at=as_utc(link.created_at),
            updated_at=as_utc(link.updated_at),
        )


class LinkPage(BaseModel):
    items: list[LinkResponse]
    total: int
    page: int
    page_size: int


class ClientHint(BaseModel):
    """Coarse, privacy-conscious client metadata attached to a click."""

    device: DeviceClass = DeviceClass.UNKNOWN
    location: str = Field(UNKNOWN_LOCATION, max_length=16)


class ClickRecord(BaseModel):
    """One successful resolution handed to the click recorder, keyed by link_code for partition affinity."""

    link_code: str = Field(..., description="Short code that was resolved, e.g. 'abc123'")
    occurred_at: datetime.datetime
    client_hint: ClientHint = Field(default_factory=ClientHint)


class CachedLinkPayload(BaseModel):
    """Redis cache payload holding only what the resolver needs."""

    code: str
    destination: str
    active: bool
    expires_at: datetime.datetime | None = None

    model_config = {"from_attributes": True}


class TimeSeriesPoint(BaseModel):
    date: datetime.date
    clicks: int


class TimeSeriesResponse(BaseModel):
    scope: str
    key: str
    days: int
    total: int
    points: list[TimeSeriesPoint]


class DimensionCount(BaseModel):
    value: str
    clicks: int


class BreakdownResponse(BaseModel):
    scope: str
    key: str
    dimension: Dimension
    counts: list[DimensionCount]


class SystemTotals(BaseModel):
    total_clicks: int
    distinct_active_link_count: int
    top_locations: list[DimensionCount]
    device_distribution: dict[str, int]


class HealthResponse(BaseModel):
    status: HealthStatus
    database: HealthStatus
    cache: HealthStatus
    recorder_queue_depth: int


class ErrorResponse(BaseModel):
    detail: str
    outcome: ResolutionOutcome

"""SQLAlchemy ORM models for the redirect service.

This module defines the database schema using SQLAlchemy declarative models
with the indexes the redirect, recorder and reporting paths rely on.

Data Model Layout
=================
::
    links
    ├─ id (PK)
    ├─ code (VARCHAR(32) UNIQUE)           ← redirect point lookup
    ├─ destination (TEXT NOT NULL)
    ├─ owner_id (VARCHAR(64), INDEXED)
    ├─ active (BOOLEAN DEFAULT TRUE)
    ├─ expires_at (TIMESTAMPTZ NULL)
    ├─ click_count (BIGINT DEFAULT 0, INDEXED)  ← denormalized counter
    ├─ created_at (TIMESTAMPTZ, INDEXED)
    └─ updated_at (TIMESTAMPTZ)

    link_tags
    ├─ link_code (FK links.code)
    └─ tag (INDEXED)

    click_events                           ← append-only, source of truth
    ├─ id (PK)
    ├─ link_code, occurred_at (COMPOUND INDEX)
    ├─ device
    └─ location (INDEXED)

    deleted_links                          ← tombstones, codes never reissued
    daily_click_rollups                    ← (day, link_code, device, location) → clicks
    rollup_watermark                       ← last day covered by rollups

Key Behaviours
===============
- code is the only lookup key on the redirect path.
- click_count is maintained with atomic UPDATE statements, never read-modify-write.
- Click events carry no IP address or raw user agent.
- Timestamps are written from Python in UTC.

Classes:
    Link:  A short code and its destination.
    LinkTag:  A label attached to a link.
    ClickEvent:  One successful resolution.
    DeletedLink:  Tombstone of a deleted link.
    DailyClickRollup:  Pre-bucketed daily click counts.
    RollupWatermark:  Last day represented by rollups.
"""

import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from redirector.clock import utcnow
from redirector.database import Base

__all__ = ["Link", "LinkTag", "ClickEvent", "DeletedLink", "DailyClickRollup", "RollupWatermark"]

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
BigIntegerPK = BigInteger().with_variant(Integer, "sqlite")

CODE_MAX_LENGTH = 32


class Link(Base):
    __tablename__ = "links"

    id: Mapped[int] = mapped_column(BigIntegerPK, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(CODE_MAX_LENGTH), unique=True, nullable=False)
    destination: Mapped[str] = mapped_column(Text, nullable=False)
    owner_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    expires_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    click_count: Mapped[int] = mapped_column(BigInteger, default=0, index=True, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, index=True, nullable=False
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    tag_rows: Mapped[list["LinkTag"]] = relationship(
        back_populates="link",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="LinkTag.tag",
    )

    @property
    def tags(self) -> list[str]:
        return sorted(row.tag for row in self.tag_rows)

    def __repr__(self) -> str:
        return f"<Link(code='{self.code}', active={self.active}, click_count={self.click_count})>"


class LinkTag(Base):
    __tablename__ = "link_tags"

    id: Mapped[int] = mapped_column(BigIntegerPK, primary_key=True, autoincrement=True)
    link_code: Mapped[str] = mapped_column(
        String(CODE_MAX_LENGTH), ForeignKey("links.code", ondelete="CASCADE"), nullable=False
    )
    tag: Mapped[str] = mapped_column(String(64), index=True, nullable=False)

    link: Mapped[Link] = relationship(back_populates="tag_rows")

    __table_args__ = (UniqueConstraint("link_code", "tag", name="uq_link_tags_link_code_tag"),)


class ClickEvent(Base):
    __tablename__ = "click_events"

    id: Mapped[int] = mapped_column(BigIntegerPK, primary_key=True, autoincrement=True)
    link_code: Mapped[str] = mapped_column(String(CODE_MAX_LENGTH), nullable=False)
    occurred_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    device: Mapped[str] = mapped_column(String(16), nullable=False)
    location: Mapped[str] = mapped_column(String(16), index=True, nullable=False)

    __table_args__ = (Index("ix_click_events_link_code_occurred_at", "link_code", "occurred_at"),)

    def __repr__(self) -> str:
        return f"<ClickEvent(link_code='{self.link_code}', occurred_at={self.occurred_at})>"


class DeletedLink(Base):
    __tablename__ = "deleted_links"

    code: Mapped[str] = mapped_column(String(CODE_MAX_LENGTH), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    deleted_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class DailyClickRollup(Base):
    __tablename__ = "daily_click_rollups"

    id: Mapped[int] = mapped_column(BigIntegerPK, primary_key=True, autoincrement=True)
    day: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    link_code: Mapped[str] = mapped_column(String(CODE_MAX_LENGTH), nullable=False)
    device: Mapped[str] = mapped_column(String(16), nullable=False)
    location: Mapped[str] = mapped_column(String(16), nullable=False)
    clicks: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (
        UniqueConstraint("day", "link_code", "device", "location", name="uq_daily_click_rollups_bucket"),
        Index("ix_daily_click_rollups_link_code_day", "link_code", "day"),
    )


class RollupWatermark(Base):
    __tablename__ = "rollup_watermark"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    last_day: Mapped[datetime.date | None] = mapped_column(Date, nullable=True)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

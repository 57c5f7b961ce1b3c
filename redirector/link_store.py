"""Durable, indexed storage for links and click events.

The store is the only component that talks to the database. It offers
single-record operations keyed by short code, the filtered listing used by
management screens, the atomic click counter increment and the click event
append used by the recorder.

Flow Diagram — get(code, use_cache=True)
========================================
::
    ┌─────────────┐
    │  get(code)   │
    └──────┬──────┘
           ▼
    ┌─────────────┐   HIT    ┌─────────────┐
    │ Redis cache │────────▶│ Return link │
    │ link:{code} │          │ (transient) │
    └──────┬──────┘          └─────────────┘
     MISS / ERROR
           ▼
    ┌─────────────┐  none   ┌──────────────────┐
    │ SELECT by   │───────▶│ LinkNotFoundError │
    │ code (UNIQ) │         └──────────────────┘
    └──────┬──────┘
           ▼
    ┌─────────────────┐
    │ fill cache (TTL) │  skipped when the row is older
    │ unless stale     │  than the invalidation marker
    └─────────────────┘

Key Behaviours
===============
- Database failures are raised as StoreUnavailableError, never as not-found.
- Cache failures are logged and the lookup falls through to the database.
- increment_clicks is a single UPDATE ... SET click_count = click_count + n.
- Updates and deletes evict the cache entry for the code and leave an
  invalidation marker, so a lookup that read the row before the write cannot
  put the old row back into the cache.
- Deleting a link writes a tombstone; tombstoned codes cannot be created again.

Classes:
    LinkFilter:  Listing filters.
    LinkStore:  Session-bound storage operations.
"""

import datetime
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

import redis.asyncio as redis
from prometheus_client import Counter
from redis.exceptions import RedisError
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from redirector.clock import as_utc, utcnow
from redirector.enums import LinkSortField, SortOrder
from redirector.errors import LinkConflictError, LinkNotFoundError, StoreUnavailableError
from redirector.models import ClickEvent, DeletedLink, Link, LinkTag
from redirector.schemas import CachedLinkPayload, ClickRecord

__all__ = ["LinkFilter", "LinkStore"]

CACHE_HITS_TOTAL = Counter(
    "redirector_cache_hits_total",
    "Redirect lookups served from the Redis cache",
)
CACHE_MISSES_TOTAL = Counter(
    "redirector_cache_misses_total",
    "Redirect lookups that fell through to the database",
)
CACHE_ERRORS_TOTAL = Counter(
    "redirector_cache_errors_total",
    "Redis cache operations that failed",
)
DATABASE_READS_TOTAL = Counter(
    "redirector_database_reads_total",
    "Total database read operations",
)
DATABASE_WRITES_TOTAL = Counter(
    "redirector_database_writes_total",
    "Total database write operations",
)

_SORT_COLUMNS = {
    LinkSortField.CREATED_AT: Link.created_at,
    LinkSortField.CLICK_COUNT: Link.click_count,
    LinkSortField.CODE: Link.code,
}

_EPOCH = datetime.datetime(1970, 1, 1, tzinfo=datetime.timezone.utc)

# Greater than any row version; a deleted code is never cached again.
DELETED_VERSION = 2**53 - 1

# KEYS: cache key, marker key. ARGV: payload, ttl, row version.
FILL_SCRIPT = """
local marker = redis.call('GET', KEYS[2])
if marker and tonumber(ARGV[3]) < tonumber(marker) then
    return 0
end
redis.call('SET', KEYS[1], ARGV[1], 'EX', ARGV[2])
return 1
"""

# KEYS: cache key, marker key. ARGV: lowest version allowed back in, ttl.
INVALIDATE_SCRIPT = """
redis.call('DEL', KEYS[1])
redis.call('SET', KEYS[2], ARGV[1], 'EX', ARGV[2])
return 1
"""


@dataclass
class LinkFilter:
    owner_id: Optional[str] = None
    active: Optional[bool] = None
    tag: Optional[str] = None
    created_from: Optional[datetime.datetime] = None
    created_to: Optional[datetime.datetime] = None
    min_clicks: Optional[int] = None
    max_clicks: Optional[int] = None


def _cache_key(code: str) -> str:
    return f"link:{code}"


def _marker_key(code: str) -> str:
    return f"link-inval:{code}"


def _version(updated_at: Optional[datetime.datetime]) -> int:
    """Row version in microseconds since the epoch, from ``updated_at``."""
    if updated_at is None:
        return 0
    return (as_utc(updated_at) - _EPOCH) // datetime.timedelta(microseconds=1)


class LinkStore:
    """Storage operations bound to one database session.

    Args:
        db: Async session; the store commits its own writes.
        cache: Optional Redis client for the redirect read-through cache.
        logger: Logger or request-scoped adapter.
        cache_ttl_seconds: TTL applied to cached redirect payloads.
    """

    def __init__(
        self,
        db: AsyncSession,
        cache: Optional[redis.Redis] = None,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
        cache_ttl_seconds: int = 300,
    ) -> None:
        self._db = db
        self._cache = cache
        self._logger = logger or logging.getLogger("redirector")
        self._cache_ttl_seconds = cache_ttl_seconds

    @classmethod
    def from_context(cls, ctx) -> "LinkStore":
        return cls(
            ctx.database,
            cache=ctx.cache,
            logger=ctx.logger,
            cache_ttl_seconds=ctx.settings.LINK_CACHE_TTL_SECONDS,
        )

    # ========================================================================
    # SINGLE-RECORD OPERATIONS
    # ========================================================================

    async def get(self, code: str, use_cache: bool = False) -> Link:
        """Fetch a link by code.

        With ``use_cache`` the Redis cache is consulted first and the result
        may be a transient Link carrying only the fields the resolver needs.

        Raises:
            LinkNotFoundError: No link with this code exists.
            StoreUnavailableError: The database could not be queried.
        """
        if use_cache:
            cached = await self._get_cached(code)
            if cached is not None:
                return cached

        async with self._storage_errors("get"):
            result = await self._db.execute(select(Link).where(Link.code == code))
            DATABASE_READS_TOTAL.inc()
            link = result.scalar_one_or_none()

        if link is None:
            raise LinkNotFoundError(code)

        if use_cache:
            await self._set_cached(link)
        return link

    async def create(
        self,
        code: str,
        destination: str,
        owner_id: str,
        active: bool = True,
        expires_at: Optional[datetime.datetime] = None,
        tags: Optional[list[str]] = None,
    ) -> Link:
        """Insert a new link.

        Raises:
            LinkConflictError: The code exists or belonged to a deleted link.
        """
        async with self._storage_errors("create"):
            tombstone = await self._db.get(DeletedLink, code)
            DATABASE_READS_TOTAL.inc()
            if tombstone is not None:
                raise LinkConflictError(code)

            now = utcnow()
            link = Link(
                code=code,
                destination=destination,
                owner_id=owner_id,
                active=active,
                expires_at=expires_at,
                click_count=0,
                created_at=now,
                updated_at=now,
                tag_rows=[LinkTag(tag=tag) for tag in (tags or [])],
            )
            self._db.add(link)
            try:
                await self._db.commit()
            except IntegrityError as exc:
                await self._db.rollback()
                raise LinkConflictError(code) from exc
            DATABASE_WRITES_TOTAL.inc()

        self._logger.debug(f"Link stored: {code}")
        return link

    async def update(self, code: str, changes: dict) -> Link:
        """Apply a partial update of destination, active, expires_at and tags."""
        link = await self.get(code)

        async with self._storage_errors("update"):
            if "destination" in changes:
                link.destination = changes["destination"]
            if "active" in changes:
                link.active = changes["active"]
            if "expires_at" in changes:
                link.expires_at = changes["expires_at"]
            if "tags" in changes:
                self._replace_tags(link, changes["tags"])
            link.updated_at = utcnow()
            version = _version(link.updated_at)
            await self._db.commit()
            DATABASE_WRITES_TOTAL.inc()

        await self._evict(code, version)
        return link

    async def increment_clicks(self, code: str, delta: int = 1) -> None:
        """Atomically add ``delta`` to the link's click counter."""
        assert isinstance(delta, int) and delta > 0, f"delta must be positive int, got {delta!r}"

        async with self._storage_errors("increment_clicks"):
            result = await self._db.execute(
                update(Link)
                .where(Link.code == code)
                .values(click_count=Link.click_count + delta)
                .execution_options(synchronize_session=False)
            )
            await self._db.commit()
            DATABASE_WRITES_TOTAL.inc()

        if result.rowcount == 0:
            raise LinkNotFoundError(code)

    async def delete(self, code: str) -> None:
        """Remove a link, keep its click events and tombstone the code."""
        link = await self.get(code)

        async with self._storage_errors("delete"):
            self._db.add(DeletedLink(code=link.code, owner_id=link.owner_id, deleted_at=utcnow()))
            await self._db.delete(link)
            await self._db.commit()
            DATABASE_WRITES_TOTAL.inc()

        await self._evict(code, DELETED_VERSION)

    async def owner_of(self, code: str) -> str:
        """Owner of a live link, or of a deleted one through its tombstone."""
        async with self._storage_errors("owner_of"):
            owner_id = await self._db.scalar(select(Link.owner_id).where(Link.code == code))
            if owner_id is None:
                tombstone = await self._db.get(DeletedLink, code)
                owner_id = tombstone.owner_id if tombstone is not None else None
            DATABASE_READS_TOTAL.inc()

        if owner_id is None:
            raise LinkNotFoundError(code)
        return owner_id

    # ========================================================================
    # LISTING
    # ========================================================================

    async def list_links(
        self,
        filters: LinkFilter,
        page: int = 1,
        page_size: int = 20,
        sort: LinkSortField = LinkSortField.CREATED_AT,
        order: SortOrder = SortOrder.DESC,
    ) -> tuple[list[Link], int]:
        """Return one page of links matching ``filters`` and the total match count."""
        assert page >= 1, f"page must be >= 1, got {page!r}"
        assert page_size >= 1, f"page_size must be >= 1, got {page_size!r}"

        stmt = select(Link)
        if filters.owner_id is not None:
            stmt = stmt.where(Link.owner_id == filters.owner_id)
        if filters.active is not None:
            stmt = stmt.where(Link.active == filters.active)
        if filters.tag is not None:
            stmt = stmt.where(
                Link.code.in_(select(LinkTag.link_code).where(LinkTag.tag == filters.tag.lower()))
            )
        if filters.created_from is not None:
            stmt = stmt.where(Link.created_at >= as_utc(filters.created_from))
        if filters.created_to is not None:
            stmt = stmt.where(Link.created_at < as_utc(filters.created_to))
        if filters.min_clicks is not None:
            stmt = stmt.where(Link.click_count >= filters.min_clicks)
        if filters.max_clicks is not None:
            stmt = stmt.where(Link.click_count <= filters.max_clicks)

        column = _SORT_COLUMNS[sort]
        ordering = column.asc() if order is SortOrder.ASC else column.desc()

        async with self._storage_errors("list"):
            total = await self._db.scalar(select(func.count()).select_from(stmt.subquery()))
            result = await self._db.execute(
                stmt.order_by(ordering, Link.id.asc()).offset((page - 1) * page_size).limit(page_size)
            )
            DATABASE_READS_TOTAL.inc(2)
            links = list(result.scalars().all())

        return links, int(total or 0)

    # ========================================================================
    # CLICK EVENTS
    # ========================================================================

    async def append_click_event(self, record: ClickRecord) -> None:
        async with self._storage_errors("append_click_event"):
            self._db.add(
                ClickEvent(
                    link_code=record.link_code,
                    occurred_at=as_utc(record.occurred_at),
                    device=record.client_hint.device.value,
                    location=record.client_hint.location,
                )
            )
            await self._db.commit()
            DATABASE_WRITES_TOTAL.inc()

    # ========================================================================
    # PRIVATE HELPER METHODS
    # ========================================================================

    @asynccontextmanager
    async def _storage_errors(self, operation: str) -> AsyncIterator[None]:
        try:
            yield
        except (SQLAlchemyError, OSError) as exc:
            self._logger.error(
                f"Link store {operation} failed: {exc}",
                extra={"operation": operation},
            )
            try:
                await self._db.rollback()
            except (SQLAlchemyError, OSError):
                self._logger.debug("Rollback after store failure also failed", exc_info=True)
            raise StoreUnavailableError(f"Link store {operation} failed") from exc

    def _replace_tags(self, link: Link, tags: list[str]) -> None:
        wanted = set(tags)
        for row in list(link.tag_rows):
            if row.tag not in wanted:
                link.tag_rows.remove(row)
        present = {row.tag for row in link.tag_rows}
        for tag in sorted(wanted - present):
            link.tag_rows.append(LinkTag(tag=tag))

    async def _get_cached(self, code: str) -> Optional[Link]:
        if self._cache is None:
            return None
        try:
            raw = await self._cache.get(_cache_key(code))
        except (RedisError, OSError) as exc:
            CACHE_ERRORS_TOTAL.inc()
            self._logger.warning(f"Cache read failed for {code}: {exc}")
            return None

        if raw is None:
            CACHE_MISSES_TOTAL.inc()
            return None

        try:
            payload = CachedLinkPayload.model_validate_json(raw)
        except ValueError as exc:
            CACHE_ERRORS_TOTAL.inc()
            self._logger.error(f"Cache deserialization error for {code}: {exc}")
            return None

        CACHE_HITS_TOTAL.inc()
        return Link(
            code=payload.code,
            destination=payload.destination,
            active=payload.active,
            expires_at=payload.expires_at,
        )

    async def _set_cached(self, link: Link) -> None:
        if self._cache is None:
            return
        payload = CachedLinkPayload.model_validate(link)
        try:
            stored = await self._cache.eval(
                FILL_SCRIPT,
                2,
                _cache_key(link.code),
                _marker_key(link.code),
                payload.model_dump_json(),
                self._cache_ttl_seconds,
                _version(link.updated_at),
            )
            if not stored:
                self._logger.debug(f"Skipped caching {link.code}: changed since it was read")
        except (RedisError, OSError) as exc:
            CACHE_ERRORS_TOTAL.inc()
            self._logger.warning(f"Cache write failed for {link.code}: {exc}")

    async def _evict(self, code: str, version: int) -> None:
        if self._cache is None:
            return
        try:
            await self._cache.eval(
                INVALIDATE_SCRIPT, 2, _cache_key(code), _marker_key(code), version, self._cache_ttl_seconds
            )
        except (RedisError, OSError) as exc:
            CACHE_ERRORS_TOTAL.inc()
            self._logger.warning(f"Cache eviction failed for {code}: {exc}")

"""Query-time click statistics and the daily rollups that back them.

Raw click events are the source of truth. Closed days are folded into
``daily_click_rollups`` by ``rollup_through``; the watermark row records the
last day fully represented there. Every read combines the two sources:

::

    since ─────────────── watermark ─────────────── today
    │   daily_click_rollups   │      click_events       │
    └─────────────────────────┴─────────────────────────┘

so a query touches at most ``days since watermark`` of raw events no matter
how long its range is.

Key Behaviours
===============
- All reads are side-effect free and tolerate the counter lagging events.
- time_series returns exactly ``range_days`` points ending today (UTC),
  zero-count days included.
- Owner scope attributes events through the current ``links`` table, so
  clicks of deleted links leave owner reports but stay in system totals.
- rollup_day is idempotent (delete then insert for that day).

Classes:
    Aggregator:  Reporting queries and rollup maintenance.
"""

import collections
import datetime
import logging
from typing import Optional

from sqlalchemy import Date, and_, delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.sql.expression import FunctionElement

from redirector.clock import as_date, today, utcnow
from redirector.enums import AggregateScope, Dimension
from redirector.models import ClickEvent, DailyClickRollup, Link, RollupWatermark
from redirector.schemas import DimensionCount, SystemTotals, TimeSeriesPoint, TimeSeriesResponse

__all__ = ["Aggregator", "top_n"]

WATERMARK_ROW_ID = 1
SYSTEM_TOP_LOCATIONS = 10

_GROUP_DAY = "day"


def _day_start(day: datetime.date) -> datetime.datetime:
    return datetime.datetime.combine(day, datetime.time.min, tzinfo=datetime.timezone.utc)


class utc_date(FunctionElement):
    """Calendar day of a timestamp in UTC, independent of the session time zone."""

    type = Date()
    name = "utc_date"
    inherit_cache = True


@compiles(utc_date)
def _utc_date_default(element, compiler, **kw):
    return "date(%s)" % compiler.process(element.clauses, **kw)


@compiles(utc_date, "postgresql")
def _utc_date_postgresql(element, compiler, **kw):
    return "date(timezone('UTC', %s))" % compiler.process(element.clauses, **kw)


def top_n(counts: dict[str, int], limit: Optional[int] = None) -> list[DimensionCount]:
    """Sort a value -> count mapping by count descending, ties by value."""
    ordered = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    if limit is not None:
        ordered = ordered[:limit]
    return [DimensionCount(value=value, clicks=clicks) for value, clicks in ordered]


class Aggregator:
    def __init__(
        self,
        db: AsyncSession,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
        max_range_days: int = 366,
        rebuild_days: int = 2,
        settle_seconds: float = 0.0,
    ) -> None:
        assert rebuild_days >= 0, f"rebuild_days must be >= 0, got {rebuild_days!r}"
        self._db = db
        self._logger = logger or logging.getLogger("redirector")
        self._max_range_days = max_range_days
        self._rebuild_days = rebuild_days
        self._settle_seconds = settle_seconds

    @classmethod
    def from_context(cls, ctx) -> "Aggregator":
        return cls(ctx.database, logger=ctx.logger, max_range_days=ctx.settings.ANALYTICS_MAX_RANGE_DAYS)

    # ========================================================================
    # REPORTING QUERIES
    # ========================================================================

    async def time_series(self, scope: AggregateScope, key: Optional[str], range_days: int) -> TimeSeriesResponse:
        """Daily click counts for the last ``range_days`` days, oldest first."""
        self._check_range(range_days)
        end = today()
        start = end - datetime.timedelta(days=range_days - 1)

        counts = await self._counts((_GROUP_DAY,), scope, key, since=start)
        points = []
        for offset in range(range_days):
            day = start + datetime.timedelta(days=offset)
            points.append(TimeSeriesPoint(date=day, clicks=counts.get((day,), 0)))

        return TimeSeriesResponse(
            scope=scope.value,
            key=key or "",
            days=range_days,
            total=sum(point.clicks for point in points),
            points=points,
        )

    async def by_dimension(
        self,
        scope: AggregateScope,
        key: Optional[str],
        dimension: Dimension,
        range_days: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> dict[str, int]:
        """Click counts per device class or per location; all time unless ``range_days`` is set.

        With ``limit`` only the top ``limit`` values are kept, ranked as in top_n.
        """
        since = None
        if range_days is not None:
            self._check_range(range_days)
            since = today() - datetime.timedelta(days=range_days - 1)

        counts = await self._counts((dimension.value,), scope, key, since=since)
        by_value = {values[0]: clicks for values, clicks in counts.items()}
        if limit is not None:
            return {entry.value: entry.clicks for entry in top_n(by_value, limit)}
        return by_value

    async def system_totals(self) -> SystemTotals:
        now = utcnow()
        counts = await self._counts((Dimension.DEVICE.value, Dimension.LOCATION.value), AggregateScope.SYSTEM, None)

        devices: collections.Counter[str] = collections.Counter()
        locations: collections.Counter[str] = collections.Counter()
        for (device, location), clicks in counts.items():
            devices[device] += clicks
            locations[location] += clicks

        active_links = await self._db.scalar(
            select(func.count())
            .select_from(Link)
            .where(Link.active.is_(True), or_(Link.expires_at.is_(None), Link.expires_at > now))
        )

        return SystemTotals(
            total_clicks=sum(counts.values()),
            distinct_active_link_count=int(active_links or 0),
            top_locations=top_n(dict(locations), SYSTEM_TOP_LOCATIONS),
            device_distribution=dict(devices),
        )

    # ========================================================================
    # ROLLUPS
    # ========================================================================

    async def watermark(self) -> Optional[datetime.date]:
        row = await self._db.get(RollupWatermark, WATERMARK_ROW_ID)
        if row is None or row.last_day is None:
            return None
        return as_date(row.last_day)

    async def rollup_day(self, day: datetime.date) -> int:
        """Rebuild the rollup rows of one day from raw events. Returns rows written."""
        start = _day_start(day)
        end = start + datetime.timedelta(days=1)

        result = await self._db.execute(
            select(ClickEvent.link_code, ClickEvent.device, ClickEvent.location, func.count())
            .where(ClickEvent.occurred_at >= start, ClickEvent.occurred_at < end)
            .group_by(ClickEvent.link_code, ClickEvent.device, ClickEvent.location)
        )
        rows = [
            DailyClickRollup(day=day, link_code=link_code, device=device, location=location, clicks=clicks)
            for link_code, device, location, clicks in result.all()
        ]

        await self._db.execute(delete(DailyClickRollup).where(DailyClickRollup.day == day))
        self._db.add_all(rows)
        await self._db.commit()
        return len(rows)

    async def rollup_through(self, last_day: Optional[datetime.date] = None) -> list[datetime.date]:
        """Roll up closed days up to ``last_day`` and advance the watermark.

        ``last_day`` defaults to the last day that closed more than
        ``settle_seconds`` ago, so clicks still queued or being retried by the
        recorder land before their day is first rolled up. The last
        ``rebuild_days`` days already under the watermark are rebuilt on every
        call to pick up events that arrived after all.
        """
        last_day = last_day or self.last_settled_day()
        assert last_day < today(), f"only closed days can be rolled up, got {last_day}"

        current = await self.watermark()
        if current is not None:
            first_day = current + datetime.timedelta(days=1) - datetime.timedelta(days=self._rebuild_days)
        else:
            earliest = await self._db.scalar(select(func.min(ClickEvent.occurred_at)))
            first_day = as_date(earliest) if earliest is not None else last_day + datetime.timedelta(days=1)

        rolled: list[datetime.date] = []
        day = first_day
        while day <= last_day:
            written = await self.rollup_day(day)
            self._logger.debug(f"Rolled up {day}: {written} buckets")
            rolled.append(day)
            day += datetime.timedelta(days=1)

        if current is None or last_day > current:
            await self._set_watermark(last_day)
            self._logger.info(f"Rollup watermark advanced to {last_day} ({len(rolled)} days rolled up)")
        return rolled

    # ========================================================================
    # PRIVATE HELPER METHODS
    # ========================================================================

    def last_settled_day(self) -> datetime.date:
        """Latest UTC day whose end lies at least ``settle_seconds`` in the past."""
        settled = utcnow() - datetime.timedelta(seconds=self._settle_seconds)
        return settled.date() - datetime.timedelta(days=1)

    def _check_range(self, range_days: int) -> None:
        if not 1 <= range_days <= self._max_range_days:
            raise ValueError(f"range_days must be between 1 and {self._max_range_days}")

    async def _set_watermark(self, day: datetime.date) -> None:
        row = await self._db.get(RollupWatermark, WATERMARK_ROW_ID)
        if row is None:
            self._db.add(RollupWatermark(id=WATERMARK_ROW_ID, last_day=day, updated_at=utcnow()))
        else:
            row.last_day = day
            row.updated_at = utcnow()
        await self._db.commit()

    async def _counts(
        self,
        group_by: tuple[str, ...],
        scope: AggregateScope,
        key: Optional[str],
        since: Optional[datetime.date] = None,
    ) -> dict[tuple, int]:
        """Click counts grouped by ``group_by`` over rollups up to the watermark and raw events after it."""
        watermark = await self.watermark()
        counts: collections.Counter[tuple] = collections.Counter()

        if watermark is not None and (since is None or since <= watermark):
            columns = [getattr(DailyClickRollup, name) for name in group_by]
            conditions = [DailyClickRollup.day <= watermark, *self._scope_conditions(DailyClickRollup.link_code, scope, key)]
            if since is not None:
                conditions.append(DailyClickRollup.day >= since)
            result = await self._db.execute(
                select(*columns, func.sum(DailyClickRollup.clicks)).where(and_(*conditions)).group_by(*columns)
            )
            for *values, clicks in result.all():
                counts[self._normalise(group_by, values)] += int(clicks or 0)

        raw_since = since
        if watermark is not None:
            after_watermark = watermark + datetime.timedelta(days=1)
            raw_since = after_watermark if since is None else max(since, after_watermark)

        day_expr = utc_date(ClickEvent.occurred_at)
        columns = [day_expr if name == _GROUP_DAY else getattr(ClickEvent, name) for name in group_by]
        conditions = list(self._scope_conditions(ClickEvent.link_code, scope, key))
        if raw_since is not None:
            conditions.append(ClickEvent.occurred_at >= _day_start(raw_since))
        stmt = select(*columns, func.count()).group_by(*columns)
        if conditions:
            stmt = stmt.where(and_(*conditions))
        result = await self._db.execute(stmt)
        for *values, clicks in result.all():
            counts[self._normalise(group_by, values)] += int(clicks)

        return dict(counts)

    @staticmethod
    def _scope_conditions(code_column, scope: AggregateScope, key: Optional[str]) -> list:
        if scope is AggregateScope.LINK:
            return [code_column == key]
        if scope is AggregateScope.OWNER:
            return [code_column.in_(select(Link.code).where(Link.owner_id == key))]
        return []

    @staticmethod
    def _normalise(group_by: tuple[str, ...], values: list) -> tuple:
        return tuple(as_date(value) if name == _GROUP_DAY else value for name, value in zip(group_by, values))

"""Aggregator tests over raw events, daily rollups and their combination."""

import datetime
import os

import pytest
import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.dialects import postgresql, sqlite

import redirector.aggregator as aggregator_module
from redirector.aggregator import Aggregator, top_n, utc_date
from redirector.clock import today
from redirector.enums import AggregateScope, Dimension
from redirector.models import ClickEvent


def _at(days_ago: int, hour: int = 12) -> datetime.datetime:
    day = today() - datetime.timedelta(days=days_ago)
    return datetime.datetime.combine(day, datetime.time(hour), tzinfo=datetime.timezone.utc)


@pytest_asyncio.fixture
async def seeded(session_factory, make_link):
    """Two owners, four links and a spread of clicks over the last twelve days."""
    await make_link("a1", owner_id="owner-1")
    await make_link("a2", owner_id="owner-1")
    await make_link("b1", owner_id="owner-2")
    await make_link("off1", owner_id="owner-2", active=False)

    events = [
        ("a1", 0, "mobile", "US"),
        ("a1", 0, "desktop", "US"),
        ("a1", 2, "mobile", "DE"),
        ("a1", 10, "bot", "unknown"),
        ("a2", 1, "desktop", "FR"),
        ("b1", 1, "tablet", "US"),
        ("b1", 3, "mobile", "DE"),
    ]
    async with session_factory() as session:
        session.add_all(
            ClickEvent(link_code=code, occurred_at=_at(days_ago), device=device, location=location)
            for code, days_ago, device, location in events
        )
        await session.commit()
    return events


@pytest.mark.asyncio
async def test_time_series_zero_fills_range(db_session, seeded) -> None:
    series = await Aggregator(db_session).time_series(AggregateScope.LINK, "a1", 7)

    assert series.days == 7
    assert len(series.points) == 7
    assert series.points[0].date == today() - datetime.timedelta(days=6)
    assert series.points[-1].date == today()
    assert [point.clicks for point in series.points] == [0, 0, 0, 0, 1, 0, 2]
    assert series.total == 3


@pytest.mark.asyncio
async def test_time_series_owner_scope(db_session, seeded) -> None:
    series = await Aggregator(db_session).time_series(AggregateScope.OWNER, "owner-1", 30)

    assert len(series.points) == 30
    assert series.total == 5


@pytest.mark.asyncio
async def test_time_series_for_link_without_clicks(db_session, seeded) -> None:
    series = await Aggregator(db_session).time_series(AggregateScope.LINK, "off1", 3)

    assert [point.clicks for point in series.points] == [0, 0, 0]
    assert series.total == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("range_days", [0, -1, 367])
async def test_time_series_rejects_bad_range(db_session, range_days: int) -> None:
    with pytest.raises(ValueError):
        await Aggregator(db_session, max_range_days=366).time_series(AggregateScope.LINK, "a1", range_days)


@pytest.mark.asyncio
async def test_by_dimension(db_session, seeded) -> None:
    aggregator = Aggregator(db_session)

    devices = await aggregator.by_dimension(AggregateScope.LINK, "a1", Dimension.DEVICE)
    assert devices == {"mobile": 2, "desktop": 1, "bot": 1}

    recent = await aggregator.by_dimension(AggregateScope.LINK, "a1", Dimension.DEVICE, range_days=7)
    assert recent == {"mobile": 2, "desktop": 1}

    locations = await aggregator.by_dimension(AggregateScope.OWNER, "owner-2", Dimension.LOCATION)
    assert locations == {"US": 1, "DE": 1}

    top_two = await aggregator.by_dimension(AggregateScope.SYSTEM, None, Dimension.LOCATION, limit=2)
    assert top_two == {"US": 3, "DE": 2}


@pytest.mark.asyncio
async def test_system_totals(db_session, seeded, make_link) -> None:
    past = datetime.datetime.now(datetime.timezone.utc) - datetime.timedelta(days=1)
    await make_link("exp1", expires_at=past)

    totals = await Aggregator(db_session).system_totals()

    assert totals.total_clicks == len(seeded)
    assert totals.distinct_active_link_count == 3
    assert [(entry.value, entry.clicks) for entry in totals.top_locations] == [
        ("US", 3),
        ("DE", 2),
        ("FR", 1),
        ("unknown", 1),
    ]
    assert totals.device_distribution == {"mobile": 3, "desktop": 2, "tablet": 1, "bot": 1}


def test_top_n_orders_by_count_then_value() -> None:
    ranked = top_n({"b": 2, "a": 2, "c": 5, "d": 1}, limit=3)
    assert [(entry.value, entry.clicks) for entry in ranked] == [("c", 5), ("a", 2), ("b", 2)]


# ============================================================================
# ROLLUPS
# ============================================================================


@pytest.mark.asyncio
async def test_rollup_preserves_query_results(session_factory, seeded) -> None:
    async with session_factory() as session:
        aggregator = Aggregator(session)
        before_series = await aggregator.time_series(AggregateScope.OWNER, "owner-1", 14)
        before_devices = await aggregator.by_dimension(AggregateScope.SYSTEM, None, Dimension.DEVICE)

    async with session_factory() as session:
        rolled = await Aggregator(session).rollup_through()

    yesterday = today() - datetime.timedelta(days=1)
    assert rolled[0] == today() - datetime.timedelta(days=10)
    assert rolled[-1] == yesterday

    async with session_factory() as session:
        aggregator = Aggregator(session)
        assert await aggregator.watermark() == yesterday
        assert await aggregator.time_series(AggregateScope.OWNER, "owner-1", 14) == before_series
        assert await aggregator.by_dimension(AggregateScope.SYSTEM, None, Dimension.DEVICE) == before_devices


@pytest.mark.asyncio
async def test_rollup_combines_with_new_raw_events(session_factory, seeded) -> None:
    async with session_factory() as session:
        await Aggregator(session).rollup_through()

    async with session_factory() as session:
        session.add(ClickEvent(link_code="a1", occurred_at=_at(0, hour=0), device="mobile", location="US"))
        await session.commit()

    async with session_factory() as session:
        series = await Aggregator(session).time_series(AggregateScope.LINK, "a1", 7)

    assert series.points[-1].clicks == 3
    assert series.points[-3].clicks == 1
    assert series.total == 4


@pytest.mark.asyncio
async def test_rollup_is_idempotent_and_incremental(session_factory, seeded) -> None:
    two_days_ago = today() - datetime.timedelta(days=2)
    async with session_factory() as session:
        aggregator = Aggregator(session)
        first = await aggregator.rollup_through(two_days_ago)
        assert await aggregator.rollup_day(two_days_ago) == await aggregator.rollup_day(two_days_ago)

    async with session_factory() as session:
        second = await Aggregator(session).rollup_through()

    assert first[-1] == two_days_ago
    assert second == [today() - datetime.timedelta(days=days_ago) for days_ago in (3, 2, 1)]

    async with session_factory() as session:
        totals = await Aggregator(session).system_totals()
    assert totals.total_clicks == len(seeded)


@pytest.mark.asyncio
async def test_rollup_refuses_open_day(db_session) -> None:
    with pytest.raises(AssertionError):
        await Aggregator(db_session).rollup_through(today())


@pytest.mark.asyncio
async def test_rollup_picks_up_late_event_for_rolled_day(session_factory, make_link) -> None:
    await make_link("late1")
    async with session_factory() as session:
        await Aggregator(session).rollup_through()

    yesterday = today() - datetime.timedelta(days=1)
    last_second = datetime.datetime.combine(yesterday, datetime.time(23, 59, 59), tzinfo=datetime.timezone.utc)
    async with session_factory() as session:
        session.add(ClickEvent(link_code="late1", occurred_at=last_second, device="mobile", location="US"))
        await session.commit()

    async with session_factory() as session:
        rolled = await Aggregator(session).rollup_through()
    assert yesterday in rolled

    async with session_factory() as session:
        series = await Aggregator(session).time_series(AggregateScope.LINK, "late1", 7)
    assert series.points[-2].clicks == 1
    assert series.total == 1


@pytest.mark.asyncio
async def test_rollup_without_rebuild_window_only_advances(session_factory, seeded) -> None:
    two_days_ago = today() - datetime.timedelta(days=2)
    async with session_factory() as session:
        await Aggregator(session, rebuild_days=0).rollup_through(two_days_ago)
    async with session_factory() as session:
        rolled = await Aggregator(session, rebuild_days=0).rollup_through()

    assert rolled == [today() - datetime.timedelta(days=1)]


def test_last_settled_day_waits_for_settle_lag(monkeypatch) -> None:
    just_after_midnight = datetime.datetime.combine(today(), datetime.time(0, 5), tzinfo=datetime.timezone.utc)
    monkeypatch.setattr(aggregator_module, "utcnow", lambda: just_after_midnight)

    assert Aggregator(None, settle_seconds=0).last_settled_day() == today() - datetime.timedelta(days=1)
    assert Aggregator(None, settle_seconds=900).last_settled_day() == today() - datetime.timedelta(days=2)


def test_utc_date_compiles_per_dialect() -> None:
    expr = utc_date(ClickEvent.occurred_at)
    assert str(expr.compile(dialect=postgresql.dialect())) == "date(timezone('UTC', click_events.occurred_at))"
    assert str(expr.compile(dialect=sqlite.dialect())) == "date(click_events.occurred_at)"


@pytest.mark.asyncio
@pytest.mark.skipif(
    not os.environ["DATABASE_URL"].startswith("postgresql"), reason="session time zones need PostgreSQL"
)
async def test_day_buckets_ignore_session_time_zone(session_factory, make_link) -> None:
    await make_link("tz1")
    early_utc = datetime.datetime.combine(today(), datetime.time(2), tzinfo=datetime.timezone.utc)
    async with session_factory() as session:
        session.add(ClickEvent(link_code="tz1", occurred_at=early_utc, device="desktop", location="US"))
        await session.commit()

    async with session_factory() as session:
        await session.execute(text("SET TIME ZONE 'America/New_York'"))
        series = await Aggregator(session).time_series(AggregateScope.LINK, "tz1", 2)

    assert [point.clicks for point in series.points] == [0, 1]

"""Background worker that folds closed days of click events into daily rollups.

Runs next to the API, not inside it::

    python -m redirector.rollup_worker

Each cycle rebuilds the last ROLLUP_REBUILD_DAYS days under the watermark,
rolls up every later day that closed at least ROLLUP_SETTLE_SECONDS ago (UTC),
then sleeps ROLLUP_INTERVAL_SECONDS. A failed cycle is logged and retried on
the next one; rollup_day is idempotent so partial cycles are harmless.
"""

import asyncio
import datetime
import logging
import os

from prometheus_client import Counter, Gauge, start_http_server
from sqlalchemy.exc import SQLAlchemyError

from redirector.aggregator import Aggregator
from redirector.config import get_settings
from redirector.database import async_session, close_db, init_db

__all__ = ["run", "run_once"]

settings = get_settings()
logger = logging.getLogger("redirector.rollup")

ROLLUP_DAYS_TOTAL = Counter(
    "rollup_days_total",
    "Days folded into daily click rollups",
)
ROLLUP_FAILURES_TOTAL = Counter(
    "rollup_failures_total",
    "Rollup cycles that failed",
)
ROLLUP_WATERMARK_TIMESTAMP = Gauge(
    "rollup_watermark_timestamp_seconds",
    "Midnight UTC of the last day covered by rollups",
)


def _midnight_utc(day: datetime.date) -> datetime.datetime:
    return datetime.datetime.combine(day, datetime.time.min, tzinfo=datetime.timezone.utc)


async def run_once(session_factory=async_session) -> int:
    async with session_factory() as session:
        aggregator = Aggregator(
            session,
            logger=logger,
            rebuild_days=settings.ROLLUP_REBUILD_DAYS,
            settle_seconds=settings.ROLLUP_SETTLE_SECONDS,
        )
        rolled = await aggregator.rollup_through()
        watermark = await aggregator.watermark()

    ROLLUP_DAYS_TOTAL.inc(len(rolled))
    if watermark is not None:
        ROLLUP_WATERMARK_TIMESTAMP.set(_midnight_utc(watermark).timestamp())
    return len(rolled)


async def run() -> None:
    metrics_port = int(os.getenv("ROLLUP_METRICS_PORT", "9300"))
    start_http_server(metrics_port)
    await init_db()

    logger.info(f"Rollup worker started, interval {settings.ROLLUP_INTERVAL_SECONDS}s")
    try:
        while True:
            try:
                rolled = await run_once()
                if rolled:
                    logger.info(f"Rolled up {rolled} days")
            except (SQLAlchemyError, OSError):
                ROLLUP_FAILURES_TOTAL.inc()
                logger.exception("Rollup cycle failed")
            await asyncio.sleep(settings.ROLLUP_INTERVAL_SECONDS)
    finally:
        await close_db()


if __name__ == "__main__":
    logging.basicConfig(level=settings.LOG_LEVEL.upper(), format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    asyncio.run(run())

"""Asynchronous click accounting off the redirect critical path.

The resolver hands each successful resolution to ``ClickRecorder.submit``,
which only enqueues. Worker tasks then persist the click in two independent
steps, each in its own session and transaction:

1. append a ClickEvent row;
2. atomically increment the link's click_count.

Flow Diagram — one click
========================
::
    submit() ──put_nowait──▶ bounded asyncio.Queue ──▶ worker
         │ QueueFull                                    │
         ▼                                              ▼
    drop + log                          ┌──────────────────────────┐
                                        │ append event   (retry ≤N) │
                                        │ increment count (retry ≤N)│
                                        └────────────┬─────────────┘
                                    all applied      │      some failed
                                  ┌──────────────────┴──────────────────┐
                                  ▼                                     ▼
                          publish to Kafka                    dead-letter (log +
                          (best-effort)                       Redis stream XADD)

Key Behaviours
===============
- submit() never blocks and never raises; overflow drops the click with a log line.
- An effect that succeeded is never repeated, so retries cannot double count.
- Retries are bounded by RECORDER_MAX_ATTEMPTS with linear backoff.
- Failures are logged and counted, never propagated to the HTTP caller.
- A click for a link deleted in the meantime keeps its event; the counter
  increment is skipped.
- stop() drains within a grace period, then abandons what is left and logs it.

Classes:
    ClickRecorder:  Queue, workers and recording policy.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Optional

import redis.asyncio as redis
from aiokafka.errors import KafkaError
from prometheus_client import Counter, Gauge
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from redirector.config import Settings
from redirector.errors import LinkNotFoundError, StoreUnavailableError
from redirector.publisher import click_publisher
from redirector.link_store import LinkStore
from redirector.schemas import ClickRecord

__all__ = ["ClickRecorder"]

CLICKS_SUBMITTED_TOTAL = Counter(
    "redirector_clicks_submitted_total",
    "Clicks handed to the recorder",
)
CLICKS_RECORDED_TOTAL = Counter(
    "redirector_clicks_recorded_total",
    "Clicks whose event and counter increment were both persisted",
)
CLICKS_DROPPED_TOTAL = Counter(
    "redirector_clicks_dropped_total",
    "Clicks dropped before any recording attempt",
    ["reason"],
)
RECORDING_FAILURES_TOTAL = Counter(
    "redirector_recording_failures_total",
    "Recording steps that failed after all attempts",
    ["effect"],
)
CLICKS_DEAD_LETTERED_TOTAL = Counter(
    "redirector_clicks_dead_lettered_total",
    "Clicks written to the dead-letter stream",
)
CLICK_EVENTS_PUBLISHED_TOTAL = Counter(
    "redirector_click_events_published_total",
    "Recorded clicks published to Kafka",
)
RECORDER_QUEUE_DEPTH = Gauge(
    "redirector_recorder_queue_depth",
    "Clicks waiting in the recorder queue",
)

EFFECT_APPEND = "append_event"
EFFECT_INCREMENT = "increment_clicks"


class ClickRecorder:
    """Bounded queue plus worker tasks that persist clicks.

    Args:
        session_factory: Factory for the per-attempt database sessions.
        cache: Optional Redis client used for the dead-letter stream.
        logger: Logger for recording failures.
        queue_size: Maximum number of clicks waiting to be recorded.
        workers: Number of concurrent worker tasks.
        max_attempts: Attempts per effect before giving up.
        retry_delay_seconds: Base delay between attempts.
        dead_letter_stream: Redis stream key for clicks that could not be recorded.
        publisher: Coroutine publishing a recorded click downstream.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: Optional[redis.Redis] = None,
        logger: logging.Logger | None = None,
        queue_size: int = 10000,
        workers: int = 4,
        max_attempts: int = 3,
        retry_delay_seconds: float = 0.05,
        dead_letter_stream: str = "click_dead_letter",
        publisher: Optional[Callable[[ClickRecord], Awaitable[bool]]] = None,
    ) -> None:
        assert queue_size > 0, f"queue_size must be positive, got {queue_size!r}"
        assert workers > 0, f"workers must be positive, got {workers!r}"
        assert max_attempts > 0, f"max_attempts must be positive, got {max_attempts!r}"

        self._session_factory = session_factory
        self._cache = cache
        self._logger = logger or logging.getLogger("redirector")
        self._queue_size = queue_size
        self._worker_count = workers
        self._max_attempts = max_attempts
        self._retry_delay_seconds = retry_delay_seconds
        self._dead_letter_stream = dead_letter_stream
        self._publisher = publisher or click_publisher.publish

        self._queue: asyncio.Queue[ClickRecord] | None = None
        self._workers: list[asyncio.Task] = []
        self._accepting = False
        self._in_flight = 0

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        cache: Optional[redis.Redis] = None,
        logger: logging.Logger | None = None,
    ) -> "ClickRecorder":
        return cls(
            session_factory,
            cache=cache,
            logger=logger,
            queue_size=settings.RECORDER_QUEUE_SIZE,
            workers=settings.RECORDER_WORKERS,
            max_attempts=settings.RECORDER_MAX_ATTEMPTS,
            retry_delay_seconds=settings.RECORDER_RETRY_DELAY_SECONDS,
            dead_letter_stream=settings.RECORDER_DEAD_LETTER_STREAM,
        )

    @property
    def running(self) -> bool:
        return self._accepting

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    async def start(self) -> None:
        if self._accepting:
            return
        self._queue = asyncio.Queue(maxsize=self._queue_size)
        self._workers = [
            asyncio.create_task(self._worker(), name=f"click-recorder-{index}")
            for index in range(self._worker_count)
        ]
        self._accepting = True
        self._logger.info(f"Click recorder started with {self._worker_count} workers")

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait until every queued click has been processed.

        Returns:
            bool: False if ``timeout`` elapsed first.
        """
        if self._queue is None:
            return True
        try:
            await asyncio.wait_for(self._queue.join(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def stop(self, grace_seconds: float = 5.0) -> int:
        """Stop accepting clicks, drain for up to ``grace_seconds``, then cancel.

        Returns:
            int: Number of clicks abandoned unrecorded.
        """
        if self._queue is None:
            return 0

        self._accepting = False
        drained = await self.drain(grace_seconds)
        abandoned = 0 if drained else self._queue.qsize() + self._in_flight

        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self._queue = None
        self._in_flight = 0
        RECORDER_QUEUE_DEPTH.set(0)

        if abandoned:
            self._logger.error(
                f"Click recorder stopped with {abandoned} clicks abandoned after {grace_seconds}s grace",
                extra={"operation": "recorder_stop", "abandoned": abandoned},
            )
        else:
            self._logger.info("Click recorder stopped cleanly")
        return abandoned

    # ========================================================================
    # HAND-OFF
    # ========================================================================

    def submit(self, record: ClickRecord) -> bool:
        """Enqueue a click without waiting. Returns False if it was dropped."""
        CLICKS_SUBMITTED_TOTAL.inc()
        if not self._accepting or self._queue is None:
            CLICKS_DROPPED_TOTAL.labels(reason="stopped").inc()
            self._logger.warning(
                f"Click for {record.link_code} dropped: recorder not running",
                extra={"operation": "record_click", "short_code": record.link_code},
            )
            return False

        try:
            self._queue.put_nowait(record)
        except asyncio.QueueFull:
            CLICKS_DROPPED_TOTAL.labels(reason="queue_full").inc()
            self._logger.warning(
                f"Click for {record.link_code} dropped: recorder queue full ({self._queue_size})",
                extra={"operation": "record_click", "short_code": record.link_code},
            )
            return False

        RECORDER_QUEUE_DEPTH.set(self._queue.qsize())
        return True

    # ========================================================================
    # WORKERS
    # ========================================================================

    async def _worker(self) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            record = await queue.get()
            self._in_flight += 1
            RECORDER_QUEUE_DEPTH.set(queue.qsize())
            try:
                await self._record(record)
            except Exception:
                self._logger.exception(f"Unexpected error recording click for {record.link_code}")
            finally:
                self._in_flight -= 1
                queue.task_done()

    async def _record(self, record: ClickRecord) -> None:
        failed: list[str] = []

        if not await self._attempt(EFFECT_APPEND, record, lambda store: store.append_click_event(record)):
            failed.append(EFFECT_APPEND)
        if not await self._attempt(
            EFFECT_INCREMENT, record, lambda store: store.increment_clicks(record.link_code, 1)
        ):
            failed.append(EFFECT_INCREMENT)

        if failed:
            await self._dead_letter(record, failed)
            return

        CLICKS_RECORDED_TOTAL.inc()
        await self._publish(record)

    async def _attempt(
        self,
        effect: str,
        record: ClickRecord,
        operation: Callable[[LinkStore], Awaitable[None]],
    ) -> bool:
        for attempt in range(1, self._max_attempts + 1):
            try:
                async with self._session_factory() as session:
                    await operation(LinkStore(session, logger=self._logger))
                return True
            except LinkNotFoundError:
                self._logger.warning(
                    f"Link {record.link_code} disappeared before {effect}; skipping",
                    extra={"operation": effect, "short_code": record.link_code},
                )
                return True
            except StoreUnavailableError as exc:
                self._logger.warning(
                    f"{effect} attempt {attempt}/{self._max_attempts} failed for {record.link_code}: {exc}",
                    extra={"operation": effect, "short_code": record.link_code, "attempt": attempt},
                )
                if attempt < self._max_attempts:
                    await asyncio.sleep(self._retry_delay_seconds * attempt)

        RECORDING_FAILURES_TOTAL.labels(effect=effect).inc()
        return False

    async def _dead_letter(self, record: ClickRecord, failed: list[str]) -> None:
        CLICKS_DEAD_LETTERED_TOTAL.inc()
        self._logger.error(
            f"Click for {record.link_code} could not be fully recorded: {', '.join(failed)}",
            extra={"operation": "dead_letter", "short_code": record.link_code, "failed": failed},
        )
        if self._cache is None:
            return
        try:
            await self._cache.xadd(
                self._dead_letter_stream,
                {
                    "link_code": record.link_code,
                    "occurred_at": record.occurred_at.isoformat(),
                    "device": record.client_hint.device.value,
                    "location": record.client_hint.location,
                    "failed": ",".join(failed),
                },
                maxlen=100000,
                approximate=True,
            )
        except (RedisError, OSError) as exc:
            self._logger.error(f"Dead-letter write failed for {record.link_code}: {exc}")

    async def _publish(self, record: ClickRecord) -> None:
        try:
            if await self._publisher(record):
                CLICK_EVENTS_PUBLISHED_TOTAL.inc()
        except (KafkaError, OSError) as exc:
            self._logger.warning(f"Kafka publish error for {record.link_code}: {exc}")

"""Downstream feed of recorded clicks.

Once the recorder has stored a click it hands the record to the
``ClickPublisher``, which sends a flat ``click.recorded`` message to
``KAFKA_CLICK_TOPIC``. Messages are keyed by link code. Publishing is
best-effort: a missing broker at startup disables the feed for the process,
and an empty ``KAFKA_BOOTSTRAP_SERVERS`` never starts it.

Message (JSON value, UTF-8)::

    {
        "link_code": "abc123",
        "occurred_at": "2026-10-17T08:15:00+00:00",
        "device": "mobile",
        "location": "US"
    }

Header ``event`` is ``click.recorded``.
"""

import json
import logging
from typing import Optional

from aiokafka import AIOKafkaProducer
from aiokafka.errors import KafkaError

from redirector.clock import as_utc
from redirector.config import Settings, get_settings
from redirector.schemas import ClickRecord

__all__ = ["CLICK_EVENT_HEADER", "ClickPublisher", "click_publisher", "click_message"]

CLICK_EVENT_HEADER = ("event", b"click.recorded")


def click_message(record: ClickRecord) -> dict:
    return {
        "link_code": record.link_code,
        "occurred_at": as_utc(record.occurred_at).isoformat(),
        "device": record.client_hint.device.value,
        "location": record.client_hint.location,
    }


class ClickPublisher:
    """Owns the Kafka producer for recorded clicks.

    Args:
        bootstrap_servers: Broker list; empty disables publishing.
        topic: Topic receiving ``click.recorded`` messages.
        logger: Logger for startup failures.
    """

    def __init__(self, bootstrap_servers: str, topic: str, logger: Optional[logging.Logger] = None) -> None:
        self._bootstrap_servers = bootstrap_servers
        self._topic = topic
        self._logger = logger or logging.getLogger("redirector")
        self._producer: AIOKafkaProducer | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "ClickPublisher":
        return cls(settings.KAFKA_BOOTSTRAP_SERVERS, settings.KAFKA_CLICK_TOPIC)

    @property
    def started(self) -> bool:
        return self._producer is not None

    async def start(self) -> None:
        if self._producer is not None or not self._bootstrap_servers:
            return

        producer = AIOKafkaProducer(
            bootstrap_servers=self._bootstrap_servers,
            value_serializer=lambda message: json.dumps(message).encode("utf-8"),
        )
        try:
            await producer.start()
        except (KafkaError, OSError) as exc:
            self._logger.warning(f"Kafka unavailable, recorded clicks will not be published: {exc}")
            await producer.stop()
            return
        self._producer = producer
        self._logger.info(f"Publishing recorded clicks to {self._topic}")

    async def stop(self) -> None:
        if self._producer is None:
            return
        producer, self._producer = self._producer, None
        await producer.stop()

    async def publish(self, record: ClickRecord) -> bool:
        """Send one recorded click; False when the feed is not running.

        Raises:
            KafkaError: The broker rejected or timed out the send.
        """
        assert record.link_code, f"link_code must be non-empty, got {record.link_code!r}"

        if self._producer is None:
            return False

        await self._producer.send_and_wait(
            self._topic,
            click_message(record),
            key=record.link_code.encode("utf-8"),
            headers=[CLICK_EVENT_HEADER],
        )
        return True


# Process-wide feed started and stopped by the app lifespan
click_publisher = ClickPublisher.from_settings(get_settings())

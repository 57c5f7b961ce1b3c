"""Short code resolution on the redirect critical path.

Flow Diagram — resolve(code)
============================
::
    ┌─────────────┐
    │ resolve()   │
    └──────┬──────┘
           ▼
    ┌─────────────┐  malformed  ┌───────────┐
    │ code shape  │───────────▶│ NOT_FOUND │
    └──────┬──────┘             └───────────┘
           ▼
    ┌─────────────┐  timeout / store error  ┌─────────────┐
    │ store.get   │───────────────────────▶│ UNAVAILABLE │
    │ (bounded)   │  missing  ┌───────────┐ └─────────────┘
    └──────┬──────┘─────────▶│ NOT_FOUND │
           ▼                  └───────────┘
    ┌─────────────┐
    │evaluate_link│──▶ EXPIRED / INACTIVE / RESOLVED
    └──────┬──────┘
           ▼ RESOLVED
    ┌─────────────┐
    │ recorder.   │  (non-blocking hand-off)
    │ submit()    │
    └─────────────┘

Key Behaviours
===============
- A store failure or timeout is UNAVAILABLE, never NOT_FOUND.
- Expiry wins over the active flag.
- The destination is returned exactly as stored.
- The recorder hand-off never blocks and never raises into the request.
"""

import asyncio
import datetime
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Optional

from prometheus_client import Counter, Histogram

from redirector.clock import as_utc, utcnow
from redirector.enums import ResolutionOutcome
from redirector.errors import LinkNotFoundError, StoreUnavailableError
from redirector.link_store import LinkStore
from redirector.models import Link
from redirector.schemas import ClickRecord, ClientHint, is_valid_code

__all__ = ["Resolution", "Resolver", "evaluate_link"]

RESOLUTIONS_TOTAL = Counter(
    "redirector_resolutions_total",
    "Short code resolutions by outcome",
    ["outcome"],
)
RESOLVE_DURATION = Histogram(
    "redirector_resolve_duration_seconds",
    "Time taken to resolve a short code",
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0],
)


@dataclass(frozen=True)
class Resolution:
    outcome: ResolutionOutcome
    code: str
    destination: Optional[str] = None

    @property
    def resolved(self) -> bool:
        return self.outcome is ResolutionOutcome.RESOLVED


def evaluate_link(link: Link, now: datetime.datetime) -> Resolution:
    """Decide whether a fetched link may be followed at ``now``."""
    if link.expires_at is not None and as_utc(link.expires_at) <= as_utc(now):
        return Resolution(ResolutionOutcome.EXPIRED, link.code)
    if not link.active:
        return Resolution(ResolutionOutcome.INACTIVE, link.code)
    return Resolution(ResolutionOutcome.RESOLVED, link.code, destination=link.destination)


class Resolver:
    def __init__(
        self,
        store: LinkStore,
        recorder=None,
        timeout_seconds: float = 0.5,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
        clock: Callable[[], datetime.datetime] = utcnow,
    ) -> None:
        self._store = store
        self._recorder = recorder
        self._timeout_seconds = timeout_seconds
        self._logger = logger or logging.getLogger("redirector")
        self._clock = clock

    @classmethod
    def from_context(cls, ctx) -> "Resolver":
        return cls(
            LinkStore.from_context(ctx),
            recorder=ctx.recorder,
            timeout_seconds=ctx.settings.RESOLVE_TIMEOUT_SECONDS,
            logger=ctx.logger,
        )

    async def resolve(self, code: str, client_hint: Optional[ClientHint] = None) -> Resolution:
        """Resolve ``code`` and, when it resolves, hand a click to the recorder."""
        start_time = time.perf_counter()
        resolution = await self._lookup(code)
        RESOLVE_DURATION.observe(time.perf_counter() - start_time)
        RESOLUTIONS_TOTAL.labels(outcome=resolution.outcome.value).inc()

        if resolution.resolved and self._recorder is not None:
            self._recorder.submit(
                ClickRecord(
                    link_code=code,
                    occurred_at=self._clock(),
                    client_hint=client_hint or ClientHint(),
                )
            )
        return resolution

    async def _lookup(self, code: str) -> Resolution:
        if not is_valid_code(code):
            return Resolution(ResolutionOutcome.NOT_FOUND, code)

        try:
            link = await asyncio.wait_for(self._store.get(code, use_cache=True), self._timeout_seconds)
        except LinkNotFoundError:
            return Resolution(ResolutionOutcome.NOT_FOUND, code)
        except asyncio.TimeoutError:
            self._logger.error(
                f"Lookup timed out after {self._timeout_seconds}s for {code}",
                extra={"operation": "resolve", "short_code": code},
            )
            return Resolution(ResolutionOutcome.UNAVAILABLE, code)
        except StoreUnavailableError as exc:
            self._logger.error(
                f"Lookup failed for {code}: {exc}",
                extra={"operation": "resolve", "short_code": code},
            )
            return Resolution(ResolutionOutcome.UNAVAILABLE, code)

        return evaluate_link(link, self._clock())

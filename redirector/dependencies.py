"""Dependency injection with a singleton service manager.

This module provides a centralized way to inject the database session, the
Redis cache, the click recorder and request metadata into every endpoint,
using a singleton for shared resources to keep per-request overhead low.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Optional

import redis.asyncio as redis
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from redirector.aggregator import Aggregator
from redirector.config import Settings, get_settings
from redirector.database import async_session, get_db
from redirector.links import LinkService
from redirector.recorder import ClickRecorder
from redirector.resolver import Resolver

__all__ = [
    "ServiceManager",
    "RequestContext",
    "RequestLogger",
    "log_formatter",
    "get_service_manager",
    "get_request_context",
    "get_resolver",
    "get_link_service",
    "get_aggregator",
]


LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(trace_id)s %(request_id)s] %(message)s"


def log_formatter() -> logging.Formatter:
    """Formatter for the service logger; records logged outside a request print ``-`` ids."""
    return logging.Formatter(LOG_FORMAT, defaults={"request_id": "-", "trace_id": "-"})


class RequestLogger(logging.LoggerAdapter):
    """Adapter that adds request ids to records and keeps the caller's ``extra``."""

    def process(self, msg, kwargs):
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


# ============================================================================
# SINGLETON SERVICE MANAGER
# ============================================================================


class ServiceManager:
    """Singleton service manager for shared resources.

    Owns everything that outlives a request: settings, the logger, the Redis
    client, the session factory used off the request path, and the click
    recorder with its worker tasks.
    """

    _instance: Optional["ServiceManager"] = None
    _initialized: bool = False

    def __new__(cls) -> "ServiceManager":
        """Implement singleton pattern."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None) -> None:
        """Initialize shared resources once at startup."""
        if self._initialized:
            return
        self.settings: Settings = get_settings()
        self.logger = self._setup_logger()
        self.cache: Optional[redis.Redis] = self._setup_redis()
        self.session_factory = session_factory or async_session
        self.recorder = ClickRecorder.from_settings(
            self.settings,
            self.session_factory,
            cache=self.cache,
            logger=self.logger,
        )
        await self.recorder.start()
        self._initialized = True

    def _setup_logger(self) -> logging.Logger:
        """Setup logger once."""
        logger = logging.getLogger("redirector")
        if not logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(log_formatter())
            logger.addHandler(handler)
        logger.setLevel(self.settings.LOG_LEVEL.upper())
        return logger

    def _setup_redis(self) -> Optional[redis.Redis]:
        """Setup Redis once; an empty REDIS_URL runs without a cache."""
        if not self.settings.REDIS_URL:
            return None
        return redis.from_url(self.settings.REDIS_URL, encoding="utf-8", decode_responses=True)

    async def cleanup(self) -> None:
        """Drain the recorder and release shared resources at shutdown."""
        if not self._initialized:
            return
        await self.recorder.stop(self.settings.RECORDER_SHUTDOWN_GRACE_SECONDS)
        if self.cache is not None:
            await self.cache.aclose()
        self._initialized = False


# Global singleton instance
_service_manager = ServiceManager()


# ============================================================================
# PER-REQUEST CONTEXT
# ============================================================================


@dataclass
class RequestContext:
    """What one request carries through the service layer.

    Only the session is per-request; everything else is borrowed from the
    service manager. Client IPs and raw user agents are not carried.

    Attributes:
        database: Session bound to this request
        service_manager: Owner of the shared cache, recorder and settings
        request_id: Generated id for log correlation
        trace_id: Upstream ``X-Trace-Id`` when the gateway sends one
        started: ``time.perf_counter()`` at context creation
        tags: Labels added by handlers, e.g. ``redirect``
    """

    database: AsyncSession
    service_manager: ServiceManager
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    trace_id: Optional[str] = None
    started: float = field(default_factory=time.perf_counter)
    tags: list[str] = field(default_factory=list)

    @property
    def cache(self) -> Optional[redis.Redis]:
        return self.service_manager.cache

    @property
    def recorder(self) -> ClickRecorder:
        return self.service_manager.recorder

    @property
    def settings(self) -> Settings:
        return self.service_manager.settings

    @property
    def logger(self) -> RequestLogger:
        return RequestLogger(
            self.service_manager.logger,
            {"request_id": self.request_id, "trace_id": self.trace_id or self.request_id, "tags": ",".join(self.tags)},
        )

    def add_tag(self, tag: str) -> None:
        if tag not in self.tags:
            self.tags.append(tag)

    def get_duration(self) -> float:
        """Milliseconds since the context was created."""
        return (time.perf_counter() - self.started) * 1000


# ============================================================================
# DEPENDENCY FUNCTIONS
# ============================================================================


async def get_service_manager() -> ServiceManager:
    if not _service_manager.initialized:
        await _service_manager.initialize()
    return _service_manager


async def get_request_context(
    request: Request,
    db: AsyncSession = Depends(get_db),
    manager: ServiceManager = Depends(get_service_manager),
) -> RequestContext:
    return RequestContext(database=db, service_manager=manager, trace_id=request.headers.get("x-trace-id"))


def get_resolver(ctx: RequestContext = Depends(get_request_context)) -> Resolver:
    return Resolver.from_context(ctx)


def get_link_service(ctx: RequestContext = Depends(get_request_context)) -> LinkService:
    return LinkService.from_context(ctx)


def get_aggregator(ctx: RequestContext = Depends(get_request_context)) -> Aggregator:
    return Aggregator.from_context(ctx)

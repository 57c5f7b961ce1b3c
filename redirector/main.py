"""FastAPI application entry point for the redirect service.

Application Lifecycle Diagram
===========================
::
    ┌─────────────┐
    │  uvicorn    │
    │  startup    │
    └──────┬──────┘
           ▼
    ┌──────────────┐
    │ lifespan()   │
    │ init_db()    │
    │ publisher.   │
    │ start()      │
    │ manager.     │
    │ initialize() │  ← starts click recorder workers
    └──────┬───────┘
           ▼
    ┌─────────────┐
    │ Serve HTTP  │
    │ requests    │
    └──────┬──────┘
           ▼
    ┌──────────────┐
    │ lifespan()   │
    │ manager.     │
    │ cleanup()    │  ← drains recorder within grace period
    │ publisher.   │
    │ stop()       │
    │ close_db()   │
    └──────────────┘

How to Use
===========
**Run with uvicorn**::
    uvicorn redirector.main:app --host 0.0.0.0 --port 8080

**Create and follow a link**::
    curl -X POST http://localhost:8080/api/links \
         -H "X-User-Id: u1" -H "Content-Type: application/json" \
         -d '{"destination": "https://example.com"}'
    curl -i http://localhost:8080/r/<code>

Key Behaviours
===============
- Database tables are created automatically on startup.
- Clicks still queued at shutdown get RECORDER_SHUTDOWN_GRACE_SECONDS to finish.
- Prometheus metrics are exposed at /metrics.
"""

__all__ = ["app"]

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator

from redirector.config import get_settings
from redirector.database import close_db, init_db
from redirector.dependencies import _service_manager
from redirector.publisher import click_publisher
from redirector.routes import register_error_handlers, router

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup
    await init_db()
    await click_publisher.start()
    await _service_manager.initialize()
    yield
    # Shutdown
    await _service_manager.cleanup()
    await click_publisher.stop()
    await close_db()


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description="Short link redirect resolution and click accounting",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=False,
    should_respect_env_var=False,
).instrument(app).expose(app)

register_error_handlers(app)
app.include_router(router)

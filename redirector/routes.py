"""FastAPI route definitions for the redirect service.

API Endpoint Overview
=====================
::
    GET    /health                                       → HealthResponse
    GET    /r/{code}                                     → 302 | 404 | 410 | 403 | 503

    POST   /api/links                                    → 201 LinkResponse | 409 | 422
    GET    /api/links                                    → LinkPage
    GET    /api/links/{code}                             → LinkResponse | 404 | 403
    PATCH  /api/links/{code}                             → LinkResponse | 404 | 403 | 422
    DELETE /api/links/{code}                             → 204 | 404 | 403

    GET    /api/analytics/links/{code}/timeseries        → TimeSeriesResponse
    GET    /api/analytics/links/{code}/breakdown/{dim}   → BreakdownResponse
    GET    /api/analytics/owners/{owner}/timeseries      → TimeSeriesResponse
    GET    /api/analytics/owners/{owner}/breakdown/{dim} → BreakdownResponse
    GET    /api/analytics/totals                         → SystemTotals (staff)

Key Behaviours
===============
- The redirect endpoint is public; everything under /api requires the
  gateway's X-User-Id header.
- The redirect response is sent before the click is recorded.
- Service errors are mapped to status codes by the handlers registered in
  register_error_handlers().
"""

import datetime
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from redirector.aggregator import Aggregator, top_n
from redirector.auth import Principal, get_principal
from redirector.config import get_settings
from redirector.client_hints import client_hint_from_headers
from redirector.dependencies import (
    RequestContext,
    get_aggregator,
    get_link_service,
    get_request_context,
    get_resolver,
)
from redirector.enums import AggregateScope, Dimension, HealthStatus, LinkSortField, ResolutionOutcome, SortOrder
from redirector.errors import (
    CodeGenerationError,
    LinkConflictError,
    LinkNotFoundError,
    PermissionDeniedError,
    RedirectorError,
    StoreUnavailableError,
)
from redirector.link_store import LinkFilter
from redirector.links import LinkService
from redirector.resolver import Resolver
from redirector.schemas import (
    BreakdownResponse,
    ErrorResponse,
    HealthResponse,
    LinkCreate,
    LinkPage,
    LinkResponse,
    LinkUpdate,
    SystemTotals,
    TimeSeriesResponse,
)

__all__ = ["router", "register_error_handlers"]

settings = get_settings()

router = APIRouter()

_OUTCOME_MESSAGES = {
    ResolutionOutcome.NOT_FOUND: "Short link not found",
    ResolutionOutcome.EXPIRED: "Short link has expired",
    ResolutionOutcome.INACTIVE: "Short link is disabled",
    ResolutionOutcome.UNAVAILABLE: "Short link lookup is temporarily unavailable",
}

_ERROR_STATUS = {
    LinkNotFoundError: 404,
    PermissionDeniedError: 403,
    LinkConflictError: 409,
    CodeGenerationError: 503,
    StoreUnavailableError: 503,
}


def register_error_handlers(app: FastAPI) -> None:
    async def handle_service_error(request: Request, exc: RedirectorError) -> JSONResponse:
        status_code = next(
            (status for error_type, status in _ERROR_STATUS.items() if isinstance(exc, error_type)),
            500,
        )
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    async def handle_storage_error(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        return JSONResponse(status_code=503, content={"detail": "Storage temporarily unavailable"})

    app.add_exception_handler(RedirectorError, handle_service_error)
    app.add_exception_handler(SQLAlchemyError, handle_storage_error)


# ============================================================================
# OPERATIONAL
# ============================================================================


@router.get("/health", response_model=HealthResponse, tags=["health"])
async def health_check(ctx: RequestContext = Depends(get_request_context)) -> HealthResponse:
    db_status = HealthStatus.HEALTHY
    cache_status = HealthStatus.DISABLED

    try:
        await ctx.database.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as e:
        ctx.logger.error(f"Database health check failed: {e}")
        db_status = HealthStatus.UNHEALTHY

    if ctx.cache is not None:
        try:
            await ctx.cache.ping()
            cache_status = HealthStatus.HEALTHY
        except (RedisError, OSError) as e:
            ctx.logger.error(f"Cache health check failed: {e}")
            cache_status = HealthStatus.UNHEALTHY

    status = (
        HealthStatus.HEALTHY
        if db_status is HealthStatus.HEALTHY and cache_status is not HealthStatus.UNHEALTHY
        else HealthStatus.UNHEALTHY
    )
    return HealthResponse(
        status=status,
        database=db_status,
        cache=cache_status,
        recorder_queue_depth=ctx.recorder.queue_depth,
    )


# ============================================================================
# REDIRECT
# ============================================================================


@router.get("/r/{code}", tags=["redirect"], responses={404: {"model": ErrorResponse}})
async def redirect(
    code: str,
    request: Request,
    ctx: RequestContext = Depends(get_request_context),
    resolver: Resolver = Depends(get_resolver),
) -> Response:
    ctx.add_tag("redirect")
    resolution = await resolver.resolve(code, client_hint_from_headers(request.headers))

    if resolution.resolved:
        ctx.logger.info(
            f"Redirect: {code} -> {resolution.destination}",
            extra={"operation": "redirect", "short_code": code, "duration_ms": ctx.get_duration()},
        )
        return RedirectResponse(url=resolution.destination, status_code=302)

    ctx.logger.info(
        f"Redirect refused for {code}: {resolution.outcome.value}",
        extra={"operation": "redirect", "short_code": code, "outcome": resolution.outcome.value},
    )
    body = ErrorResponse(detail=_OUTCOME_MESSAGES[resolution.outcome], outcome=resolution.outcome)
    return JSONResponse(status_code=resolution.outcome.http_status, content=body.model_dump(mode="json"))


# ============================================================================
# LINK MANAGEMENT
# ============================================================================


@router.post("/api/links", response_model=LinkResponse, status_code=201, tags=["links"])
async def create_link(
    payload: LinkCreate,
    ctx: RequestContext = Depends(get_request_context),
    principal: Principal = Depends(get_principal),
    service: LinkService = Depends(get_link_service),
) -> LinkResponse:
    link = await service.create_link(payload, principal)
    return LinkResponse.from_model(link, ctx.settings.BASE_URL)


@router.get("/api/links", response_model=LinkPage, tags=["links"])
async def list_links(
    ctx: RequestContext = Depends(get_request_context),
    principal: Principal = Depends(get_principal),
    service: LinkService = Depends(get_link_service),
    owner_id: Optional[str] = None,
    active: Optional[bool] = None,
    tag: Optional[str] = None,
    created_from: Optional[datetime.datetime] = None,
    created_to: Optional[datetime.datetime] = None,
    min_clicks: Optional[int] = Query(default=None, ge=0),
    max_clicks: Optional[int] = Query(default=None, ge=0),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    sort: LinkSortField = LinkSortField.CREATED_AT,
    order: SortOrder = SortOrder.DESC,
) -> LinkPage:
    filters = LinkFilter(
        owner_id=owner_id,
        active=active,
        tag=tag,
        created_from=created_from,
        created_to=created_to,
        min_clicks=min_clicks,
        max_clicks=max_clicks,
    )
    links, total = await service.list_links(
        filters, principal, page=page, page_size=page_size, sort=sort, order=order
    )
    return LinkPage(
        items=[LinkResponse.from_model(link, ctx.settings.BASE_URL) for link in links],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/api/links/{code}", response_model=LinkResponse, tags=["links"])
async def get_link(
    code: str,
    ctx: RequestContext = Depends(get_request_context),
    principal: Principal = Depends(get_principal),
    service: LinkService = Depends(get_link_service),
) -> LinkResponse:
    link = await service.get_link(code, principal)
    return LinkResponse.from_model(link, ctx.settings.BASE_URL)


@router.patch("/api/links/{code}", response_model=LinkResponse, tags=["links"])
async def update_link(
    code: str,
    payload: LinkUpdate,
    ctx: RequestContext = Depends(get_request_context),
    principal: Principal = Depends(get_principal),
    service: LinkService = Depends(get_link_service),
) -> LinkResponse:
    link = await service.update_link(code, payload, principal)
    return LinkResponse.from_model(link, ctx.settings.BASE_URL)


@router.delete("/api/links/{code}", status_code=204, tags=["links"])
async def delete_link(
    code: str,
    principal: Principal = Depends(get_principal),
    service: LinkService = Depends(get_link_service),
) -> Response:
    await service.delete_link(code, principal)
    return Response(status_code=204)


# ============================================================================
# REPORTING
# ============================================================================


def _owner_scope(owner_id: str, principal: Principal) -> None:
    if not principal.can_manage(owner_id):
        raise HTTPException(status_code=403, detail="Not allowed to view this owner's analytics")


async def _range_guard(coro):
    try:
        return await coro
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@router.get("/api/analytics/links/{code}/timeseries", response_model=TimeSeriesResponse, tags=["analytics"])
async def link_time_series(
    code: str,
    days: int = Query(default=30, ge=1),
    principal: Principal = Depends(get_principal),
    service: LinkService = Depends(get_link_service),
    aggregator: Aggregator = Depends(get_aggregator),
) -> TimeSeriesResponse:
    await service.authorize_reports(code, principal)
    return await _range_guard(aggregator.time_series(AggregateScope.LINK, code, days))


@router.get(
    "/api/analytics/links/{code}/breakdown/{dimension}", response_model=BreakdownResponse, tags=["analytics"]
)
async def link_breakdown(
    code: str,
    dimension: Dimension,
    days: Optional[int] = Query(default=None, ge=1),
    limit: Optional[int] = Query(default=None, ge=1, le=100),
    principal: Principal = Depends(get_principal),
    service: LinkService = Depends(get_link_service),
    aggregator: Aggregator = Depends(get_aggregator),
) -> BreakdownResponse:
    await service.authorize_reports(code, principal)
    limit = limit or settings.TOP_N_DEFAULT
    counts = await _range_guard(aggregator.by_dimension(AggregateScope.LINK, code, dimension, days, limit))
    return BreakdownResponse(scope=AggregateScope.LINK.value, key=code, dimension=dimension, counts=top_n(counts))


@router.get("/api/analytics/owners/{owner_id}/timeseries", response_model=TimeSeriesResponse, tags=["analytics"])
async def owner_time_series(
    owner_id: str,
    days: int = Query(default=30, ge=1),
    principal: Principal = Depends(get_principal),
    aggregator: Aggregator = Depends(get_aggregator),
) -> TimeSeriesResponse:
    _owner_scope(owner_id, principal)
    return await _range_guard(aggregator.time_series(AggregateScope.OWNER, owner_id, days))


@router.get(
    "/api/analytics/owners/{owner_id}/breakdown/{dimension}", response_model=BreakdownResponse, tags=["analytics"]
)
async def owner_breakdown(
    owner_id: str,
    dimension: Dimension,
    days: Optional[int] = Query(default=None, ge=1),
    limit: Optional[int] = Query(default=None, ge=1, le=100),
    principal: Principal = Depends(get_principal),
    aggregator: Aggregator = Depends(get_aggregator),
) -> BreakdownResponse:
    _owner_scope(owner_id, principal)
    limit = limit or settings.TOP_N_DEFAULT
    counts = await _range_guard(aggregator.by_dimension(AggregateScope.OWNER, owner_id, dimension, days, limit))
    return BreakdownResponse(scope=AggregateScope.OWNER.value, key=owner_id, dimension=dimension, counts=top_n(counts))


@router.get("/api/analytics/totals", response_model=SystemTotals, tags=["analytics"])
async def system_totals(
    principal: Principal = Depends(get_principal),
    aggregator: Aggregator = Depends(get_aggregator),
) -> SystemTotals:
    if not principal.is_staff:
        raise HTTPException(status_code=403, detail="Staff role required")
    return await aggregator.system_totals()

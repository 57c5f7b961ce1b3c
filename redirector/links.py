"""Link management operations behind the management API.

Wraps the link store with short code generation, ownership checks, metrics
and logging. The redirect path never goes through this module.

Flow Diagram — create_link()
============================
::
    ┌─────────────┐
    │ POST /api/  │
    │ links       │
    └──────┬──────┘
           ▼
    ┌─────────────┐  yes   ┌─────────────┐  conflict  ┌─────┐
    │ custom code?│──────▶│ store.create│──────────▶│ 409 │
    └──────┬──────┘        └─────────────┘            └─────┘
           │ no
           ▼
    ┌─────────────┐
    │ nanoid code │◀──────────────┐
    └──────┬──────┘               │ conflict, attempts left
           ▼                      │
    ┌─────────────┐───────────────┘
    │ store.create│  attempts exhausted ──▶ CodeGenerationError
    └──────┬──────┘
           ▼
        Link (201)

Key Behaviours
===============
- Generated codes are SHORT_CODE_LENGTH characters of the base62 alphabet.
- Uniqueness is enforced by the insert itself, not by a prior read.
- Non-staff callers only ever see and change their own links.
"""

import time

from nanoid import generate
from prometheus_client import Counter, Histogram

from redirector.auth import Principal
from redirector.config import get_settings
from redirector.enums import LinkSortField, RequestStatus, SortOrder
from redirector.errors import CodeGenerationError, LinkConflictError, PermissionDeniedError
from redirector.link_store import LinkFilter, LinkStore
from redirector.models import Link
from redirector.schemas import LinkCreate, LinkUpdate

__all__ = ["ALPHABET", "generate_short_code", "LinkService"]

settings = get_settings()

ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"

LINK_CREATION_REQUESTS_TOTAL = Counter(
    "redirector_link_creation_requests_total",
    "Total link creation requests",
    ["status"],
)
LINK_CREATION_DURATION = Histogram(
    "redirector_link_creation_duration_seconds",
    "Time taken to create links",
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)
CODE_COLLISIONS_TOTAL = Counter(
    "redirector_code_collisions_total",
    "Generated short codes that collided with an existing code",
)


def generate_short_code(length: int = settings.SHORT_CODE_LENGTH) -> str:
    assert isinstance(length, int) and length > 0, f"length must be a positive integer, got {length!r}"
    return generate(ALPHABET, length)


class LinkService:
    def __init__(self, store: LinkStore, logger, code_length: int = 7, max_attempts: int = 5) -> None:
        self._store = store
        self._logger = logger
        self._code_length = code_length
        self._max_attempts = max_attempts

    @classmethod
    def from_context(cls, ctx) -> "LinkService":
        return cls(
            LinkStore.from_context(ctx),
            ctx.logger,
            code_length=ctx.settings.SHORT_CODE_LENGTH,
            max_attempts=ctx.settings.CODE_GENERATION_ATTEMPTS,
        )

    async def create_link(self, payload: LinkCreate, principal: Principal) -> Link:
        """Create a link owned by the caller.

        Raises:
            LinkConflictError: The custom code is taken.
            CodeGenerationError: Every generated code collided.
            StoreUnavailableError: The database failed.
        """
        start_time = time.perf_counter()
        try:
            if payload.custom_code:
                link = await self._create(payload.custom_code, payload, principal)
            else:
                link = await self._create_with_generated_code(payload, principal)
        except LinkConflictError as exc:
            LINK_CREATION_REQUESTS_TOTAL.labels(status=RequestStatus.CONFLICT).inc()
            self._logger.warning(f"Link creation failed: {exc}")
            raise
        except Exception:
            LINK_CREATION_REQUESTS_TOTAL.labels(status=RequestStatus.ERROR).inc()
            raise
        finally:
            LINK_CREATION_DURATION.observe(time.perf_counter() - start_time)

        LINK_CREATION_REQUESTS_TOTAL.labels(status=RequestStatus.SUCCESS).inc()
        self._logger.info(f"Link created: {link.code} -> {link.destination}")
        return link

    async def get_link(self, code: str, principal: Principal) -> Link:
        link = await self._store.get(code)
        if not principal.can_manage(link.owner_id):
            raise PermissionDeniedError(f"Not allowed to access link '{code}'")
        return link

    async def authorize_reports(self, code: str, principal: Principal) -> None:
        """Allow reports on a link, including one that has since been deleted."""
        owner_id = await self._store.owner_of(code)
        if not principal.can_manage(owner_id):
            raise PermissionDeniedError(f"Not allowed to view analytics for link '{code}'")

    async def update_link(self, code: str, payload: LinkUpdate, principal: Principal) -> Link:
        await self.get_link(code, principal)
        link = await self._store.update(code, payload.changes())
        self._logger.info(f"Link updated: {code} ({', '.join(sorted(payload.changes())) or 'no changes'})")
        return link

    async def delete_link(self, code: str, principal: Principal) -> None:
        await self.get_link(code, principal)
        await self._store.delete(code)
        self._logger.info(f"Link deleted: {code}")

    async def list_links(
        self,
        filters: LinkFilter,
        principal: Principal,
        page: int = 1,
        page_size: int = 20,
        sort: LinkSortField = LinkSortField.CREATED_AT,
        order: SortOrder = SortOrder.DESC,
    ) -> tuple[list[Link], int]:
        if not principal.is_staff:
            filters.owner_id = principal.user_id
        return await self._store.list_links(filters, page=page, page_size=page_size, sort=sort, order=order)

    async def _create(self, code: str, payload: LinkCreate, principal: Principal) -> Link:
        return await self._store.create(
            code=code,
            destination=payload.destination,
            owner_id=principal.user_id,
            active=payload.active,
            expires_at=payload.expires_at,
            tags=payload.tags,
        )

    async def _create_with_generated_code(self, payload: LinkCreate, principal: Principal) -> Link:
        for attempt in range(1, self._max_attempts + 1):
            code = generate_short_code(self._code_length)
            try:
                return await self._create(code, payload, principal)
            except LinkConflictError:
                CODE_COLLISIONS_TOTAL.inc()
                self._logger.info(f"Generated code {code} collided (attempt {attempt}/{self._max_attempts})")
        raise CodeGenerationError(self._max_attempts)

"""
API Dependencies — per-browser session context and capability guards.

Each browser is identified by an HTTP-only session cookie. The registry
keeps the live SessionStore (with its board and controller) for recently
active cookies and checks it against the snapshot storage on every request,
restoring from storage when it does not hold the cookie. The snapshot is
written back after every request, the same way a DB session is committed
at the end of a request.

Endpoints that need no signed-in session:
  /api/auth/login, /api/auth/verify-2fa, /api/auth/resend-2fa,
  /api/pipeline/actions/{status}, /api/health, /metrics
"""

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass
from typing import AsyncGenerator

from fastapi import Depends, Request, Response

from casa_pipeline.auth.capabilities import Capability, CapabilityMap
from casa_pipeline.auth.evaluator import has_capability
from casa_pipeline.config import settings
from casa_pipeline.errors import Forbidden, SessionExpired
from casa_pipeline.schemas.schemas import SessionSnapshot
from casa_pipeline.services.api_client import ApiClient
from casa_pipeline.services.board import PipelineBoard
from casa_pipeline.services.pipeline_controller import PipelineController
from casa_pipeline.services.session_storage import MemorySessionStorage, RedisSessionStorage
from casa_pipeline.services.session_store import SessionStore
from casa_pipeline.services.volunteer_service import VolunteerService

logger = logging.getLogger(__name__)


@dataclass
class SessionContext:
    session_id: str
    session: SessionStore
    controller: PipelineController
    board: PipelineBoard
    capability_map: CapabilityMap
    # access token as last read from or written to storage by this worker
    stored_token: str | None = None
    last_seen: float = 0.0


class SessionRegistry:
    """Live session contexts of this worker, kept in step with the storage.

    The storage is the source of truth: every request re-reads the snapshot.
    A live context whose snapshot expired is dropped; one whose snapshot
    another worker rewrote takes the new tokens, or is rebuilt when the
    snapshot is for another user or organization. Contexts idle for longer
    than `idle_seconds` are evicted.
    """

    def __init__(
        self,
        client: ApiClient,
        storage: MemorySessionStorage | RedisSessionStorage,
        capability_map: CapabilityMap | None = None,
        idle_seconds: float | None = None,
    ):
        self.client = client
        self.storage = storage
        self.capability_map = capability_map or CapabilityMap.from_config(settings.pipeline_role_matrix)
        self.idle_seconds = idle_seconds or settings.session_ttl_seconds
        self._live: dict[str, SessionContext] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._live)

    def _build(self, session_id: str, session: SessionStore) -> SessionContext:
        volunteers = VolunteerService(session)
        controller = PipelineController(session, volunteers)
        board = PipelineBoard(session, controller, volunteers, self.capability_map)
        return SessionContext(session_id, session, controller, board, self.capability_map)

    def _evict_idle(self, now: float) -> None:
        cutoff = now - self.idle_seconds
        idle = [
            sid for sid, ctx in self._live.items()
            if ctx.last_seen < cutoff and not ctx.controller.has_pending()
        ]
        for sid in idle:
            del self._live[sid]
        if idle:
            logger.info("Evicted %d idle session context(s)", len(idle))

    def _in_step(self, ctx: SessionContext, snapshot: SessionSnapshot | None) -> bool:
        if snapshot is None:
            # signed-out contexts stay only while an action is finishing
            if ctx.session.is_authenticated:
                logger.info("Session snapshot expired; dropping live context")
                return False
            return True
        if snapshot.access_token == ctx.stored_token:
            return True
        if ctx.session.adopt(snapshot):
            logger.info("Session tokens rotated by another worker")
            ctx.stored_token = snapshot.access_token
            return True
        return False

    async def get(self, session_id: str | None) -> SessionContext:
        async with self._lock:
            now = time.monotonic()
            self._evict_idle(now)

            snapshot = await self.storage.load(session_id) if session_id else None
            ctx = self._live.get(session_id) if session_id else None
            if ctx is not None and not self._in_step(ctx, snapshot):
                del self._live[session_id]
                ctx = None

            if ctx is None:
                if snapshot is not None:
                    session = SessionStore.restore(self.client, snapshot)
                    logger.info("Session restored from storage")
                else:
                    session_id = secrets.token_urlsafe(32)
                    session = SessionStore(self.client)
                ctx = self._build(session_id, session)
                ctx.stored_token = snapshot.access_token if snapshot is not None else None
                self._live[session_id] = ctx

            ctx.last_seen = now
            return ctx

    async def save(self, ctx: SessionContext) -> None:
        if ctx.session.is_authenticated:
            snapshot = ctx.session.snapshot()
            await self.storage.save(ctx.session_id, snapshot)
            ctx.stored_token = snapshot.access_token
            return
        await self.storage.delete(ctx.session_id)
        ctx.stored_token = None
        # keep the context while an action is still running for it
        if not ctx.controller.has_pending():
            self._live.pop(ctx.session_id, None)

    async def aclose(self) -> None:
        self._live.clear()
        await self.storage.aclose()


# ── Session context ──────────────────────────────────────────────────────────

def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.sessions


async def get_session_context(
    request: Request,
    response: Response,
    registry: SessionRegistry = Depends(get_registry),
) -> AsyncGenerator[SessionContext, None]:
    """Yield the caller's session context; persist its snapshot afterwards."""
    cookie = request.cookies.get(settings.session_cookie_name)
    ctx = await registry.get(cookie)
    if ctx.session_id != cookie:
        response.set_cookie(
            settings.session_cookie_name,
            ctx.session_id,
            max_age=settings.session_ttl_seconds,
            httponly=True,
            secure=settings.environment == "production",
            samesite="lax",
        )
    try:
        yield ctx
    finally:
        await registry.save(ctx)


async def require_session(ctx: SessionContext = Depends(get_session_context)) -> SessionContext:
    if not ctx.session.is_authenticated:
        raise SessionExpired("Not signed in")
    return ctx


# ── Capability guards ────────────────────────────────────────────────────────

def require(capability: Capability):
    """
    FastAPI dependency that checks the signed-in session holds a capability.

    Usage:
        @router.get("/board")
        async def board(ctx: SessionContext = Depends(require(Capability.VIEW_PIPELINE))):
            ...
    """
    async def _check(ctx: SessionContext = Depends(require_session)) -> SessionContext:
        if not has_capability(ctx.session, capability, ctx.capability_map):
            raise Forbidden()
        return ctx
    return _check

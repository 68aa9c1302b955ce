"""
Session snapshot persistence keyed by the browser's session cookie.

The in-memory store is for development and tests; deployments with more
than one worker use Redis so a browser keeps its session across workers
and restarts.
"""

import logging
import time

import redis.asyncio as aioredis

from casa_pipeline.config import settings
from casa_pipeline.schemas.schemas import SessionSnapshot

logger = logging.getLogger(__name__)

KEY_PREFIX = "casa:session:"


class MemorySessionStorage:
    def __init__(self, ttl_seconds: int | None = None):
        self.ttl = ttl_seconds or settings.session_ttl_seconds
        self._items: dict[str, tuple[float, str]] = {}

    async def load(self, session_id: str) -> SessionSnapshot | None:
        item = self._items.get(session_id)
        if item is None:
            return None
        expires_at, raw = item
        if expires_at <= time.time():
            del self._items[session_id]
            return None
        return SessionSnapshot.model_validate_json(raw)

    async def save(self, session_id: str, snapshot: SessionSnapshot) -> None:
        self._items[session_id] = (time.time() + self.ttl, snapshot.model_dump_json())

    async def delete(self, session_id: str) -> None:
        self._items.pop(session_id, None)

    async def aclose(self) -> None:
        self._items.clear()


class RedisSessionStorage:
    def __init__(self, redis_url: str | None = None, ttl_seconds: int | None = None):
        self.ttl = ttl_seconds or settings.session_ttl_seconds
        self._redis: aioredis.Redis = aioredis.from_url(redis_url or settings.redis_url, decode_responses=True)

    async def load(self, session_id: str) -> SessionSnapshot | None:
        raw = await self._redis.get(f"{KEY_PREFIX}{session_id}")
        if not raw:
            return None
        return SessionSnapshot.model_validate_json(raw)

    async def save(self, session_id: str, snapshot: SessionSnapshot) -> None:
        await self._redis.setex(f"{KEY_PREFIX}{session_id}", self.ttl, snapshot.model_dump_json())

    async def delete(self, session_id: str) -> None:
        await self._redis.delete(f"{KEY_PREFIX}{session_id}")

    async def aclose(self) -> None:
        await self._redis.aclose()


def create_session_storage(backend: str | None = None) -> MemorySessionStorage | RedisSessionStorage:
    backend = backend or settings.session_backend
    if backend == "redis":
        logger.info("Session storage: redis")
        return RedisSessionStorage()
    if backend == "memory":
        return MemorySessionStorage()
    raise ValueError(f"Unknown session backend: {backend}")

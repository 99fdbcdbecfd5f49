"""Registry of active stream sessions.

The in-memory registry is process-local and guarded by an asyncio lock.
Multi-instance deployments use the Redis registry, where each session is a
key with a TTL so a crashed instance cannot leak sessions forever.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Literal, Protocol

import redis.asyncio as redis
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

SessionState = Literal["connected", "streaming", "complete", "error"]


class StreamSession(BaseModel):
    """One in-flight streamed response."""

    id: str
    conversation_id: str
    user_id: str
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    chunk_count: int = 0
    state: SessionState = "connected"

    def age(self, now: datetime | None = None) -> timedelta:
        return (now or datetime.now(timezone.utc)) - self.started_at


class SessionRegistry(Protocol):
    async def register(self, session: StreamSession) -> None: ...

    async def update(self, session_id: str, *, chunk_count: int | None = None, state: SessionState | None = None) -> None: ...

    async def remove(self, session_id: str) -> None: ...

    async def get(self, session_id: str) -> StreamSession | None: ...

    async def count(self) -> int: ...

    async def user_sessions(self, user_id: str) -> list[StreamSession]: ...

    async def sweep_stale(self, max_age: timedelta) -> list[str]: ...

    async def clear(self) -> list[StreamSession]: ...


class InMemorySessionRegistry:
    """Dict of sessions behind an asyncio.Lock."""

    def __init__(self):
        self._sessions: dict[str, StreamSession] = {}
        self._lock = asyncio.Lock()

    async def register(self, session: StreamSession) -> None:
        async with self._lock:
            self._sessions[session.id] = session

    async def update(self, session_id: str, *, chunk_count: int | None = None, state: SessionState | None = None) -> None:
        async with self._lock:
            session = self._sessions.get(session_id)
            if not session:
                return
            if chunk_count is not None:
                session.chunk_count = chunk_count
            if state is not None:
                session.state = state

    async def remove(self, session_id: str) -> None:
        async with self._lock:
            self._sessions.pop(session_id, None)

    async def get(self, session_id: str) -> StreamSession | None:
        async with self._lock:
            session = self._sessions.get(session_id)
            return session.model_copy() if session else None

    async def count(self) -> int:
        async with self._lock:
            return len(self._sessions)

    async def user_sessions(self, user_id: str) -> list[StreamSession]:
        async with self._lock:
            return [s.model_copy() for s in self._sessions.values() if s.user_id == user_id]

    async def sweep_stale(self, max_age: timedelta) -> list[str]:
        """Evict sessions older than ``max_age``; return their ids."""
        now = datetime.now(timezone.utc)
        async with self._lock:
            stale = [sid for sid, s in self._sessions.items() if s.age(now) > max_age]
            for sid in stale:
                del self._sessions[sid]
        if stale:
            logger.info(f"Evicted {len(stale)} stale stream session(s)")
        return stale

    async def clear(self) -> list[StreamSession]:
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        return sessions


class RedisSessionRegistry:
    """Sessions stored as JSON under ``stream_session:{id}`` with a TTL."""

    KEY_PREFIX = "stream_session:"

    def __init__(self, client: redis.Redis, ttl: timedelta):
        self.redis = client
        self.ttl_seconds = max(1, int(ttl.total_seconds()))

    @classmethod
    def from_url(cls, url: str, ttl: timedelta) -> "RedisSessionRegistry":
        return cls(redis.from_url(url, decode_responses=True), ttl)

    def _key(self, session_id: str) -> str:
        return f"{self.KEY_PREFIX}{session_id}"

    async def _all(self) -> list[StreamSession]:
        sessions = []
        async for key in self.redis.scan_iter(match=f"{self.KEY_PREFIX}*"):
            data = await self.redis.get(key)
            if data:
                sessions.append(StreamSession.model_validate_json(data))
        return sessions

    async def register(self, session: StreamSession) -> None:
        await self.redis.setex(self._key(session.id), self.ttl_seconds, session.model_dump_json())

    async def update(self, session_id: str, *, chunk_count: int | None = None, state: SessionState | None = None) -> None:
        session = await self.get(session_id)
        if not session:
            return
        if chunk_count is not None:
            session.chunk_count = chunk_count
        if state is not None:
            session.state = state
        # Keep the original expiry; never recreate a key that expired since the read
        await self.redis.set(self._key(session_id), session.model_dump_json(), xx=True, keepttl=True)

    async def remove(self, session_id: str) -> None:
        await self.redis.delete(self._key(session_id))

    async def get(self, session_id: str) -> StreamSession | None:
        data = await self.redis.get(self._key(session_id))
        return StreamSession.model_validate_json(data) if data else None

    async def count(self) -> int:
        return len(await self._all())

    async def user_sessions(self, user_id: str) -> list[StreamSession]:
        return [s for s in await self._all() if s.user_id == user_id]

    async def sweep_stale(self, max_age: timedelta) -> list[str]:
        """TTL does the eviction; this catches sessions registered with a longer TTL."""
        now = datetime.now(timezone.utc)
        stale = [s.id for s in await self._all() if s.age(now) > max_age]
        for sid in stale:
            await self.remove(sid)
        if stale:
            logger.info(f"Evicted {len(stale)} stale stream session(s) from Redis")
        return stale

    async def clear(self) -> list[StreamSession]:
        sessions = await self._all()
        for session in sessions:
            await self.remove(session.id)
        return sessions

    async def close(self) -> None:
        await self.redis.aclose()

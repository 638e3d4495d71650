"""Navigation-scoped session for one-time token flows.

A user following an invitation or setup link moves through several pages.
The session remembers which token is current so a page re-entered with the
same token reuses the cached validation, while entering with a different
token drops both tokens' cached records and forces a fresh validation.
"""

from __future__ import annotations

import abc
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

import redis.asyncio as aioredis

from caseload.tokens.validation_cache import TokenValidationCache, TokenValidationRecord

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL_SECONDS = 30 * 60
DEFAULT_SESSION_ID = "default"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenKind(str, Enum):
    INVITATION = "invitation"
    SETUP = "setup"


@dataclass(frozen=True)
class TokenSession:
    token: str
    kind: TokenKind
    last_accessed: datetime
    navigation_count: int = 1

    def to_json(self) -> str:
        return json.dumps(
            {
                "token": self.token,
                "kind": self.kind.value,
                "last_accessed": self.last_accessed.isoformat(),
                "navigation_count": self.navigation_count,
            }
        )

    @classmethod
    def from_json(cls, payload: Any) -> "TokenSession":
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8")
        data = json.loads(payload)
        return cls(
            token=data["token"],
            kind=TokenKind(data["kind"]),
            last_accessed=datetime.fromisoformat(data["last_accessed"]),
            navigation_count=int(data.get("navigation_count", 1)),
        )


@dataclass
class SessionStoreMetrics:
    hits: int = 0
    misses: int = 0
    evictions: int = 0


@dataclass(frozen=True)
class SessionStats:
    has_active_session: bool
    session_kind: Optional[TokenKind] = None
    navigation_count: Optional[int] = None
    session_age_seconds: Optional[float] = None
    cache_age_seconds: Optional[float] = None


class TokenSessionStore(abc.ABC):
    """Abstract storage backend for navigation sessions."""

    def __init__(self, ttl_seconds: int, *, namespace: str = "caseload:token_session") -> None:
        self.ttl_seconds = ttl_seconds
        self.namespace = namespace.rstrip(":")
        self.metrics = SessionStoreMetrics()

    @abc.abstractmethod
    async def get(self, session_id: str) -> Optional[TokenSession]:
        """Fetch the session, or None when absent or expired."""

    @abc.abstractmethod
    async def set(self, session_id: str, session: TokenSession) -> None:
        """Persist the session, restarting its TTL."""

    @abc.abstractmethod
    async def delete(self, session_id: str) -> Optional[TokenSession]:
        """Remove the session, returning it if present."""

    @abc.abstractmethod
    async def clear(self) -> None:
        """Drop every session in this namespace."""

    async def close(self) -> None:
        return None


class InMemoryTokenSessionStore(TokenSessionStore):
    @dataclass
    class _Entry:
        session: TokenSession
        expires_at: Optional[float]

    def __init__(self, ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS, *, namespace: str = "caseload:token_session") -> None:
        super().__init__(ttl_seconds, namespace=namespace)
        self._data: Dict[str, InMemoryTokenSessionStore._Entry] = {}

    @staticmethod
    def _now() -> float:
        return time.monotonic()

    def _deadline(self) -> Optional[float]:
        if self.ttl_seconds <= 0:
            return None
        return self._now() + float(self.ttl_seconds)

    async def get(self, session_id: str) -> Optional[TokenSession]:
        entry = self._data.get(session_id)
        if entry is None:
            self.metrics.misses += 1
            return None
        if entry.expires_at is not None and entry.expires_at <= self._now():
            self._data.pop(session_id, None)
            self.metrics.evictions += 1
            self.metrics.misses += 1
            return None
        self.metrics.hits += 1
        return entry.session

    async def set(self, session_id: str, session: TokenSession) -> None:
        self._data[session_id] = InMemoryTokenSessionStore._Entry(session, self._deadline())

    async def delete(self, session_id: str) -> Optional[TokenSession]:
        entry = self._data.pop(session_id, None)
        return entry.session if entry is not None else None

    async def clear(self) -> None:
        self._data.clear()


class RedisTokenSessionStore(TokenSessionStore):
    """Redis-backed sessions stored as JSON with a TTL."""

    def __init__(
        self,
        redis: aioredis.Redis,
        ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS,
        *,
        namespace: str = "caseload:token_session",
    ) -> None:
        super().__init__(ttl_seconds, namespace=namespace)
        self._redis = redis

    @classmethod
    def from_url(
        cls,
        url: str,
        ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS,
        *,
        namespace: str = "caseload:token_session",
        **kwargs: Any,
    ) -> "RedisTokenSessionStore":
        parsed = urlparse(url)
        logger.info(
            "token_session.redis",
            extra={"host": parsed.hostname or "localhost", "port": parsed.port or 6379, "db": parsed.path.strip("/") or "0"},
        )
        client = aioredis.Redis.from_url(url, **kwargs)
        return cls(client, ttl_seconds, namespace=namespace)

    def _key(self, session_id: str) -> str:
        return f"{self.namespace}:{session_id}"

    async def get(self, session_id: str) -> Optional[TokenSession]:
        payload = await self._redis.get(self._key(session_id))
        if payload is None:
            self.metrics.misses += 1
            return None
        try:
            session = TokenSession.from_json(payload)
        except (ValueError, KeyError):
            logger.warning("token_session.corrupt", extra={"session_id": session_id})
            await self._redis.delete(self._key(session_id))
            self.metrics.misses += 1
            return None
        self.metrics.hits += 1
        return session

    async def set(self, session_id: str, session: TokenSession) -> None:
        if self.ttl_seconds > 0:
            await self._redis.set(self._key(session_id), session.to_json(), ex=int(self.ttl_seconds))
        else:
            await self._redis.set(self._key(session_id), session.to_json())

    async def delete(self, session_id: str) -> Optional[TokenSession]:
        payload = await self._redis.getdel(self._key(session_id))
        if payload is None:
            return None
        return TokenSession.from_json(payload)

    async def clear(self) -> None:
        keys: List[bytes] = []
        async for key in self._redis.scan_iter(match=f"{self.namespace}:*"):
            keys.append(key)
        if keys:
            await self._redis.delete(*keys)

    async def close(self) -> None:  # pragma: no cover - depends on driver internals
        if hasattr(self._redis, "aclose"):
            await self._redis.aclose()
        else:
            await self._redis.close()


class NavigationSession:
    def __init__(
        self,
        cache: TokenValidationCache,
        store: TokenSessionStore,
        *,
        session_id: str = DEFAULT_SESSION_ID,
        session_ttl_seconds: float = DEFAULT_SESSION_TTL_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._cache = cache
        self._store = store
        self._session_id = session_id
        self._session_ttl = session_ttl_seconds
        self._clock = clock

    async def current(self) -> Optional[TokenSession]:
        """The active session, dropping it once it has been idle past the session TTL."""

        session = await self._store.get(self._session_id)
        if session is None:
            return None
        idle = (self._clock() - session.last_accessed).total_seconds()
        if idle > self._session_ttl:
            await self._store.delete(self._session_id)
            logger.info("token_session.expired", extra={"kind": session.kind.value})
            return None
        return session

    async def enter(self, token: str, kind: TokenKind) -> TokenSession:
        """Record `token` as current, counting re-entries of the same token."""

        kind = TokenKind(kind)
        existing = await self.current()
        now = self._clock()
        if existing is not None and existing.token == token:
            session = TokenSession(
                token=token,
                kind=kind,
                last_accessed=now,
                navigation_count=existing.navigation_count + 1,
            )
        else:
            if existing is not None:
                self._cache.evict(existing.token)
                logger.info("token_session.switched", extra={"kind": kind.value})
            self._cache.evict(token)
            session = TokenSession(token=token, kind=kind, last_accessed=now)
        await self._store.set(self._session_id, session)
        return session

    async def resolve(self, token: str, kind: TokenKind) -> Optional[TokenValidationRecord]:
        """Enter the page for `token` and return its validation, cached when possible."""

        await self.enter(token, kind)
        return await self._cache.validate(token)

    async def is_current(self, token: str) -> bool:
        session = await self.current()
        return session is not None and session.token == token

    async def leave(self) -> None:
        session = await self._store.delete(self._session_id)
        if session is not None:
            self._cache.evict(session.token)

    async def stats(self) -> SessionStats:
        session = await self.current()
        if session is None:
            return SessionStats(has_active_session=False)
        now = self._clock()
        record = self._cache.lookup(session.token)
        return SessionStats(
            has_active_session=True,
            session_kind=session.kind,
            navigation_count=session.navigation_count,
            session_age_seconds=(now - session.last_accessed).total_seconds(),
            cache_age_seconds=(now - record.cached_at).total_seconds() if record is not None else None,
        )


def build_session_store(
    *,
    redis_url: Optional[str],
    ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS,
    namespace: str = "caseload:token_session",
) -> TokenSessionStore:
    """Redis when configured, otherwise process-local memory."""

    if redis_url:
        return RedisTokenSessionStore.from_url(redis_url, ttl_seconds, namespace=namespace)
    return InMemoryTokenSessionStore(ttl_seconds, namespace=namespace)


__all__ = [
    "DEFAULT_SESSION_TTL_SECONDS",
    "InMemoryTokenSessionStore",
    "NavigationSession",
    "RedisTokenSessionStore",
    "SessionStats",
    "TokenKind",
    "TokenSession",
    "TokenSessionStore",
    "build_session_store",
]

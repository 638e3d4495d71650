"""Short-lived cache of one-time token validations.

Invitation and setup links are validated against the backend on first entry.
The result is kept for a short TTL so that client-side navigation inside the
flow does not re-validate on every page. A record is never served past
`min(cached_at + ttl, expires_at)`.

Collaborator failures are a cache miss, never a verdict: `validate` returns
None and the caller decides what to show. Only an answer from the backend can
mark a token invalid.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Union

from caseload.core.metrics import record_token_lookup
from caseload.remote.base import TokenClaims, TokenValidation, TokenValidator

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 5 * 60


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TokenValidationRecord:
    token: str
    is_valid: bool
    claims: TokenClaims = dataclasses.field(default_factory=TokenClaims)
    expires_at: Optional[datetime] = None
    cached_at: Optional[datetime] = None

    @classmethod
    def from_validation(cls, token: str, validation: TokenValidation) -> "TokenValidationRecord":
        return cls(
            token=token,
            is_valid=validation.is_valid,
            claims=validation.claims,
            expires_at=validation.expires_at,
        )

    def deadline(self, ttl: timedelta) -> datetime:
        """Instant after which this record must not be served."""
        if self.cached_at is None:
            raise ValueError("record has not been stored yet")
        limit = self.cached_at + ttl
        if self.expires_at is not None and self.expires_at < limit:
            return self.expires_at
        return limit


@dataclass
class TokenCacheMetrics:
    hits: int = 0
    misses: int = 0
    expirations: int = 0
    remote_validations: int = 0
    remote_failures: int = 0


class TokenValidationCache:
    def __init__(
        self,
        validator: Optional[TokenValidator] = None,
        *,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._validator = validator
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        self._records: Dict[str, TokenValidationRecord] = {}
        self._inflight: Dict[str, asyncio.Task] = {}
        self.metrics = TokenCacheMetrics()

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    def __len__(self) -> int:
        return len(self._records)

    def lookup(self, token: str) -> Optional[TokenValidationRecord]:
        """Return the cached record while it is servable, else None."""

        record = self._records.get(token)
        if record is None:
            self.metrics.misses += 1
            record_token_lookup("miss")
            return None
        if self._clock() >= record.deadline(self._ttl):
            self._records.pop(token, None)
            self.metrics.expirations += 1
            self.metrics.misses += 1
            record_token_lookup("expired")
            logger.debug("token_cache.expired", extra={"valid": record.is_valid})
            return None
        self.metrics.hits += 1
        record_token_lookup("hit")
        return record

    def store(
        self,
        token: str,
        record: Union[TokenValidationRecord, TokenValidation],
    ) -> TokenValidationRecord:
        """Insert or overwrite; `cached_at` is stamped with the current time."""

        if isinstance(record, TokenValidation):
            record = TokenValidationRecord.from_validation(token, record)
        stored = dataclasses.replace(record, token=token, cached_at=self._clock())
        self._records[token] = stored
        return stored

    def evict(self, token: str) -> bool:
        return self._records.pop(token, None) is not None

    def clear(self) -> None:
        self._records.clear()

    async def validate(self, token: str) -> Optional[TokenValidationRecord]:
        """Cached record, else one remote validation shared by concurrent callers.

        Returns None when the collaborator could not answer.
        """

        cached = self.lookup(token)
        if cached is not None:
            return cached
        if self._validator is None:
            return None

        task = self._inflight.get(token)
        if task is None:
            task = asyncio.create_task(self._validate_remote(token), name="token_cache.validate")
            self._inflight[token] = task
            task.add_done_callback(lambda done, token=token: self._forget(token, done))
        return await asyncio.shield(task)

    def _forget(self, token: str, task: asyncio.Task) -> None:
        if self._inflight.get(token) is task:
            del self._inflight[token]

    async def _validate_remote(self, token: str) -> Optional[TokenValidationRecord]:
        self.metrics.remote_validations += 1
        try:
            validation = await self._validator.validate(token)
        except Exception as exc:
            self.metrics.remote_failures += 1
            record_token_lookup("error")
            logger.warning(
                "token_cache.validate.failed",
                extra={"error": type(exc).__name__, "detail": str(exc)},
            )
            return None
        return self.store(token, validation)


__all__ = [
    "DEFAULT_TTL_SECONDS",
    "TokenCacheMetrics",
    "TokenValidationCache",
    "TokenValidationRecord",
]

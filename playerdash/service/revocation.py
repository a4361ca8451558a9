from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from playerdash.logging import get_logger
from playerdash.service.circuit_breaker import CircuitBreaker
from playerdash.storage.models import (
    RevocationEntry,
    RevocationReason,
    hash_token,
    utcnow,
)
from playerdash.storage.redis_cache import RedisCache

logger = get_logger(__name__)

PRINCIPAL_MARKER_TTL = timedelta(days=7)


class RevocationBackend(Protocol):
    def add_revocation_entry(self, entry: RevocationEntry) -> bool:
        ...

    def get_revocation_entry(self, jti: str) -> Optional[RevocationEntry]:
        ...

    def purge_revocation_entries(self, now: datetime) -> int:
        ...

    def count_revocation_entries(self) -> int:
        ...

    def bump_token_generation(self, principal_id: str) -> int:
        ...


class RevocationIndex:
    """Denylist of access-credential ids invalidated before natural expiry.

    A positive hit is authoritative. When the backing store cannot be
    consulted, or the breaker in front of it is open, ``contains`` answers
    True: an outage forces re-authentication rather than letting a revoked
    credential through.

    Principal-wide revocation bumps the principal's token generation; access
    credentials carry the generation they were minted under in ``gen``.
    The marker entry written alongside it is an audit record.
    """

    def __init__(
        self,
        store: RevocationBackend,
        cache: Optional[RedisCache] = None,
        *,
        breaker: Optional[CircuitBreaker] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.breaker = breaker or CircuitBreaker(
            "revocation_index", failure_threshold=5, reset_timeout=30.0
        )
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    async def add(
        self,
        jti: str,
        expires_at: datetime,
        principal_id: str,
        token: Optional[str],
        reason: RevocationReason,
    ) -> bool:
        entry = RevocationEntry(
            jti=jti,
            expires_at=expires_at,
            principal_id=principal_id,
            token_hash=hash_token(token) if token else None,
            reason=reason,
            revoked_at=self._now(),
        )
        added = self.store.add_revocation_entry(entry)
        if self.cache:
            ttl = int((expires_at - self._now()).total_seconds())
            try:
                await self.cache.denylist_access_token(jti, ttl)
            except Exception as exc:
                logger.warning("access_token_denylist_failed", jti=jti, error=str(exc))
        logger.info(
            "access_token_revoked", jti=jti, principal_id=principal_id, reason=reason.value
        )
        return added

    async def contains(self, jti: str) -> bool:
        if not jti:
            return True
        if self.cache:
            try:
                if await self.cache.is_access_token_denylisted(jti):
                    return True
            except Exception as exc:
                logger.warning("access_token_denylist_check_failed", jti=jti, error=str(exc))
        if not self.breaker.allow():
            logger.warning("revocation_index_shed_fail_closed", jti=jti)
            return True
        try:
            entry = self.store.get_revocation_entry(jti)
        except Exception as exc:
            self.breaker.record_failure()
            logger.error(
                "revocation_index_unavailable_fail_closed",
                jti=jti,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return True
        self.breaker.record_success()
        if entry is None:
            return False
        return entry.expires_at >= self._now()

    def add_principal_marker(self, principal_id: str, reason: RevocationReason) -> int:
        """Invalidate every outstanding access credential of a principal."""
        generation = self.store.bump_token_generation(principal_id)
        now = self._now()
        self.store.add_revocation_entry(
            RevocationEntry(
                jti=f"principal:{principal_id}:{generation}",
                expires_at=now + PRINCIPAL_MARKER_TTL,
                principal_id=principal_id,
                token_hash=None,
                reason=reason,
                revoked_at=now,
            )
        )
        logger.info(
            "principal_tokens_revoked",
            principal_id=principal_id,
            reason=reason.value,
            generation=generation,
        )
        return generation

    def purge(self) -> int:
        return self.store.purge_revocation_entries(self._now())

    def snapshot(self) -> dict:
        return {
            "entries": self.store.count_revocation_entries(),
            "breaker": self.breaker.snapshot(),
        }

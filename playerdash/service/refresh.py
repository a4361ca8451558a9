from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from playerdash.logging import get_logger
from playerdash.service.errors import AuthenticationError
from playerdash.storage.models import RefreshCredential, hash_token, utcnow

logger = get_logger(__name__)

REFRESH_TOKEN_BYTES = 40


class RefreshStoreBackend(Protocol):
    def create_refresh_credential(self, credential: RefreshCredential) -> RefreshCredential:
        ...

    def get_refresh_credential(self, token: str) -> Optional[RefreshCredential]:
        ...

    def rotate_refresh_credential(
        self, old_token: str, new_credential: RefreshCredential, now: datetime
    ) -> bool:
        ...

    def revoke_refresh_credential(self, token: str, now: datetime) -> bool:
        ...

    def revoke_principal_refresh_credentials(self, principal_id: str, now: datetime) -> int:
        ...

    def purge_refresh_credentials(self, now: datetime) -> int:
        ...


class RefreshTokenService:
    """Opaque rotating refresh credentials with a replaced-by chain."""

    def __init__(
        self,
        store: RefreshStoreBackend,
        *,
        ttl_seconds: int = 7 * 24 * 3600,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    def _new_credential(self, principal_id: str) -> RefreshCredential:
        now = self._now()
        return RefreshCredential(
            token=secrets.token_hex(REFRESH_TOKEN_BYTES),
            principal_id=principal_id,
            issued_at=now,
            expires_at=now + self.ttl,
        )

    def issue(self, principal_id: str) -> RefreshCredential:
        return self.store.create_refresh_credential(self._new_credential(principal_id))

    def lookup(self, token: str) -> Optional[RefreshCredential]:
        if not token:
            return None
        return self.store.get_refresh_credential(token)

    def resolve_active(self, token: str) -> RefreshCredential:
        """Return the active credential for ``token`` or raise 401.

        Presenting a credential that already has a successor means the old
        token was replayed; every credential of that principal is revoked.
        """
        credential = self.lookup(token)
        if credential is None:
            raise AuthenticationError("invalid refresh token")
        if credential.replaced_by:
            revoked = self.revoke_all_for(credential.principal_id)
            logger.warning(
                "refresh_token_replay_detected",
                principal_id=credential.principal_id,
                token_hash=hash_token(token)[:16],
                revoked=revoked,
            )
            raise AuthenticationError("invalid refresh token")
        if not credential.is_active(self._now()):
            raise AuthenticationError("invalid refresh token")
        return credential

    def rotate(self, old: RefreshCredential) -> RefreshCredential:
        """Swap ``old`` for a fresh credential; the loser of a race gets 401."""
        new = self._new_credential(old.principal_id)
        if not self.store.rotate_refresh_credential(old.token, new, self._now()):
            logger.warning("refresh_rotation_lost", principal_id=old.principal_id)
            raise AuthenticationError("invalid refresh token")
        return new

    def revoke(self, token: str) -> bool:
        return self.store.revoke_refresh_credential(token, self._now())

    def revoke_all_for(self, principal_id: str) -> int:
        return self.store.revoke_principal_refresh_credentials(principal_id, self._now())

    def purge(self) -> int:
        return self.store.purge_refresh_credentials(self._now())

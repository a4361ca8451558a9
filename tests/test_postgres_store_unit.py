from datetime import timedelta
from pathlib import Path

from playerdash.storage.models import (
    ActiveState,
    PendingState,
    RevocationReason,
    Role,
    TokenIntent,
    TwoFactor,
    utcnow,
)
from playerdash.storage.postgres import PostgresStore


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


def _store(tmp_path: Path) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = DummyPool()
    store.fs_root = tmp_path
    return store


def test_active_row_maps_to_active_state(tmp_path: Path):
    now = utcnow()
    principal = _store(tmp_path)._row_to_principal(
        {
            "id": "p1",
            "email": "a@x.io",
            "role": "tenant-admin",
            "tenant_id": "t1",
            "status": "active",
            "activated_at": now,
            "two_factor": "committed",
            "failed_logins": None,
            "token_generation": 2,
            "created_at": now,
        }
    )

    assert principal.role is Role.TENANT_ADMIN
    assert isinstance(principal.state, ActiveState)
    assert principal.two_factor is TwoFactor.COMMITTED
    assert principal.failed_logins == 0
    assert principal.token_generation == 2
    assert principal.reset is None


def test_pending_row_carries_invitation(tmp_path: Path):
    now = utcnow()
    principal = _store(tmp_path)._row_to_principal(
        {
            "id": "p2",
            "email": "b@x.io",
            "role": "member",
            "tenant_id": "t1",
            "status": "pending",
            "invitation_token": "uitnodiging",
            "invitation_issued_at": now,
            "invitation_expires_at": now + timedelta(days=7),
            "created_at": now,
        }
    )

    assert isinstance(principal.state, PendingState)
    assert principal.invitation.token == "uitnodiging"
    assert principal.invitation.intent is TokenIntent.INVITE
    assert principal.two_factor is TwoFactor.NONE


def test_revocation_row(tmp_path: Path):
    now = utcnow()
    entry = PostgresStore._row_to_revocation(
        {
            "jti": "j1",
            "expires_at": now,
            "principal_id": 42,
            "reason": "logout",
            "revoked_at": now,
        }
    )

    assert entry.principal_id == "42"
    assert entry.reason is RevocationReason.LOGOUT
    assert entry.token_hash is None

"""In-process store: persistence, constraints and refresh compare-and-set."""

import json
import threading
import uuid
from datetime import timedelta

import pytest

from playerdash.storage.errors import ConstraintViolation
from playerdash.storage.memory import MemoryStore
from playerdash.storage.models import (
    ActiveState,
    PendingState,
    Principal,
    RefreshCredential,
    Role,
    utcnow,
)

KEY = "totp-key-material-for-tests-0123456789"


def _principal(email, role=Role.MEMBER, state=None, tenant_id="tenant-a"):
    return Principal(
        id=str(uuid.uuid4()),
        email=email,
        role=role,
        tenant_id=None if role is Role.PLATFORM_ADMIN else tenant_id,
        state=state or ActiveState(activated_at=utcnow()),
    )


def _credential(principal_id, token=None):
    now = utcnow()
    return RefreshCredential(
        token=token or uuid.uuid4().hex,
        principal_id=principal_id,
        issued_at=now,
        expires_at=now + timedelta(days=7),
    )


@pytest.fixture
def store(tmp_path):
    return MemoryStore(str(tmp_path), totp_encryption_key=KEY)


class TestPrincipals:
    def test_duplicate_email_rejected(self, store):
        store.create_principal(_principal("a@x.io"))

        with pytest.raises(ConstraintViolation):
            store.create_principal(_principal("a@x.io"))

    def test_returned_principal_is_a_copy(self, store):
        created = store.create_principal(_principal("a@x.io"))
        created.failed_logins = 99

        assert store.get_principal(created.id).failed_logins == 0

    def test_password_requires_active_principal(self, store):
        pending = store.create_principal(_principal("b@x.io", state=PendingState(invitation=None)))

        with pytest.raises(ConstraintViolation):
            store.save_password(pending.id, "hash", "argon2id")

    def test_last_platform_admin_cannot_be_removed(self, store):
        admin = store.create_principal(_principal("beheer@x.io", role=Role.PLATFORM_ADMIN))

        with pytest.raises(ConstraintViolation):
            store.delete_principal(admin.id)
        with pytest.raises(ConstraintViolation):
            store.update_principal_role(admin.id, Role.MEMBER, "tenant-a")

        store.create_principal(_principal("tweede@x.io", role=Role.PLATFORM_ADMIN))
        assert store.delete_principal(admin.id)


class TestRefreshCredentials:
    def test_rotation_is_compare_and_set(self, store):
        principal = store.create_principal(_principal("a@x.io"))
        old = store.create_refresh_credential(_credential(principal.id))
        now = utcnow()

        assert store.rotate_refresh_credential(old.token, _credential(principal.id), now)
        assert not store.rotate_refresh_credential(old.token, _credential(principal.id), now)

    def test_delete_principal_drops_refresh_credentials(self, store):
        principal = store.create_principal(_principal("a@x.io"))
        credential = store.create_refresh_credential(_credential(principal.id))

        store.delete_principal(principal.id)

        assert store.get_refresh_credential(credential.token) is None


class TestPersistence:
    def test_state_survives_reload(self, store, tmp_path):
        principal = store.create_principal(_principal("a@x.io"))
        store.save_password(principal.id, "hash", "argon2id")
        store.set_pending_totp_secret(principal.id, "JBSWY3DPEHPK3PXP")

        reloaded = MemoryStore(str(tmp_path), totp_encryption_key=KEY)

        assert reloaded.get_principal_by_email("a@x.io").id == principal.id
        assert reloaded.get_password_record(principal.id) == ("hash", "argon2id")
        assert reloaded.get_totp_secrets(principal.id).pending_secret == "JBSWY3DPEHPK3PXP"

    def test_totp_secrets_are_encrypted_at_rest(self, store, tmp_path):
        principal = store.create_principal(_principal("a@x.io"))
        store.set_pending_totp_secret(principal.id, "JBSWY3DPEHPK3PXP")

        raw = (tmp_path / "state" / "memory_store.json").read_text()

        assert "JBSWY3DPEHPK3PXP" not in raw
        assert json.loads(raw)["totp_secrets"][0]["pending_secret"]

    def test_wrong_key_cannot_read_secrets(self, store, tmp_path):
        principal = store.create_principal(_principal("a@x.io"))
        store.set_pending_totp_secret(principal.id, "JBSWY3DPEHPK3PXP")

        other = MemoryStore(str(tmp_path), totp_encryption_key="another-key-material-0123456789")

        with pytest.raises(RuntimeError):
            other.get_totp_secrets(principal.id)


class TestLoginFailures:
    def test_concurrent_failures_are_all_counted(self, store):
        """N racing failures leave the counter at N and lock the account once."""
        principal = store.create_principal(_principal("a@x.io"))
        workers = 12
        threshold = 5
        start = utcnow()
        results = []
        barrier = threading.Barrier(workers)

        def fail(offset):
            barrier.wait()
            results.append(
                store.record_login_failure(
                    principal.id,
                    start + timedelta(seconds=offset),
                    lock_threshold=threshold,
                    lockout=timedelta(minutes=30),
                )
            )

        threads = [threading.Thread(target=fail, args=(i,)) for i in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert store.get_principal(principal.id).failed_logins == workers
        assert sorted(r.failed_logins for r in results) == list(range(1, workers + 1))
        assert all(r.locked_until is None for r in results if r.failed_logins < threshold)
        lock_times = {r.locked_until for r in results if r.failed_logins >= threshold}
        # Later failures must not push the lockout further out
        assert len(lock_times) == 1
        assert lock_times.pop() == store.get_principal(principal.id).locked_until

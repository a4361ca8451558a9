from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional

from playerdash.logging import get_logger
from playerdash.storage.common import SecretCipher
from playerdash.storage.errors import ConstraintViolation
from playerdash.storage.models import (
    ActiveState,
    OneShotToken,
    PendingState,
    Principal,
    RefreshCredential,
    RevocationEntry,
    RevocationReason,
    Role,
    TokenIntent,
    TotpSecrets,
    TwoFactor,
)


class MemoryStore:
    """In-process store for tests and single-node development.

    Every mutation happens under one re-entrant lock and is followed by a
    JSON snapshot under ``fs_root/state`` so a restarted dev server keeps
    its principals. Returned principals are copies; mutate through the
    store methods only.
    """

    def __init__(
        self, fs_root: str = "/tmp/playerdash", *, totp_encryption_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.principals: Dict[str, Principal] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.totp_secrets: Dict[str, TotpSecrets] = {}
        self.refresh_credentials: Dict[str, RefreshCredential] = {}
        self.revocations: Dict[str, RevocationEntry] = {}
        # RLock so helpers can nest inside public methods
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._cipher = SecretCipher(totp_encryption_key)
        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def ping(self) -> bool:
        return True

    # principals -----------------------------------------------------------

    def _email_taken(self, email: str, *, exclude_id: Optional[str] = None) -> bool:
        return any(
            p.email == email and p.id != exclude_id for p in self.principals.values()
        )

    def _copy(self, principal: Optional[Principal]) -> Optional[Principal]:
        return replace(principal) if principal else None

    def create_principal(self, principal: Principal) -> Principal:
        with self._data_lock:
            if self._email_taken(principal.email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            self.principals[principal.id] = replace(principal)
            self._persist_state()
            return replace(principal)

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._data_lock:
            return self._copy(self.principals.get(principal_id))

    def get_principal_by_email(self, email: str) -> Optional[Principal]:
        with self._data_lock:
            return self._copy(
                next((p for p in self.principals.values() if p.email == email), None)
            )

    def get_principal_by_invitation_token(self, token: str) -> Optional[Principal]:
        with self._data_lock:
            for principal in self.principals.values():
                invitation = principal.invitation
                if invitation and invitation.token == token:
                    return replace(principal)
            return None

    def get_principal_by_reset_token(self, token: str) -> Optional[Principal]:
        with self._data_lock:
            for principal in self.principals.values():
                if principal.reset and principal.reset.token == token:
                    return replace(principal)
            return None

    def list_principals(
        self, tenant_id: Optional[str] = None, limit: int = 100
    ) -> List[Principal]:
        with self._data_lock:
            results = [
                replace(p)
                for p in self.principals.values()
                if tenant_id is None or p.tenant_id == tenant_id
            ]
            return sorted(results, key=lambda p: p.created_at, reverse=True)[:limit]

    def count_principals(self, tenant_id: str) -> int:
        with self._data_lock:
            return sum(1 for p in self.principals.values() if p.tenant_id == tenant_id)

    def count_role(self, role: Role) -> int:
        with self._data_lock:
            return sum(1 for p in self.principals.values() if p.role is role)

    def set_invitation(
        self,
        principal_id: str,
        invitation: OneShotToken,
        reminded_at: datetime,
    ) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal or principal.is_active:
                return None
            principal.state = PendingState(invitation=invitation, last_reminder_at=reminded_at)
            self._persist_state()
            return replace(principal)

    def activate_principal(
        self,
        principal_id: str,
        invitation_token: str,
        password_hash: str,
        password_algo: str,
        now: datetime,
        *,
        email: Optional[str] = None,
    ) -> Optional[Principal]:
        """Consume the invitation and set the credential in one step.

        Returns ``None`` when the principal is no longer pending on that
        token (already consumed or reissued).
        """
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal or principal.is_active:
                return None
            invitation = principal.invitation
            if not invitation or invitation.token != invitation_token:
                return None
            if email and email != principal.email:
                if self._email_taken(email, exclude_id=principal_id):
                    raise ConstraintViolation("email already exists", {"field": "email"})
                principal.email = email
            principal.state = ActiveState(activated_at=now)
            principal.failed_logins = 0
            principal.locked_until = None
            self.credentials[principal_id] = (password_hash, password_algo)
            self._persist_state()
            return replace(principal)

    def set_reset_token(self, principal_id: str, reset: OneShotToken) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                return None
            principal.reset = reset
            principal.reset_requested_at = reset.issued_at
            self._persist_state()
            return replace(principal)

    def consume_reset_token(
        self, token: str, password_hash: str, password_algo: str, now: datetime
    ) -> Optional[Principal]:
        with self._data_lock:
            for principal in self.principals.values():
                reset = principal.reset
                if not reset or reset.token != token:
                    continue
                if not reset.is_valid(now) or not principal.is_active:
                    return None
                principal.reset = None
                principal.failed_logins = 0
                principal.locked_until = None
                self.credentials[principal.id] = (password_hash, password_algo)
                self._persist_state()
                return replace(principal)
            return None

    def save_password(
        self, principal_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal or not principal.is_active:
                raise ConstraintViolation(
                    "active principal not found for credentials",
                    {"principal_id": principal_id},
                )
            self.credentials[principal_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, principal_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(principal_id)

    def record_login_failure(
        self,
        principal_id: str,
        now: datetime,
        *,
        lock_threshold: int,
        lockout: timedelta,
    ) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                return None
            principal.failed_logins += 1
            if principal.failed_logins >= lock_threshold and not principal.is_locked(now):
                principal.locked_until = now + lockout
            self._persist_state()
            return replace(principal)

    def clear_expired_lockout(self, principal_id: str, now: datetime) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                return None
            if principal.locked_until is not None and principal.locked_until <= now:
                principal.locked_until = None
                principal.failed_logins = 0
                self._persist_state()
            return replace(principal)

    def record_login_success(self, principal_id: str, now: datetime) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                return None
            principal.failed_logins = 0
            principal.locked_until = None
            principal.last_login_at = now
            self._persist_state()
            return replace(principal)

    def bump_token_generation(self, principal_id: str) -> int:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                raise ConstraintViolation("principal not found", {"principal_id": principal_id})
            principal.token_generation += 1
            self._persist_state()
            return principal.token_generation

    def _guard_last_platform_admin(self, principal: Principal) -> None:
        if principal.role is not Role.PLATFORM_ADMIN:
            return
        remaining = sum(
            1
            for p in self.principals.values()
            if p.role is Role.PLATFORM_ADMIN and p.id != principal.id
        )
        if remaining == 0:
            raise ConstraintViolation(
                "cannot remove the last platform-admin", {"principal_id": principal.id}
            )

    def update_principal_role(
        self, principal_id: str, role: Role, tenant_id: Optional[str]
    ) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                return None
            if role is not Role.PLATFORM_ADMIN:
                self._guard_last_platform_admin(principal)
            principal.role = role
            principal.tenant_id = tenant_id
            self._persist_state()
            return replace(principal)

    def delete_principal(self, principal_id: str) -> bool:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                return False
            self._guard_last_platform_admin(principal)
            self.principals.pop(principal_id, None)
            self.credentials.pop(principal_id, None)
            self.totp_secrets.pop(principal_id, None)
            for token, cred in list(self.refresh_credentials.items()):
                if cred.principal_id == principal_id:
                    self.refresh_credentials.pop(token, None)
            self._persist_state()
            return True

    def list_reminder_candidates(
        self, now: datetime, reminder_interval: timedelta
    ) -> List[Principal]:
        with self._data_lock:
            results = []
            for principal in self.principals.values():
                state = principal.state
                if not isinstance(state, PendingState):
                    continue
                if state.invitation and state.invitation.is_valid(now):
                    continue
                if state.last_reminder_at and now - state.last_reminder_at < reminder_interval:
                    continue
                results.append(replace(principal))
            return results

    # TOTP secrets ---------------------------------------------------------

    def _set_two_factor(self, principal: Principal, two_factor: TwoFactor) -> None:
        if isinstance(principal.state, ActiveState):
            principal.state = replace(principal.state, two_factor=two_factor)

    def set_pending_totp_secret(self, principal_id: str, secret: str) -> None:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal or not principal.is_active:
                raise ConstraintViolation(
                    "active principal not found for totp", {"principal_id": principal_id}
                )
            record = self.totp_secrets.setdefault(principal_id, TotpSecrets(principal_id))
            record.pending_secret = self._cipher.encrypt(secret)
            if principal.two_factor is not TwoFactor.COMMITTED:
                self._set_two_factor(principal, TwoFactor.PENDING)
            self._persist_state()

    def get_totp_secrets(self, principal_id: str) -> TotpSecrets:
        with self._data_lock:
            record = self.totp_secrets.get(principal_id)
            if not record:
                return TotpSecrets(principal_id)
            return TotpSecrets(
                principal_id=principal_id,
                committed_secret=self._cipher.decrypt(record.committed_secret),
                pending_secret=self._cipher.decrypt(record.pending_secret),
            )

    def commit_pending_totp_secret(self, principal_id: str, expected_pending: str) -> bool:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            record = self.totp_secrets.get(principal_id)
            if not principal or not record or not record.pending_secret:
                return False
            if self._cipher.decrypt(record.pending_secret) != expected_pending:
                return False
            record.committed_secret = record.pending_secret
            record.pending_secret = None
            self._set_two_factor(principal, TwoFactor.COMMITTED)
            self._persist_state()
            return True

    def clear_totp_secrets(self, principal_id: str) -> bool:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                return False
            removed = self.totp_secrets.pop(principal_id, None) is not None
            self._set_two_factor(principal, TwoFactor.NONE)
            self._persist_state()
            return removed

    # refresh credentials --------------------------------------------------

    def create_refresh_credential(self, credential: RefreshCredential) -> RefreshCredential:
        with self._data_lock:
            if credential.token in self.refresh_credentials:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            self.refresh_credentials[credential.token] = replace(credential)
            self._persist_state()
            return replace(credential)

    def get_refresh_credential(self, token: str) -> Optional[RefreshCredential]:
        with self._data_lock:
            credential = self.refresh_credentials.get(token)
            return replace(credential) if credential else None

    def rotate_refresh_credential(
        self, old_token: str, new_credential: RefreshCredential, now: datetime
    ) -> bool:
        """Compare-and-set: succeeds only while ``old_token`` is unrevoked."""
        with self._data_lock:
            old = self.refresh_credentials.get(old_token)
            if not old or old.revoked_at is not None:
                return False
            old.revoked_at = now
            old.replaced_by = new_credential.token
            self.refresh_credentials[new_credential.token] = replace(new_credential)
            self._persist_state()
            return True

    def revoke_refresh_credential(self, token: str, now: datetime) -> bool:
        with self._data_lock:
            credential = self.refresh_credentials.get(token)
            if not credential or credential.revoked_at is not None:
                return False
            credential.revoked_at = now
            self._persist_state()
            return True

    def revoke_principal_refresh_credentials(self, principal_id: str, now: datetime) -> int:
        with self._data_lock:
            count = 0
            for credential in self.refresh_credentials.values():
                if credential.principal_id == principal_id and credential.revoked_at is None:
                    credential.revoked_at = now
                    count += 1
            if count:
                self._persist_state()
            return count

    def purge_refresh_credentials(self, now: datetime) -> int:
        with self._data_lock:
            stale = [
                token
                for token, cred in self.refresh_credentials.items()
                if cred.expires_at < now or cred.revoked_at is not None
            ]
            for token in stale:
                self.refresh_credentials.pop(token, None)
            if stale:
                self._persist_state()
            return len(stale)

    # revocation index -----------------------------------------------------

    def add_revocation_entry(self, entry: RevocationEntry) -> bool:
        with self._data_lock:
            if entry.jti in self.revocations:
                return False
            self.revocations[entry.jti] = replace(entry)
            self._persist_state()
            return True

    def get_revocation_entry(self, jti: str) -> Optional[RevocationEntry]:
        with self._data_lock:
            entry = self.revocations.get(jti)
            return replace(entry) if entry else None

    def purge_revocation_entries(self, now: datetime) -> int:
        with self._data_lock:
            expired = [jti for jti, e in self.revocations.items() if e.expires_at < now]
            for jti in expired:
                self.revocations.pop(jti, None)
            if expired:
                self._persist_state()
            return len(expired)

    def count_revocation_entries(self) -> int:
        with self._data_lock:
            return len(self.revocations)

    # persistence ----------------------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "principals": [self._serialize_principal(p) for p in self.principals.values()],
            "credentials": [
                {
                    "principal_id": principal_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for principal_id, creds in self.credentials.items()
            ],
            "totp_secrets": [
                {
                    "principal_id": record.principal_id,
                    "committed_secret": record.committed_secret,
                    "pending_secret": record.pending_secret,
                }
                for record in self.totp_secrets.values()
            ],
            "refresh_credentials": [
                self._serialize_refresh(c) for c in self.refresh_credentials.values()
            ],
            "revocations": [self._serialize_revocation(e) for e in self.revocations.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.principals = {
            p["id"]: self._deserialize_principal(p) for p in data.get("principals", [])
        }
        self.credentials = {
            entry["principal_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.totp_secrets = {
            entry["principal_id"]: TotpSecrets(
                principal_id=entry["principal_id"],
                committed_secret=entry.get("committed_secret"),
                pending_secret=entry.get("pending_secret"),
            )
            for entry in data.get("totp_secrets", [])
        }
        self.refresh_credentials = {
            c["token"]: self._deserialize_refresh(c)
            for c in data.get("refresh_credentials", [])
        }
        self.revocations = {
            e["jti"]: self._deserialize_revocation(e) for e in data.get("revocations", [])
        }
        return True

    @staticmethod
    def _dt(value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None

    @staticmethod
    def _parse_dt(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_one_shot(self, token: Optional[OneShotToken]) -> Optional[dict]:
        if not token:
            return None
        return {
            "token": token.token,
            "intent": token.intent.value,
            "issued_at": self._dt(token.issued_at),
            "expires_at": self._dt(token.expires_at),
        }

    def _deserialize_one_shot(self, data: Optional[dict]) -> Optional[OneShotToken]:
        if not data:
            return None
        return OneShotToken(
            token=data["token"],
            intent=TokenIntent(data["intent"]),
            issued_at=self._parse_dt(data["issued_at"]),
            expires_at=self._parse_dt(data["expires_at"]),
        )

    def _serialize_principal(self, principal: Principal) -> dict:
        state = principal.state
        if isinstance(state, ActiveState):
            state_data = {
                "kind": "active",
                "activated_at": self._dt(state.activated_at),
                "two_factor": state.two_factor.value,
            }
        else:
            state_data = {
                "kind": "pending",
                "invitation": self._serialize_one_shot(state.invitation),
                "last_reminder_at": self._dt(state.last_reminder_at),
            }
        return {
            "id": principal.id,
            "email": principal.email,
            "role": principal.role.value,
            "tenant_id": principal.tenant_id,
            "state": state_data,
            "failed_logins": principal.failed_logins,
            "locked_until": self._dt(principal.locked_until),
            "last_login_at": self._dt(principal.last_login_at),
            "reset": self._serialize_one_shot(principal.reset),
            "reset_requested_at": self._dt(principal.reset_requested_at),
            "token_generation": principal.token_generation,
            "created_at": self._dt(principal.created_at),
        }

    def _deserialize_principal(self, data: dict) -> Principal:
        raw_state = data["state"]
        if raw_state["kind"] == "active":
            state = ActiveState(
                activated_at=self._parse_dt(raw_state["activated_at"]),
                two_factor=TwoFactor(raw_state.get("two_factor", "none")),
            )
        else:
            state = PendingState(
                invitation=self._deserialize_one_shot(raw_state.get("invitation")),
                last_reminder_at=self._parse_dt(raw_state.get("last_reminder_at")),
            )
        return Principal(
            id=data["id"],
            email=data["email"],
            role=Role(data["role"]),
            tenant_id=data.get("tenant_id"),
            state=state,
            failed_logins=data.get("failed_logins", 0),
            locked_until=self._parse_dt(data.get("locked_until")),
            last_login_at=self._parse_dt(data.get("last_login_at")),
            reset=self._deserialize_one_shot(data.get("reset")),
            reset_requested_at=self._parse_dt(data.get("reset_requested_at")),
            token_generation=data.get("token_generation", 0),
            created_at=self._parse_dt(data["created_at"]),
        )

    def _serialize_refresh(self, credential: RefreshCredential) -> dict:
        return {
            "token": credential.token,
            "principal_id": credential.principal_id,
            "issued_at": self._dt(credential.issued_at),
            "expires_at": self._dt(credential.expires_at),
            "revoked_at": self._dt(credential.revoked_at),
            "replaced_by": credential.replaced_by,
        }

    def _deserialize_refresh(self, data: dict) -> RefreshCredential:
        return RefreshCredential(
            token=data["token"],
            principal_id=data["principal_id"],
            issued_at=self._parse_dt(data["issued_at"]),
            expires_at=self._parse_dt(data["expires_at"]),
            revoked_at=self._parse_dt(data.get("revoked_at")),
            replaced_by=data.get("replaced_by"),
        )

    def _serialize_revocation(self, entry: RevocationEntry) -> dict:
        return {
            "jti": entry.jti,
            "expires_at": self._dt(entry.expires_at),
            "principal_id": entry.principal_id,
            "token_hash": entry.token_hash,
            "reason": entry.reason.value,
            "revoked_at": self._dt(entry.revoked_at),
        }

    def _deserialize_revocation(self, data: dict) -> RevocationEntry:
        return RevocationEntry(
            jti=data["jti"],
            expires_at=self._parse_dt(data["expires_at"]),
            principal_id=data["principal_id"],
            token_hash=data.get("token_hash"),
            reason=RevocationReason(data["reason"]),
            revoked_at=self._parse_dt(data["revoked_at"]),
        )

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def hash_token(token: str) -> str:
    """SHA-256 hex digest used to store credentials for audit only."""
    return hashlib.sha256(token.encode()).hexdigest()


class Role(str, Enum):
    PLATFORM_ADMIN = "platform-admin"
    TENANT_ADMIN = "tenant-admin"
    MEMBER = "member"


class RevocationReason(str, Enum):
    LOGOUT = "logout"
    PASSWORD_CHANGE = "password-change"
    SECURITY = "security"
    ADMIN = "admin"


class TokenIntent(str, Enum):
    INVITE = "invite"
    RESET = "reset"


class TwoFactor(str, Enum):
    """Second-factor slot of an active principal."""

    NONE = "none"
    PENDING = "pending"
    COMMITTED = "committed"


@dataclass(frozen=True)
class OneShotToken:
    token: str
    intent: TokenIntent
    issued_at: datetime
    expires_at: datetime

    def is_valid(self, now: datetime) -> bool:
        return now < self.expires_at


@dataclass(frozen=True)
class PendingState:
    """Invited but not yet registered; holds no password credential."""

    invitation: Optional[OneShotToken]
    last_reminder_at: Optional[datetime] = None


@dataclass(frozen=True)
class ActiveState:
    """Registered; a password credential exists for the principal."""

    activated_at: datetime
    two_factor: TwoFactor = TwoFactor.NONE


LifecycleState = Union[PendingState, ActiveState]


@dataclass
class Principal:
    id: str
    email: str
    role: Role
    tenant_id: Optional[str]
    state: LifecycleState
    failed_logins: int = 0
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    reset: Optional[OneShotToken] = None
    reset_requested_at: Optional[datetime] = None
    token_generation: int = 0
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return isinstance(self.state, ActiveState)

    @property
    def status(self) -> str:
        return "active" if self.is_active else "pending"

    @property
    def two_factor(self) -> TwoFactor:
        if isinstance(self.state, ActiveState):
            return self.state.two_factor
        return TwoFactor.NONE

    @property
    def two_factor_enabled(self) -> bool:
        return self.two_factor is TwoFactor.COMMITTED

    @property
    def invitation(self) -> Optional[OneShotToken]:
        if isinstance(self.state, PendingState):
            return self.state.invitation
        return None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now

    def snapshot(self) -> dict:
        """Public view used in responses and push-channel sessions."""
        return {
            "id": self.id,
            "email": self.email,
            "role": self.role.value,
            "company_id": self.tenant_id,
        }


@dataclass
class PasswordCredential:
    principal_id: str
    password_hash: str
    password_algo: str
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class TotpSecrets:
    principal_id: str
    committed_secret: Optional[str] = None
    pending_secret: Optional[str] = None


@dataclass
class RefreshCredential:
    token: str
    principal_id: str
    issued_at: datetime
    expires_at: datetime
    revoked_at: Optional[datetime] = None
    replaced_by: Optional[str] = None

    def is_active(self, now: datetime) -> bool:
        return self.revoked_at is None and now < self.expires_at


@dataclass
class RevocationEntry:
    jti: str
    expires_at: datetime
    principal_id: str
    token_hash: Optional[str]
    reason: RevocationReason
    revoked_at: datetime = field(default_factory=utcnow)

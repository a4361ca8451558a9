from __future__ import annotations

import math
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Protocol

from playerdash.logging import get_logger
from playerdash.service.auth import AuthContext, AuthService, TokenPair, check_password_policy
from playerdash.service.email import EmailService
from playerdash.service.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from playerdash.service.passwords import PasswordHasher
from playerdash.service.roles import (
    TENANT_PRINCIPAL_CAP,
    Capability,
    can_assign_role,
    can_manage_tenant,
    has_capability,
)
from playerdash.service.validation import validate_email
from playerdash.storage.errors import ConstraintViolation
from playerdash.storage.models import (
    OneShotToken,
    PendingState,
    Principal,
    RevocationReason,
    Role,
    TokenIntent,
    utcnow,
)

logger = get_logger(__name__)

ONE_SHOT_TOKEN_BYTES = 20
INVITATION_TTL = timedelta(days=7)
INVITATION_COOLDOWN = timedelta(hours=1)
REMINDER_INTERVAL = timedelta(days=7)
RESET_TTL = timedelta(hours=1)
RESET_COOLDOWN = timedelta(minutes=5)

ALREADY_REGISTERED = (
    "Deze gebruiker is al geregistreerd. Er kan geen nieuwe uitnodiging worden verzonden."
)
RESET_GENERIC = (
    "Als er een account bestaat met dit e-mailadres, ontvang je binnen enkele minuten "
    "een e-mail met instructies om je wachtwoord te resetten."
)
RESET_COOLDOWN_MESSAGE = (
    "Er is recent al een reset link verzonden. Wacht enkele minuten voordat je het "
    "opnieuw probeert."
)
REMINDER_SENT = "Herinnering is verzonden."
INVALID_REGISTRATION_TOKEN = "Invalid or expired registration token"
INVALID_RESET_TOKEN = "Invalid or expired password reset token"


class InvitationStore(Protocol):
    def create_principal(self, principal: Principal) -> Principal:
        ...

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        ...

    def get_principal_by_email(self, email: str) -> Optional[Principal]:
        ...

    def get_principal_by_invitation_token(self, token: str) -> Optional[Principal]:
        ...

    def count_principals(self, tenant_id: str) -> int:
        ...

    def update_principal_role(
        self, principal_id: str, role: Role, tenant_id: Optional[str]
    ) -> Optional[Principal]:
        ...

    def set_invitation(
        self, principal_id: str, invitation: OneShotToken, reminded_at: datetime
    ) -> Optional[Principal]:
        ...

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
        ...

    def set_reset_token(self, principal_id: str, reset: OneShotToken) -> Optional[Principal]:
        ...

    def consume_reset_token(
        self, token: str, password_hash: str, password_algo: str, now: datetime
    ) -> Optional[Principal]:
        ...

    def list_reminder_candidates(
        self, now: datetime, reminder_interval: timedelta
    ) -> List[Principal]:
        ...


def _parse_email(value: str) -> str:
    try:
        return validate_email(value)
    except ValueError as exc:
        raise ValidationError("Invalid email format", detail={"field": "email"}) from exc


class InvitationService:
    """One-shot invitation and password-reset tokens."""

    def __init__(
        self,
        store: InvitationStore,
        email: EmailService,
        auth: AuthService,
        hasher: PasswordHasher,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.email = email
        self.auth = auth
        self.hasher = hasher
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    def _mint(self, intent: TokenIntent, ttl: timedelta) -> OneShotToken:
        now = self._now()
        return OneShotToken(
            token=secrets.token_hex(ONE_SHOT_TOKEN_BYTES),
            intent=intent,
            issued_at=now,
            expires_at=now + ttl,
        )

    def _enforce_invite_cooldown(self, principal: Principal) -> None:
        state = principal.state
        last_sent = (
            state.last_reminder_at if isinstance(state, PendingState) else None
        ) or principal.created_at
        remaining = last_sent + INVITATION_COOLDOWN - self._now()
        if remaining.total_seconds() > 0:
            minutes = max(1, math.ceil(remaining.total_seconds() / 60))
            raise RateLimitedError(
                "Er is recent een uitnodiging verzonden. Wacht nog "
                f"{minutes} minuten voordat je een nieuwe uitnodiging verstuurt.",
                retry_after=math.ceil(remaining.total_seconds()),
            )

    def _resolve_target(
        self, actor: AuthContext, role: Role, tenant_id: Optional[str]
    ) -> Optional[str]:
        if not has_capability(actor.role, Capability.INVITE_PRINCIPALS):
            raise ForbiddenError("Unauthorized to send invitations")
        if not can_assign_role(actor.role, role):
            raise ForbiddenError(
                "Bedrijfsadmins can only create regular users and bedrijfsadmins"
            )
        if role is Role.PLATFORM_ADMIN:
            return None
        target = tenant_id or actor.tenant_id
        if not target:
            raise ValidationError("company_id is required", detail={"field": "companyId"})
        if not can_manage_tenant(actor.role, actor.tenant_id, target):
            raise ForbiddenError("Cannot create users for other companies")
        return target

    @staticmethod
    def _may_manage(actor: AuthContext, principal: Principal) -> bool:
        if principal.tenant_id is None:
            return has_capability(actor.role, Capability.MANAGE_ALL_TENANTS)
        return can_manage_tenant(actor.role, actor.tenant_id, principal.tenant_id)

    async def invite(
        self, actor: AuthContext, email: str, role: Role, tenant_id: Optional[str] = None
    ) -> dict:
        address = _parse_email(email)
        target_tenant = self._resolve_target(actor, role, tenant_id)

        principal = self.store.get_principal_by_email(address)
        if principal and principal.is_active:
            raise ValidationError(ALREADY_REGISTERED)
        moving = principal is None or principal.tenant_id != target_tenant
        if principal and moving and not self._may_manage(actor, principal):
            raise ForbiddenError("Cannot create users for other companies")
        # A pending principal already in the target tenant is counted there
        if (
            moving
            and target_tenant
            and not has_capability(actor.role, Capability.MANAGE_ALL_TENANTS)
            and self.store.count_principals(target_tenant) >= TENANT_PRINCIPAL_CAP
        ):
            raise ForbiddenError("Maximum number of users reached for this company")
        if principal:
            self._enforce_invite_cooldown(principal)
            if principal.role is not role or moving:
                principal = self.store.update_principal_role(principal.id, role, target_tenant)
        else:
            try:
                principal = self.store.create_principal(
                    Principal(
                        id=str(uuid.uuid4()),
                        email=address,
                        role=role,
                        tenant_id=target_tenant,
                        state=PendingState(invitation=None),
                        created_at=self._now(),
                    )
                )
            except ConstraintViolation as exc:
                raise ConflictError("Email is already in use", detail=exc.detail) from exc

        invitation = self._mint(TokenIntent.INVITE, INVITATION_TTL)
        principal = self.store.set_invitation(principal.id, invitation, reminded_at=self._now())
        if principal is None:
            raise ConflictError("Principal is no longer pending")
        status = await self.email.send_invitation(
            principal.email, invitation.token, principal.role.value, principal.tenant_id
        )
        logger.info(
            "invitation_sent",
            principal_id=principal.id,
            invited_by=actor.principal_id,
            email_status=status,
        )
        return {**principal.snapshot(), "status": principal.status, "emailStatus": status}

    async def resend(self, actor: AuthContext, principal_id: str) -> dict:
        if not has_capability(actor.role, Capability.INVITE_PRINCIPALS):
            raise ForbiddenError("Insufficient permissions")
        principal = self.store.get_principal(principal_id)
        if not principal:
            raise NotFoundError("User not found")
        if not self._may_manage(actor, principal):
            raise ForbiddenError("Insufficient permissions")
        if principal.is_active:
            raise ValidationError(ALREADY_REGISTERED)
        self._enforce_invite_cooldown(principal)

        invitation = self._mint(TokenIntent.INVITE, INVITATION_TTL)
        principal = self.store.set_invitation(principal.id, invitation, reminded_at=self._now())
        if principal is None:
            raise ValidationError(ALREADY_REGISTERED)
        status = await self.email.send_reminder(
            principal.email, invitation.token, principal.role.value, principal.tenant_id
        )
        logger.info("invitation_resent", principal_id=principal.id, email_status=status)
        return {"message": REMINDER_SENT, "emailStatus": status}

    def verify_token(self, token: str) -> dict:
        principal = self.store.get_principal_by_invitation_token(token) if token else None
        invitation = principal.invitation if principal else None
        if not principal or not invitation or not invitation.is_valid(self._now()):
            raise ValidationError(INVALID_REGISTRATION_TOKEN)
        return {
            "valid": True,
            "email": principal.email,
            "role": principal.role.value,
            "company_id": principal.tenant_id,
        }

    async def complete_registration(
        self, token: str, password: str, email: Optional[str] = None
    ) -> TokenPair:
        principal = self.store.get_principal_by_invitation_token(token) if token else None
        invitation = principal.invitation if principal else None
        if not principal or not invitation or not invitation.is_valid(self._now()):
            raise ValidationError(INVALID_REGISTRATION_TOKEN)
        check_password_policy(password)
        new_email = _parse_email(email) if email else None
        if new_email and new_email != principal.email:
            other = self.store.get_principal_by_email(new_email)
            if other and other.id != principal.id:
                raise ConflictError("Email is already in use by another user")

        password_hash, algo = self.hasher.hash(password)
        try:
            activated = self.store.activate_principal(
                principal.id, token, password_hash, algo, self._now(), email=new_email
            )
        except ConstraintViolation as exc:
            raise ConflictError("Email is already in use by another user") from exc
        if activated is None:
            raise ValidationError(INVALID_REGISTRATION_TOKEN)
        logger.info("registration_completed", principal_id=activated.id)
        return self.auth.issue_token_pair(activated)

    async def request_password_reset(self, email: str) -> dict:
        address = _parse_email(email)
        principal = self.store.get_principal_by_email(address)
        if not principal or not principal.is_active:
            logger.info("password_reset_requested_unknown")
            return {"message": RESET_GENERIC}
        now = self._now()
        if principal.reset_requested_at is not None:
            remaining = principal.reset_requested_at + RESET_COOLDOWN - now
            if remaining.total_seconds() > 0:
                raise RateLimitedError(
                    RESET_COOLDOWN_MESSAGE, retry_after=math.ceil(remaining.total_seconds())
                )
        reset = self._mint(TokenIntent.RESET, RESET_TTL)
        self.store.set_reset_token(principal.id, reset)
        status = await self.email.send_password_reset(principal.email, reset.token)
        logger.info("password_reset_requested", principal_id=principal.id, email_status=status)
        return {"message": RESET_GENERIC}

    async def reset_password(self, token: str, password: str) -> dict:
        check_password_policy(password)
        if not token:
            raise ValidationError(INVALID_RESET_TOKEN)
        password_hash, algo = self.hasher.hash(password)
        principal = self.store.consume_reset_token(token, password_hash, algo, self._now())
        if principal is None:
            raise ValidationError(INVALID_RESET_TOKEN)
        revoked = self.auth.revoke_all_for_principal(
            principal.id, RevocationReason.PASSWORD_CHANGE
        )
        logger.info("password_reset_completed", principal_id=principal.id, refresh_revoked=revoked)
        return {"message": "Password has been reset successfully"}

    async def send_reminders(self) -> int:
        """Reissue expired invitations older than the reminder interval."""
        now = self._now()
        sent = 0
        for principal in self.store.list_reminder_candidates(now, REMINDER_INTERVAL):
            invitation = self._mint(TokenIntent.INVITE, INVITATION_TTL)
            updated = self.store.set_invitation(principal.id, invitation, reminded_at=now)
            if updated is None:
                continue
            try:
                status = await self.email.send_reminder(
                    updated.email, invitation.token, updated.role.value, updated.tenant_id
                )
            except Exception as exc:
                logger.error(
                    "registration_reminder_failed",
                    principal_id=principal.id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                continue
            sent += 1
            logger.info("registration_reminder_sent", principal_id=principal.id, email_status=status)
        return sent

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional, Protocol

from playerdash.logging import get_logger
from playerdash.service.errors import AuthenticationError, ForbiddenError, ValidationError
from playerdash.service.passwords import PasswordHasher
from playerdash.service.refresh import RefreshTokenService
from playerdash.service.revocation import RevocationIndex
from playerdash.service.roles import Capability, has_all
from playerdash.service.tokens import AccessTokenCodec, IssuedToken
from playerdash.service.validation import password_policy_errors
from playerdash.storage.models import (
    Principal,
    RefreshCredential,
    RevocationReason,
    Role,
    utcnow,
)

logger = get_logger(__name__)

PASSWORD_POLICY_MESSAGE = "Password does not meet security requirements"


class AuthStore(Protocol):
    def get_principal(self, principal_id: str) -> Optional[Principal]:
        ...

    def get_password_record(self, principal_id: str) -> Optional[tuple[str, str]]:
        ...

    def save_password(self, principal_id: str, password_hash: str, password_algo: str) -> None:
        ...


@dataclass
class AuthContext:
    principal_id: str
    email: str
    role: Role
    tenant_id: Optional[str]
    jti: str
    expires_at: datetime
    token: str

    def can(self, *capabilities: Capability) -> bool:
        return has_all(self.role, capabilities)


@dataclass
class TokenPair:
    principal: Principal
    access: IssuedToken
    refresh: RefreshCredential
    rotated: bool = True

    def as_response(self) -> dict:
        return {
            "accessToken": self.access.token,
            "refreshToken": self.refresh.token,
            "expiresIn": self.access.expires_in,
            "tokenType": "bearer",
            "principal": self.principal.snapshot(),
        }


def check_password_policy(password: Optional[str]) -> None:
    errors = password_policy_errors(password)
    if errors:
        raise ValidationError(PASSWORD_POLICY_MESSAGE, detail={"errors": errors})


class AuthService:
    """Access/refresh credential lifecycle.

    Every authenticated request runs the same chain: signature and claims,
    revocation index, then the stored principal. The stored record is
    authoritative; a role or tenant that no longer matches the credential
    rejects it.
    """

    def __init__(
        self,
        store: AuthStore,
        codec: AccessTokenCodec,
        refresh_tokens: RefreshTokenService,
        revocations: RevocationIndex,
        hasher: PasswordHasher,
        *,
        rotation_age_seconds: int = 24 * 3600,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.codec = codec
        self.refresh_tokens = refresh_tokens
        self.revocations = revocations
        self.hasher = hasher
        self.rotation_age = timedelta(seconds=rotation_age_seconds)
        self._clock = clock or utcnow
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    @staticmethod
    def extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    async def authenticate(
        self, token: Optional[str], *, required: Iterable[Capability] = ()
    ) -> AuthContext:
        if not token:
            raise AuthenticationError("authentication required")
        claims = self.codec.verify(token)
        jti = claims["jti"]
        if await self.revocations.contains(jti):
            self.logger.info("access_token_rejected_revoked", jti=jti)
            raise AuthenticationError("token has been revoked")
        principal = self.store.get_principal(claims["sub"])
        if not principal or not principal.is_active:
            raise AuthenticationError("invalid token")
        if claims.get("role") != principal.role.value or claims.get(
            "company_id"
        ) != principal.tenant_id:
            self.logger.warning(
                "access_token_principal_mismatch",
                principal_id=principal.id,
                token_role=claims.get("role"),
                stored_role=principal.role.value,
            )
            raise AuthenticationError("role mismatch - please log in again")
        generation = claims.get("gen", 0)
        if not isinstance(generation, int) or generation < principal.token_generation:
            raise AuthenticationError("token has been revoked")
        context = AuthContext(
            principal_id=principal.id,
            email=principal.email,
            role=principal.role,
            tenant_id=principal.tenant_id,
            jti=jti,
            expires_at=self.codec.expires_at(claims),
            token=token,
        )
        required = tuple(required)
        if required and not context.can(*required):
            raise ForbiddenError("Insufficient permissions")
        return context

    def issue_token_pair(self, principal: Principal) -> TokenPair:
        access = self.codec.issue(principal)
        refresh = self.refresh_tokens.issue(principal.id)
        return TokenPair(principal=principal, access=access, refresh=refresh)

    async def refresh(self, refresh_token: str) -> TokenPair:
        """New access credential; the refresh credential rotates once it is old enough."""
        credential = self.refresh_tokens.resolve_active(refresh_token)
        principal = self.store.get_principal(credential.principal_id)
        if not principal or not principal.is_active:
            raise AuthenticationError("invalid refresh token")
        if self._now() - credential.issued_at >= self.rotation_age:
            credential = self.refresh_tokens.rotate(credential)
            rotated = True
        else:
            rotated = False
        access = self.codec.issue(principal)
        return TokenPair(principal=principal, access=access, refresh=credential, rotated=rotated)

    async def logout(self, context: AuthContext, refresh_token: Optional[str] = None) -> None:
        await self.revocations.add(
            context.jti,
            context.expires_at,
            context.principal_id,
            context.token,
            RevocationReason.LOGOUT,
        )
        if refresh_token:
            credential = self.refresh_tokens.lookup(refresh_token)
            if credential and credential.principal_id == context.principal_id:
                self.refresh_tokens.revoke(refresh_token)
            elif credential:
                self.logger.warning(
                    "logout_refresh_token_not_owned", principal_id=context.principal_id
                )
        self.logger.info("logout", principal_id=context.principal_id)

    def revoke_all_for_principal(self, principal_id: str, reason: RevocationReason) -> int:
        """Revoke every refresh credential and outstanding access credential."""
        revoked = self.refresh_tokens.revoke_all_for(principal_id)
        self.revocations.add_principal_marker(principal_id, reason)
        return revoked

    async def change_password(
        self, context: AuthContext, current_password: str, new_password: str
    ) -> TokenPair:
        check_password_policy(new_password)
        record = self.store.get_password_record(context.principal_id)
        if not self.hasher.verify(record, current_password or ""):
            raise ValidationError("Huidig wachtwoord is incorrect")
        password_hash, algo = self.hasher.hash(new_password)
        self.store.save_password(context.principal_id, password_hash, algo)
        self.revoke_all_for_principal(context.principal_id, RevocationReason.PASSWORD_CHANGE)
        principal = self.store.get_principal(context.principal_id)
        if not principal:
            raise AuthenticationError("invalid token")
        self.logger.info("password_changed", principal_id=principal.id)
        return self.issue_token_pair(principal)

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from playerdash.logging import get_logger
from playerdash.service.auth import AuthService, TokenPair
from playerdash.service.captcha import CaptchaVerifier
from playerdash.service.errors import (
    AuthenticationError,
    CaptchaRequiredError,
    LockedError,
)
from playerdash.service.passwords import PasswordHasher
from playerdash.service.tokens import AccessTokenCodec, IssuedToken
from playerdash.service.totp import TotpService
from playerdash.service.validation import normalize_email
from playerdash.storage.models import Principal, utcnow

logger = get_logger(__name__)

INVALID_CREDENTIALS = "Invalid email or password"
CAPTCHA_THRESHOLD = 3
LOCK_THRESHOLD = 5
LOCKOUT_DURATION = timedelta(minutes=30)


class LoginStore(Protocol):
    def get_principal(self, principal_id: str) -> Optional[Principal]:
        ...

    def get_principal_by_email(self, email: str) -> Optional[Principal]:
        ...

    def get_password_record(self, principal_id: str) -> Optional[tuple[str, str]]:
        ...

    def record_login_failure(
        self, principal_id: str, now: datetime, *, lock_threshold: int, lockout: timedelta
    ) -> Optional[Principal]:
        ...

    def clear_expired_lockout(self, principal_id: str, now: datetime) -> Optional[Principal]:
        ...

    def record_login_success(self, principal_id: str, now: datetime) -> Optional[Principal]:
        ...


@dataclass
class LoginResult:
    tokens: Optional[TokenPair] = None
    handoff: Optional[IssuedToken] = None

    @property
    def requires_second_factor(self) -> bool:
        return self.handoff is not None

    def as_response(self) -> dict:
        if self.handoff is not None:
            return {"requires2FA": True, "handoffToken": self.handoff.token}
        return self.tokens.as_response()


class LoginOrchestrator:
    """Password login with CAPTCHA escalation, lockout and a 2FA handoff.

    Order of checks: lockout, CAPTCHA (after three failures), password,
    second factor. Unknown principals, inactive principals, active lockouts
    and wrong passwords all surface as the same 401.
    """

    def __init__(
        self,
        store: LoginStore,
        auth: AuthService,
        codec: AccessTokenCodec,
        hasher: PasswordHasher,
        totp: TotpService,
        captcha: CaptchaVerifier,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.auth = auth
        self.codec = codec
        self.hasher = hasher
        self.totp = totp
        self.captcha = captcha
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    async def login(
        self,
        email: str,
        password: str,
        *,
        captcha: Optional[str] = None,
        remote_ip: Optional[str] = None,
    ) -> LoginResult:
        principal = self.store.get_principal_by_email(normalize_email(email or ""))
        if not principal or not principal.is_active:
            self.hasher.verify_dummy(password or "")
            logger.info("login_failed_unknown_principal")
            raise AuthenticationError(INVALID_CREDENTIALS)

        now = self._now()
        if principal.locked_until is not None and principal.locked_until <= now:
            principal = self.store.clear_expired_lockout(principal.id, now) or principal
        if principal.is_locked(now):
            logger.warning(
                "login_locked",
                principal_id=principal.id,
                locked_until=principal.locked_until.isoformat(),
            )
            raise LockedError(INVALID_CREDENTIALS)

        if principal.failed_logins >= CAPTCHA_THRESHOLD:
            if not captcha:
                raise CaptchaRequiredError(
                    "CAPTCHA verification required", detail={"requiresCaptcha": True}
                )
            if not await self.captcha.verify(captcha, remote_ip=remote_ip):
                raise CaptchaRequiredError("Invalid CAPTCHA", detail={"requiresCaptcha": True})

        record = self.store.get_password_record(principal.id)
        if not self.hasher.verify(record, password or ""):
            updated = self.store.record_login_failure(
                principal.id, now, lock_threshold=LOCK_THRESHOLD, lockout=LOCKOUT_DURATION
            )
            if updated and updated.is_locked(now):
                logger.warning(
                    "login_lockout_triggered",
                    principal_id=principal.id,
                    failed_logins=updated.failed_logins,
                )
            else:
                logger.info(
                    "login_failed_password",
                    principal_id=principal.id,
                    failed_logins=updated.failed_logins if updated else None,
                )
            raise AuthenticationError(INVALID_CREDENTIALS)

        if principal.two_factor_enabled:
            logger.info("login_second_factor_required", principal_id=principal.id)
            return LoginResult(handoff=self.codec.issue_handoff(principal))
        return LoginResult(tokens=self._complete(principal))

    async def complete_second_factor(self, handoff_token: str, code: str) -> TokenPair:
        claims = self.codec.verify_handoff(handoff_token)
        principal = self.store.get_principal(claims["sub"])
        if not principal or not principal.is_active:
            raise AuthenticationError("Invalid or expired session")
        if principal.is_locked(self._now()):
            raise LockedError(INVALID_CREDENTIALS)
        await self.totp.verify(principal.id, code)
        return self._complete(principal)

    def _complete(self, principal: Principal) -> TokenPair:
        updated = self.store.record_login_success(principal.id, self._now()) or principal
        pair = self.auth.issue_token_pair(updated)
        logger.info("login_succeeded", principal_id=principal.id)
        return pair

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import re
import secrets
import threading
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol
from urllib.parse import quote

from playerdash.logging import get_logger
from playerdash.service.errors import (
    AuthenticationError,
    ConflictError,
    RateLimitedError,
    ServerError,
    ValidationError,
)
from playerdash.storage.models import Principal, TotpSecrets, TwoFactor, utcnow
from playerdash.storage.redis_cache import RedisCache

logger = get_logger(__name__)

TOTP_DIGITS = 6
TOTP_INTERVAL = 30
TOTP_SECRET_BYTES = 20
ISSUER = "Player Dashboard"

CONFIRM_WINDOW = 1
VERIFY_WINDOW = 2
DISABLE_WINDOW = 1

MAX_FAILED_ATTEMPTS = 5
LOCKOUT_SECONDS = 300

_NON_DIGITS = re.compile(r"\D")


def generate_secret() -> str:
    return base64.b32encode(secrets.token_bytes(TOTP_SECRET_BYTES)).decode("ascii").rstrip("=")


def generate_code(
    secret: str, timestamp: float, *, interval: int = TOTP_INTERVAL, digits: int = TOTP_DIGITS
) -> str:
    """RFC 6238 code (HMAC-SHA1) for the step containing ``timestamp``."""
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, casefold=True)
    except (binascii.Error, ValueError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def provisioning_uri(email: str, secret: str) -> str:
    label = quote(f"{ISSUER} ({email})", safe="@()")
    return f"otpauth://totp/{label}?secret={secret}&issuer={quote(ISSUER)}"


def clean_code(code: Optional[str]) -> str:
    return _NON_DIGITS.sub("", code or "")


class TotpStore(Protocol):
    def get_principal(self, principal_id: str) -> Optional[Principal]:
        ...

    def set_pending_totp_secret(self, principal_id: str, secret: str) -> None:
        ...

    def get_totp_secrets(self, principal_id: str) -> TotpSecrets:
        ...

    def commit_pending_totp_secret(self, principal_id: str, expected_pending: str) -> bool:
        ...

    def clear_totp_secrets(self, principal_id: str) -> bool:
        ...


class TotpService:
    """Second-factor enrollment and verification with pending/committed slots."""

    def __init__(
        self,
        store: TotpStore,
        cache: Optional[RedisCache] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self._clock = clock or utcnow
        self._state_lock = threading.Lock()
        # principal_id -> (count, window_start), principal_id -> locked_until
        self._attempts: dict[str, tuple[int, datetime]] = {}
        self._lockouts: dict[str, datetime] = {}

    def _now(self) -> datetime:
        return self._clock()

    def _matches(self, secret: str, code: str, window: int) -> bool:
        if len(code) != TOTP_DIGITS:
            return False
        now_ts = self._now().timestamp()
        for step in range(-window, window + 1):
            generated = generate_code(secret, now_ts + step * TOTP_INTERVAL)
            if generated and hmac.compare_digest(generated, code):
                return True
        return False

    def _load_secrets(self, principal_id: str) -> TotpSecrets:
        try:
            return self.store.get_totp_secrets(principal_id)
        except RuntimeError as exc:
            logger.error("totp_secret_unavailable", principal_id=principal_id, error=str(exc))
            raise ServerError("2FA verification unavailable") from exc

    # attempt limiting -----------------------------------------------------

    async def _ensure_not_locked(self, principal_id: str) -> None:
        if self.cache:
            locked = await self.cache.check_two_factor_lockout(principal_id)
        else:
            now = self._now()
            with self._state_lock:
                locked_until = self._lockouts.get(principal_id)
                locked = bool(locked_until and locked_until > now)
                if locked_until and not locked:
                    self._lockouts.pop(principal_id, None)
        if locked:
            logger.warning("two_factor_locked_out", principal_id=principal_id)
            raise RateLimitedError(
                "Too many verification attempts", retry_after=LOCKOUT_SECONDS
            )

    async def _record_failure(self, principal_id: str) -> None:
        if self.cache:
            locked, attempts = await self.cache.atomic_two_factor_attempt(
                principal_id, max_attempts=MAX_FAILED_ATTEMPTS, lockout_seconds=LOCKOUT_SECONDS
            )
            if locked and attempts >= 0:
                logger.warning(
                    "two_factor_lockout_triggered", principal_id=principal_id, attempts=attempts
                )
            return
        now = self._now()
        window = timedelta(seconds=LOCKOUT_SECONDS)
        with self._state_lock:
            attempts, window_start = 1, now
            current = self._attempts.get(principal_id)
            if current and now - current[1] < window:
                attempts, window_start = current[0] + 1, current[1]
            self._attempts[principal_id] = (attempts, window_start)
            if attempts >= MAX_FAILED_ATTEMPTS:
                self._lockouts[principal_id] = now + window
                self._attempts.pop(principal_id, None)
                logger.warning(
                    "two_factor_lockout_triggered", principal_id=principal_id, attempts=attempts
                )

    async def _clear_failures(self, principal_id: str) -> None:
        if self.cache:
            await self.cache.clear_two_factor_attempts(principal_id)
            return
        with self._state_lock:
            self._attempts.pop(principal_id, None)

    async def _check(self, principal_id: str, secret: str, code: str, window: int) -> bool:
        await self._ensure_not_locked(principal_id)
        if self._matches(secret, clean_code(code), window):
            await self._clear_failures(principal_id)
            return True
        await self._record_failure(principal_id)
        return False

    # operations -----------------------------------------------------------

    def _require_principal(self, principal_id: str) -> Principal:
        principal = self.store.get_principal(principal_id)
        if not principal or not principal.is_active:
            raise AuthenticationError("invalid credentials")
        return principal

    def begin_enrollment(self, principal_id: str) -> tuple[str, str]:
        """Store a fresh pending secret; returns (provisioning URI, secret)."""
        principal = self._require_principal(principal_id)
        if principal.two_factor is TwoFactor.COMMITTED:
            raise ConflictError("2FA is already enabled for this user")
        secret = generate_secret()
        self.store.set_pending_totp_secret(principal_id, secret)
        logger.info("two_factor_enrollment_started", principal_id=principal_id)
        return provisioning_uri(principal.email, secret), secret

    async def confirm_enrollment(self, principal_id: str, code: str) -> None:
        self._require_principal(principal_id)
        pending = self._load_secrets(principal_id).pending_secret
        if not pending:
            raise ValidationError("No pending 2FA setup found")
        if not await self._check(principal_id, pending, code, CONFIRM_WINDOW):
            raise ValidationError("Invalid verification code")
        if not self.store.commit_pending_totp_secret(principal_id, pending):
            # pending slot changed underneath us; never half-commit
            raise ValidationError("No pending 2FA setup found")
        logger.info("two_factor_enabled", principal_id=principal_id)

    async def verify(self, principal_id: str, code: str) -> None:
        principal = self._require_principal(principal_id)
        committed = self._load_secrets(principal_id).committed_secret
        if not principal.two_factor_enabled or not committed:
            raise ValidationError("2FA is not enabled for this user")
        if not await self._check(principal_id, committed, code, VERIFY_WINDOW):
            logger.info("two_factor_verification_failed", principal_id=principal_id)
            raise AuthenticationError("Invalid verification code")

    async def disable(self, principal_id: str, code: str) -> None:
        principal = self._require_principal(principal_id)
        committed = self._load_secrets(principal_id).committed_secret
        if not principal.two_factor_enabled or not committed:
            raise ValidationError("2FA is not enabled for this user")
        if not await self._check(principal_id, committed, code, DISABLE_WINDOW):
            raise ValidationError("Invalid verification code")
        self.store.clear_totp_secrets(principal_id)
        logger.info("two_factor_disabled", principal_id=principal_id)

    def status(self, principal_id: str) -> dict:
        principal = self._require_principal(principal_id)
        return {
            "enabled": principal.two_factor_enabled,
            "pendingSetup": principal.two_factor is TwoFactor.PENDING,
        }

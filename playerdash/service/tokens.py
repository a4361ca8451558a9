from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from playerdash.config import JWT_AUDIENCE, JWT_ISSUER, MAX_ACCESS_TOKEN_TTL_SECONDS
from playerdash.logging import get_logger
from playerdash.service.errors import AuthenticationError, TokenExpiredError
from playerdash.storage.models import Principal, utcnow

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
HANDOFF_TOKEN_TYPE = "handoff"
MAX_HANDOFF_TTL_SECONDS = 300

_REQUIRED_CLAIMS = ("jti", "sub", "iat", "exp", "aud", "iss", "typ")


class InvalidTokenError(AuthenticationError):
    """Access credential rejected; ``reason`` is for logs, never for clients."""

    def __init__(self, reason: str) -> None:
        super().__init__("invalid token")
        self.reason = reason


@dataclass(frozen=True)
class IssuedToken:
    token: str
    jti: str
    issued_at: datetime
    expires_at: datetime

    @property
    def expires_in(self) -> int:
        return int((self.expires_at - self.issued_at).total_seconds())


class AccessTokenCodec:
    """HS256 bearer credentials with fixed audience and issuer.

    The codec is pure: it signs and checks claims only. Revocation and the
    principal's current role are checked by the caller.
    """

    def __init__(
        self,
        secret: str,
        *,
        access_ttl_seconds: int = MAX_ACCESS_TOKEN_TTL_SECONDS,
        handoff_ttl_seconds: int = MAX_HANDOFF_TTL_SECONDS,
        clock_skew_seconds: int = 30,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if not secret:
            raise ValueError("signing secret is required")
        self._key = secret.encode()
        self.access_ttl = timedelta(
            seconds=min(access_ttl_seconds, MAX_ACCESS_TOKEN_TTL_SECONDS)
        )
        self.handoff_ttl = timedelta(
            seconds=min(handoff_ttl_seconds, MAX_HANDOFF_TTL_SECONDS)
        )
        self.clock_skew = clock_skew_seconds
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    # wire format ----------------------------------------------------------

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def _encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode(self, token: str) -> dict[str, Any]:
        if not isinstance(token, str):
            raise InvalidTokenError("malformed")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError("malformed") from None
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            raise InvalidTokenError("malformed") from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            raise InvalidTokenError("malformed")
        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidTokenError("signature")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError):
            raise InvalidTokenError("malformed") from None
        if not isinstance(payload, dict):
            raise InvalidTokenError("malformed")
        return payload

    # issuance -------------------------------------------------------------

    def issue(self, principal: Principal) -> IssuedToken:
        now = self._now()
        expires_at = now + self.access_ttl
        jti = secrets.token_hex(16)
        payload = {
            "jti": jti,
            "sub": principal.id,
            "email": principal.email,
            "role": principal.role.value,
            "company_id": principal.tenant_id,
            "gen": principal.token_generation,
            "typ": ACCESS_TOKEN_TYPE,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "aud": JWT_AUDIENCE,
            "iss": JWT_ISSUER,
        }
        return IssuedToken(
            token=self._encode(payload),
            jti=jti,
            issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )

    def issue_handoff(self, principal: Principal) -> IssuedToken:
        """Short-lived artifact recording a password-verified login awaiting 2FA."""
        now = self._now()
        expires_at = now + self.handoff_ttl
        jti = secrets.token_hex(16)
        payload = {
            "jti": jti,
            "sub": principal.id,
            "requires_2fa": True,
            "purpose": "2fa",
            "typ": HANDOFF_TOKEN_TYPE,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "aud": JWT_AUDIENCE,
            "iss": JWT_ISSUER,
        }
        return IssuedToken(
            token=self._encode(payload),
            jti=jti,
            issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )

    # verification ---------------------------------------------------------

    def _check_claims(self, payload: dict[str, Any], expected_type: str) -> dict[str, Any]:
        for claim in _REQUIRED_CLAIMS:
            if payload.get(claim) in (None, ""):
                raise InvalidTokenError("missing-claim")
        if payload.get("iss") != JWT_ISSUER:
            raise InvalidTokenError("issuer")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = JWT_AUDIENCE in aud
        else:
            valid_aud = aud == JWT_AUDIENCE
        if not valid_aud:
            raise InvalidTokenError("audience")
        if payload.get("typ") != expected_type:
            raise InvalidTokenError("token-type")
        try:
            iat = float(payload["iat"])
            exp = float(payload["exp"])
        except (TypeError, ValueError):
            raise InvalidTokenError("malformed") from None
        now_ts = self._now().timestamp()
        if now_ts < iat - self.clock_skew:
            raise InvalidTokenError("not-yet-valid")
        if now_ts > exp + self.clock_skew:
            raise TokenExpiredError("token expired")
        return payload

    def verify(self, token: str) -> dict[str, Any]:
        """Claims of a valid access credential.

        Raises ``TokenExpiredError`` for an expired credential so clients can
        refresh silently, ``InvalidTokenError`` for everything else.
        """
        payload = self._check_claims(self._decode(token), ACCESS_TOKEN_TYPE)
        if payload.get("requires_2fa"):
            raise InvalidTokenError("token-type")
        return payload

    def verify_handoff(self, token: str) -> dict[str, Any]:
        payload = self._check_claims(self._decode(token), HANDOFF_TOKEN_TYPE)
        if payload.get("requires_2fa") is not True:
            raise InvalidTokenError("token-type")
        return payload

    @staticmethod
    def expires_at(claims: dict[str, Any]) -> datetime:
        return datetime.fromtimestamp(float(claims["exp"]), tz=timezone.utc)

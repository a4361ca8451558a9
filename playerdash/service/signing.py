from __future__ import annotations

import hashlib
import hmac
import json
import threading
from datetime import datetime
from typing import Any, Callable, Optional

from playerdash.logging import get_logger
from playerdash.service.errors import AuthenticationError, ForbiddenError, ValidationError
from playerdash.storage.models import utcnow
from playerdash.storage.redis_cache import RedisCache

logger = get_logger(__name__)

SIGNATURE_WINDOW_MS = 30_000
SIGNATURE_HEADER = "X-Request-Signature"
TIMESTAMP_HEADER = "X-Request-Timestamp"


def canonical_message(
    payload: Any, principal_id: str, timestamp: int, method: str, path: str
) -> bytes:
    return json.dumps(
        {
            "method": method.upper(),
            "path": path,
            "payload": payload,
            "timestamp": timestamp,
            "userId": principal_id,
        },
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


class RequestSigner:
    """HMAC-SHA256 signatures binding a request to a principal and a moment.

    The signed message covers the HTTP method, the path and the JSON body,
    so a signature minted for one operation is useless for another.

    A signature is accepted once, within the timestamp window; replays are
    tracked in Redis when available and in-process otherwise.
    """

    def __init__(
        self,
        secret: str,
        cache: Optional[RedisCache] = None,
        *,
        window_ms: int = SIGNATURE_WINDOW_MS,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._key = secret.encode()
        self.cache = cache
        self.window_ms = window_ms
        self._clock = clock or utcnow
        self._used: dict[str, int] = {}
        self._used_lock = threading.Lock()

    def _now_ms(self) -> int:
        return int(self._clock().timestamp() * 1000)

    def _digest(
        self, payload: Any, principal_id: str, timestamp: int, method: str, path: str
    ) -> str:
        message = canonical_message(payload, principal_id, timestamp, method, path)
        return hmac.new(self._key, message, hashlib.sha256).hexdigest()

    def sign(
        self,
        payload: Any,
        principal_id: str,
        *,
        method: str,
        path: str,
        requested_for: Optional[str] = None,
        client_timestamp: Optional[int] = None,
    ) -> dict:
        if requested_for and requested_for != principal_id:
            raise ForbiddenError("Unauthorized attempt to sign request for another user")
        now = self._now_ms()
        if client_timestamp is not None and abs(now - client_timestamp) > self.window_ms:
            raise ValidationError("Request timestamp too old")
        signature = self._digest(payload, principal_id, now, method, path)
        return {"signature": signature, "timestamp": now}

    async def _mark_used(self, signature: str, principal_id: str) -> bool:
        key = f"{principal_id}:{signature}"
        ttl_seconds = max(1, (2 * self.window_ms) // 1000)
        if self.cache:
            return await self.cache.mark_signature_used(key, ttl_seconds)
        now = self._now_ms()
        with self._used_lock:
            for stale in [k for k, seen in self._used.items() if now - seen > 2 * self.window_ms]:
                self._used.pop(stale, None)
            if key in self._used:
                return False
            self._used[key] = now
            return True

    async def verify(
        self,
        payload: Any,
        signature: Optional[str],
        timestamp: Optional[str],
        principal_id: str,
        *,
        method: str,
        path: str,
    ) -> None:
        if not signature or not timestamp:
            raise AuthenticationError("Missing request signature")
        try:
            ts = int(timestamp)
        except (TypeError, ValueError):
            raise AuthenticationError("Invalid request signature") from None
        if abs(self._now_ms() - ts) > self.window_ms:
            logger.info("request_signature_expired", principal_id=principal_id)
            raise AuthenticationError("Invalid request signature")
        expected = self._digest(payload, principal_id, ts, method, path)
        if not hmac.compare_digest(expected, signature):
            logger.warning("request_signature_mismatch", principal_id=principal_id)
            raise AuthenticationError("Invalid request signature")
        if not await self._mark_used(signature, principal_id):
            logger.warning("request_signature_replayed", principal_id=principal_id)
            raise AuthenticationError("Invalid request signature")

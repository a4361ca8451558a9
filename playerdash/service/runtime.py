from __future__ import annotations

import asyncio
import threading
import time
from datetime import datetime
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from playerdash.config import get_settings, reset_settings_cache
from playerdash.logging import get_logger
from playerdash.service.auth import AuthService
from playerdash.service.captcha import CaptchaVerifier
from playerdash.service.email import EmailService
from playerdash.service.invitations import InvitationService
from playerdash.service.jobs import JobScheduler, register_default_jobs
from playerdash.service.login import LoginOrchestrator
from playerdash.service.passwords import PasswordHasher
from playerdash.service.principals import PrincipalAdminService
from playerdash.service.push import PushHub
from playerdash.service.refresh import RefreshTokenService
from playerdash.service.revocation import RevocationIndex
from playerdash.service.signing import RequestSigner
from playerdash.service.tokens import AccessTokenCodec
from playerdash.service.totp import TotpService
from playerdash.storage.memory import MemoryStore
from playerdash.storage.postgres import PostgresStore
from playerdash.storage.redis_cache import RedisCache, SyncRedisCache
from playerdash.storage.models import utcnow

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    user = parsed.username or ""
    netloc = f"{user}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        self.started_at = time.monotonic()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    totp_encryption_key=self.settings.totp_key_material,
                )
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    fs_root=self.settings.shared_fs_root,
                    totp_encryption_key=self.settings.totp_key_material,
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a per-test event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(
                        self.settings.redis_url, socket_timeout=self.settings.redis_socket_timeout
                    )
                else:
                    cache = RedisCache(
                        self.settings.redis_url, socket_timeout=self.settings.redis_socket_timeout
                    )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for rate limits, job leases and signature replay "
                    "protection; start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true "
                    "for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; rate limits, leases and "
                    "replay marks are in-memory only."
                ),
                mode=fallback_mode,
            )

        settings = self.settings
        self.codec = AccessTokenCodec(
            settings.jwt_secret,
            access_ttl_seconds=settings.access_token_ttl_seconds,
            handoff_ttl_seconds=settings.handoff_token_ttl_seconds,
            clock_skew_seconds=settings.clock_skew_seconds,
        )
        self.hasher = PasswordHasher(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            parallelism=settings.password_hash_parallelism,
        )
        self.refresh_tokens = RefreshTokenService(
            self.store, ttl_seconds=settings.refresh_token_ttl_seconds
        )
        self.revocations = RevocationIndex(self.store, self.cache)
        self.auth = AuthService(
            self.store,
            self.codec,
            self.refresh_tokens,
            self.revocations,
            self.hasher,
            rotation_age_seconds=settings.refresh_rotation_age_seconds,
        )
        self.totp = TotpService(self.store, self.cache)
        self.captcha = CaptchaVerifier(
            settings.recaptcha_secret,
            verify_url=settings.recaptcha_verify_url,
            timeout=settings.recaptcha_timeout_seconds,
        )
        self.email = EmailService(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
            send_timeout=settings.email_send_timeout_seconds,
        )
        self.login = LoginOrchestrator(
            self.store, self.auth, self.codec, self.hasher, self.totp, self.captcha
        )
        self.invitations = InvitationService(self.store, self.email, self.auth, self.hasher)
        self.principals = PrincipalAdminService(self.store, self.auth)
        self.signer = RequestSigner(settings.signing_secret, self.cache)
        self.push = PushHub(
            self.auth,
            ping_interval=settings.push_ping_interval_seconds,
            pong_timeout=settings.push_pong_timeout_seconds,
            reverify_interval=settings.push_reverify_interval_seconds,
            coalesce_window=settings.push_coalesce_window_seconds,
        )
        self.scheduler = JobScheduler(self.cache)
        register_default_jobs(self.scheduler, self)

        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            captcha_configured=self.captcha.is_configured,
        )

    @property
    def uptime_seconds(self) -> int:
        return int(time.monotonic() - self.started_at)

    def monitoring_snapshot(self) -> dict:
        return {
            "uptimeSeconds": self.uptime_seconds,
            "push": self.push.snapshot(),
            "revocationIndex": self.revocations.snapshot(),
            "email": {
                "configured": self.email.is_configured,
                "queued": self.email.queued_count,
                "breaker": self.email.breaker.snapshot(),
            },
            "jobs": self.scheduler.snapshot(),
            "redisEnabled": self.cache is not None,
        }

    async def close(self) -> None:
        await self.push.close_all()
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            runtime.cache.close_sync()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket rate limit; in-process when Redis is unavailable.

    Returns ``allowed`` or ``(allowed, remaining, reset_seconds)``.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = utcnow()
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now)
        reset_seconds = int((cost - tokens) / refill_rate) + 1 if not allowed else 0
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed

"""Periodic maintenance jobs.

Each job runs on its own interval inside the API process. Jobs that must
not run concurrently across instances take a named lease first; when no
Redis is configured the lease is held in-process, which only protects a
single node.
"""

from __future__ import annotations

import asyncio
import inspect
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from playerdash.logging import get_logger
from playerdash.storage.redis_cache import RedisCache

logger = get_logger(__name__)

TOKEN_MAINTENANCE_INTERVAL = 60 * 60
REMINDER_INTERVAL = 24 * 60 * 60
EMAIL_RETRY_INTERVAL = 5 * 60
MAX_BACKOFF_SECONDS = 300

JobFn = Callable[[], Union[Any, Awaitable[Any]]]


@dataclass
class PeriodicJob:
    name: str
    interval_seconds: float
    fn: JobFn
    lease: bool = True
    last_run_at: Optional[float] = None
    last_result: Any = None
    consecutive_errors: int = 0
    runs: int = 0
    skipped: int = 0

    def snapshot(self) -> dict:
        return {
            "name": self.name,
            "intervalSeconds": self.interval_seconds,
            "runs": self.runs,
            "skipped": self.skipped,
            "consecutiveErrors": self.consecutive_errors,
            "lastResult": self.last_result if isinstance(self.last_result, (int, str)) else None,
        }


@dataclass
class _LocalLease:
    owner: str
    expires_at: float


class JobScheduler:
    """Runs registered jobs on fixed intervals with exponential backoff on errors."""

    def __init__(
        self,
        cache: Optional[RedisCache] = None,
        *,
        owner: Optional[str] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cache = cache
        self.owner = owner or uuid.uuid4().hex
        self._monotonic = monotonic
        self.jobs: Dict[str, PeriodicJob] = {}
        self._tasks: List[asyncio.Task] = []
        self._running = False
        self._leases: Dict[str, _LocalLease] = {}
        self._lease_lock = threading.Lock()

    def register(
        self, name: str, interval_seconds: float, fn: JobFn, *, lease: bool = True
    ) -> PeriodicJob:
        job = PeriodicJob(name=name, interval_seconds=interval_seconds, fn=fn, lease=lease)
        self.jobs[name] = job
        return job

    async def acquire_lease(self, name: str, ttl_seconds: int) -> bool:
        if self.cache:
            return await self.cache.acquire_lease(name, self.owner, ttl_seconds)
        now = self._monotonic()
        with self._lease_lock:
            current = self._leases.get(name)
            # Held leases block their own owner too: one run per period.
            if current and current.expires_at > now:
                return False
            self._leases[name] = _LocalLease(self.owner, now + ttl_seconds)
            return True

    async def run_once(self, name: str) -> Any:
        """Run one job now, honouring its lease. Returns None when skipped."""
        job = self.jobs[name]
        if job.lease:
            ttl = max(1, int(job.interval_seconds) - 1)
            if not await self.acquire_lease(f"job:{job.name}", ttl):
                job.skipped += 1
                logger.info("job_skipped_lease_held", job=job.name)
                return None
        started = self._monotonic()
        result = job.fn()
        if inspect.isawaitable(result):
            result = await result
        job.runs += 1
        job.last_run_at = started
        job.last_result = result
        logger.info(
            "job_completed",
            job=job.name,
            result=result if isinstance(result, (int, str)) else None,
            duration_ms=int((self._monotonic() - started) * 1000),
        )
        return result

    async def _loop(self, job: PeriodicJob) -> None:
        while self._running:
            await asyncio.sleep(job.interval_seconds)
            try:
                await self.run_once(job.name)
                job.consecutive_errors = 0
            except Exception as exc:
                job.consecutive_errors += 1
                logger.error(
                    "job_failed",
                    job=job.name,
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=job.consecutive_errors,
                )
                if job.consecutive_errors > 3:
                    backoff = min(
                        MAX_BACKOFF_SECONDS,
                        job.interval_seconds * (2 ** (job.consecutive_errors - 3)),
                    )
                    logger.warning("job_backoff", job=job.name, backoff_seconds=backoff)
                    await asyncio.sleep(backoff)

    async def start(self) -> None:
        if self._running:
            logger.warning("job_scheduler_already_running")
            return
        self._running = True
        self._tasks = [asyncio.create_task(self._loop(job)) for job in self.jobs.values()]
        logger.info("job_scheduler_started", jobs=sorted(self.jobs))

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("job_scheduler_stopped")

    @property
    def running(self) -> bool:
        return self._running

    def snapshot(self) -> List[dict]:
        return [job.snapshot() for job in self.jobs.values()]


def register_default_jobs(scheduler: JobScheduler, runtime: Any) -> None:
    """Token maintenance, registration reminders and email retry."""

    def token_maintenance() -> int:
        return runtime.revocations.purge() + runtime.refresh_tokens.purge()

    scheduler.register("token_maintenance", TOKEN_MAINTENANCE_INTERVAL, token_maintenance)
    scheduler.register(
        "registration_reminders", REMINDER_INTERVAL, runtime.invitations.send_reminders
    )
    scheduler.register(
        "email_retry", EMAIL_RETRY_INTERVAL, runtime.email.retry_failed, lease=False
    )

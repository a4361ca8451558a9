"""Scheduler tests: leases, run bookkeeping and the default maintenance jobs."""

from playerdash.service.jobs import JobScheduler
from playerdash.storage.models import RevocationReason, Role


class Ticks:
    def __init__(self):
        self.value = 1000.0

    def __call__(self):
        return self.value


class TestScheduler:
    async def test_run_once_records_result(self):
        scheduler = JobScheduler(monotonic=Ticks())
        scheduler.register("count", 60, lambda: 3)

        assert await scheduler.run_once("count") == 3
        snapshot = scheduler.snapshot()[0]
        assert snapshot["runs"] == 1
        assert snapshot["lastResult"] == 3

    async def test_async_jobs_are_awaited(self):
        scheduler = JobScheduler(monotonic=Ticks())

        async def job():
            return "done"

        scheduler.register("async", 60, job, lease=False)

        assert await scheduler.run_once("async") == "done"

    async def test_lease_allows_one_run_per_period(self):
        ticks = Ticks()
        scheduler = JobScheduler(monotonic=ticks)
        scheduler.register("leased", 60, lambda: 1)

        assert await scheduler.run_once("leased") == 1
        assert await scheduler.run_once("leased") is None
        assert scheduler.jobs["leased"].skipped == 1

        ticks.value += 60
        assert await scheduler.run_once("leased") == 1

    async def test_held_lease_blocks_reacquire(self):
        ticks = Ticks()
        scheduler = JobScheduler(owner="node-a", monotonic=ticks)

        assert await scheduler.acquire_lease("job:x", 30)
        assert not await scheduler.acquire_lease("job:x", 30)
        ticks.value += 31
        assert await scheduler.acquire_lease("job:x", 30)

    async def test_unleased_job_always_runs(self):
        scheduler = JobScheduler(monotonic=Ticks())
        scheduler.register("free", 60, lambda: 1, lease=False)

        assert await scheduler.run_once("free") == 1
        assert await scheduler.run_once("free") == 1

    async def test_start_and_stop(self):
        scheduler = JobScheduler()
        scheduler.register("idle", 3600, lambda: 0)

        await scheduler.start()
        assert scheduler.running
        await scheduler.stop()
        assert not scheduler.running


class TestDefaultJobs:
    def test_default_jobs_registered(self, runtime):
        assert set(runtime.scheduler.jobs) == {
            "token_maintenance",
            "registration_reminders",
            "email_retry",
        }

    async def test_token_maintenance_purges_expired_state(self, runtime, clock, make_principal):
        principal = make_principal()
        pair = runtime.auth.issue_token_pair(runtime.store.get_principal(principal.id))
        await runtime.revocations.add(
            pair.access.jti,
            pair.access.expires_at,
            principal.id,
            pair.access.token,
            RevocationReason.LOGOUT,
        )
        runtime.refresh_tokens.revoke(pair.refresh.token)
        clock.advance(minutes=20)

        purged = await runtime.scheduler.run_once("token_maintenance")

        assert purged == 2
        assert runtime.store.count_revocation_entries() == 0
        assert runtime.store.get_refresh_credential(pair.refresh.token) is None

    async def test_email_retry_with_empty_queue(self, runtime):
        assert await runtime.scheduler.run_once("email_retry") == 0

    async def test_reminder_job_reissues_expired_invitations(
        self, runtime, clock, context_for, make_principal
    ):
        admin = make_principal(role=Role.PLATFORM_ADMIN)
        actor = await context_for(admin)
        await runtime.invitations.invite(actor, "traag@example.com", Role.MEMBER, "tenant-a")

        assert await runtime.scheduler.run_once("registration_reminders") == 0
        clock.advance(days=8)
        runtime.scheduler.jobs["registration_reminders"].interval_seconds = 1
        runtime.scheduler._leases.clear()

        assert await runtime.scheduler.run_once("registration_reminders") == 1

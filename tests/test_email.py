"""Email delivery: breaker shedding, retry queue and timeouts."""

import time

import pytest

from playerdash.service import email as email_module
from playerdash.service.circuit_breaker import BreakerState, CircuitBreaker
from playerdash.service.email import (
    EMAIL_QUEUED,
    EMAIL_SENT,
    RETRY_MIN_AGE_SECONDS,
    EmailService,
)


class Ticks:
    def __init__(self):
        self.value = 0.0

    def __call__(self):
        return self.value


class FakeSmtp:
    """Stands in for the blocking SMTP call and counts attempts."""

    def __init__(self, accept=False, stall=0.0):
        self.accept = accept
        self.stall = stall
        self.calls = []

    def __call__(self, to_email, subject, html_body, text_body=None):
        self.calls.append(to_email)
        if self.stall:
            time.sleep(self.stall)
        return self.accept


@pytest.fixture
def ticks():
    return Ticks()


@pytest.fixture
def service(ticks):
    return EmailService(
        smtp_host="smtp.example.com",
        from_email="noreply@example.com",
        breaker=CircuitBreaker("email", failure_threshold=3, reset_timeout=60.0, clock=ticks),
    )


def _age_queue(service, seconds):
    for message in service._queue:
        message.queued_at -= seconds


class TestSend:
    async def test_accepted_message_is_sent(self, service):
        service._send_email = FakeSmtp(accept=True)

        assert await service.send("a@example.com", "Welkom", "<p>hoi</p>") == EMAIL_SENT
        assert service.queued_count == 0

    async def test_failed_send_is_queued(self, service):
        service._send_email = FakeSmtp(accept=False)

        assert await service.send("a@example.com", "Welkom", "<p>hoi</p>") == EMAIL_QUEUED
        assert service.queued_count == 1

    async def test_breaker_opens_and_sheds_without_smtp(self, service):
        smtp = FakeSmtp(accept=False)
        service._send_email = smtp

        for i in range(3):
            await service.send(f"u{i}@example.com", "Welkom", "<p>hoi</p>")
        assert service.breaker.state is BreakerState.OPEN

        result = await service.send("late@example.com", "Welkom", "<p>hoi</p>")

        assert result == EMAIL_QUEUED
        assert len(smtp.calls) == 3
        assert service.queued_count == 4

    async def test_timeout_counts_as_failure(self, service):
        service.send_timeout = 0.05
        service._send_email = FakeSmtp(accept=True, stall=0.3)

        result = await service.send("traag@example.com", "Welkom", "<p>hoi</p>")

        assert result == EMAIL_QUEUED
        assert service.breaker.snapshot()["failures"] == 1


class TestRetry:
    async def test_young_messages_are_kept(self, service):
        service._send_email = FakeSmtp(accept=False)
        await service.send("a@example.com", "Welkom", "<p>hoi</p>")
        smtp = FakeSmtp(accept=True)
        service._send_email = smtp

        assert await service.retry_failed() == 0
        assert smtp.calls == []
        assert service.queued_count == 1

    async def test_old_messages_are_delivered(self, service):
        service._send_email = FakeSmtp(accept=False)
        await service.send("a@example.com", "Welkom", "<p>hoi</p>")
        await service.send("b@example.com", "Welkom", "<p>hoi</p>")
        _age_queue(service, RETRY_MIN_AGE_SECONDS + 1)
        smtp = FakeSmtp(accept=True)
        service._send_email = smtp

        assert await service.retry_failed() == 2
        assert smtp.calls == ["a@example.com", "b@example.com"]
        assert service.queued_count == 0

    async def test_open_breaker_keeps_queue(self, service):
        service._send_email = FakeSmtp(accept=False)
        for i in range(3):
            await service.send(f"u{i}@example.com", "Welkom", "<p>hoi</p>")
        _age_queue(service, RETRY_MIN_AGE_SECONDS + 1)
        smtp = FakeSmtp(accept=True)
        service._send_email = smtp

        assert await service.retry_failed() == 0
        assert smtp.calls == []
        assert service.queued_count == 3

    async def test_failed_retry_stays_queued(self, service):
        service._send_email = FakeSmtp(accept=False)
        await service.send("a@example.com", "Welkom", "<p>hoi</p>")
        _age_queue(service, RETRY_MIN_AGE_SECONDS + 1)

        assert await service.retry_failed() == 0
        assert service.queued_count == 1
        assert time.monotonic() - service._queue[0].queued_at < RETRY_MIN_AGE_SECONDS


class TestQueueBound:
    async def test_oldest_messages_are_dropped_when_full(self, monkeypatch, ticks):
        monkeypatch.setattr(email_module, "MAX_QUEUED_EMAILS", 3)
        service = EmailService(
            smtp_host="smtp.example.com",
            from_email="noreply@example.com",
            breaker=CircuitBreaker("email", failure_threshold=100, clock=ticks),
        )
        service._send_email = FakeSmtp(accept=False)

        for i in range(5):
            await service.send(f"u{i}@example.com", "Welkom", "<p>hoi</p>")

        assert service.queued_count == 3
        assert [m.to for m in service._queue] == [
            "u2@example.com",
            "u3@example.com",
            "u4@example.com",
        ]

    async def test_requeued_messages_respect_bound(self, monkeypatch, ticks):
        monkeypatch.setattr(email_module, "MAX_QUEUED_EMAILS", 2)
        service = EmailService(
            smtp_host="smtp.example.com",
            from_email="noreply@example.com",
            breaker=CircuitBreaker("email", failure_threshold=100, clock=ticks),
        )
        service._send_email = FakeSmtp(accept=False)
        await service.send("a@example.com", "Welkom", "<p>hoi</p>")
        await service.send("b@example.com", "Welkom", "<p>hoi</p>")

        await service.retry_failed()

        assert service.queued_count == 2

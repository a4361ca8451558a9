"""Login orchestration tests.

Tests for:
- Uniform failure message for unknown, pending, locked and wrong-password cases
- CAPTCHA escalation after three failures
- Lockout after five failures and its expiry
- Second-factor handoff
"""

import uuid

import pytest

from conftest import DEFAULT_PASSWORD
from playerdash.service.errors import AuthenticationError, CaptchaRequiredError, LockedError
from playerdash.service.login import CAPTCHA_THRESHOLD, INVALID_CREDENTIALS, LOCK_THRESHOLD
from playerdash.service.totp import TOTP_INTERVAL, generate_code
from playerdash.storage.models import PendingState, Principal, Role

WRONG_PASSWORD = "Verkeerd#Wachtw00rd"


@pytest.fixture
def member(make_principal):
    return make_principal(email="speler@example.com")


async def _fail(runtime, email, times, captcha=None):
    for _ in range(times):
        with pytest.raises(AuthenticationError):
            await runtime.login.login(email, WRONG_PASSWORD, captcha=captcha)


class TestPasswordLogin:
    async def test_successful_login_returns_token_pair(self, runtime, member):
        result = await runtime.login.login("speler@example.com", DEFAULT_PASSWORD)

        assert not result.requires_second_factor
        body = result.as_response()
        assert body["principal"]["id"] == member.id
        assert body["tokenType"] == "bearer"
        assert body["expiresIn"] == 900
        context = await runtime.auth.authenticate(body["accessToken"])
        assert context.principal_id == member.id

    async def test_email_is_normalized(self, runtime, member):
        result = await runtime.login.login("  SPELER@Example.com ", DEFAULT_PASSWORD)

        assert result.tokens.principal.id == member.id

    async def test_success_records_last_login(self, runtime, member):
        await runtime.login.login("speler@example.com", DEFAULT_PASSWORD)

        assert runtime.store.get_principal(member.id).last_login_at is not None

    async def test_unknown_and_wrong_password_look_identical(self, runtime, member):
        with pytest.raises(AuthenticationError) as unknown:
            await runtime.login.login("niemand@example.com", WRONG_PASSWORD)
        with pytest.raises(AuthenticationError) as wrong:
            await runtime.login.login("speler@example.com", WRONG_PASSWORD)

        assert unknown.value.message == wrong.value.message == INVALID_CREDENTIALS
        assert unknown.value.status_code == wrong.value.status_code == 401

    async def test_pending_principal_cannot_log_in(self, runtime):
        runtime.store.create_principal(
            Principal(
                id=str(uuid.uuid4()),
                email="uitgenodigd@example.com",
                role=Role.MEMBER,
                tenant_id="tenant-a",
                state=PendingState(invitation=None),
            )
        )

        with pytest.raises(AuthenticationError) as excinfo:
            await runtime.login.login("uitgenodigd@example.com", DEFAULT_PASSWORD)
        assert excinfo.value.message == INVALID_CREDENTIALS


class TestEscalation:
    async def test_captcha_required_after_three_failures(self, runtime, member):
        await _fail(runtime, "speler@example.com", CAPTCHA_THRESHOLD)

        with pytest.raises(CaptchaRequiredError) as excinfo:
            await runtime.login.login("speler@example.com", DEFAULT_PASSWORD)
        assert excinfo.value.detail == {"requiresCaptcha": True}
        assert excinfo.value.error_code == "captcha_required"

    async def test_captcha_artifact_lets_login_proceed(self, runtime, member):
        await _fail(runtime, "speler@example.com", CAPTCHA_THRESHOLD)

        result = await runtime.login.login(
            "speler@example.com", DEFAULT_PASSWORD, captcha="captcha-artifact"
        )

        assert result.tokens.principal.id == member.id
        assert runtime.store.get_principal(member.id).failed_logins == 0

    async def test_lockout_after_five_failures(self, runtime, member):
        """A locked principal is refused even with the right password."""
        await _fail(runtime, "speler@example.com", CAPTCHA_THRESHOLD)
        await _fail(runtime, "speler@example.com", LOCK_THRESHOLD - CAPTCHA_THRESHOLD, "captcha")

        assert runtime.store.get_principal(member.id).locked_until is not None
        with pytest.raises(LockedError) as excinfo:
            await runtime.login.login("speler@example.com", DEFAULT_PASSWORD, captcha="captcha")
        assert excinfo.value.message == INVALID_CREDENTIALS
        assert excinfo.value.status_code == 401

    async def test_lockout_expires_after_thirty_minutes(self, runtime, clock, member):
        await _fail(runtime, "speler@example.com", CAPTCHA_THRESHOLD)
        await _fail(runtime, "speler@example.com", LOCK_THRESHOLD - CAPTCHA_THRESHOLD, "captcha")

        clock.advance(minutes=31)

        result = await runtime.login.login("speler@example.com", DEFAULT_PASSWORD)
        assert result.tokens.principal.id == member.id
        principal = runtime.store.get_principal(member.id)
        assert principal.locked_until is None
        assert principal.failed_logins == 0


class TestSecondFactorHandoff:
    async def _enable_two_factor(self, runtime, clock, principal_id):
        _uri, secret = runtime.totp.begin_enrollment(principal_id)
        await runtime.totp.confirm_enrollment(
            principal_id, generate_code(secret, clock.now.timestamp())
        )
        return secret

    async def test_login_returns_handoff_instead_of_tokens(self, runtime, clock, member):
        await self._enable_two_factor(runtime, clock, member.id)

        result = await runtime.login.login("speler@example.com", DEFAULT_PASSWORD)

        assert result.requires_second_factor
        body = result.as_response()
        assert body["requires2FA"] is True
        assert "accessToken" not in body
        with pytest.raises(AuthenticationError):
            await runtime.auth.authenticate(body["handoffToken"])

    async def test_handoff_and_code_complete_login(self, runtime, clock, member):
        secret = await self._enable_two_factor(runtime, clock, member.id)
        result = await runtime.login.login("speler@example.com", DEFAULT_PASSWORD)

        pair = await runtime.login.complete_second_factor(
            result.handoff.token, generate_code(secret, clock.now.timestamp())
        )

        context = await runtime.auth.authenticate(pair.access.token)
        assert context.principal_id == member.id

    async def test_handoff_expires_after_five_minutes(self, runtime, clock, member):
        secret = await self._enable_two_factor(runtime, clock, member.id)
        result = await runtime.login.login("speler@example.com", DEFAULT_PASSWORD)

        clock.advance(minutes=6)

        with pytest.raises(AuthenticationError):
            await runtime.login.complete_second_factor(
                result.handoff.token,
                generate_code(secret, clock.now.timestamp() + TOTP_INTERVAL),
            )

    async def test_wrong_code_rejected(self, runtime, clock, member):
        secret = await self._enable_two_factor(runtime, clock, member.id)
        result = await runtime.login.login("speler@example.com", DEFAULT_PASSWORD)
        valid = {
            generate_code(secret, clock.now.timestamp() + step * TOTP_INTERVAL)
            for step in range(-2, 3)
        }
        wrong = next(c for c in ("000000", "111111", "222222") if c not in valid)

        with pytest.raises(AuthenticationError):
            await runtime.login.complete_second_factor(result.handoff.token, wrong)

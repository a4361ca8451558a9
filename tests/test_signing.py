"""Request signature tests: binding, freshness and single use."""

from datetime import timedelta

import pytest

from playerdash.service.errors import AuthenticationError, ForbiddenError, ValidationError
from playerdash.service.signing import RequestSigner, canonical_message
from playerdash.storage.models import utcnow


class Clock:
    def __init__(self):
        self.now = utcnow()

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def signer(clock):
    return RequestSigner("signing-secret-for-tests-0123456789", clock=clock)


PAYLOAD = {"currentPassword": "Oud#Wachtw00rd", "newPassword": "Nieuw#Wachtw00rd"}
ROUTE = {"method": "POST", "path": "/api/users/update-password"}


class TestCanonicalMessage:
    def test_key_order_does_not_matter(self):
        first = canonical_message({"b": 1, "a": 2}, "p1", 1000, "POST", "/api/x")
        second = canonical_message({"a": 2, "b": 1}, "p1", 1000, "post", "/api/x")

        assert first == second


class TestSigner:
    async def test_signature_verifies_once(self, signer):
        signed = signer.sign(PAYLOAD, "p1", **ROUTE)

        await signer.verify(PAYLOAD, signed["signature"], str(signed["timestamp"]), "p1", **ROUTE)
        with pytest.raises(AuthenticationError):
            await signer.verify(PAYLOAD, signed["signature"], str(signed["timestamp"]), "p1", **ROUTE)

    async def test_signature_bound_to_principal(self, signer):
        signed = signer.sign(PAYLOAD, "p1", **ROUTE)

        with pytest.raises(AuthenticationError):
            await signer.verify(PAYLOAD, signed["signature"], str(signed["timestamp"]), "p2", **ROUTE)

    async def test_signature_bound_to_payload(self, signer):
        signed = signer.sign(PAYLOAD, "p1", **ROUTE)
        altered = {**PAYLOAD, "newPassword": "Ander#Wachtw00rd"}

        with pytest.raises(AuthenticationError):
            await signer.verify(altered, signed["signature"], str(signed["timestamp"]), "p1", **ROUTE)

    async def test_signature_expires_after_window(self, signer, clock):
        signed = signer.sign(PAYLOAD, "p1", **ROUTE)
        clock.now += timedelta(seconds=31)

        with pytest.raises(AuthenticationError):
            await signer.verify(PAYLOAD, signed["signature"], str(signed["timestamp"]), "p1", **ROUTE)

    async def test_missing_headers(self, signer):
        with pytest.raises(AuthenticationError) as excinfo:
            await signer.verify(PAYLOAD, None, None, "p1", **ROUTE)
        assert excinfo.value.message == "Missing request signature"

    async def test_non_numeric_timestamp(self, signer):
        signed = signer.sign(PAYLOAD, "p1", **ROUTE)

        with pytest.raises(AuthenticationError):
            await signer.verify(PAYLOAD, signed["signature"], "gisteren", "p1", **ROUTE)

    def test_cannot_sign_for_someone_else(self, signer):
        with pytest.raises(ForbiddenError):
            signer.sign(PAYLOAD, "p1", **ROUTE, requested_for="p2")

    def test_stale_client_timestamp_rejected(self, signer, clock):
        stale = int((clock.now - timedelta(minutes=2)).timestamp() * 1000)

        with pytest.raises(ValidationError):
            signer.sign(PAYLOAD, "p1", **ROUTE, client_timestamp=stale)

    async def test_signature_bound_to_method_and_path(self, signer):
        delete_one = {"method": "DELETE", "path": "/api/users/p7"}
        signed = signer.sign(None, "p1", **delete_one)
        args = (None, signed["signature"], str(signed["timestamp"]), "p1")

        with pytest.raises(AuthenticationError):
            await signer.verify(*args, method="DELETE", path="/api/users/p8")
        with pytest.raises(AuthenticationError):
            await signer.verify(*args, method="PATCH", path="/api/users/p7")
        await signer.verify(*args, **delete_one)

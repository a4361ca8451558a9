"""Tests for the error envelope format and error handling.

Error responses share one shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<text>", "details": <object|array|null>},
    "request_id": "<correlation id>"
}
"""

import pytest
from pydantic import ValidationError

from conftest import DEFAULT_PASSWORD
from playerdash.api.error_handling import _error_code_for_status, error_response
from playerdash.api.schemas import Envelope, ErrorBody
from playerdash.storage.models import Role


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.details is None

    def test_details_accept_list(self):
        error = ErrorBody(code="validation_error", message="Invalid", details=[{"field": "email"}])
        assert error.details == [{"field": "email"}]

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="nope")

    def test_envelope_status_pattern(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")
        assert Envelope(status="ok").request_id


class TestStatusMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (409, "conflict"),
            (429, "rate_limited"),
            (418, "server_error"),
        ],
    )
    def test_code_for_status(self, status, code):
        assert _error_code_for_status(status) == code

    def test_error_response_carries_headers(self):
        resp = error_response(429, "slow down", headers={"Retry-After": "12"})
        assert resp.status_code == 429
        assert resp.headers["Retry-After"] == "12"


class TestHttpErrors:
    def test_missing_token_is_unauthorized(self, client):
        resp = client.get("/api/users", headers={"X-Request-ID": "req-123"})

        assert resp.status_code == 401
        body = resp.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "unauthorized"
        assert body["request_id"] == "req-123"
        assert resp.headers["X-Request-ID"] == "req-123"

    def test_generated_request_id_matches_header(self, client):
        resp = client.get("/api/users")

        assert resp.json()["request_id"] == resp.headers["X-Request-ID"]

    def test_expired_access_token(self, client, runtime, clock, make_principal):
        principal = make_principal(role=Role.TENANT_ADMIN)
        token = runtime.codec.issue(runtime.store.get_principal(principal.id)).token
        clock.advance(minutes=16)

        resp = client.get("/api/users", headers={"Authorization": f"Bearer {token}"})

        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "token_expired"

    def test_request_validation_lists_fields(self, client):
        resp = client.post("/api/auth/login", json={"email": "a@x.io"})

        assert resp.status_code == 400
        error = resp.json()["error"]
        assert error["code"] == "validation_error"
        assert "password" in [e["field"] for e in error["details"]["errors"]]

    def test_login_rate_limit(self, client):
        body = {"email": "onbekend@x.io", "password": DEFAULT_PASSWORD}
        for _ in range(10):
            assert client.post("/api/auth/login", json=body).status_code == 401

        resp = client.post("/api/auth/login", json=body)

        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "rate_limited"
        assert int(resp.headers["Retry-After"]) >= 1

    def test_security_headers(self, client):
        resp = client.get("/healthz")

        assert resp.headers["X-Frame-Options"] == "DENY"
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert "no-store" in resp.headers["Cache-Control"]

from __future__ import annotations

import json
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request, WebSocket

from playerdash.api.schemas import (
    CompleteRegistrationRequest,
    Envelope,
    ForgotPasswordRequest,
    InvitationRequest,
    LoginRequest,
    LogoutRequest,
    PasswordChangeRequest,
    RefreshRequest,
    ResetPasswordRequest,
    RoleUpdateRequest,
    SecondFactorLoginRequest,
    SignRequest,
    TotpCodeRequest,
)
from playerdash.logging import get_correlation_id, get_logger
from playerdash.service.auth import AuthContext, AuthService
from playerdash.service.errors import RateLimitedError, ValidationError
from playerdash.service.roles import Capability
from playerdash.service.runtime import check_rate_limit, get_runtime
from playerdash.service.signing import SIGNATURE_HEADER, TIMESTAMP_HEADER

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


def _ok(data: Any) -> Envelope:
    cid = get_correlation_id()
    if cid:
        return Envelope(status="ok", data=data, request_id=cid)
    return Envelope(status="ok", data=data)


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def _enforce_rate_limit(runtime, key: str, limit: int, window_seconds: int) -> None:
    """Raise ``RateLimitedError`` with a retry-after once the bucket is empty."""
    allowed, _remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key.split(":", 1)[0])
        raise RateLimitedError(
            "Too many requests, please try again later",
            retry_after=max(1, int(reset_seconds)),
        )


async def get_context(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(AuthService.extract_bearer(authorization))


async def _signed_payload(request: Request) -> Any:
    body = await request.body()
    if not body:
        return None
    try:
        return json.loads(body)
    except ValueError as exc:
        raise ValidationError("Invalid JSON body") from exc


async def get_signed_context(
    request: Request,
    context: AuthContext = Depends(get_context),
    signature: Optional[str] = Header(None, alias=SIGNATURE_HEADER),
    timestamp: Optional[str] = Header(None, alias=TIMESTAMP_HEADER),
) -> AuthContext:
    """Authenticated caller whose request body carries a fresh request signature."""
    runtime = get_runtime()
    payload = await _signed_payload(request)
    await runtime.signer.verify(
        payload,
        signature,
        timestamp,
        context.principal_id,
        method=request.method,
        path=request.url.path,
    )
    return context


# ---------------------------------------------------------------------------
# login and credentials
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Password login.

    Returns a token pair, or ``{requires2FA, handoffToken}`` when the
    principal has a committed second factor.
    """
    runtime = get_runtime()
    settings = runtime.settings
    ip = _client_ip(request)
    await _enforce_rate_limit(
        runtime, f"login:{ip}", settings.login_rate_limit, settings.rate_limit_window_seconds
    )
    result = await runtime.login.login(
        body.email, body.password, captcha=body.captcha, remote_ip=ip
    )
    return _ok(result.as_response())


@router.post("/auth/2fa/verify-login", response_model=Envelope, tags=["auth"])
async def verify_second_factor_login(body: SecondFactorLoginRequest, request: Request):
    runtime = get_runtime()
    settings = runtime.settings
    await _enforce_rate_limit(
        runtime,
        f"login-2fa:{_client_ip(request)}",
        settings.login_rate_limit,
        settings.rate_limit_window_seconds,
    )
    pair = await runtime.login.complete_second_factor(body.handoff_token, body.code)
    return _ok(pair.as_response())


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: RefreshRequest):
    runtime = get_runtime()
    pair = await runtime.auth.refresh(body.refresh_token)
    return _ok(pair.as_response())


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    context: AuthContext = Depends(get_context),
):
    runtime = get_runtime()
    await runtime.auth.logout(context, body.refresh_token if body else None)
    return _ok({"message": "Logged out successfully"})


# ---------------------------------------------------------------------------
# invitations and password reset
# ---------------------------------------------------------------------------


@router.post("/auth/register-invitation", response_model=Envelope, status_code=201, tags=["auth"])
async def register_invitation(
    body: InvitationRequest, context: AuthContext = Depends(get_context)
):
    runtime = get_runtime()
    settings = runtime.settings
    await _enforce_rate_limit(
        runtime,
        f"invite:{context.principal_id}",
        settings.mutation_rate_limit,
        settings.rate_limit_window_seconds,
    )
    result = await runtime.invitations.invite(context, body.email, body.role, body.company_id)
    return _ok(result)


@router.post("/auth/resend-invitation/{principal_id}", response_model=Envelope, tags=["auth"])
async def resend_invitation(
    principal_id: str = Path(..., max_length=128),
    context: AuthContext = Depends(get_context),
):
    runtime = get_runtime()
    return _ok(await runtime.invitations.resend(context, principal_id))


@router.get("/auth/verify-token", response_model=Envelope, tags=["auth"])
async def verify_invitation_token(token: str = Query(..., max_length=4096)):
    runtime = get_runtime()
    return _ok(runtime.invitations.verify_token(token))


@router.post("/auth/complete-registration", response_model=Envelope, tags=["auth"])
async def complete_registration(body: CompleteRegistrationRequest):
    runtime = get_runtime()
    pair = await runtime.invitations.complete_registration(
        body.token, body.password, body.email
    )
    return _ok(pair.as_response())


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest, request: Request):
    runtime = get_runtime()
    settings = runtime.settings
    await _enforce_rate_limit(
        runtime,
        f"reset:{_client_ip(request)}",
        settings.reset_rate_limit,
        settings.rate_limit_window_seconds,
    )
    return _ok(await runtime.invitations.request_password_reset(body.email))


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest, request: Request):
    runtime = get_runtime()
    settings = runtime.settings
    await _enforce_rate_limit(
        runtime,
        f"reset-confirm:{_client_ip(request)}",
        settings.reset_rate_limit,
        settings.rate_limit_window_seconds,
    )
    return _ok(await runtime.invitations.reset_password(body.token, body.password))


# ---------------------------------------------------------------------------
# second factor
# ---------------------------------------------------------------------------


@router.post("/auth/2fa/generate", response_model=Envelope, tags=["2fa"])
async def generate_second_factor(context: AuthContext = Depends(get_context)):
    runtime = get_runtime()
    uri, secret = runtime.totp.begin_enrollment(context.principal_id)
    return _ok({"otpauthUrl": uri, "secret": secret})


@router.post("/auth/2fa/verify-setup", response_model=Envelope, tags=["2fa"])
async def verify_second_factor_setup(
    body: TotpCodeRequest, context: AuthContext = Depends(get_context)
):
    runtime = get_runtime()
    await runtime.totp.confirm_enrollment(context.principal_id, body.code)
    return _ok({"enabled": True})


@router.post("/auth/2fa/disable", response_model=Envelope, tags=["2fa"])
async def disable_second_factor(
    body: TotpCodeRequest, context: AuthContext = Depends(get_context)
):
    runtime = get_runtime()
    await runtime.totp.disable(context.principal_id, body.code)
    return _ok({"enabled": False})


@router.post("/auth/2fa/verify", response_model=Envelope, tags=["2fa"])
async def verify_second_factor(
    body: TotpCodeRequest, context: AuthContext = Depends(get_context)
):
    runtime = get_runtime()
    await runtime.totp.verify(context.principal_id, body.code)
    return _ok({"verified": True})


@router.post("/auth/2fa/status", response_model=Envelope, tags=["2fa"])
async def second_factor_status(context: AuthContext = Depends(get_context)):
    runtime = get_runtime()
    return _ok(runtime.totp.status(context.principal_id))


# ---------------------------------------------------------------------------
# request signing and signed operations
# ---------------------------------------------------------------------------


@router.post("/auth/sign-request", response_model=Envelope, tags=["auth"])
async def sign_request(body: SignRequest, context: AuthContext = Depends(get_context)):
    runtime = get_runtime()
    signed = runtime.signer.sign(
        body.payload,
        context.principal_id,
        method=body.method,
        path=body.path,
        requested_for=body.user_id,
        client_timestamp=body.timestamp,
    )
    return _ok(signed)


@router.post("/users/update-password", response_model=Envelope, tags=["users"])
async def update_password(
    body: PasswordChangeRequest, context: AuthContext = Depends(get_signed_context)
):
    runtime = get_runtime()
    pair = await runtime.auth.change_password(context, body.current_password, body.new_password)
    return _ok(pair.as_response())


@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(context: AuthContext = Depends(get_context)):
    runtime = get_runtime()
    return _ok({"users": runtime.principals.list_principals(context)})


@router.delete("/users/{principal_id}", response_model=Envelope, tags=["users"])
async def delete_user(
    principal_id: str = Path(..., max_length=128),
    context: AuthContext = Depends(get_signed_context),
):
    runtime = get_runtime()
    runtime.principals.delete_principal(context, principal_id)
    return _ok({"message": "User deleted successfully"})


@router.patch("/users/{principal_id}/role", response_model=Envelope, tags=["users"])
async def update_user_role(
    body: RoleUpdateRequest,
    principal_id: str = Path(..., max_length=128),
    context: AuthContext = Depends(get_signed_context),
):
    runtime = get_runtime()
    updated = runtime.principals.update_role(context, principal_id, body.role, body.company_id)
    return _ok(updated)


# ---------------------------------------------------------------------------
# monitoring and push channel
# ---------------------------------------------------------------------------


@router.get("/monitoring", response_model=Envelope, tags=["monitoring"])
async def monitoring(authorization: Optional[str] = Header(None)):
    runtime = get_runtime()
    await runtime.auth.authenticate(
        AuthService.extract_bearer(authorization), required=(Capability.VIEW_MONITORING,)
    )
    return _ok(runtime.monitoring_snapshot())


@router.websocket("/ws")
async def push_channel(websocket: WebSocket):
    """Dashboard event stream; the access token rides in the ``jwt.<token>`` sub-protocol."""
    runtime = get_runtime()
    await runtime.push.serve(websocket)

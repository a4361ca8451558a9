from __future__ import annotations

from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from playerdash.service.validation import normalize_unicode, validate_email
from playerdash.storage.models import Role

# Bounds for free-form request fields
MAX_TOKEN_LENGTH = 4096
MAX_PASSWORD_LENGTH = 1024
MAX_JSON_DEPTH = 20
MAX_ARRAY_ITEMS = 1000

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "token_expired",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "captcha_required",
    "conflict",
    "server_error",
})


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    """Reject deeply nested or oversized payloads before they are signed or broadcast."""
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")
    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        if len(obj) > MAX_ARRAY_ITEMS:
            raise ValueError(f"Array length {len(obj)} exceeds maximum of {MAX_ARRAY_ITEMS}")
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class _CamelRequest(BaseModel):
    """Request bodies arrive in camelCase; snake_case is accepted too."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


def _clean_email(value: str) -> str:
    try:
        return validate_email(value)
    except ValueError as exc:
        raise ValueError("Invalid email address") from exc


class LoginRequest(_CamelRequest):
    # Syntax is not checked here: a malformed email must fail like a wrong password.
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    captcha: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)

    @field_validator("email")
    @classmethod
    def _normalize_login_email(cls, value: str) -> str:
        return normalize_unicode(value.strip().lower())


class SecondFactorLoginRequest(_CamelRequest):
    handoff_token: str = Field(..., max_length=MAX_TOKEN_LENGTH)
    code: str = Field(..., max_length=16)


class RefreshRequest(_CamelRequest):
    refresh_token: str = Field(..., max_length=MAX_TOKEN_LENGTH)


class LogoutRequest(_CamelRequest):
    refresh_token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)


class InvitationRequest(_CamelRequest):
    email: str
    role: Role = Role.MEMBER
    company_id: Optional[str] = Field(default=None, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_invite_email(cls, value: str) -> str:
        return _clean_email(value)


class CompleteRegistrationRequest(_CamelRequest):
    token: str = Field(..., max_length=MAX_TOKEN_LENGTH)
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    email: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _validate_registration_email(cls, value: Optional[str]) -> Optional[str]:
        return _clean_email(value) if value else None


class ForgotPasswordRequest(_CamelRequest):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: str) -> str:
        return _clean_email(value)


class ResetPasswordRequest(_CamelRequest):
    token: str = Field(..., max_length=MAX_TOKEN_LENGTH)
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class TotpCodeRequest(_CamelRequest):
    code: str = Field(..., max_length=16)


class SignRequest(_CamelRequest):
    payload: Any = None
    method: str = Field(..., min_length=1, max_length=10)
    path: str = Field(..., min_length=1, max_length=512)
    user_id: Optional[str] = Field(default=None, max_length=128)
    timestamp: Optional[int] = None

    @field_validator("payload")
    @classmethod
    def _validate_payload(cls, value: Any) -> Any:
        _validate_json_depth(value)
        return value

    @field_validator("path")
    @classmethod
    def _validate_path(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError("path must start with /")
        return value


class PasswordChangeRequest(_CamelRequest):
    current_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    new_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class RoleUpdateRequest(_CamelRequest):
    role: Role
    company_id: Optional[str] = Field(default=None, max_length=128)

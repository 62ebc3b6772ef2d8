from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from sessiongate.service.errors import ValidationError as ServiceValidationError
from sessiongate.service.validation import MAX_EMAIL_LENGTH, normalize_email

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "expired",
    "not_found",
    "conflict",
    "invalid_code",
    "weak_secret",
    "validation_error",
    "server_error",
})


class ErrorContent(BaseModel):
    """``content`` of a failed response: stable code plus when it happened."""

    code: str
    details: Optional[Any] = None
    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Response envelope shared by every endpoint."""

    success: bool
    error: Optional[str] = None
    content: Optional[Any] = None


def _validate_email_field(value: str) -> str:
    try:
        return normalize_email(value)
    except ServiceValidationError as exc:
        raise ValueError(exc.message) from exc


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )


PasswordStr = Annotated[str, Field(min_length=8, max_length=64)]


class SignUpRequest(_CamelModel):
    username: Optional[str] = Field(default=None, min_length=6, max_length=48)
    email: str = Field(..., max_length=MAX_EMAIL_LENGTH)
    password: PasswordStr
    confirm_password: PasswordStr

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _validate_email_field(value)


class SignInRequest(_CamelModel):
    email: str = Field(..., max_length=MAX_EMAIL_LENGTH)
    password: PasswordStr

    @field_validator("email")
    @classmethod
    def _validate_signin_email(cls, value: str) -> str:
        return _validate_email_field(value)


class UpdatePasswordRequest(_CamelModel):
    old_password: PasswordStr
    new_password: PasswordStr
    confirm_new_password: PasswordStr


class EmailUpdateRequest(_CamelModel):
    new_email: str = Field(..., max_length=MAX_EMAIL_LENGTH)

    @field_validator("new_email")
    @classmethod
    def _validate_new_email(cls, value: str) -> str:
        return _validate_email_field(value)


class PasswordResetRequest(_CamelModel):
    email: str = Field(..., max_length=MAX_EMAIL_LENGTH)

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: str) -> str:
        return _validate_email_field(value)


class ResetPasswordRequest(_CamelModel):
    password: PasswordStr
    confirm_password: PasswordStr


class ProfileResponse(_CamelModel):
    id: str
    email: str
    username: Optional[str] = None
    email_verified: bool


class EmailUpdatePendingResponse(_CamelModel):
    new_email: Optional[str] = None
    expiration: datetime

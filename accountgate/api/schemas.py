from __future__ import annotations

from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from accountgate.service.policy import (
    MAX_PASSWORD_LENGTH,
    normalize_email,
    normalize_full_name,
    normalize_phone,
)
from accountgate.storage.models import Account, Session

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "session_expired",
    "invalid_credentials",
    "account_locked",
    "forbidden",
    "not_found",
    "conflict",
    "duplicate_email",
    "duplicate_phone",
    "code_mismatch",
    "code_expired",
    "invalid_token",
    "rate_limited",
    "validation_error",
    "server_error",
    "delivery_failed",
    "service_unavailable",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable, machine-readable error code")
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


class SignupRequest(BaseModel):
    email: str = Field(..., max_length=320)
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    full_name: str = Field(..., max_length=200)
    phone: str = Field(..., max_length=32)

    model_config = ConfigDict(extra="ignore")

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return normalize_email(value)

    @field_validator("phone")
    @classmethod
    def _validate_phone(cls, value: str) -> str:
        return normalize_phone(value)

    @field_validator("full_name")
    @classmethod
    def _validate_full_name(cls, value: str) -> str:
        return normalize_full_name(value)


class CodeConfirmRequest(BaseModel):
    email: str = Field(..., max_length=320)
    code: str = Field(..., min_length=1, max_length=16)

    @field_validator("email")
    @classmethod
    def _validate_confirm_email(cls, value: str) -> str:
        return normalize_email(value)

    @field_validator("code")
    @classmethod
    def _strip_code(cls, value: str) -> str:
        value = value.strip()
        if not value.isdigit():
            raise ValueError("code must contain digits only")
        return value


class SigninRequest(BaseModel):
    # left unnormalized so malformed emails fail as invalid credentials
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class ResendCodeRequest(BaseModel):
    email: str = Field(..., max_length=320)
    purpose: Literal["signup", "signin"]

    @field_validator("email")
    @classmethod
    def _validate_resend_email(cls, value: str) -> str:
        return normalize_email(value)


class PasswordResetRequest(BaseModel):
    email: str = Field(..., max_length=320)

    @field_validator("email")
    @classmethod
    def _validate_password_reset_email(cls, value: str) -> str:
        return normalize_email(value)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class PasswordChangeRequest(BaseModel):
    """Request to change password (requires current password)."""

    current_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    new_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class AvailabilityRequest(BaseModel):
    email: Optional[str] = Field(default=None, max_length=320)
    phone: Optional[str] = Field(default=None, max_length=32)

    @field_validator("email")
    @classmethod
    def _validate_optional_email(cls, value: Optional[str]) -> Optional[str]:
        return normalize_email(value) if value else None

    @field_validator("phone")
    @classmethod
    def _validate_optional_phone(cls, value: Optional[str]) -> Optional[str]:
        return normalize_phone(value) if value else None

    @model_validator(mode="after")
    def _require_one(self) -> "AvailabilityRequest":
        if not self.email and not self.phone:
            raise ValueError("email or phone is required")
        return self


class UpdateRoleRequest(BaseModel):
    role: Literal["user", "admin"]


class AccountResponse(BaseModel):
    id: str
    email: str
    phone: str
    full_name: str
    role: str
    email_verified: bool
    created_at: datetime
    last_login_at: Optional[datetime] = None

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(
            id=account.id,
            email=account.email,
            phone=account.phone,
            full_name=account.full_name,
            role=account.role,
            email_verified=account.email_verified,
            created_at=account.created_at,
            last_login_at=account.last_login_at,
        )


class SessionResponse(BaseModel):
    token: str
    token_type: str = "bearer"
    role: str
    expires_at: datetime

    @classmethod
    def from_session(cls, session: Session) -> "SessionResponse":
        return cls(token=session.token, role=session.role, expires_at=session.expires_at)


class AuthResponse(BaseModel):
    account: AccountResponse
    session: SessionResponse


class SessionSummary(BaseModel):
    role: str
    expires_at: datetime


class SessionInfoResponse(BaseModel):
    account: AccountResponse
    session: SessionSummary


class VerificationPendingResponse(BaseModel):
    verification_required: bool = True
    email: str
    purpose: str
    expires_at: datetime


class AvailabilityResponse(BaseModel):
    available: bool
    conflicts: List[str] = Field(default_factory=list)

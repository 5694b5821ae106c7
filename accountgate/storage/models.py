from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


class VerificationPurpose(str, Enum):
    SIGNUP = "signup"
    SIGNIN = "signin"


class VerifyOutcome(str, Enum):
    """Result of an atomic consume attempt on a pending verification."""

    MATCHED = "matched"
    MISMATCH = "mismatch"
    EXHAUSTED = "exhausted"
    EXPIRED = "expired"
    NOT_FOUND = "not_found"


@dataclass
class Account:
    id: str
    email: str
    phone: str
    full_name: str
    password_hash: str
    password_algo: str = "argon2id"
    role: str = Role.USER.value
    email_verified: bool = False
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN.value

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now

    @classmethod
    def new(
        cls,
        *,
        email: str,
        phone: str,
        full_name: str,
        password_hash: str,
        password_algo: str = "argon2id",
        role: str = Role.USER.value,
        email_verified: bool = False,
        created_at: Optional[datetime] = None,
    ) -> "Account":
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            phone=phone,
            full_name=full_name,
            password_hash=password_hash,
            password_algo=password_algo,
            role=role,
            email_verified=email_verified,
            created_at=created_at or utcnow(),
        )


@dataclass
class PendingVerification:
    """An unconsumed one-time code bound to (email, purpose).

    ``payload`` carries the staged signup data or the signin account id so the
    staging record lives and dies with the code.
    """

    id: str
    email: str
    purpose: str
    code_hash: str
    issued_at: datetime
    expires_at: datetime
    attempts_remaining: int
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> tuple[str, str]:
        return (self.email, self.purpose)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    @classmethod
    def new(
        cls,
        *,
        email: str,
        purpose: str,
        code_hash: str,
        issued_at: datetime,
        ttl: timedelta,
        attempts: int,
        payload: Optional[Dict[str, Any]] = None,
    ) -> "PendingVerification":
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            purpose=purpose,
            code_hash=code_hash,
            issued_at=issued_at,
            expires_at=issued_at + ttl,
            attempts_remaining=attempts,
            payload=dict(payload or {}),
        )


@dataclass
class PasswordResetToken:
    token_hash: str
    account_id: str
    expires_at: datetime
    consumed: bool = False
    created_at: datetime = field(default_factory=utcnow)

    def is_usable(self, now: datetime) -> bool:
        return not self.consumed and self.expires_at > now


@dataclass
class Session:
    token: str
    account_id: str
    role: str
    issued_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    @classmethod
    def new(cls, account_id: str, role: str, *, issued_at: datetime, ttl: timedelta) -> "Session":
        return cls(
            token=secrets.token_urlsafe(32),
            account_id=account_id,
            role=role,
            issued_at=issued_at,
            expires_at=issued_at + ttl,
        )

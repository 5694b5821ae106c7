"""Store contract and helpers shared between memory and postgres implementations."""

from __future__ import annotations

import dataclasses
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple, Type, TypeVar

from accountgate.storage.models import (
    Account,
    PasswordResetToken,
    PendingVerification,
    Session,
    VerifyOutcome,
)

T = TypeVar("T")

# Timestamp columns across all record types
DATETIME_FIELDS = frozenset(
    {"created_at", "last_login_at", "locked_until", "issued_at", "expires_at"}
)


class AuthStore(Protocol):
    """Persistence contract used by the account engine.

    Methods documented as atomic must hold their guarantees against
    concurrent callers for the same key.
    """

    def create_account(self, account: Account) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def get_account_by_phone(self, phone: str) -> Optional[Account]: ...

    def list_accounts(self, *, role: Optional[str] = None, limit: int = 100) -> List[Account]:
        """Accounts ordered by creation, optionally filtered by role."""
        ...

    def update_account_role(self, account_id: str, role: str) -> Optional[Account]: ...

    def record_failed_login(
        self, account_id: str, *, now: datetime, threshold: int, lock_for: timedelta
    ) -> Optional[Account]:
        """Atomically count a failure and lock the account at the threshold.

        The counter resets when the lock is applied. An account that is
        already locked is returned unchanged.
        """
        ...

    def record_successful_login(self, account_id: str, *, now: datetime) -> Optional[Account]: ...

    def update_password(
        self,
        account_id: str,
        password_hash: str,
        password_algo: str,
        *,
        revoke_sessions: bool = True,
        keep_session: Optional[str] = None,
    ) -> int:
        """Replace the password hash and revoke sessions in one operation.

        Returns the number of revoked sessions.
        """
        ...

    def issue_pending_verification(
        self, record: PendingVerification, *, cooldown: timedelta, now: datetime
    ) -> Tuple[bool, Optional[PendingVerification]]:
        """Atomically replace the pending record for ``record.key``.

        Returns ``(False, existing)`` without writing when ``existing`` is
        unexpired and was issued within ``cooldown``; otherwise
        ``(True, previous_or_none)``.
        """
        ...

    def get_pending_verification(
        self, email: str, purpose: str
    ) -> Optional[PendingVerification]: ...

    def consume_pending_verification(
        self,
        email: str,
        purpose: str,
        *,
        matches: Callable[[str], bool],
        now: datetime,
    ) -> Tuple[VerifyOutcome, Optional[PendingVerification]]:
        """Atomically check a code hash and delete or decrement the record."""
        ...

    def delete_pending_verification(
        self, email: str, purpose: str, *, record_id: Optional[str] = None
    ) -> bool: ...

    def create_reset_token(self, token: PasswordResetToken) -> None: ...

    def consume_reset_token(
        self, token_hash: str, *, now: datetime
    ) -> Optional[PasswordResetToken]: ...

    def delete_reset_token(self, token_hash: str) -> None: ...

    def create_session(self, session: Session) -> Session: ...

    def get_session(self, token: str) -> Optional[Session]: ...

    def revoke_session(self, token: str) -> bool: ...

    def revoke_account_sessions(
        self, account_id: str, *, except_token: Optional[str] = None
    ) -> int: ...

    def purge_expired(self, now: datetime) -> int: ...


def serialize_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def deserialize_datetime(raw: Any) -> Optional[datetime]:
    if raw is None:
        return None
    if isinstance(raw, datetime):
        parsed = raw
    else:
        parsed = datetime.fromisoformat(str(raw))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def to_record(obj: Any) -> Dict[str, Any]:
    """Flatten a model dataclass into a JSON-friendly dict."""
    data = dataclasses.asdict(obj)
    for key in DATETIME_FIELDS.intersection(data):
        data[key] = serialize_datetime(data[key])
    return data


def from_record(cls: Type[T], data: Dict[str, Any]) -> T:
    """Rebuild a model dataclass from a dict or database row, ignoring unknown keys."""
    names = {f.name for f in dataclasses.fields(cls)}
    kwargs = {key: value for key, value in dict(data).items() if key in names}
    for key in DATETIME_FIELDS.intersection(kwargs):
        kwargs[key] = deserialize_datetime(kwargs[key])
    return cls(**kwargs)


__all__ = [
    "AuthStore",
    "DATETIME_FIELDS",
    "deserialize_datetime",
    "from_record",
    "serialize_datetime",
    "to_record",
]

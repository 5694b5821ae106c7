from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from accountgate.logging import fingerprint, get_logger
from accountgate.service.errors import (
    CodeExpiredError,
    CodeMismatchError,
    CodeNotFoundError,
    TooManyRequestsError,
)
from accountgate.storage.common import AuthStore
from accountgate.storage.models import (
    PendingVerification,
    VerificationPurpose,
    VerifyOutcome,
    utcnow,
)

logger = get_logger(__name__)

CODE_LENGTH = 6


@dataclass
class IssuedCode:
    """Plaintext code handed to the delivery channel; never stored."""

    email: str
    purpose: str
    code: str
    record_id: str
    expires_at: datetime


def hash_code(code: str, salt: Optional[str] = None) -> str:
    salt = salt or secrets.token_hex(16)
    digest = hmac.new(salt.encode(), code.encode(), hashlib.sha256).hexdigest()
    return f"{salt}${digest}"


def code_matches(code: str, stored: str) -> bool:
    salt, sep, expected = stored.partition("$")
    if not sep:
        return False
    candidate = hmac.new(salt.encode(), code.encode(), hashlib.sha256).hexdigest()
    return hmac.compare_digest(candidate, expected)


class ResendGovernor:
    """Cooldown between consecutive codes for the same (email, purpose)."""

    def __init__(self, cooldown: timedelta = timedelta(seconds=60)) -> None:
        self.cooldown = cooldown

    def retry_after(self, existing: Optional[PendingVerification], now: datetime) -> int:
        """Seconds until a new code may be issued; 0 when allowed."""
        if existing is None or existing.is_expired(now):
            return 0
        remaining = (existing.issued_at + self.cooldown - now).total_seconds()
        return max(0, int(remaining + 0.999))

    def check(self, existing: Optional[PendingVerification], now: datetime) -> None:
        wait = self.retry_after(existing, now)
        if wait > 0:
            raise TooManyRequestsError(wait)


class VerificationCodeIssuer:
    """Issues and consumes short-lived numeric codes bound to (email, purpose).

    Only a salted HMAC of each code is persisted. The store performs the
    replace-with-cooldown and the check-and-consume steps atomically, so two
    concurrent submissions of the same code cannot both succeed.
    """

    def __init__(
        self,
        store: AuthStore,
        *,
        ttl: timedelta = timedelta(minutes=10),
        max_attempts: int = 5,
        governor: Optional[ResendGovernor] = None,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.ttl = ttl
        self.max_attempts = max_attempts
        self.governor = governor or ResendGovernor()
        self._now = now or utcnow

    @staticmethod
    def generate_code() -> str:
        return f"{secrets.randbelow(10 ** CODE_LENGTH):0{CODE_LENGTH}d}"

    def pending(self, email: str, purpose: str) -> Optional[PendingVerification]:
        return self.store.get_pending_verification(email, VerificationPurpose(purpose).value)

    def issue(
        self, email: str, purpose: str, payload: Optional[Dict[str, Any]] = None
    ) -> IssuedCode:
        purpose = VerificationPurpose(purpose).value
        now = self._now()
        code = self.generate_code()
        record = PendingVerification.new(
            email=email,
            purpose=purpose,
            code_hash=hash_code(code),
            issued_at=now,
            ttl=self.ttl,
            attempts=self.max_attempts,
            payload=payload,
        )
        written, existing = self.store.issue_pending_verification(
            record, cooldown=self.governor.cooldown, now=now
        )
        if not written:
            logger.info(
                "verification_resend_throttled",
                email_hash=fingerprint(email),
                purpose=purpose,
            )
            self.governor.check(existing, now)
            # cooldown lapsed between the store check and now
            raise TooManyRequestsError(1)
        logger.info(
            "verification_code_issued",
            email_hash=fingerprint(email),
            purpose=purpose,
            replaced=existing is not None,
            expires_at=record.expires_at.isoformat(),
        )
        return IssuedCode(
            email=email,
            purpose=purpose,
            code=code,
            record_id=record.id,
            expires_at=record.expires_at,
        )

    def verify(self, email: str, purpose: str, code: str) -> PendingVerification:
        """Consume the pending code; returns the record (with payload) on a match."""
        purpose = VerificationPurpose(purpose).value
        submitted = (code or "").strip()
        outcome, record = self.store.consume_pending_verification(
            email,
            purpose,
            matches=lambda stored: code_matches(submitted, stored),
            now=self._now(),
        )
        email_hash = fingerprint(email)
        if outcome is VerifyOutcome.MATCHED:
            logger.info("verification_code_accepted", email_hash=email_hash, purpose=purpose)
            return record
        if outcome is VerifyOutcome.NOT_FOUND:
            raise CodeNotFoundError()
        if outcome is VerifyOutcome.EXPIRED:
            logger.info("verification_code_expired", email_hash=email_hash, purpose=purpose)
            raise CodeExpiredError()
        if outcome is VerifyOutcome.EXHAUSTED:
            logger.warning("verification_attempts_exhausted", email_hash=email_hash, purpose=purpose)
            raise CodeMismatchError(0)
        logger.info(
            "verification_code_mismatch",
            email_hash=email_hash,
            purpose=purpose,
            attempts_remaining=record.attempts_remaining,
        )
        raise CodeMismatchError(record.attempts_remaining)

    def withdraw(self, issued: IssuedCode) -> bool:
        """Drop an issued record that could not be delivered."""
        removed = self.store.delete_pending_verification(
            issued.email, issued.purpose, record_id=issued.record_id
        )
        if removed:
            logger.info(
                "verification_code_withdrawn",
                email_hash=fingerprint(issued.email),
                purpose=issued.purpose,
            )
        return removed

from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from accountgate.logging import get_logger
from accountgate.service.errors import InvalidOrExpiredTokenError
from accountgate.storage.common import AuthStore
from accountgate.storage.models import Account, PasswordResetToken, utcnow

logger = get_logger(__name__)


@dataclass
class IssuedResetToken:
    token: str
    token_hash: str
    account_id: str
    expires_at: datetime


class PasswordResetFlow:
    """Single-use reset tokens stored as keyed hashes.

    The HMAC key plays the role of a salt while keeping lookup by digest
    possible. A newer token supersedes any older unconsumed one.
    """

    def __init__(
        self,
        store: AuthStore,
        *,
        secret: str,
        ttl: timedelta = timedelta(hours=1),
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.ttl = ttl
        self._secret = secret.encode()
        self._now = now or utcnow

    def hash_token(self, token: str) -> str:
        return hmac.new(self._secret, token.encode(), hashlib.sha256).hexdigest()

    def issue(self, account: Account) -> IssuedResetToken:
        now = self._now()
        token = secrets.token_urlsafe(32)
        record = PasswordResetToken(
            token_hash=self.hash_token(token),
            account_id=account.id,
            expires_at=now + self.ttl,
            created_at=now,
        )
        self.store.create_reset_token(record)
        logger.info(
            "password_reset_token_issued",
            account_id=account.id,
            expires_at=record.expires_at.isoformat(),
        )
        return IssuedResetToken(
            token=token,
            token_hash=record.token_hash,
            account_id=account.id,
            expires_at=record.expires_at,
        )

    def consume(self, token: str) -> PasswordResetToken:
        if not token:
            raise InvalidOrExpiredTokenError()
        record = self.store.consume_reset_token(self.hash_token(token), now=self._now())
        if record is None:
            logger.warning("password_reset_invalid_token")
            raise InvalidOrExpiredTokenError()
        return record

    def withdraw(self, issued: IssuedResetToken) -> None:
        self.store.delete_reset_token(issued.token_hash)

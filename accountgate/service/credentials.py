from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from accountgate.logging import fingerprint, get_logger
from accountgate.service.errors import AccountLockedError, InvalidCredentialsError
from accountgate.storage.common import AuthStore
from accountgate.storage.models import Account, utcnow

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class CredentialValidator:
    """First authentication factor: password check plus brute-force lockout.

    An unknown email and a wrong password produce the same
    ``InvalidCredentialsError``. Failed attempts are counted by the store in a
    single atomic update, and the attempt that reaches ``threshold`` locks the
    account for ``lock_for``. Lock expiry is evaluated lazily against the
    stored ``locked_until`` timestamp.
    """

    def __init__(
        self,
        store: AuthStore,
        *,
        threshold: int = 5,
        lock_for: timedelta = timedelta(hours=2),
        now: Optional[Callable[[], datetime]] = None,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store = store
        self.threshold = threshold
        self.lock_for = lock_for
        self._now = now or utcnow
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None

    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def password_matches(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unusable")
            return False

    def _burn_time(self, password: str) -> None:
        # unknown emails pay for one argon2 verify, same as a wrong password
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        self.password_matches(self._dummy_hash, password)

    def _locked(self, account: Account, now: datetime) -> AccountLockedError:
        assert account.locked_until is not None
        remaining = (account.locked_until - now).total_seconds()
        return AccountLockedError(account.locked_until, int(remaining + 0.999))

    def validate(self, email: str, password: str) -> Account:
        """Check ``password`` for the account registered under ``email``.

        Raises ``InvalidCredentialsError`` or ``AccountLockedError``; returns the
        refreshed Account (counter reset, lock cleared) on success.
        """
        now = self._now()
        account = self.store.get_account_by_email(email)
        if account is None:
            self._burn_time(password)
            logger.info("signin_unknown_email", email_hash=fingerprint(email))
            raise InvalidCredentialsError()

        if account.is_locked(now):
            logger.warning("signin_rejected_locked", account_id=account.id)
            raise self._locked(account, now)

        if account.password_algo != PASSWORD_ALGO or not self.password_matches(
            account.password_hash, password
        ):
            updated = self.store.record_failed_login(
                account.id, now=now, threshold=self.threshold, lock_for=self.lock_for
            )
            if updated is not None and updated.is_locked(now):
                logger.warning(
                    "account_lockout_triggered",
                    account_id=account.id,
                    locked_until=updated.locked_until.isoformat(),
                )
                raise self._locked(updated, now)
            logger.info(
                "signin_wrong_password",
                account_id=account.id,
                failed_attempts=updated.failed_attempts if updated else None,
            )
            raise InvalidCredentialsError()

        refreshed = self.store.record_successful_login(account.id, now=now) or account
        if self._pwd_hasher.check_needs_rehash(account.password_hash):
            digest, algo = self.hash_password(password)
            self.store.update_password(account.id, digest, algo, revoke_sessions=False)
            refreshed.password_hash, refreshed.password_algo = digest, algo
            logger.info("password_rehashed", account_id=account.id)
        return refreshed

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from accountgate.logging import get_logger
from accountgate.service.errors import ForbiddenError, SessionExpiredError
from accountgate.storage.common import AuthStore
from accountgate.storage.models import Account, Role, Session, utcnow

logger = get_logger(__name__)


@dataclass
class AuthContext:
    """The identity downstream collaborators authorize against."""

    account_id: str
    role: str
    session_token: str
    expires_at: datetime

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN.value


class SessionIssuer:
    """Mints opaque bearer sessions and resolves them back to an AuthContext.

    Tokens carry 256 bits from ``secrets``; uniqueness follows from entropy.
    The role is snapshotted at issuance and never re-read from the account.
    """

    def __init__(
        self,
        store: AuthStore,
        *,
        ttl: timedelta = timedelta(days=7),
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.ttl = ttl
        self._now = now or utcnow

    def issue(self, account: Account) -> Session:
        session = Session.new(account.id, account.role, issued_at=self._now(), ttl=self.ttl)
        self.store.create_session(session)
        logger.info(
            "session_issued",
            account_id=account.id,
            role=session.role,
            expires_at=session.expires_at.isoformat(),
        )
        return session

    def resolve(
        self,
        token: Optional[str],
        *,
        required_role: Optional[str] = None,
        raise_expired: bool = False,
    ) -> Optional[AuthContext]:
        """Map a token to its AuthContext; unknown and expired tokens give None.

        With ``raise_expired`` an expired token raises SessionExpiredError so
        callers can tell the client to sign in again.
        """
        if not token:
            return None
        session = self.store.get_session(token)
        if session is None:
            return None
        if session.is_expired(self._now()):
            self.store.revoke_session(token)
            logger.info("session_expired", account_id=session.account_id)
            if raise_expired:
                raise SessionExpiredError("session expired; sign in again")
            return None
        if required_role and session.role != required_role:
            raise ForbiddenError(f"{required_role} role required")
        return AuthContext(
            account_id=session.account_id,
            role=session.role,
            session_token=session.token,
            expires_at=session.expires_at,
        )

    def revoke(self, token: str) -> bool:
        return self.store.revoke_session(token)

    def revoke_all(self, account_id: str, *, except_token: Optional[str] = None) -> int:
        revoked = self.store.revoke_account_sessions(account_id, except_token=except_token)
        logger.info("account_sessions_revoked", account_id=account_id, revoked=revoked)
        return revoked

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool, PoolTimeout

from accountgate.logging import get_logger
from accountgate.storage.common import from_record
from accountgate.storage.errors import ConstraintViolation, StoreUnavailable
from accountgate.storage.models import (
    Account,
    PasswordResetToken,
    PendingVerification,
    Session,
    VerifyOutcome,
)

REQUIRED_TABLES = (
    "account",
    "pending_verification",
    "password_reset_token",
    "auth_session",
)


def _unique_field(exc: errors.UniqueViolation) -> str:
    name = getattr(exc.diag, "constraint_name", None) or str(exc)
    return "phone" if "phone" in name else "email"


def _account_from_row(row: Dict[str, Any]) -> Account:
    return from_record(Account, {**row, "id": str(row["id"])})


def _pending_from_row(row: Dict[str, Any]) -> PendingVerification:
    return from_record(
        PendingVerification,
        {**row, "id": str(row["id"]), "payload": dict(row.get("payload") or {})},
    )


def _reset_from_row(row: Dict[str, Any]) -> PasswordResetToken:
    return from_record(PasswordResetToken, {**row, "account_id": str(row["account_id"])})


def _session_from_row(row: Dict[str, Any]) -> Session:
    return from_record(Session, {**row, "account_id": str(row["account_id"])})


class PostgresStore:
    """Postgres-backed store; compound operations are single statements or row-locked transactions."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("database unavailable") from exc

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Ensure the account tables exist before serving requests."""

        with self._connect() as conn:
            missing = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
        if missing:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing))
                )
            )

    # accounts
    def create_account(self, account: Account) -> Account:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO account (
                        id, email, phone, full_name, password_hash, password_algo,
                        role, email_verified, failed_attempts, locked_until, created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        account.id,
                        account.email,
                        account.phone,
                        account.full_name,
                        account.password_hash,
                        account.password_algo,
                        account.role,
                        account.email_verified,
                        account.failed_attempts,
                        account.locked_until,
                        account.created_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = _unique_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        return _account_from_row(row)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM account WHERE id = %s", (account_id,)).fetchone()
        return _account_from_row(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM account WHERE email = %s", (email,)).fetchone()
        return _account_from_row(row) if row else None

    def get_account_by_phone(self, phone: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM account WHERE phone = %s", (phone,)).fetchone()
        return _account_from_row(row) if row else None

    def list_accounts(self, *, role: Optional[str] = None, limit: int = 100) -> List[Account]:
        with self._connect() as conn:
            if role:
                rows = conn.execute(
                    "SELECT * FROM account WHERE role = %s ORDER BY created_at LIMIT %s",
                    (role, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM account ORDER BY created_at LIMIT %s", (limit,)
                ).fetchall()
        return [_account_from_row(r) for r in rows]

    def update_account_role(self, account_id: str, role: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE account SET role = %s WHERE id = %s RETURNING *", (role, account_id)
            ).fetchone()
        return _account_from_row(row) if row else None

    def record_failed_login(
        self, account_id: str, *, now: datetime, threshold: int, lock_for: timedelta
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account SET
                    failed_attempts = CASE
                        WHEN failed_attempts + 1 >= %(threshold)s THEN 0
                        ELSE failed_attempts + 1
                    END,
                    locked_until = CASE
                        WHEN failed_attempts + 1 >= %(threshold)s THEN %(lock_until)s
                        ELSE NULL
                    END
                WHERE id = %(id)s AND (locked_until IS NULL OR locked_until <= %(now)s)
                RETURNING *
                """,
                {
                    "id": account_id,
                    "threshold": threshold,
                    "lock_until": now + lock_for,
                    "now": now,
                },
            ).fetchone()
            if row is None:
                # already locked by a concurrent attempt, or gone
                row = conn.execute(
                    "SELECT * FROM account WHERE id = %s", (account_id,)
                ).fetchone()
        return _account_from_row(row) if row else None

    def record_successful_login(self, account_id: str, *, now: datetime) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET failed_attempts = 0, locked_until = NULL, last_login_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (now, account_id),
            ).fetchone()
        return _account_from_row(row) if row else None

    def update_password(
        self,
        account_id: str,
        password_hash: str,
        password_algo: str,
        *,
        revoke_sessions: bool = True,
        keep_session: Optional[str] = None,
    ) -> int:
        with self._connect() as conn:
            updated = conn.execute(
                "UPDATE account SET password_hash = %s, password_algo = %s WHERE id = %s",
                (password_hash, password_algo, account_id),
            )
            if updated.rowcount == 0:
                raise ConstraintViolation("account does not exist", {"account_id": account_id})
            if not revoke_sessions:
                return 0
            deleted = conn.execute(
                "DELETE FROM auth_session WHERE account_id = %s AND token IS DISTINCT FROM %s",
                (account_id, keep_session),
            )
            return deleted.rowcount

    # pending verifications
    def issue_pending_verification(
        self, record: PendingVerification, *, cooldown: timedelta, now: datetime
    ) -> Tuple[bool, Optional[PendingVerification]]:
        with self._connect() as conn:
            # lock the current row so the one returned is the one replaced
            prior = conn.execute(
                """
                SELECT * FROM pending_verification
                WHERE email = %s AND purpose = %s
                FOR UPDATE
                """,
                (record.email, record.purpose),
            ).fetchone()
            written = conn.execute(
                """
                INSERT INTO pending_verification (
                    id, email, purpose, code_hash, issued_at, expires_at,
                    attempts_remaining, payload
                )
                VALUES (
                    %(id)s, %(email)s, %(purpose)s, %(code_hash)s, %(issued_at)s,
                    %(expires_at)s, %(attempts)s, %(payload)s
                )
                ON CONFLICT (email, purpose) DO UPDATE SET
                    id = EXCLUDED.id,
                    code_hash = EXCLUDED.code_hash,
                    issued_at = EXCLUDED.issued_at,
                    expires_at = EXCLUDED.expires_at,
                    attempts_remaining = EXCLUDED.attempts_remaining,
                    payload = EXCLUDED.payload
                WHERE pending_verification.expires_at <= %(now)s
                   OR pending_verification.issued_at + %(cooldown)s <= %(now)s
                RETURNING id
                """,
                {
                    "id": record.id,
                    "email": record.email,
                    "purpose": record.purpose,
                    "code_hash": record.code_hash,
                    "issued_at": record.issued_at,
                    "expires_at": record.expires_at,
                    "attempts": record.attempts_remaining,
                    "payload": Jsonb(record.payload),
                    "now": now,
                    "cooldown": cooldown,
                },
            ).fetchone()
            if written:
                return True, _pending_from_row(prior) if prior else None
            row = conn.execute(
                "SELECT * FROM pending_verification WHERE email = %s AND purpose = %s",
                (record.email, record.purpose),
            ).fetchone()
        return False, _pending_from_row(row) if row else None

    def get_pending_verification(
        self, email: str, purpose: str
    ) -> Optional[PendingVerification]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM pending_verification WHERE email = %s AND purpose = %s",
                (email, purpose),
            ).fetchone()
        return _pending_from_row(row) if row else None

    def consume_pending_verification(
        self,
        email: str,
        purpose: str,
        *,
        matches: Callable[[str], bool],
        now: datetime,
    ) -> Tuple[VerifyOutcome, Optional[PendingVerification]]:
        key = (email, purpose)
        with self._connect() as conn:
            # row lock is held until the connection block commits
            row = conn.execute(
                """
                SELECT * FROM pending_verification
                WHERE email = %s AND purpose = %s
                FOR UPDATE
                """,
                key,
            ).fetchone()
            if row is None:
                return VerifyOutcome.NOT_FOUND, None
            record = _pending_from_row(row)
            delete_sql = "DELETE FROM pending_verification WHERE email = %s AND purpose = %s"
            if record.is_expired(now):
                conn.execute(delete_sql, key)
                return VerifyOutcome.EXPIRED, record
            if matches(record.code_hash):
                conn.execute(delete_sql, key)
                return VerifyOutcome.MATCHED, record
            record.attempts_remaining -= 1
            if record.attempts_remaining <= 0:
                conn.execute(delete_sql, key)
                return VerifyOutcome.EXHAUSTED, record
            conn.execute(
                """
                UPDATE pending_verification SET attempts_remaining = %s
                WHERE email = %s AND purpose = %s
                """,
                (record.attempts_remaining, email, purpose),
            )
            return VerifyOutcome.MISMATCH, record

    def delete_pending_verification(
        self, email: str, purpose: str, *, record_id: Optional[str] = None
    ) -> bool:
        with self._connect() as conn:
            if record_id is None:
                cur = conn.execute(
                    "DELETE FROM pending_verification WHERE email = %s AND purpose = %s",
                    (email, purpose),
                )
            else:
                cur = conn.execute(
                    "DELETE FROM pending_verification WHERE email = %s AND purpose = %s AND id = %s",
                    (email, purpose, record_id),
                )
            return cur.rowcount > 0

    # password reset tokens
    def create_reset_token(self, token: PasswordResetToken) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE password_reset_token SET consumed = TRUE WHERE account_id = %s AND NOT consumed",
                (token.account_id,),
            )
            conn.execute(
                """
                INSERT INTO password_reset_token (token_hash, account_id, expires_at, consumed, created_at)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (
                    token.token_hash,
                    token.account_id,
                    token.expires_at,
                    token.consumed,
                    token.created_at,
                ),
            )

    def consume_reset_token(
        self, token_hash: str, *, now: datetime
    ) -> Optional[PasswordResetToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE password_reset_token SET consumed = TRUE
                WHERE token_hash = %s AND NOT consumed AND expires_at > %s
                RETURNING *
                """,
                (token_hash, now),
            ).fetchone()
        return _reset_from_row(row) if row else None

    def delete_reset_token(self, token_hash: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM password_reset_token WHERE token_hash = %s", (token_hash,))

    # sessions
    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (token, account_id, role, issued_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        session.token,
                        session.account_id,
                        session.role,
                        session.issued_at,
                        session.expires_at,
                    ),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "account does not exist", {"account_id": session.account_id}
            ) from exc
        return session

    def get_session(self, token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM auth_session WHERE token = %s", (token,)).fetchone()
        return _session_from_row(row) if row else None

    def revoke_session(self, token: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_session WHERE token = %s", (token,))
            return cur.rowcount > 0

    def revoke_account_sessions(
        self, account_id: str, *, except_token: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM auth_session WHERE account_id = %s AND token IS DISTINCT FROM %s",
                (account_id, except_token),
            )
            return cur.rowcount

    def purge_expired(self, now: datetime) -> int:
        removed = 0
        with self._connect() as conn:
            removed += conn.execute(
                "DELETE FROM auth_session WHERE expires_at <= %s", (now,)
            ).rowcount
            removed += conn.execute(
                "DELETE FROM pending_verification WHERE expires_at <= %s", (now,)
            ).rowcount
            removed += conn.execute(
                "DELETE FROM password_reset_token WHERE consumed OR expires_at <= %s", (now,)
            ).rowcount
        if removed:
            self.logger.info("postgres_store_purged", removed=removed)
        return removed

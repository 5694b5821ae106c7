from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from accountgate.logging import get_logger
from accountgate.storage.common import from_record, to_record
from accountgate.storage.errors import ConstraintViolation
from accountgate.storage.models import (
    Account,
    PasswordResetToken,
    PendingVerification,
    Session,
    VerifyOutcome,
)


class MemoryStore:
    """In-process backing store for development and tests.

    Every mutation runs under a single re-entrant lock, which is what makes
    the compound operations (failure counting, code consumption, issue with
    cooldown) atomic. When ``fs_root`` is given the tables are written to
    ``<fs_root>/state/memory_store.json`` after each change and reloaded on
    start.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.sessions: Dict[str, Session] = {}
        self.pending: Dict[Tuple[str, str], PendingVerification] = {}
        self.reset_tokens: Dict[str, PasswordResetToken] = {}
        # RLock so compound operations can call the simple accessors
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # -- accounts ---------------------------------------------------------

    def create_account(self, account: Account) -> Account:
        with self._data_lock:
            for existing in self.accounts.values():
                if existing.email == account.email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                if existing.phone == account.phone:
                    raise ConstraintViolation("phone already exists", {"field": "phone"})
            self.accounts[account.id] = replace(account)
            self._persist_state()
            return replace(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            for account in self.accounts.values():
                if account.email == email:
                    return replace(account)
            return None

    def get_account_by_phone(self, phone: str) -> Optional[Account]:
        with self._data_lock:
            for account in self.accounts.values():
                if account.phone == phone:
                    return replace(account)
            return None

    def list_accounts(self, *, role: Optional[str] = None, limit: int = 100) -> List[Account]:
        with self._data_lock:
            accounts = [
                replace(a)
                for a in self.accounts.values()
                if role is None or a.role == role
            ]
        accounts.sort(key=lambda a: a.created_at)
        return accounts[:limit]

    def update_account_role(self, account_id: str, role: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.role = role
            self._persist_state()
            return replace(account)

    def record_failed_login(
        self, account_id: str, *, now: datetime, threshold: int, lock_for: timedelta
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            if account.is_locked(now):
                return replace(account)
            # lapsed lock from an earlier window
            account.locked_until = None
            account.failed_attempts += 1
            if account.failed_attempts >= threshold:
                account.failed_attempts = 0
                account.locked_until = now + lock_for
            self._persist_state()
            return replace(account)

    def record_successful_login(self, account_id: str, *, now: datetime) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.failed_attempts = 0
            account.locked_until = None
            account.last_login_at = now
            self._persist_state()
            return replace(account)

    def update_password(
        self,
        account_id: str,
        password_hash: str,
        password_algo: str,
        *,
        revoke_sessions: bool = True,
        keep_session: Optional[str] = None,
    ) -> int:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                raise ConstraintViolation("account does not exist", {"account_id": account_id})
            account.password_hash = password_hash
            account.password_algo = password_algo
            revoked = 0
            if revoke_sessions:
                revoked = self._drop_sessions(account_id, except_token=keep_session)
            self._persist_state()
            return revoked

    # -- pending verifications --------------------------------------------

    def issue_pending_verification(
        self, record: PendingVerification, *, cooldown: timedelta, now: datetime
    ) -> Tuple[bool, Optional[PendingVerification]]:
        with self._data_lock:
            existing = self.pending.get(record.key)
            if (
                existing is not None
                and not existing.is_expired(now)
                and existing.issued_at + cooldown > now
            ):
                return False, replace(existing)
            self.pending[record.key] = replace(record, payload=dict(record.payload))
            self._persist_state()
            return True, replace(existing) if existing else None

    def get_pending_verification(
        self, email: str, purpose: str
    ) -> Optional[PendingVerification]:
        with self._data_lock:
            record = self.pending.get((email, purpose))
            return replace(record) if record else None

    def consume_pending_verification(
        self,
        email: str,
        purpose: str,
        *,
        matches: Callable[[str], bool],
        now: datetime,
    ) -> Tuple[VerifyOutcome, Optional[PendingVerification]]:
        key = (email, purpose)
        with self._data_lock:
            record = self.pending.get(key)
            if record is None:
                return VerifyOutcome.NOT_FOUND, None
            if record.is_expired(now):
                self.pending.pop(key, None)
                self._persist_state()
                return VerifyOutcome.EXPIRED, replace(record)
            if matches(record.code_hash):
                self.pending.pop(key, None)
                self._persist_state()
                return VerifyOutcome.MATCHED, replace(record)
            record.attempts_remaining -= 1
            if record.attempts_remaining <= 0:
                self.pending.pop(key, None)
                self._persist_state()
                return VerifyOutcome.EXHAUSTED, replace(record)
            self._persist_state()
            return VerifyOutcome.MISMATCH, replace(record)

    def delete_pending_verification(
        self, email: str, purpose: str, *, record_id: Optional[str] = None
    ) -> bool:
        key = (email, purpose)
        with self._data_lock:
            record = self.pending.get(key)
            if record is None or (record_id is not None and record.id != record_id):
                return False
            self.pending.pop(key, None)
            self._persist_state()
            return True

    # -- password reset tokens --------------------------------------------

    def create_reset_token(self, token: PasswordResetToken) -> None:
        with self._data_lock:
            for existing in self.reset_tokens.values():
                if existing.account_id == token.account_id and not existing.consumed:
                    existing.consumed = True
            self.reset_tokens[token.token_hash] = replace(token)
            self._persist_state()

    def consume_reset_token(
        self, token_hash: str, *, now: datetime
    ) -> Optional[PasswordResetToken]:
        with self._data_lock:
            record = self.reset_tokens.get(token_hash)
            if record is None or not record.is_usable(now):
                return None
            record.consumed = True
            self._persist_state()
            return replace(record)

    def delete_reset_token(self, token_hash: str) -> None:
        with self._data_lock:
            if self.reset_tokens.pop(token_hash, None) is not None:
                self._persist_state()

    # -- sessions ---------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.account_id not in self.accounts:
                raise ConstraintViolation(
                    "account does not exist", {"account_id": session.account_id}
                )
            self.sessions[session.token] = replace(session)
            self._persist_state()
            return replace(session)

    def get_session(self, token: str) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(token)
            return replace(session) if session else None

    def revoke_session(self, token: str) -> bool:
        with self._data_lock:
            removed = self.sessions.pop(token, None) is not None
            if removed:
                self._persist_state()
            return removed

    def revoke_account_sessions(
        self, account_id: str, *, except_token: Optional[str] = None
    ) -> int:
        with self._data_lock:
            revoked = self._drop_sessions(account_id, except_token=except_token)
            if revoked:
                self._persist_state()
            return revoked

    def _drop_sessions(self, account_id: str, *, except_token: Optional[str]) -> int:
        stale = [
            token
            for token, sess in self.sessions.items()
            if sess.account_id == account_id and token != except_token
        ]
        for token in stale:
            self.sessions.pop(token, None)
        return len(stale)

    # -- maintenance ------------------------------------------------------

    def purge_expired(self, now: datetime) -> int:
        with self._data_lock:
            expired_sessions = [t for t, s in self.sessions.items() if s.is_expired(now)]
            expired_pending = [k for k, p in self.pending.items() if p.is_expired(now)]
            dead_tokens = [h for h, r in self.reset_tokens.items() if not r.is_usable(now)]
            for token in expired_sessions:
                self.sessions.pop(token, None)
            for key in expired_pending:
                self.pending.pop(key, None)
            for token_hash in dead_tokens:
                self.reset_tokens.pop(token_hash, None)
            removed = len(expired_sessions) + len(expired_pending) + len(dead_tokens)
            if removed:
                self._persist_state()
                self.logger.info(
                    "memory_store_purged",
                    sessions=len(expired_sessions),
                    pending=len(expired_pending),
                    reset_tokens=len(dead_tokens),
                )
            return removed

    # -- persistence ------------------------------------------------------

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "accounts": [to_record(a) for a in self.accounts.values()],
            "sessions": [to_record(s) for s in self.sessions.values()],
            "pending_verifications": [to_record(p) for p in self.pending.values()],
            "reset_tokens": [to_record(r) for r in self.reset_tokens.values()],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".json.tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: from_record(Account, a) for a in data.get("accounts", [])
        }
        self.sessions = {
            s["token"]: from_record(Session, s) for s in data.get("sessions", [])
        }
        self.pending = {}
        for raw in data.get("pending_verifications", []):
            record = from_record(PendingVerification, raw)
            self.pending[record.key] = record
        self.reset_tokens = {
            r["token_hash"]: from_record(PasswordResetToken, r)
            for r in data.get("reset_tokens", [])
        }
        self.logger.info(
            "memory_store_loaded", accounts=len(self.accounts), sessions=len(self.sessions)
        )
        return True

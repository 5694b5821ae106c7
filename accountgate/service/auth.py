from __future__ import annotations

import asyncio
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from accountgate.config import Settings
from accountgate.logging import fingerprint, get_logger
from accountgate.service.credentials import CredentialValidator
from accountgate.service.email import CodeDelivery
from accountgate.service.errors import (
    AccountLockedError,
    AuthenticationError,
    CodeExpiredError,
    CodeNotFoundError,
    DeliveryFailedError,
    DuplicateEmailError,
    DuplicatePhoneError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidOrExpiredTokenError,
    NotFoundError,
    ValidationError,
)
from accountgate.service.policy import (
    check_password_strength,
    normalize_email,
    normalize_full_name,
    normalize_phone,
)
from accountgate.service.reset import PasswordResetFlow
from accountgate.service.sessions import AuthContext, SessionIssuer
from accountgate.service.verification import (
    IssuedCode,
    ResendGovernor,
    VerificationCodeIssuer,
)
from accountgate.storage.common import AuthStore
from accountgate.storage.errors import ConstraintViolation
from accountgate.storage.models import (
    Account,
    Role,
    Session,
    VerificationPurpose,
    utcnow,
)

logger = get_logger(__name__)

# (email, purpose, secret) -> None; purpose is "signup", "signin" or "password_reset"
CodeObserver = Callable[[str, str, str], None]

RESET_PURPOSE = "password_reset"


@dataclass
class VerificationPending:
    email: str
    purpose: str
    expires_at: datetime
    verification_required: bool = True


@dataclass
class AuthResult:
    account: Account
    session: Session


@dataclass
class PasswordResetAccepted:
    accepted: bool = True


@dataclass
class Availability:
    conflicts: list[str] = field(default_factory=list)

    @property
    def available(self) -> bool:
        return not self.conflicts


def _validated(normalizer: Callable[..., str], value: Any, **kwargs: Any) -> str:
    try:
        return normalizer(value, **kwargs)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc


class AuthService:
    """Signup, two-step signin, password reset and session handling.

    Wires the credential validator, code issuer, resend governor, session
    issuer and reset flow over a single store. ``code_observer`` is the test
    seam that sees every issued secret; secrets never appear in return values.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        delivery: Optional[CodeDelivery] = None,
        code_observer: Optional[CodeObserver] = None,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.delivery = delivery
        self.code_observer = code_observer
        self._clock = now or utcnow
        self.credentials = CredentialValidator(
            store,
            threshold=settings.lockout_threshold,
            lock_for=timedelta(minutes=settings.lockout_minutes),
            now=self._now,
        )
        self.governor = ResendGovernor(
            timedelta(seconds=settings.otp_resend_cooldown_seconds)
        )
        self.codes = VerificationCodeIssuer(
            store,
            ttl=timedelta(minutes=settings.otp_ttl_minutes),
            max_attempts=settings.otp_max_attempts,
            governor=self.governor,
            now=self._now,
        )
        self.sessions = SessionIssuer(
            store, ttl=timedelta(minutes=settings.session_ttl_minutes), now=self._now
        )
        self.resets = PasswordResetFlow(
            store,
            secret=settings.token_hash_secret,
            ttl=timedelta(minutes=settings.reset_token_ttl_minutes),
            now=self._now,
        )
        self._last_cleanup = self._now()

    def _now(self) -> datetime:
        return self._clock()

    def maybe_cleanup(self, interval_minutes: int = 5) -> int:
        """Purge expired rows if the interval has elapsed since the last sweep."""
        now = self._now()
        if (now - self._last_cleanup).total_seconds() < interval_minutes * 60:
            return 0
        self._last_cleanup = now
        return self.store.purge_expired(now)

    def _observe(self, email: str, purpose: str, secret: str) -> None:
        if self.code_observer is not None:
            self.code_observer(email, purpose, secret)

    def _password(self, value: str) -> str:
        return _validated(
            check_password_strength, value, min_length=self.settings.password_min_length
        )

    async def _send(self, method_name: str, *args: Any) -> bool:
        if self.delivery is None:
            logger.error("delivery_not_configured", method=method_name)
            return False
        method = getattr(self.delivery, method_name)
        try:
            return bool(await asyncio.to_thread(method, *args))
        except Exception as exc:
            logger.error(
                "delivery_exception",
                method=method_name,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

    async def _dispatch_code(self, issued: IssuedCode) -> VerificationPending:
        self._observe(issued.email, issued.purpose, issued.code)
        delivered = await self._send(
            "send_verification_code", issued.email, issued.code, issued.purpose
        )
        if not delivered:
            self.codes.withdraw(issued)
            logger.error(
                "verification_delivery_failed",
                email_hash=fingerprint(issued.email),
                purpose=issued.purpose,
            )
            raise DeliveryFailedError(
                "verification code could not be delivered; try again",
                detail={"purpose": issued.purpose},
            )
        return VerificationPending(
            email=issued.email, purpose=issued.purpose, expires_at=issued.expires_at
        )

    # -- signup -----------------------------------------------------------

    def _ensure_unique(self, email: str, phone: str) -> None:
        if self.store.get_account_by_email(email) is not None:
            raise DuplicateEmailError()
        if self.store.get_account_by_phone(phone) is not None:
            raise DuplicatePhoneError()

    async def request_signup(
        self, email: str, password: str, full_name: str, phone: str
    ) -> VerificationPending:
        """Stage a signup and send its verification code; no Account is created yet."""
        if not self.settings.allow_signup:
            raise ForbiddenError("signups are disabled")
        email = _validated(normalize_email, email)
        phone = _validated(normalize_phone, phone)
        full_name = _validated(normalize_full_name, full_name)
        password = self._password(password)
        self._ensure_unique(email, phone)
        self.maybe_cleanup()

        digest, algo = self.credentials.hash_password(password)
        issued = self.codes.issue(
            email,
            VerificationPurpose.SIGNUP.value,
            payload={
                "full_name": full_name,
                "phone": phone,
                "password_hash": digest,
                "password_algo": algo,
            },
        )
        logger.info("signup_requested", email_hash=fingerprint(email))
        return await self._dispatch_code(issued)

    async def confirm_signup(self, email: str, code: str) -> AuthResult:
        """Consume the signup code, create the verified Account and sign it in."""
        email = _validated(normalize_email, email)
        record = self.codes.verify(email, VerificationPurpose.SIGNUP.value, code)
        staged = record.payload
        account = Account.new(
            email=email,
            phone=staged["phone"],
            full_name=staged["full_name"],
            password_hash=staged["password_hash"],
            password_algo=staged.get("password_algo", "argon2id"),
            email_verified=True,
            created_at=self._now(),
        )
        try:
            account = self.store.create_account(account)
        except ConstraintViolation as exc:
            # another signup for the same email or phone won the race
            if exc.field == "phone":
                raise DuplicatePhoneError() from exc
            raise DuplicateEmailError() from exc
        session = self.sessions.issue(account)
        logger.info("signup_completed", account_id=account.id)
        return AuthResult(account=account, session=session)

    # -- signin -----------------------------------------------------------

    async def authenticate(self, email: str, password: str) -> VerificationPending:
        """Check the password, then send a signin code; never returns a session."""
        try:
            email = normalize_email(email)
        except ValueError as exc:
            raise InvalidCredentialsError() from exc
        account = self.credentials.validate(email, password or "")
        self.maybe_cleanup()
        issued = self.codes.issue(
            email, VerificationPurpose.SIGNIN.value, payload={"account_id": account.id}
        )
        logger.info("signin_code_requested", account_id=account.id, role=account.role)
        return await self._dispatch_code(issued)

    async def confirm_authentication(self, email: str, code: str) -> AuthResult:
        email = _validated(normalize_email, email)
        record = self.codes.verify(email, VerificationPurpose.SIGNIN.value, code)
        account = self.store.get_account(record.payload.get("account_id", ""))
        if account is None or account.email != email:
            raise InvalidCredentialsError()
        now = self._now()
        if account.is_locked(now):
            remaining = int((account.locked_until - now).total_seconds() + 0.999)
            raise AccountLockedError(account.locked_until, remaining)
        session = self.sessions.issue(account)
        logger.info("signin_completed", account_id=account.id, role=session.role)
        return AuthResult(account=account, session=session)

    async def resend_code(self, email: str, purpose: str) -> VerificationPending:
        """Replace a live pending code with a fresh one, subject to the cooldown."""
        email = _validated(normalize_email, email)
        try:
            purpose = VerificationPurpose(purpose).value
        except ValueError as exc:
            raise ValidationError("purpose must be 'signup' or 'signin'") from exc
        existing = self.codes.pending(email, purpose)
        if existing is None:
            raise CodeNotFoundError()
        if existing.is_expired(self._now()):
            self.store.delete_pending_verification(email, purpose, record_id=existing.id)
            raise CodeExpiredError("verification window expired; start again")
        issued = self.codes.issue(email, purpose, payload=existing.payload)
        return await self._dispatch_code(issued)

    # -- password reset ---------------------------------------------------

    async def request_password_reset(self, email: str) -> PasswordResetAccepted:
        """Start a reset; the outcome is identical whether or not the email exists.

        Both branches are padded to ``password_reset_min_response_ms`` so the
        mail hop for a known address does not show in response times.
        """
        email = _validated(normalize_email, email)
        started = time.monotonic()
        try:
            await self._start_password_reset(email)
        finally:
            floor = self.settings.password_reset_min_response_ms / 1000
            remaining = floor - (time.monotonic() - started)
            if remaining > 0:
                await asyncio.sleep(remaining)
        return PasswordResetAccepted()

    async def _start_password_reset(self, email: str) -> None:
        account = self.store.get_account_by_email(email)
        if account is None:
            logger.info("password_reset_unknown_email", email_hash=fingerprint(email))
            # same thread hop and token hashing as a real issue
            await asyncio.to_thread(self.resets.hash_token, secrets.token_urlsafe(32))
            return
        issued = self.resets.issue(account)
        self._observe(email, RESET_PURPOSE, issued.token)
        if not await self._send("send_password_reset", email, issued.token):
            # response stays uniform; the user can simply ask again
            self.resets.withdraw(issued)
            logger.error("password_reset_delivery_failed", account_id=account.id)

    async def confirm_password_reset(self, token: str, new_password: str) -> bool:
        """Replace the password and revoke every session of the account."""
        new_password = self._password(new_password)
        record = self.resets.consume(token)
        account = self.store.get_account(record.account_id)
        if account is None:
            raise InvalidOrExpiredTokenError()
        digest, algo = self.credentials.hash_password(new_password)
        revoked = self.store.update_password(account.id, digest, algo, revoke_sessions=True)
        logger.info("password_reset_completed", account_id=account.id, revoked_sessions=revoked)
        if not await self._send("send_password_changed", account.email):
            logger.warning("password_changed_notice_failed", account_id=account.id)
        return True

    async def change_password(
        self, ctx: AuthContext, current_password: str, new_password: str
    ) -> bool:
        """Change password for a signed-in account; returns whether the notice went out."""
        account = self.store.get_account(ctx.account_id)
        if account is None:
            raise AuthenticationError("session account no longer exists")
        new_password = self._password(new_password)
        if new_password == current_password:
            raise ValidationError("new password must differ from the current password")
        self.credentials.validate(account.email, current_password or "")
        digest, algo = self.credentials.hash_password(new_password)
        revoked = self.store.update_password(
            account.id, digest, algo, revoke_sessions=True, keep_session=ctx.session_token
        )
        logger.info("password_changed", account_id=account.id, revoked_sessions=revoked)
        return await self._send("send_password_changed", account.email)

    # -- sessions and accounts --------------------------------------------

    async def resolve_session(
        self,
        token: Optional[str],
        *,
        required_role: Optional[str] = None,
        raise_expired: bool = False,
    ) -> Optional[AuthContext]:
        return self.sessions.resolve(
            token, required_role=required_role, raise_expired=raise_expired
        )

    async def sign_out(self, token: str) -> bool:
        revoked = self.sessions.revoke(token)
        logger.info("session_signed_out", revoked=revoked)
        return revoked

    def get_account(self, account_id: str) -> Optional[Account]:
        return self.store.get_account(account_id)

    def check_availability(
        self, email: Optional[str] = None, phone: Optional[str] = None
    ) -> Availability:
        if not email and not phone:
            raise ValidationError("email or phone is required")
        conflicts: list[str] = []
        if email and self.store.get_account_by_email(_validated(normalize_email, email)):
            conflicts.append("email")
        if phone and self.store.get_account_by_phone(_validated(normalize_phone, phone)):
            conflicts.append("phone")
        return Availability(conflicts=conflicts)

    async def set_account_role(self, account_id: str, role: str) -> Account:
        """Change an account's role; its sessions are revoked so the new role needs a fresh signin."""
        try:
            role = Role(role).value
        except ValueError as exc:
            raise ValidationError("role must be 'user' or 'admin'") from exc
        account = self.store.update_account_role(account_id, role)
        if account is None:
            raise NotFoundError("account not found")
        revoked = self.sessions.revoke_all(account_id)
        logger.info(
            "account_role_updated_sessions_revoked",
            account_id=account_id,
            new_role=role,
            revoked_sessions=revoked,
        )
        return account

    async def provision_account(
        self,
        *,
        email: str,
        password: str,
        full_name: str,
        phone: str,
        role: str = Role.USER.value,
    ) -> Account:
        """Create a verified account directly (operator tooling, e.g. the first admin)."""
        email = _validated(normalize_email, email)
        phone = _validated(normalize_phone, phone)
        full_name = _validated(normalize_full_name, full_name)
        password = self._password(password)
        try:
            role = Role(role).value
        except ValueError as exc:
            raise ValidationError("role must be 'user' or 'admin'") from exc
        self._ensure_unique(email, phone)
        digest, algo = self.credentials.hash_password(password)
        account = Account.new(
            email=email,
            phone=phone,
            full_name=full_name,
            password_hash=digest,
            password_algo=algo,
            role=role,
            email_verified=True,
            created_at=self._now(),
        )
        try:
            account = self.store.create_account(account)
        except ConstraintViolation as exc:
            if exc.field == "phone":
                raise DuplicatePhoneError() from exc
            raise DuplicateEmailError() from exc
        logger.info("account_provisioned", account_id=account.id, role=role)
        return account

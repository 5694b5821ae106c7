from __future__ import annotations

from datetime import timezone
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Path, Request, Response

from accountgate.api.schemas import (
    AccountResponse,
    AuthResponse,
    AvailabilityRequest,
    AvailabilityResponse,
    CodeConfirmRequest,
    Envelope,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    ResendCodeRequest,
    SessionInfoResponse,
    SessionResponse,
    SessionSummary,
    SigninRequest,
    SignupRequest,
    UpdateRoleRequest,
    VerificationPendingResponse,
)
from accountgate.logging import get_logger
from accountgate.service.auth import AuthResult, VerificationPending
from accountgate.service.runtime import check_rate_limit, get_runtime
from accountgate.service.sessions import AuthContext
from accountgate.storage.models import Role, Session

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

SESSION_COOKIE = "session_token"


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> int:
    """Consume one request from ``key``'s bucket; raises 429 when it is empty."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds
    )
    if response is not None:
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, remaining))
    if not allowed:
        retry_after = max(1, reset_seconds)
        logger.warning("route_rate_limited", key_prefix=key.split(":", 1)[0])
        raise _http_error(
            "rate_limited",
            "rate limit exceeded",
            status_code=429,
            details={"retry_after_seconds": retry_after},
            headers={"Retry-After": str(retry_after)},
        )
    return remaining


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def _resolve_context(
    authorization: Optional[str], session_cookie: Optional[str], *, required_role: Optional[str] = None
) -> AuthContext:
    token = _bearer_token(authorization) or session_cookie
    if not token:
        raise _http_error("unauthorized", "authentication required", status_code=401)
    runtime = get_runtime()
    ctx = await runtime.auth.resolve_session(
        token, required_role=required_role, raise_expired=True
    )
    if not ctx:
        raise _http_error("unauthorized", "invalid session", status_code=401)
    return ctx


async def get_account(
    authorization: Optional[str] = Header(None),
    session_token: Optional[str] = Cookie(None),
) -> AuthContext:
    return await _resolve_context(authorization, session_token)


async def get_admin_account(
    authorization: Optional[str] = Header(None),
    session_token: Optional[str] = Cookie(None),
) -> AuthContext:
    return await _resolve_context(
        authorization, session_token, required_role=Role.ADMIN.value
    )


def _apply_session_cookie(response: Response, session: Session) -> None:
    settings = get_runtime().settings
    expires_at = session.expires_at
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    response.set_cookie(
        SESSION_COOKIE,
        session.token,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="lax",
        expires=expires_at,
        path="/",
    )


def _clear_session_cookie(response: Response) -> None:
    settings = get_runtime().settings
    response.delete_cookie(
        SESSION_COOKIE, path="/", secure=settings.session_cookie_secure, samesite="lax"
    )


def _pending_envelope(pending: VerificationPending) -> Envelope:
    return Envelope(
        status="ok",
        data=VerificationPendingResponse(
            email=pending.email,
            purpose=pending.purpose,
            expires_at=pending.expires_at,
        ),
    )


def _auth_envelope(result: AuthResult, response: Response) -> Envelope:
    _apply_session_cookie(response, result.session)
    return Envelope(
        status="ok",
        data=AuthResponse(
            account=AccountResponse.from_account(result.account),
            session=SessionResponse.from_session(result.session),
        ),
    )


@router.post("/auth/signup", response_model=Envelope, status_code=202, tags=["auth"])
async def signup(body: SignupRequest, request: Request):
    """Stage a new account and email its verification code.

    No account exists until the code is confirmed.

    Raises:
        403: If signup is disabled in settings
        409: If the email or phone is already registered
        429: If rate limit exceeded for this email or client
        503: If the code could not be delivered
    """
    runtime = get_runtime()
    limit = runtime.settings.signup_rate_limit_per_minute
    await _enforce_rate_limit(runtime, f"signup:ip:{_client_ip(request)}", limit, 60)
    await _enforce_rate_limit(runtime, f"signup:{body.email}", limit, 60)
    pending = await runtime.auth.request_signup(
        email=body.email,
        password=body.password,
        full_name=body.full_name,
        phone=body.phone,
    )
    return _pending_envelope(pending)


@router.post("/auth/signup/confirm", response_model=Envelope, status_code=201, tags=["auth"])
async def confirm_signup(body: CodeConfirmRequest, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"verify:{body.email}",
        runtime.settings.verify_rate_limit_per_minute,
        60,
    )
    result = await runtime.auth.confirm_signup(body.email, body.code)
    return _auth_envelope(result, response)


@router.post("/auth/signin", response_model=Envelope, status_code=202, tags=["auth"])
async def signin(body: SigninRequest, request: Request):
    """Check email and password, then email a signin code.

    A session is only issued by ``/auth/signin/confirm``.

    Raises:
        401: If credentials are invalid
        423: If the account is locked
        429: If rate limit exceeded
    """
    runtime = get_runtime()
    limit = runtime.settings.signin_rate_limit_per_minute
    await _enforce_rate_limit(runtime, f"signin:ip:{_client_ip(request)}", limit, 60)
    await _enforce_rate_limit(runtime, f"signin:{body.email.strip().lower()}", limit, 60)
    pending = await runtime.auth.authenticate(body.email, body.password)
    return _pending_envelope(pending)


@router.post("/auth/signin/confirm", response_model=Envelope, tags=["auth"])
async def confirm_signin(body: CodeConfirmRequest, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"verify:{body.email}",
        runtime.settings.verify_rate_limit_per_minute,
        60,
    )
    result = await runtime.auth.confirm_authentication(body.email, body.code)
    return _auth_envelope(result, response)


@router.post("/auth/code/resend", response_model=Envelope, status_code=202, tags=["auth"])
async def resend_code(body: ResendCodeRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"resend:{body.email}",
        runtime.settings.verify_rate_limit_per_minute,
        60,
    )
    pending = await runtime.auth.resend_code(body.email, body.purpose)
    return _pending_envelope(pending)


@router.post("/auth/reset/request", response_model=Envelope, tags=["auth"])
async def request_reset(body: PasswordResetRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:{body.email}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
    )
    # identical for known and unknown emails
    result = await runtime.auth.request_password_reset(body.email)
    return Envelope(status="ok", data={"accepted": result.accepted})


@router.post("/auth/reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_reset(body: PasswordResetConfirm, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:confirm:{_client_ip(request)}",
        limit=5,
        window_seconds=300,
    )
    await runtime.auth.confirm_password_reset(body.token, body.new_password)
    return Envelope(status="ok", data={"success": True})


@router.post("/auth/signout", response_model=Envelope, tags=["auth"])
async def signout(response: Response, principal: AuthContext = Depends(get_account)):
    runtime = get_runtime()
    revoked = await runtime.auth.sign_out(principal.session_token)
    _clear_session_cookie(response)
    return Envelope(status="ok", data={"signed_out": revoked})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def whoami(principal: AuthContext = Depends(get_account)):
    runtime = get_runtime()
    account = runtime.auth.get_account(principal.account_id)
    if account is None:
        raise _http_error("unauthorized", "account no longer exists", status_code=401)
    return Envelope(
        status="ok",
        data=SessionInfoResponse(
            account=AccountResponse.from_account(account),
            session=SessionSummary(role=principal.role, expires_at=principal.expires_at),
        ),
    )


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    principal: AuthContext = Depends(get_account),
):
    """Change the signed-in account's password.

    Requires the current password. Every other session of the account is
    revoked; the calling session stays valid.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"password:change:{principal.account_id}",
        limit=5,
        window_seconds=300,
    )
    notified = await runtime.auth.change_password(
        principal, body.current_password, body.new_password
    )
    return Envelope(status="ok", data={"success": True, "notification_sent": notified})


@router.post("/auth/availability", response_model=Envelope, tags=["auth"])
async def check_availability(body: AvailabilityRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"availability:ip:{_client_ip(request)}",
        runtime.settings.signup_rate_limit_per_minute,
        60,
    )
    result = runtime.auth.check_availability(email=body.email, phone=body.phone)
    return Envelope(
        status="ok",
        data=AvailabilityResponse(available=result.available, conflicts=result.conflicts),
    )


@router.post("/admin/accounts/{account_id}/role", response_model=Envelope, tags=["admin"])
async def admin_set_role(
    body: UpdateRoleRequest,
    account_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_account),
):
    runtime = get_runtime()
    account = await runtime.auth.set_account_role(account_id, body.role)
    logger.info(
        "admin_role_change",
        actor_id=principal.account_id,
        account_id=account_id,
        role=body.role,
    )
    return Envelope(status="ok", data={"account": AccountResponse.from_account(account)})

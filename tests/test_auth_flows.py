"""End-to-end flows through AuthService with a frozen clock and recording delivery."""

import time
from datetime import timedelta

import pytest

from accountgate.service.errors import (
    AccountLockedError,
    CodeExpiredError,
    CodeMismatchError,
    CodeNotFoundError,
    DeliveryFailedError,
    DuplicateEmailError,
    DuplicatePhoneError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidOrExpiredTokenError,
    NotFoundError,
    TooManyRequestsError,
    ValidationError,
)
from accountgate.service.verification import VerificationCodeIssuer


async def _signup(auth_service, delivery, email="a@x.com", phone="01712345678", password="Abcd1234"):
    await auth_service.request_signup(email, password, "Test Person", phone)
    code = delivery.last_code(email, "signup")
    return await auth_service.confirm_signup(email, code)


async def _signin(auth_service, delivery, email, password):
    await auth_service.authenticate(email, password)
    code = delivery.last_code(email, "signin")
    return await auth_service.confirm_authentication(email, code)


async def test_signup_scenario_creates_exactly_one_account(auth_service, memory_store, monkeypatch):
    monkeypatch.setattr(VerificationCodeIssuer, "generate_code", staticmethod(lambda: "482913"))

    pending = await auth_service.request_signup("a@x.com", "Abcd1234", "Ayesha Rahman", "01712345678")
    assert pending.verification_required is True
    assert pending.purpose == "signup"
    assert memory_store.get_account_by_email("a@x.com") is None

    result = await auth_service.confirm_signup("a@x.com", "482913")
    assert result.session.account_id == result.account.id
    assert result.account.email_verified is True
    assert result.account.phone == "01712345678"
    assert len(memory_store.list_accounts()) == 1

    with pytest.raises(CodeExpiredError) as excinfo:
        await auth_service.confirm_signup("a@x.com", "482913")
    assert excinfo.value.error_code == "code_expired"
    assert len(memory_store.list_accounts()) == 1


async def test_signup_normalizes_contact_details(auth_service, delivery):
    await auth_service.request_signup("  A@X.com ", "Abcd1234", "  Test   Person ", "+8801712345678")
    code = delivery.last_code("a@x.com", "signup")
    result = await auth_service.confirm_signup("a@x.com", code)
    assert result.account.email == "a@x.com"
    assert result.account.phone == "01712345678"


async def test_signup_pending_never_creates_account_when_code_expires(auth_service, delivery, clock, memory_store):
    await auth_service.request_signup("late@x.com", "Abcd1234", "Late Person", "01812345678")
    code = delivery.last_code("late@x.com", "signup")
    clock.advance(minutes=10, seconds=1)

    with pytest.raises(CodeExpiredError):
        await auth_service.confirm_signup("late@x.com", code)
    assert memory_store.get_account_by_email("late@x.com") is None
    assert memory_store.get_pending_verification("late@x.com", "signup") is None


async def test_signup_rejects_duplicate_email_and_phone(auth_service, delivery):
    await _signup(auth_service, delivery)

    with pytest.raises(DuplicateEmailError):
        await auth_service.request_signup("a@x.com", "Abcd1234", "Someone Else", "01912345678")
    with pytest.raises(DuplicatePhoneError):
        await auth_service.request_signup("other@x.com", "Abcd1234", "Someone Else", "01712345678")


async def test_compatibility_capitals_map_to_one_account(auth_service, delivery, memory_store):
    await auth_service.request_signup("\u210ci@x.com", "Abcd1234", "Test Person", "01712345678")
    result = await auth_service.confirm_signup("\u210ci@x.com", delivery.last_code("hi@x.com", "signup"))
    assert result.account.email == "hi@x.com"

    with pytest.raises(DuplicateEmailError):
        await auth_service.request_signup("hi@x.com", "Abcd1234", "Someone Else", "01912345678")
    with pytest.raises(DuplicateEmailError):
        await auth_service.request_signup("\uff28I@x.com", "Abcd1234", "Someone Else", "01912345678")

    await auth_service.authenticate("\u210ci@x.com", "Abcd1234")
    signed_in = await auth_service.confirm_authentication("hi@x.com", delivery.last_code("hi@x.com", "signin"))
    assert signed_in.account.id == result.account.id
    assert len(memory_store.list_accounts()) == 1


async def test_staged_signups_racing_for_one_phone_create_one_account(auth_service, delivery, memory_store):
    # both pass the pre-check because neither account exists yet
    await auth_service.request_signup("first@x.com", "Abcd1234", "First", "01712345670")
    await auth_service.request_signup("second@x.com", "Abcd1234", "Second", "01712345670")

    await auth_service.confirm_signup("first@x.com", delivery.last_code("first@x.com", "signup"))
    with pytest.raises(DuplicatePhoneError):
        await auth_service.confirm_signup("second@x.com", delivery.last_code("second@x.com", "signup"))
    assert [a.email for a in memory_store.list_accounts()] == ["first@x.com"]


@pytest.mark.parametrize(
    "email, password, phone",
    [
        ("not-an-email", "Abcd1234", "01712345678"),
        ("a@x.com", "short1", "01712345678"),
        ("a@x.com", "lettersonly", "01712345678"),
        ("a@x.com", "12345678", "01712345678"),
        ("a@x.com", "Abcd1234", "12345"),
    ],
)
async def test_signup_validation_errors(auth_service, email, password, phone):
    with pytest.raises(ValidationError):
        await auth_service.request_signup(email, password, "Test Person", phone)


async def test_signup_disabled(auth_service, settings):
    settings.allow_signup = False
    with pytest.raises(ForbiddenError):
        await auth_service.request_signup("a@x.com", "Abcd1234", "Test Person", "01712345678")


async def test_signup_code_mismatch_counts_down_and_requires_reissue(auth_service, delivery):
    await auth_service.request_signup("a@x.com", "Abcd1234", "Test Person", "01712345678")
    code = delivery.last_code("a@x.com", "signup")
    wrong = "000000" if code != "000000" else "111111"

    for expected_remaining in (4, 3, 2, 1):
        with pytest.raises(CodeMismatchError) as excinfo:
            await auth_service.confirm_signup("a@x.com", wrong)
        assert excinfo.value.detail["attempts_remaining"] == expected_remaining
        assert excinfo.value.detail["reissue_required"] is False

    with pytest.raises(CodeMismatchError) as excinfo:
        await auth_service.confirm_signup("a@x.com", wrong)
    assert excinfo.value.detail["attempts_remaining"] == 0
    assert excinfo.value.detail["reissue_required"] is True

    # the correct code no longer works once attempts are exhausted
    with pytest.raises(CodeNotFoundError):
        await auth_service.confirm_signup("a@x.com", code)


async def test_signin_requires_code_and_returns_session(auth_service, delivery, memory_store):
    signup = await _signup(auth_service, delivery)

    pending = await auth_service.authenticate("a@x.com", "Abcd1234")
    assert pending.purpose == "signin"
    assert not hasattr(pending, "session")
    assert len(memory_store.sessions) == 1  # only the signup session so far

    code = delivery.last_code("a@x.com", "signin")
    result = await auth_service.confirm_authentication("a@x.com", code)
    assert result.account.id == signup.account.id
    assert result.session.token != signup.session.token
    assert result.session.role == "user"


async def test_signin_unknown_email_and_wrong_password_are_indistinguishable(auth_service, delivery):
    await _signup(auth_service, delivery)

    with pytest.raises(InvalidCredentialsError) as unknown:
        await auth_service.authenticate("nobody@x.com", "Abcd1234")
    with pytest.raises(InvalidCredentialsError) as wrong:
        await auth_service.authenticate("a@x.com", "Wrong1234")
    assert unknown.value.message == wrong.value.message
    assert unknown.value.error_code == wrong.value.error_code == "invalid_credentials"
    assert unknown.value.detail == wrong.value.detail


async def test_lockout_scenario(auth_service, delivery, clock):
    await _signup(auth_service, delivery, email="b@x.com", phone="01612345678", password="Right1234")

    for _ in range(4):
        with pytest.raises(InvalidCredentialsError):
            await auth_service.authenticate("b@x.com", "Wrong1234")
    with pytest.raises(AccountLockedError):
        await auth_service.authenticate("b@x.com", "Wrong1234")

    clock.advance(seconds=5)
    with pytest.raises(AccountLockedError) as excinfo:
        await auth_service.authenticate("b@x.com", "Right1234")
    remaining = excinfo.value.detail["remaining_seconds"]
    assert 2 * 3600 - 10 <= remaining <= 2 * 3600
    assert excinfo.value.status_code == 423

    clock.advance(hours=2)
    result = await _signin(auth_service, delivery, "b@x.com", "Right1234")
    assert result.account.failed_attempts == 0
    assert result.account.locked_until is None


async def test_successful_signin_resets_failure_counter(auth_service, delivery, memory_store):
    await _signup(auth_service, delivery)
    for _ in range(3):
        with pytest.raises(InvalidCredentialsError):
            await auth_service.authenticate("a@x.com", "Wrong1234")
    assert memory_store.get_account_by_email("a@x.com").failed_attempts == 3

    await auth_service.authenticate("a@x.com", "Abcd1234")
    assert memory_store.get_account_by_email("a@x.com").failed_attempts == 0


async def test_lock_applied_between_password_and_code_blocks_session(auth_service, delivery, memory_store, clock):
    await _signup(auth_service, delivery)
    await auth_service.authenticate("a@x.com", "Abcd1234")
    code = delivery.last_code("a@x.com", "signin")

    account = memory_store.get_account_by_email("a@x.com")
    memory_store.accounts[account.id].locked_until = clock.current + timedelta(hours=1)

    with pytest.raises(AccountLockedError):
        await auth_service.confirm_authentication("a@x.com", code)


async def test_admin_signin_goes_through_the_same_checks(auth_service, delivery):
    admin = await auth_service.provision_account(
        email="admin@x.com",
        password="Admin1234",
        full_name="Site Admin",
        phone="01512345678",
        role="admin",
    )
    with pytest.raises(InvalidCredentialsError):
        await auth_service.authenticate("admin@x.com", "Wrong1234")

    result = await _signin(auth_service, delivery, "admin@x.com", "Admin1234")
    assert result.account.id == admin.id
    assert result.session.role == "admin"


async def test_resend_respects_cooldown_and_replaces_code(auth_service, delivery, clock):
    await auth_service.request_signup("a@x.com", "Abcd1234", "Test Person", "01712345678")
    first = delivery.last_code("a@x.com", "signup")

    with pytest.raises(TooManyRequestsError) as excinfo:
        await auth_service.resend_code("a@x.com", "signup")
    assert 0 < excinfo.value.detail["retry_after_seconds"] <= 60

    clock.advance(seconds=61)
    await auth_service.resend_code("a@x.com", "signup")
    second = delivery.last_code("a@x.com", "signup")
    assert len(delivery.codes) == 2

    if first != second:
        with pytest.raises(CodeMismatchError):
            await auth_service.confirm_signup("a@x.com", first)
    result = await auth_service.confirm_signup("a@x.com", second)
    assert result.account.full_name == "Test Person"


async def test_resend_without_pending_record(auth_service):
    with pytest.raises(CodeNotFoundError):
        await auth_service.resend_code("nobody@x.com", "signin")
    with pytest.raises(ValidationError):
        await auth_service.resend_code("nobody@x.com", "password_reset")


async def test_signup_delivery_failure_withdraws_code(auth_service, delivery, memory_store):
    delivery.fail = True
    with pytest.raises(DeliveryFailedError) as excinfo:
        await auth_service.request_signup("a@x.com", "Abcd1234", "Test Person", "01712345678")
    assert excinfo.value.status_code == 503
    assert excinfo.value.error_code == "delivery_failed"
    assert memory_store.get_pending_verification("a@x.com", "signup") is None

    # no cooldown is left behind by the failed attempt
    delivery.fail = False
    await auth_service.request_signup("a@x.com", "Abcd1234", "Test Person", "01712345678")
    assert memory_store.get_pending_verification("a@x.com", "signup") is not None


async def test_signin_delivery_exception_is_reported(auth_service, delivery, memory_store):
    await _signup(auth_service, delivery)
    delivery.raise_error = True
    with pytest.raises(DeliveryFailedError):
        await auth_service.authenticate("a@x.com", "Abcd1234")
    assert memory_store.get_pending_verification("a@x.com", "signin") is None


async def test_password_reset_revokes_existing_sessions(auth_service, delivery, memory_store):
    signup = await _signup(auth_service, delivery)
    signin = await _signin(auth_service, delivery, "a@x.com", "Abcd1234")

    accepted = await auth_service.request_password_reset("a@x.com")
    assert accepted.accepted is True
    token = delivery.last_reset_token("a@x.com")

    assert await auth_service.confirm_password_reset(token, "Newpass123") is True
    assert await auth_service.resolve_session(signup.session.token) is None
    assert await auth_service.resolve_session(signin.session.token) is None
    assert delivery.notices == ["a@x.com"]

    with pytest.raises(InvalidCredentialsError):
        await auth_service.authenticate("a@x.com", "Abcd1234")
    await _signin(auth_service, delivery, "a@x.com", "Newpass123")


async def test_password_reset_token_is_single_use(auth_service, delivery):
    await _signup(auth_service, delivery)
    await auth_service.request_password_reset("a@x.com")
    token = delivery.last_reset_token("a@x.com")
    await auth_service.confirm_password_reset(token, "Newpass123")

    with pytest.raises(InvalidOrExpiredTokenError):
        await auth_service.confirm_password_reset(token, "Other1234")


async def test_password_reset_token_expires(auth_service, delivery, clock):
    await _signup(auth_service, delivery)
    await auth_service.request_password_reset("a@x.com")
    token = delivery.last_reset_token("a@x.com")
    clock.advance(hours=1, seconds=1)

    with pytest.raises(InvalidOrExpiredTokenError):
        await auth_service.confirm_password_reset(token, "Newpass123")


async def test_weak_new_password_keeps_reset_token(auth_service, delivery):
    await _signup(auth_service, delivery)
    await auth_service.request_password_reset("a@x.com")
    token = delivery.last_reset_token("a@x.com")

    with pytest.raises(ValidationError):
        await auth_service.confirm_password_reset(token, "weak")
    assert await auth_service.confirm_password_reset(token, "Strong1234") is True


async def test_newer_reset_token_supersedes_older(auth_service, delivery):
    await _signup(auth_service, delivery)
    await auth_service.request_password_reset("a@x.com")
    first = delivery.last_reset_token("a@x.com")
    await auth_service.request_password_reset("a@x.com")
    second = delivery.last_reset_token("a@x.com")

    with pytest.raises(InvalidOrExpiredTokenError):
        await auth_service.confirm_password_reset(first, "Newpass123")
    assert await auth_service.confirm_password_reset(second, "Newpass123") is True


async def test_reset_request_is_uniform_for_unknown_email(auth_service, delivery, observed):
    await _signup(auth_service, delivery)

    known = await auth_service.request_password_reset("a@x.com")
    unknown = await auth_service.request_password_reset("ghost@x.com")
    assert known == unknown
    assert ("ghost@x.com", "password_reset") not in observed
    assert [to for to, _ in delivery.resets] == ["a@x.com"]


async def test_reset_request_takes_the_same_floor_for_both_branches(auth_service, delivery, settings, monkeypatch):
    await _signup(auth_service, delivery)
    settings.password_reset_min_response_ms = 50
    hashed = []
    real_hash = auth_service.resets.hash_token
    monkeypatch.setattr(auth_service.resets, "hash_token", lambda token: hashed.append(token) or real_hash(token))

    timings = {}
    for email in ("a@x.com", "ghost@x.com"):
        started = time.monotonic()
        await auth_service.request_password_reset(email)
        timings[email] = time.monotonic() - started

    assert all(elapsed >= 0.05 for elapsed in timings.values())
    # the unknown branch still hashes a throwaway token
    assert len(hashed) >= 2
    assert [to for to, _ in delivery.resets] == ["a@x.com"]


async def test_reset_delivery_failure_still_uniform(auth_service, delivery, memory_store, observed):
    await _signup(auth_service, delivery)
    delivery.fail = True

    result = await auth_service.request_password_reset("a@x.com")
    assert result.accepted is True
    token = observed[("a@x.com", "password_reset")]
    with pytest.raises(InvalidOrExpiredTokenError):
        await auth_service.confirm_password_reset(token, "Newpass123")


async def test_change_password_keeps_current_session_only(auth_service, delivery):
    first = await _signup(auth_service, delivery)
    second = await _signin(auth_service, delivery, "a@x.com", "Abcd1234")
    ctx = await auth_service.resolve_session(second.session.token)

    notified = await auth_service.change_password(ctx, "Abcd1234", "Changed123")
    assert notified is True
    assert await auth_service.resolve_session(second.session.token) is not None
    assert await auth_service.resolve_session(first.session.token) is None


async def test_change_password_rejects_wrong_current(auth_service, delivery):
    result = await _signup(auth_service, delivery)
    ctx = await auth_service.resolve_session(result.session.token)

    with pytest.raises(InvalidCredentialsError):
        await auth_service.change_password(ctx, "Wrong1234", "Changed123")
    with pytest.raises(ValidationError):
        await auth_service.change_password(ctx, "Abcd1234", "Abcd1234")


async def test_role_change_requires_new_signin(auth_service, delivery):
    result = await _signup(auth_service, delivery)
    ctx = await auth_service.resolve_session(result.session.token)
    assert ctx.role == "user"

    updated = await auth_service.set_account_role(result.account.id, "admin")
    assert updated.role == "admin"
    assert await auth_service.resolve_session(result.session.token) is None

    fresh = await _signin(auth_service, delivery, "a@x.com", "Abcd1234")
    assert fresh.session.role == "admin"


async def test_role_change_errors(auth_service, delivery):
    result = await _signup(auth_service, delivery)
    with pytest.raises(ValidationError):
        await auth_service.set_account_role(result.account.id, "superuser")
    with pytest.raises(NotFoundError):
        await auth_service.set_account_role("missing", "admin")


async def test_sign_out_revokes_session(auth_service, delivery):
    result = await _signup(auth_service, delivery)
    assert await auth_service.sign_out(result.session.token) is True
    assert await auth_service.resolve_session(result.session.token) is None
    assert await auth_service.sign_out(result.session.token) is False


async def test_availability_reports_conflicts(auth_service, delivery):
    await _signup(auth_service, delivery)

    taken = auth_service.check_availability(email="A@x.com", phone="8801712345678")
    assert taken.conflicts == ["email", "phone"]
    assert taken.available is False
    free = auth_service.check_availability(email="free@x.com")
    assert free.available is True
    with pytest.raises(ValidationError):
        auth_service.check_availability()


async def test_codes_are_only_observed_never_returned(auth_service, delivery, observed):
    pending = await auth_service.request_signup("a@x.com", "Abcd1234", "Test Person", "01712345678")
    code = observed[("a@x.com", "signup")]
    assert code == delivery.last_code("a@x.com", "signup")
    assert code not in repr(pending)


async def test_maybe_cleanup_purges_after_interval(auth_service, memory_store, clock):
    await auth_service.request_signup("a@x.com", "Abcd1234", "Test Person", "01712345678")
    assert auth_service.maybe_cleanup() == 0

    clock.advance(minutes=11)
    assert auth_service.maybe_cleanup() == 1
    assert memory_store.get_pending_verification("a@x.com", "signup") is None
    assert auth_service.maybe_cleanup() == 0

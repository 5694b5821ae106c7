import pytest

from accountgate.service.policy import (
    check_password_strength,
    normalize_email,
    normalize_full_name,
    normalize_phone,
    normalize_unicode,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("  Alice@Example.COM ", "alice@example.com"),
        ("a.b+tag@sub.example.org", "a.b+tag@sub.example.org"),
        ("x\u200b@x.com", "x@x.com"),
    ],
)
def test_normalize_email(raw, expected):
    assert normalize_email(raw) == expected


@pytest.mark.parametrize("raw", ["\u210ci@x.com", "\uff28I@X.com", "\u212a@x.com", " Hi@x.com\u200b"])
def test_normalize_email_is_idempotent(raw):
    once = normalize_email(raw)
    assert once == once.lower()
    assert normalize_email(once) == once


def test_normalize_email_folds_compatibility_capitals():
    assert normalize_email("\u210ci@x.com") == "hi@x.com"


@pytest.mark.parametrize(
    "raw",
    ["", "plain", "@x.com", "a@", "a@localhost", "a b@x.com", "a@-x.com", "a@" + "x" * 64 + ".com"],
)
def test_normalize_email_rejects(raw):
    with pytest.raises(ValueError):
        normalize_email(raw)


@pytest.mark.parametrize(
    "raw",
    ["01712345678", "+8801712345678", "8801712345678", "+880 1712-345678", "(017) 1234 5678"],
)
def test_normalize_phone_forms_converge(raw):
    assert normalize_phone(raw) == "01712345678"


@pytest.mark.parametrize("raw", ["", "0171234567", "01212345678", "+15551234567", "phone"])
def test_normalize_phone_rejects(raw):
    with pytest.raises(ValueError):
        normalize_phone(raw)


def test_full_name_collapses_whitespace():
    assert normalize_full_name("  Rahim \t  Uddin ") == "Rahim Uddin"


@pytest.mark.parametrize("raw", ["", "   ", "x" * 101])
def test_full_name_rejects(raw):
    with pytest.raises(ValueError):
        normalize_full_name(raw)


def test_unicode_strips_bidi_overrides():
    assert normalize_unicode("ad\u202emin") == "admin"
    assert normalize_unicode("\uff21") == "A"


class TestPasswordStrength:
    def test_accepts_letters_and_digits(self):
        assert check_password_strength("abcdefg1") == "abcdefg1"

    @pytest.mark.parametrize("raw", ["short1", "abcdefgh", "12345678", "a1" * 65])
    def test_rejects(self, raw):
        with pytest.raises(ValueError):
            check_password_strength(raw)

    def test_min_length_is_configurable(self):
        with pytest.raises(ValueError, match="at least 12"):
            check_password_strength("abcdefg12", min_length=12)

"""Input normalization and password policy shared by the API schemas and services.

Every helper raises ``ValueError`` with a user-facing message; the service layer
wraps it into ``ValidationError`` and pydantic reports it as a field error.
"""

from __future__ import annotations

import re
import unicodedata

MAX_PASSWORD_LENGTH = 128
DEFAULT_MIN_PASSWORD_LENGTH = 8

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
# Bangladeshi mobile numbers: optional +880 / 880 / 0 prefix, operator digit 3-9
_BD_MOBILE = re.compile(r"^(?:\+880|880|0)?(1[3-9]\d{8})$")
_PHONE_SEPARATORS = re.compile(r"[\s\-().]")
_ZERO_WIDTH = "\u200b\u200c\u200d\ufeff"
_BIDI_OVERRIDES = frozenset(
    [chr(c) for c in range(0x202A, 0x202F)] + [chr(c) for c in range(0x2066, 0x206A)]
)


def normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then apply NFKC."""
    cleaned = "".join(
        c for c in value if c not in _ZERO_WIDTH and c not in _BIDI_OVERRIDES
    )
    return unicodedata.normalize("NFKC", cleaned)


def normalize_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = normalize_unicode(value).strip().lower()
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def normalize_phone(value: str) -> str:
    """Return the canonical national form, e.g. ``+880 1712-345678`` -> ``01712345678``."""
    if not isinstance(value, str):
        raise ValueError("phone must be a string")
    compact = _PHONE_SEPARATORS.sub("", normalize_unicode(value.strip()))
    match = _BD_MOBILE.match(compact)
    if not match:
        raise ValueError("invalid mobile number")
    return "0" + match.group(1)


def normalize_full_name(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("full name must be a string")
    normalized = " ".join(normalize_unicode(value).split())
    if not normalized:
        raise ValueError("full name is required")
    if len(normalized) > 100:
        raise ValueError("full name must be at most 100 characters")
    return normalized


def check_password_strength(
    value: str, *, min_length: int = DEFAULT_MIN_PASSWORD_LENGTH
) -> str:
    """Validate password meets minimum requirements."""
    if not isinstance(value, str):
        raise ValueError("password must be a string")
    if len(value) < min_length:
        raise ValueError(f"password must be at least {min_length} characters")
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    if not any(c.isalpha() for c in value) or not any(c.isdigit() for c in value):
        raise ValueError("password must contain at least one letter and one digit")
    return value

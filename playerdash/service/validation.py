"""Pure input checks shared by request schemas and services."""

from __future__ import annotations

import re
import unicodedata
from typing import List, Optional

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128
PASSWORD_SPECIAL_CHARACTERS = "!@#$%^&*()_+-=[]{}|;:,.<>?"

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")

_ZERO_WIDTH = "\u200b\u200c\u200d\ufeff"
_BIDI_OVERRIDES = frozenset(
    [chr(c) for c in range(0x202A, 0x202F)] + [chr(c) for c in range(0x2066, 0x206A)]
)


def normalize_unicode(value: str) -> str:
    """NFKC-normalize after dropping zero-width and bidi override characters."""
    cleaned = "".join(
        c for c in value if c not in _ZERO_WIDTH and c not in _BIDI_OVERRIDES
    )
    return unicodedata.normalize("NFKC", cleaned)


def normalize_email(value: str) -> str:
    return normalize_unicode(value.strip().lower())


def validate_email(value: str) -> str:
    """Return the normalized address or raise ``ValueError``."""
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = normalize_email(value)
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
    labels = domain.split(".")
    if len(labels) < 2:
        raise ValueError("invalid email address format")
    for label in labels:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def is_valid_email(value: str) -> bool:
    try:
        validate_email(value)
    except ValueError:
        return False
    return True


def password_policy_errors(password: Optional[str]) -> List[str]:
    """All policy violations for ``password``, in a stable order."""
    if not password:
        return ["Wachtwoord is verplicht"]
    errors: List[str] = []
    if len(password) < PASSWORD_MIN_LENGTH:
        errors.append(
            f"Wachtwoord moet minimaal {PASSWORD_MIN_LENGTH} karakters bevatten"
        )
    if len(password) > PASSWORD_MAX_LENGTH:
        errors.append(
            f"Wachtwoord mag maximaal {PASSWORD_MAX_LENGTH} karakters bevatten"
        )
    if not any(c.isupper() for c in password):
        errors.append("Wachtwoord moet minimaal één hoofdletter bevatten")
    if not any(c.islower() for c in password):
        errors.append("Wachtwoord moet minimaal één kleine letter bevatten")
    if not any(c.isdigit() for c in password):
        errors.append("Wachtwoord moet minimaal één cijfer bevatten")
    if not any(c in PASSWORD_SPECIAL_CHARACTERS for c in password):
        errors.append(
            "Wachtwoord moet minimaal één speciaal karakter bevatten "
            f"({PASSWORD_SPECIAL_CHARACTERS})"
        )
    return errors


def is_valid_password(password: Optional[str]) -> bool:
    return not password_policy_errors(password)

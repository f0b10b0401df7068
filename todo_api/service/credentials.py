from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from itertools import groupby
from typing import List

from pydantic import SecretStr

from todo_api.config import DEFAULT_PASSWORD_SYMBOLS, Settings
from todo_api.service.errors import ValidationError

NAME_MAX_LENGTH = 100
EMAIL_MAX_LENGTH = 254


@dataclass(frozen=True)
class PasswordPolicy:
    min_length: int = 8
    max_length: int = 32
    symbols: str = DEFAULT_PASSWORD_SYMBOLS
    max_same_chars: int = 2
    max_consecutive_chars: int = 2

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordPolicy":
        return cls(
            min_length=settings.password_min_length,
            max_length=settings.password_max_length,
            symbols=settings.password_symbols,
            max_same_chars=settings.password_max_same_chars,
            max_consecutive_chars=settings.password_max_consecutive_chars,
        )


def _utf8_encodable(value: str) -> bool:
    try:
        value.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


def check_password(raw: str, policy: PasswordPolicy) -> List[str]:
    """Return the name of every rule ``raw`` breaks; empty when it passes."""
    failures: List[str] = []
    if len(raw) < policy.min_length:
        failures.append("too_short")
    if len(raw) > policy.max_length:
        failures.append("too_long")
    if not any(ch.islower() for ch in raw):
        failures.append("missing_lowercase")
    if not any(ch.isupper() for ch in raw):
        failures.append("missing_uppercase")
    if not any(ch.isdigit() for ch in raw):
        failures.append("missing_digit")
    if not any(ch in policy.symbols for ch in raw):
        failures.append("missing_symbol")
    if raw and max(Counter(raw).values()) > policy.max_same_chars:
        failures.append("too_many_same_chars")
    if raw and max(len(list(run)) for _, run in groupby(raw)) > policy.max_consecutive_chars:
        failures.append("too_many_consecutive_chars")
    if not _utf8_encodable(raw):
        failures.append("invalid_characters")
    return failures


class RawPassword:
    """A plaintext password that never shows up in reprs or logs."""

    __slots__ = ("_secret",)

    def __init__(self, secret: SecretStr) -> None:
        self._secret = secret

    @classmethod
    def parse(cls, raw: str, policy: PasswordPolicy) -> "RawPassword":
        failures = check_password(raw, policy)
        if failures:
            raise ValidationError(
                "password does not meet requirements",
                detail={"failures": failures},
            )
        return cls(SecretStr(raw))

    def expose(self) -> str:
        return self._secret.get_secret_value()

    def __repr__(self) -> str:
        return "RawPassword('**********')"

    __str__ = __repr__


def validate_password(raw: str, policy: PasswordPolicy) -> RawPassword:
    return RawPassword.parse(raw, policy)


class Email(str):
    """Trimmed, lower-cased email address."""

    @classmethod
    def parse(cls, value: str) -> "Email":
        candidate = (value or "").strip().lower()
        local, sep, domain = candidate.partition("@")
        valid = (
            sep == "@"
            and local
            and "@" not in domain
            and "." in domain.strip(".")
            and not any(ch.isspace() for ch in candidate)
            and len(candidate) <= EMAIL_MAX_LENGTH
            and _utf8_encodable(candidate)
        )
        if not valid:
            raise ValidationError("invalid email", detail={"field": "email"})
        return cls(candidate)


class PersonName(str):
    """Family or given name: trimmed, 1 to 100 characters."""

    @classmethod
    def parse(cls, value: str, *, field: str = "name") -> "PersonName":
        candidate = (value or "").strip()
        if not 0 < len(candidate) <= NAME_MAX_LENGTH or not _utf8_encodable(candidate):
            raise ValidationError(
                f"{field} must be between 1 and {NAME_MAX_LENGTH} characters",
                detail={"field": field},
            )
        return cls(candidate)

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

# Matches the width of the credential column; argon2 PHC strings fit easily
PHC_MAX_LENGTH = 255


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass
class User:
    id: str
    family_name: str
    given_name: str
    email: str
    role: str = "user"
    is_active: bool = True
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        family_name: str,
        given_name: str,
        email: str,
        *,
        role: str = "user",
        is_active: bool = True,
    ) -> "User":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            family_name=family_name,
            given_name=given_name,
            email=email,
            role=role,
            is_active=is_active,
            created_at=now,
            updated_at=now,
        )


@dataclass
class LoginFailureRecord:
    """Failed-login counter for one user.

    ``attempted_at`` marks the first failure of the current window, not the
    latest one. Lock state is derived from this record and never stored.
    """

    user_id: str
    number_of_attempts: int
    attempted_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class IssuedToken:
    """Durable ledger row. ``token_key`` is the SHA-256 hex of the raw token."""

    id: str
    user_id: str
    token_key: str
    kind: TokenKind
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls, user_id: str, token_key: str, kind: TokenKind, expires_at: datetime
    ) -> "IssuedToken":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_key=token_key,
            kind=kind,
            expires_at=expires_at,
        )


@dataclass(frozen=True)
class TokenContent:
    """Parsed fast-store value ``"<user_id>,<kind>"``."""

    user_id: str
    kind: TokenKind

    def encode(self) -> str:
        return f"{self.user_id},{self.kind.value}"

    @classmethod
    def decode(cls, raw: str) -> "TokenContent":
        """Parse a cached value; raises ``ValueError`` on any malformed input."""
        parts = raw.split(",")
        if len(parts) != 2 or not parts[0]:
            raise ValueError("malformed token content")
        return cls(user_id=parts[0], kind=TokenKind(parts[1]))


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    access_expires_at: datetime
    refresh_token: str
    refresh_expires_at: datetime

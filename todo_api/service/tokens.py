from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from todo_api.config import Settings
from todo_api.logging import get_logger
from todo_api.service.errors import TokenExpiredError, TokenInvalidError
from todo_api.storage.models import TokenKind, TokenPair, utcnow

logger = get_logger(__name__)

JWT_ALGORITHM = "HS384"


def token_key(token: str) -> str:
    """SHA-256 hex digest of a raw token; the only form that is ever stored."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class Claims:
    sub: str
    exp: int
    typ: TokenKind
    jti: str

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.exp, tz=timezone.utc)


class TokenIssuer:
    """Mints and decodes HS384-signed access and refresh tokens."""

    def __init__(
        self, secret: str, access_ttl_seconds: int, refresh_ttl_seconds: int
    ) -> None:
        if not secret:
            raise ValueError("token signing secret must not be empty")
        self._secret = secret.encode("utf-8")
        self.access_ttl = timedelta(seconds=access_ttl_seconds)
        self.refresh_ttl = timedelta(seconds=refresh_ttl_seconds)

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenIssuer":
        return cls(
            settings.jwt_secret.get_secret_value(),
            settings.access_token_ttl_seconds,
            settings.refresh_token_ttl_seconds,
        )

    def issue_pair(self, user_id: str, now: Optional[datetime] = None) -> TokenPair:
        now = now or utcnow()
        access_token, access_exp = self._issue(user_id, TokenKind.ACCESS, now + self.access_ttl)
        refresh_token, refresh_exp = self._issue(
            user_id, TokenKind.REFRESH, now + self.refresh_ttl
        )
        return TokenPair(
            access_token=access_token,
            access_expires_at=access_exp,
            refresh_token=refresh_token,
            refresh_expires_at=refresh_exp,
        )

    def _issue(
        self, user_id: str, kind: TokenKind, expires_at: datetime
    ) -> tuple[str, datetime]:
        # Second precision; the returned expiry matches the exp claim exactly
        exp = int(expires_at.timestamp())
        payload = {
            "sub": user_id,
            "exp": exp,
            "typ": kind.value,
            "jti": secrets.token_urlsafe(16),
        }
        return self._encode_jwt(payload), datetime.fromtimestamp(exp, tz=timezone.utc)

    def decode(self, token: str, now: Optional[datetime] = None) -> Claims:
        payload = self._decode_jwt(token)
        try:
            claims = Claims(
                sub=str(payload["sub"]),
                exp=int(payload["exp"]),
                typ=TokenKind(payload["typ"]),
                jti=str(payload.get("jti", "")),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenInvalidError() from exc
        if not claims.sub:
            raise TokenInvalidError()
        if claims.exp <= (now or utcnow()).timestamp():
            raise TokenExpiredError()
        return claims

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha384).digest()
        )

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": JWT_ALGORITHM, "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> dict[str, Any]:
        # Compact JWS is base64url and dots only
        if not isinstance(token, str) or not token.isascii():
            raise TokenInvalidError()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError) as exc:
            raise TokenInvalidError() from exc

        # Reject anything not signed with our algorithm before checking the signature
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalidError() from exc
        if not isinstance(header, dict) or header.get("alg") != JWT_ALGORITHM:
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenInvalidError()

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise TokenInvalidError()
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalidError() from exc
        if not isinstance(payload, dict):
            raise TokenInvalidError()
        return payload

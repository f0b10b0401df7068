from __future__ import annotations

import secrets
import threading
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Protocol, Tuple

from todo_api.config import Settings
from todo_api.logging import get_logger
from todo_api.service.credentials import (
    Email,
    PasswordPolicy,
    PersonName,
    validate_password,
)
from todo_api.service.errors import (
    AccountLockedError,
    AuthenticationError,
    ConflictError,
    InvalidCredentialsError,
    NotFoundError,
    PasswordHashCorrupted,
    TokenInvalidError,
    ValidationError,
)
from todo_api.service.password import PasswordCodec
from todo_api.service.throttle import LoginThrottle
from todo_api.service.tokens import TokenIssuer
from todo_api.storage.errors import ConstraintViolation
from todo_api.storage.models import (
    IssuedToken,
    LoginFailureRecord,
    TokenKind,
    TokenPair,
    User,
)
from todo_api.storage.token_store import TokenCache, TokenStore

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_user(
        self,
        family_name: str,
        given_name: str,
        email: str,
        password_hash: str,
        *,
        role: str = "user",
        is_active: bool = True,
    ) -> User:
        ...

    def get_user(self, user_id: str) -> Optional[User]:
        ...

    def get_user_by_email(self, email: str) -> Optional[User]:
        ...

    def update_user(
        self,
        user_id: str,
        *,
        family_name: Optional[str] = None,
        given_name: Optional[str] = None,
        email: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> Optional[User]:
        ...

    def record_login(self, user_id: str, logged_in_at: datetime) -> None:
        ...

    def get_password_hash(self, user_id: str) -> Optional[str]:
        ...

    def save_password(self, user_id: str, password_hash: str) -> None:
        ...

    def get_login_failure(self, user_id: str) -> Optional[LoginFailureRecord]:
        ...

    def record_login_failure(
        self, user_id: str, attempted_at: datetime, window_seconds: int
    ) -> LoginFailureRecord:
        ...

    def clear_login_failures(self, user_id: str) -> None:
        ...

    def add_issued_tokens(self, entries: Iterable[IssuedToken]) -> None:
        ...

    def pop_issued_tokens(self, user_id: str) -> List[IssuedToken]:
        ...


class AuthService:
    """Registration, login, token refresh, logout and session resolution."""

    def __init__(
        self,
        store: AuthStore,
        cache: TokenCache,
        settings: Settings,
        *,
        codec: Optional[PasswordCodec] = None,
        issuer: Optional[TokenIssuer] = None,
    ) -> None:
        self.store: AuthStore = store
        self.cache = cache
        self.settings = settings
        self.codec = codec or PasswordCodec.from_settings(settings)
        self.issuer = issuer or TokenIssuer.from_settings(settings)
        self.policy = PasswordPolicy.from_settings(settings)
        self.throttle = LoginThrottle.from_settings(store, settings)
        self.tokens = TokenStore(store, cache)
        self.logger = logger
        self._dummy_hash: Optional[str] = None
        self._dummy_lock = threading.Lock()

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    def _burn_verification(self, raw_password: str) -> None:
        """Spend one hash verification so unknown emails cost as much as known ones."""
        with self._dummy_lock:
            if self._dummy_hash is None:
                self._dummy_hash = self.codec.hash(secrets.token_urlsafe(16))
        self.codec.verify(raw_password, self._dummy_hash)

    # registration and profile
    def register_user(
        self, family_name: str, given_name: str, email: str, raw_password: str
    ) -> User:
        family = PersonName.parse(family_name, field="family_name")
        given = PersonName.parse(given_name, field="given_name")
        address = Email.parse(email)
        password = validate_password(raw_password, self.policy)
        try:
            user = self.store.create_user(
                str(family), str(given), str(address), self.codec.hash(password.expose())
            )
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail) from exc
        self.logger.info("user_registered", user_id=user.id)
        return user

    def get_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        return user

    def update_profile(
        self,
        user_id: str,
        *,
        family_name: Optional[str] = None,
        given_name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> User:
        try:
            user = self.store.update_user(
                user_id,
                family_name=(
                    str(PersonName.parse(family_name, field="family_name"))
                    if family_name is not None
                    else None
                ),
                given_name=(
                    str(PersonName.parse(given_name, field="given_name"))
                    if given_name is not None
                    else None
                ),
                email=str(Email.parse(email)) if email is not None else None,
            )
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail) from exc
        if not user:
            raise NotFoundError("user not found")
        return user

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> int:
        """Replace the password and revoke every outstanding token.

        Returns the number of revoked ledger entries.
        """
        user = self.get_user(user_id)
        stored = self.store.get_password_hash(user.id)
        if not stored:
            raise PasswordHashCorrupted("password hash missing")
        if not self.codec.verify(current_password, stored):
            self.logger.warning("password_change_rejected", user_id=user.id)
            raise InvalidCredentialsError()
        password = validate_password(new_password, self.policy)
        self.store.save_password(user.id, self.codec.hash(password.expose()))
        revoked = await self.tokens.revoke_user(user.id)
        self.logger.info("password_changed", user_id=user.id, revoked=revoked)
        return revoked

    # login lifecycle
    async def login(self, email: str, raw_password: str) -> Tuple[User, TokenPair]:
        now = self._now()
        try:
            address = Email.parse(email)
        except ValidationError:
            self._burn_verification(raw_password)
            raise InvalidCredentialsError()

        user = self.store.get_user_by_email(str(address))
        if not user:
            self._burn_verification(raw_password)
            self.logger.info("login_failed", reason="unknown_email")
            raise InvalidCredentialsError()
        # Inactive and locked accounts are refused before any hash work
        if not user.is_active:
            self.logger.info("login_failed", user_id=user.id, reason="inactive")
            raise InvalidCredentialsError()
        if self.throttle.is_user_locked(user.id, now):
            self.logger.warning("login_failed", user_id=user.id, reason="locked")
            raise AccountLockedError()

        stored = self.store.get_password_hash(user.id)
        if not stored:
            raise PasswordHashCorrupted("password hash missing")
        if not self.codec.verify(raw_password, stored):
            record = self.throttle.register_failure(user.id, now)
            self.logger.info(
                "login_failed",
                user_id=user.id,
                reason="bad_password",
                attempts=record.number_of_attempts,
            )
            raise InvalidCredentialsError()

        self.throttle.reset(user.id)
        if self.codec.needs_rehash(stored):
            self.store.save_password(user.id, self.codec.hash(raw_password))
            self.logger.info("password_rehashed", user_id=user.id)
        self.store.record_login(user.id, now)
        user.last_login_at = now
        pair = await self._issue(user.id, now)
        self.logger.info("login_succeeded", user_id=user.id)
        return user, pair

    async def refresh(self, refresh_token: str) -> Tuple[User, TokenPair]:
        """Issue a new pair for a live refresh token.

        The presented refresh token stays usable until it expires or the
        user logs out; rotation does not revoke it.
        """
        now = self._now()
        claims = self.issuer.decode(refresh_token, now)
        if claims.typ != TokenKind.REFRESH:
            raise TokenInvalidError("token kind mismatch")
        user_id = await self.tokens.read(refresh_token, TokenKind.REFRESH)
        if user_id != claims.sub:
            self.logger.warning("refresh_subject_mismatch", user_id=user_id)
            raise TokenInvalidError()
        user = self.store.get_user(user_id)
        if not user or not user.is_active or self.throttle.is_user_locked(user_id, now):
            raise TokenInvalidError()
        pair = await self._issue(user.id, now)
        self.logger.info("tokens_refreshed", user_id=user.id)
        return user, pair

    async def _issue(self, user_id: str, now: datetime) -> TokenPair:
        pair = self.issuer.issue_pair(user_id, now)
        await self.tokens.register_pair(user_id, pair)
        return pair

    async def logout(self, user_id: str) -> int:
        revoked = await self.tokens.revoke_user(user_id)
        self.logger.info("logout", user_id=user_id, revoked=revoked)
        return revoked

    # request authorization
    async def authenticate(self, token: Optional[str], expected_kind: TokenKind) -> str:
        """Return the user id for a live token of ``expected_kind``.

        Every failure surfaces as the same :class:`AuthenticationError`.
        """
        if not token:
            raise AuthenticationError("unauthorized")
        try:
            claims = self.issuer.decode(token, self._now())
            if claims.typ != expected_kind:
                raise TokenInvalidError("token kind mismatch")
            user_id = await self.tokens.read(token, expected_kind)
            if user_id != claims.sub:
                raise TokenInvalidError("subject mismatch")
        except TokenInvalidError as exc:
            self.logger.info(
                "token_rejected", reason=exc.message, expected_kind=expected_kind.value
            )
            raise AuthenticationError("unauthorized") from exc
        return user_id

    async def resolve_user(self, token: Optional[str]) -> User:
        """Resolve an access token to an active, unlocked user."""
        user_id = await self.authenticate(token, TokenKind.ACCESS)
        user = self.store.get_user(user_id)
        reason = None
        if not user:
            reason = "user_missing"
        elif not user.is_active:
            reason = "inactive"
        elif self.throttle.is_user_locked(user.id, self._now()):
            reason = "locked"
        if reason:
            self.logger.info("session_rejected", user_id=user_id, reason=reason)
            raise AuthenticationError("unauthorized")
        return user

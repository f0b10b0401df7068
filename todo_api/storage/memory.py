from __future__ import annotations

import threading
import time
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from todo_api.logging import get_logger
from todo_api.storage.errors import ConstraintViolation
from todo_api.storage.models import IssuedToken, LoginFailureRecord, User, utcnow
from todo_api.storage.redis_cache import ttl_seconds


class MemoryStore:
    """In-process store for tests and local development.

    Mirrors :class:`~todo_api.storage.postgres.PostgresStore` method for
    method. Every read and write holds ``_data_lock`` so the login-failure
    upsert and the ledger's destructive read are atomic.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, str] = {}
        self.login_failures: Dict[str, LoginFailureRecord] = {}
        self.issued_tokens: Dict[str, List[IssuedToken]] = {}
        # RLock for all data operations to ensure thread safety
        # Using RLock to allow nested acquisitions within the same thread
        self._data_lock = threading.RLock()

    # users
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
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User.new(
                family_name, given_name, email, role=role, is_active=is_active
            )
            self.users[user.id] = user
            self.credentials[user.id] = password_hash
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if user.email == email:
                    return replace(user)
        return None

    def update_user(
        self,
        user_id: str,
        *,
        family_name: Optional[str] = None,
        given_name: Optional[str] = None,
        email: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if email is not None and any(
                other.email == email and other.id != user_id
                for other in self.users.values()
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            updates = {
                "family_name": family_name,
                "given_name": given_name,
                "email": email,
                "is_active": is_active,
            }
            updated = replace(
                user,
                **{k: v for k, v in updates.items() if v is not None},
                updated_at=utcnow(),
            )
            self.users[user_id] = updated
            return replace(updated)

    def record_login(self, user_id: str, logged_in_at: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                self.users[user_id] = replace(user, last_login_at=logged_in_at)

    # credentials
    def get_password_hash(self, user_id: str) -> Optional[str]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def save_password(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"field": "user_id"})
            self.credentials[user_id] = password_hash

    # login failures
    def get_login_failure(self, user_id: str) -> Optional[LoginFailureRecord]:
        with self._data_lock:
            record = self.login_failures.get(user_id)
            return replace(record) if record else None

    def record_login_failure(
        self, user_id: str, attempted_at: datetime, window_seconds: int
    ) -> LoginFailureRecord:
        with self._data_lock:
            existing = self.login_failures.get(user_id)
            if existing is None:
                record = LoginFailureRecord(
                    user_id=user_id, number_of_attempts=1, attempted_at=attempted_at
                )
            elif (attempted_at - existing.attempted_at).total_seconds() >= window_seconds:
                record = replace(
                    existing,
                    number_of_attempts=1,
                    attempted_at=attempted_at,
                    updated_at=utcnow(),
                )
            else:
                record = replace(
                    existing,
                    number_of_attempts=existing.number_of_attempts + 1,
                    updated_at=utcnow(),
                )
            self.login_failures[user_id] = record
            return replace(record)

    def clear_login_failures(self, user_id: str) -> None:
        with self._data_lock:
            self.login_failures.pop(user_id, None)

    # token ledger
    def add_issued_tokens(self, entries: Iterable[IssuedToken]) -> None:
        with self._data_lock:
            for entry in entries:
                self.issued_tokens.setdefault(entry.user_id, []).append(entry)

    def pop_issued_tokens(self, user_id: str) -> List[IssuedToken]:
        with self._data_lock:
            return self.issued_tokens.pop(user_id, [])


class MemoryTokenCache:
    """In-process stand-in for :class:`RedisCache` with per-key expiry.

    Only selected in test mode or when ``ALLOW_REDIS_FALLBACK_DEV`` is set:
    entries do not survive a restart and are not shared across workers.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _live(self, token_key: str) -> Optional[str]:
        entry = self._entries.get(token_key)
        if entry is None:
            return None
        value, deadline = entry
        if deadline <= self._clock():
            self._entries.pop(token_key, None)
            return None
        return value

    async def set_token(self, token_key: str, value: str, expires_at: datetime) -> None:
        with self._lock:
            self._entries[token_key] = (value, self._clock() + ttl_seconds(expires_at))

    async def get_token(self, token_key: str) -> Optional[str]:
        with self._lock:
            return self._live(token_key)

    async def delete_token(self, token_key: str) -> bool:
        with self._lock:
            live = self._live(token_key) is not None
            self._entries.pop(token_key, None)
            return live

    def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()

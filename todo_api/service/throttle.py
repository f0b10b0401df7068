from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional, Protocol

from todo_api.config import Settings
from todo_api.logging import get_logger
from todo_api.storage.models import LoginFailureRecord, utcnow

logger = get_logger(__name__)


class LoginFailureStore(Protocol):
    def get_login_failure(self, user_id: str) -> Optional[LoginFailureRecord]:
        ...

    def record_login_failure(
        self, user_id: str, attempted_at: datetime, window_seconds: int
    ) -> LoginFailureRecord:
        ...

    def clear_login_failures(self, user_id: str) -> None:
        ...


def window_elapsed(
    record: LoginFailureRecord, now: datetime, window_seconds: int
) -> bool:
    """True once ``window_seconds`` have passed since the window opened."""
    return now - record.attempted_at >= timedelta(seconds=window_seconds)


class LoginThrottle:
    """Per-user failed-login counter with a fixed window.

    The first failure opens a window of ``attempts_seconds``. Failures inside
    it accumulate; the first failure after it closes starts over at one. An
    account is locked while the window is open and the count has reached
    ``max_attempts``. The counter update itself is a single atomic upsert in
    the store so concurrent failures are never lost.
    """

    def __init__(
        self, store: LoginFailureStore, max_attempts: int, attempts_seconds: int
    ) -> None:
        self.store = store
        self.max_attempts = max_attempts
        self.attempts_seconds = attempts_seconds

    @classmethod
    def from_settings(
        cls, store: LoginFailureStore, settings: Settings
    ) -> "LoginThrottle":
        return cls(store, settings.login_max_attempts, settings.login_attempts_seconds)

    def is_locked(
        self, record: Optional[LoginFailureRecord], now: Optional[datetime] = None
    ) -> bool:
        if record is None:
            return False
        if window_elapsed(record, now or utcnow(), self.attempts_seconds):
            return False
        return record.number_of_attempts >= self.max_attempts

    def is_user_locked(self, user_id: str, now: Optional[datetime] = None) -> bool:
        return self.is_locked(self.store.get_login_failure(user_id), now)

    def register_failure(
        self, user_id: str, now: Optional[datetime] = None
    ) -> LoginFailureRecord:
        record = self.store.record_login_failure(
            user_id, now or utcnow(), self.attempts_seconds
        )
        if record.number_of_attempts == self.max_attempts:
            logger.warning(
                "account_locked",
                user_id=user_id,
                attempts=record.number_of_attempts,
                window_seconds=self.attempts_seconds,
            )
        return record

    def reset(self, user_id: str) -> None:
        self.store.clear_login_failures(user_id)

from __future__ import annotations

from datetime import datetime
from typing import Iterable, List, Optional, Protocol

from todo_api.logging import get_logger
from todo_api.service.errors import TokenExpiredError, TokenInvalidError
from todo_api.service.tokens import token_key
from todo_api.storage.errors import StoreUnavailable
from todo_api.storage.models import IssuedToken, TokenContent, TokenKind, TokenPair

logger = get_logger(__name__)


class TokenLedger(Protocol):
    def add_issued_tokens(self, entries: Iterable[IssuedToken]) -> None:
        ...

    def pop_issued_tokens(self, user_id: str) -> List[IssuedToken]:
        ...


class TokenCache(Protocol):
    async def set_token(self, token_key: str, value: str, expires_at: datetime) -> None:
        ...

    async def get_token(self, token_key: str) -> Optional[str]:
        ...

    async def delete_token(self, token_key: str) -> bool:
        ...


class TokenStore:
    """Keeps issued tokens in the fast cache and the durable ledger.

    The cache decides whether a token is usable right now; the ledger
    decides what logout has to remove. There is no transaction spanning
    both, so every write is ordered to be safe to repeat.
    """

    def __init__(self, ledger: TokenLedger, cache: TokenCache) -> None:
        self.ledger = ledger
        self.cache = cache

    async def register_pair(self, user_id: str, pair: TokenPair) -> List[IssuedToken]:
        entries = [
            IssuedToken.new(
                user_id, token_key(pair.access_token), TokenKind.ACCESS, pair.access_expires_at
            ),
            IssuedToken.new(
                user_id, token_key(pair.refresh_token), TokenKind.REFRESH, pair.refresh_expires_at
            ),
        ]
        for entry in entries:
            await self.cache.set_token(
                entry.token_key,
                TokenContent(user_id=user_id, kind=entry.kind).encode(),
                entry.expires_at,
            )
        try:
            self.ledger.add_issued_tokens(entries)
        except StoreUnavailable:
            # Cached tokens remain usable but logout cannot find them
            logger.error("token_ledger_write_failed", user_id=user_id)
            raise
        return entries

    async def read(self, token: str, expected_kind: TokenKind) -> str:
        """Return the user id owning a live token of ``expected_kind``."""
        raw = await self.cache.get_token(token_key(token))
        if raw is None:
            raise TokenExpiredError()
        try:
            content = TokenContent.decode(raw)
        except ValueError as exc:
            logger.warning("token_cache_entry_malformed")
            raise TokenInvalidError() from exc
        if content.kind != expected_kind:
            raise TokenInvalidError("token kind mismatch")
        return content.user_id

    async def revoke_user(self, user_id: str) -> int:
        """Remove every token issued to the user from both backends.

        The ledger rows are deleted as they are read, then every cache
        entry is deleted even if some deletions fail. Rows whose cache
        entry could not be deleted go back into the ledger before the
        first failure is re-raised, so a later call finishes the job.
        Missing rows and keys count as already revoked.

        Rows of users who never log out are not pruned; the ledger grows
        until the next revocation for that user.
        """
        entries = self.ledger.pop_issued_tokens(user_id)
        if not entries:
            return 0
        removed = 0
        pending: List[IssuedToken] = []
        first_error: Optional[StoreUnavailable] = None
        for entry in entries:
            try:
                removed += int(await self.cache.delete_token(entry.token_key))
            except StoreUnavailable as exc:
                pending.append(entry)
                if first_error is None:
                    first_error = exc
        if first_error is not None:
            self.ledger.add_issued_tokens(pending)
            logger.error(
                "token_revoke_incomplete", user_id=user_id, pending=len(pending)
            )
            raise first_error
        logger.info(
            "tokens_revoked", user_id=user_id, ledger_rows=len(entries), cache_keys=removed
        )
        return len(entries)

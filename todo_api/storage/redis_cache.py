from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from todo_api.logging import get_logger
from todo_api.storage.errors import StoreUnavailable

logger = get_logger(__name__)

TOKEN_KEY_PREFIX = "auth:token:"


def cache_key(token_key: str) -> str:
    return f"{TOKEN_KEY_PREFIX}{token_key}"


def ttl_seconds(expires_at: datetime, now: Optional[datetime] = None) -> int:
    """Compute a safe TTL from an absolute expiry timestamp.

    Naive timestamps are treated as UTC. The result is clamped to at least
    1 second because Redis rejects zero or negative expirations.
    """

    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    else:
        expires_at = expires_at.astimezone(timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(1, int((expires_at - now).total_seconds()))


class RedisCache:
    """Thin Redis wrapper holding the live-token entries.

    Each entry maps ``auth:token:<sha256>`` to ``"<user_id>,<kind>"`` and
    expires with the token. Driver failures surface as
    :class:`StoreUnavailable`.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0  # seconds

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving authenticated requests."""

        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set_token(self, token_key: str, value: str, expires_at: datetime) -> None:
        try:
            await self.client.set(cache_key(token_key), value, ex=ttl_seconds(expires_at))
        except RedisError as exc:
            logger.error("token_cache_write_failed", error=str(exc))
            raise StoreUnavailable("redis", "set_token") from exc

    async def get_token(self, token_key: str) -> Optional[str]:
        try:
            return await self.client.get(cache_key(token_key))
        except RedisError as exc:
            logger.error("token_cache_read_failed", error=str(exc))
            raise StoreUnavailable("redis", "get_token") from exc

    async def delete_token(self, token_key: str) -> bool:
        """Delete one entry; a missing key counts as already deleted."""
        try:
            return bool(await self.client.delete(cache_key(token_key)))
        except RedisError as exc:
            logger.error("token_cache_delete_failed", error=str(exc))
            raise StoreUnavailable("redis", "delete_token") from exc

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()

"""Redis-based state manager shared by the rider directory and delivery store."""

import json
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, TypeVar

import redis.asyncio as redis
from redis.exceptions import WatchError

from delivery_engine.config import get_settings
from delivery_engine.errors import ConcurrentUpdate
from delivery_engine.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def _encode(value: Any) -> Any:
    # Serialize complex objects to JSON
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return value


def _decode(value: Any) -> Any:
    if value:
        try:
            return json.loads(value)
        except (json.JSONDecodeError, TypeError):
            return value
    return None


class Transaction:
    """
    One optimistic read-modify-write unit.

    Reads WATCH their key before fetching it; writes are buffered and sent
    inside MULTI/EXEC on commit. If any watched key changed in between,
    EXEC fails with WatchError and nothing is applied.
    """

    def __init__(self, pipe: Any):
        self._pipe = pipe
        self._watched: set[str] = set()
        self._ops: list[tuple[str, tuple[Any, ...]]] = []

    async def watch(self, *keys: str) -> None:
        """Watch keys that are not read but must not change before commit."""
        new_keys = [key for key in keys if key not in self._watched]
        if new_keys:
            await self._pipe.watch(*new_keys)
            self._watched.update(new_keys)

    async def get(self, key: str) -> Any:
        """Watch and read a JSON value."""
        await self.watch(key)
        return _decode(await self._pipe.get(key))

    async def smembers(self, key: str) -> set[str]:
        """Watch and read a set."""
        await self.watch(key)
        return set(await self._pipe.smembers(key))

    def set(self, key: str, value: Any) -> None:
        self._ops.append(("set", (key, _encode(value))))

    def delete(self, key: str) -> None:
        self._ops.append(("delete", (key,)))

    def sadd(self, key: str, *members: str) -> None:
        self._ops.append(("sadd", (key, *members)))

    def srem(self, key: str, *members: str) -> None:
        self._ops.append(("srem", (key, *members)))

    def zadd(self, key: str, mapping: dict[str, float]) -> None:
        self._ops.append(("zadd", (key, mapping)))

    def zrem(self, key: str, *members: str) -> None:
        self._ops.append(("zrem", (key, *members)))

    async def commit(self) -> list[Any]:
        """Send buffered writes atomically."""
        if not self._ops:
            return []

        self._pipe.multi()
        for name, args in self._ops:
            getattr(self._pipe, name)(*args)
        return await self._pipe.execute()


class StateManager:
    """Centralized state management using Redis."""

    def __init__(self, redis_client: redis.Redis | None = None) -> None:
        settings = get_settings()
        self.redis_client: redis.Redis | None = redis_client
        self.redis_url = settings.redis_url
        self.transaction_retries = settings.transaction_retries

    async def connect(self) -> None:
        """Establish Redis connection."""
        if self.redis_client is None:
            self.redis_client = await redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            logger.info("redis_connected", url=self.redis_url)

    async def disconnect(self) -> None:
        """Close Redis connection."""
        if self.redis_client:
            await self.redis_client.aclose()
            self.redis_client = None
            logger.info("redis_disconnected")

    async def _client(self) -> redis.Redis:
        if not self.redis_client:
            await self.connect()
        return self.redis_client

    async def sadd(self, key: str, *members: str) -> None:
        """Add members to a set."""
        client = await self._client()
        await client.sadd(key, *members)

    async def srem(self, key: str, *members: str) -> None:
        """Remove members from a set."""
        client = await self._client()
        await client.srem(key, *members)

    async def smembers(self, key: str) -> set[str]:
        """Get all members of a set."""
        client = await self._client()
        return set(await client.smembers(key))

    async def set(
        self,
        key: str,
        value: Any,
        ttl: int | None = None,
    ) -> None:
        """Set a value in Redis with optional TTL."""
        client = await self._client()
        await client.set(key, _encode(value), ex=ttl)
        logger.debug("state_set", key=key, ttl=ttl)

    async def get(self, key: str) -> Any:
        """Get a value from Redis."""
        client = await self._client()
        return _decode(await client.get(key))

    async def mget(self, keys: list[str]) -> list[Any]:
        """Get several values in one round trip."""
        if not keys:
            return []
        client = await self._client()
        return [_decode(value) for value in await client.mget(keys)]

    async def delete(self, key: str) -> None:
        """Delete a key from Redis."""
        client = await self._client()
        await client.delete(key)
        logger.debug("state_deleted", key=key)

    async def zadd(
        self,
        key: str,
        mapping: dict[str, float],
    ) -> None:
        """Add members to a sorted set."""
        client = await self._client()
        await client.zadd(key, mapping)

    async def zrange(
        self,
        key: str,
        start: int = 0,
        end: int = -1,
        withscores: bool = False,
    ) -> list[Any]:
        """Get members from a sorted set."""
        client = await self._client()
        return await client.zrange(key, start, end, withscores=withscores)

    async def zrangebyscore(
        self,
        key: str,
        min_score: float | str,
        max_score: float | str,
        limit: int | None = None,
        withscores: bool = False,
    ) -> list[Any]:
        """Get sorted set members with scores in [min_score, max_score]."""
        client = await self._client()
        if limit is None:
            return await client.zrangebyscore(
                key, min_score, max_score, withscores=withscores
            )
        return await client.zrangebyscore(
            key, min_score, max_score, start=0, num=limit, withscores=withscores
        )

    async def zrem(self, key: str, *members: str) -> None:
        """Remove members from a sorted set."""
        client = await self._client()
        await client.zrem(key, *members)

    async def server_time(self) -> datetime:
        """Current time according to the Redis server."""
        client = await self._client()
        seconds, microseconds = await client.time()
        return datetime.fromtimestamp(seconds + microseconds / 1_000_000, tz=timezone.utc)

    async def transaction(
        self,
        fn: Callable[[Transaction], Awaitable[T]],
        retries: int | None = None,
    ) -> T:
        """
        Run fn as an optimistic transaction, retrying on concurrent writes.

        fn may raise to abort; nothing it buffered is applied. Its return
        value is returned once the writes commit.
        """
        client = await self._client()
        attempts = retries or self.transaction_retries

        for attempt in range(1, attempts + 1):
            async with client.pipeline(transaction=True) as pipe:
                tx = Transaction(pipe)
                try:
                    result = await fn(tx)
                    await tx.commit()
                    return result
                except WatchError:
                    logger.debug("transaction_conflict", attempt=attempt)
                    continue

        raise ConcurrentUpdate(f"State changed concurrently {attempts} times, giving up")


# Global state manager instance
_state_manager: StateManager | None = None


async def get_state_manager() -> StateManager:
    """Get the global state manager instance."""
    global _state_manager
    if _state_manager is None:
        _state_manager = StateManager()
        await _state_manager.connect()
    return _state_manager

"""Redis-backed state store.

Layout (all keys share ``key_prefix``):
- ``{prefix}:records``       hash, idempotency key -> record JSON
- ``{prefix}:record_order``  list of idempotency keys in creation order
- ``{prefix}:salt``          string, idempotency salt
- ``{prefix}:finalized``     list of encoded finalized events
- ``{prefix}:watermark``     string, finalized height

Features:
- Connection pooling
- Automatic reconnection
- Password masking in logs
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse, urlunparse

from opsledger.core.event import BuildEvent, decode, encode

if TYPE_CHECKING:
    from opsledger.core.queue import SubmissionRecord

logger = logging.getLogger("opsledger.redis")


def _sanitize_url(url: str) -> str:
    """Mask password in Redis URL for logging."""
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = f"{parsed.username or ''}:****@{parsed.hostname}"
            if parsed.port:
                netloc += f":{parsed.port}"
            return urlunparse(
                (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
            )
        return f"{parsed.hostname}:{parsed.port or 6379}"
    except Exception:
        return "<url>"


class RedisStateStore:
    """StateStore persisted in Redis."""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        key_prefix: str = "opsledger",
        pool_size: int = 10,
    ) -> None:
        self._url = redis_url
        self._url_safe = _sanitize_url(redis_url)
        self.key_prefix = key_prefix
        self._pool_size = pool_size
        self._redis: Any = None
        self._conn_lock = asyncio.Lock()

    def _key(self, name: str) -> str:
        return f"{self.key_prefix}:{name}"

    async def _get_client(self) -> Any:
        """Get Redis client with connection pooling, reconnecting if the link dropped."""
        try:
            from redis.asyncio import ConnectionPool, Redis
        except ImportError as e:
            raise ImportError("Install redis: pip install opsledger[redis]") from e

        if self._redis is not None:
            try:
                await self._redis.ping()
                return self._redis
            except Exception as e:
                logger.warning(f"Redis connection lost: {e}, reconnecting...")

        async with self._conn_lock:
            # Re-check after acquiring lock - another coroutine may have reconnected
            if self._redis is not None:
                try:
                    await self._redis.ping()
                    return self._redis
                except Exception:
                    pass

            old_redis = self._redis
            if old_redis is not None:
                try:
                    await old_redis.aclose()
                except Exception as close_err:
                    logger.debug(f"Error closing old connection: {close_err}")

            pool = ConnectionPool.from_url(
                self._url, max_connections=self._pool_size, decode_responses=True
            )
            new_redis = Redis(connection_pool=pool)
            try:
                await new_redis.ping()
            except Exception:
                await new_redis.aclose()
                raise

            self._redis = new_redis
            logger.info(f"Connected to Redis at {self._url_safe}")
            return self._redis

    async def save_record(self, record: "SubmissionRecord") -> None:
        redis = await self._get_client()
        added = await redis.hset(
            self._key("records"), record.idempotency_key, record.model_dump_json()
        )
        if added:
            await redis.rpush(self._key("record_order"), record.idempotency_key)

    async def load_records(self) -> list["SubmissionRecord"]:
        from opsledger.core.queue import SubmissionRecord

        redis = await self._get_client()
        keys = await redis.lrange(self._key("record_order"), 0, -1)
        if not keys:
            return []
        raw = await redis.hmget(self._key("records"), keys)
        records = []
        for key, data in zip(keys, raw):
            if data is None:
                logger.warning(f"Record {key} listed in order index but missing from hash")
                continue
            records.append(SubmissionRecord.model_validate_json(data))
        return records

    async def save_salt(self, salt: str) -> None:
        redis = await self._get_client()
        await redis.set(self._key("salt"), salt)

    async def load_salt(self) -> str | None:
        redis = await self._get_client()
        return await redis.get(self._key("salt"))

    async def append_finalized(self, events: list[BuildEvent]) -> None:
        if not events:
            return
        redis = await self._get_client()
        await redis.rpush(self._key("finalized"), *(encode(e).decode("utf-8") for e in events))

    async def load_finalized(self) -> list[BuildEvent]:
        redis = await self._get_client()
        raw = await redis.lrange(self._key("finalized"), 0, -1)
        return [decode(item.encode("utf-8")) for item in raw]

    async def save_watermark(self, height: int) -> None:
        redis = await self._get_client()
        await redis.set(self._key("watermark"), str(height))

    async def load_watermark(self) -> int | None:
        redis = await self._get_client()
        value = await redis.get(self._key("watermark"))
        return int(value) if value is not None else None

    async def clear(self) -> None:
        """Delete every key owned by this store (for testing)."""
        redis = await self._get_client()
        await redis.delete(
            *(self._key(n) for n in ("records", "record_order", "salt", "finalized", "watermark"))
        )

    async def close(self) -> None:
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            logger.info("Closed Redis connection")

"""Redis instance storage.

Layout, all under ``key_prefix``:

- ``{prefix}:instance:{id}``  JSON document (string)
- ``{prefix}:bundle:{bundle_id}``  sorted set of ids, scored by insertion sequence
- ``{prefix}:ids``  set of every stored id
- ``{prefix}:seq``  counter feeding the sorted-set scores

Paging reads the per-bundle sorted set by rank, so pages are stable as long as
no instance of that bundle is created or deleted mid-scan.
"""

import time
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlparse, urlunparse

from bundlehost.core.errors import SerializationError
from bundlehost.core.logging import get_logger
from bundlehost.core.models import BundleInstance, PaginatedResult, PaginationRequest
from bundlehost.storage.base import require_id
from bundlehost.storage.serializer import JsonInstanceSerializer

logger = get_logger("storage.redis")


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
    except ValueError:
        return "<url>"


@dataclass
class StorageHealth:
    """Health check result."""

    healthy: bool
    latency_ms: float
    details: dict[str, Any]


class RedisInstanceStorage:
    """Instance storage on Redis using ``redis.asyncio``.

    Args:
        redis_url: Redis connection URL.
        key_prefix: Namespace for every key this storage touches.
        pool_size: Connection pool size.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        key_prefix: str = "bundlehost",
        pool_size: int = 10,
    ) -> None:
        self._url = redis_url
        self._url_safe = _sanitize_url(redis_url)
        self.key_prefix = key_prefix
        self._pool_size = pool_size
        self._serializer = JsonInstanceSerializer(indent=None)
        self._redis: Any = None

    async def _get_client(self) -> Any:
        if self._redis is None:
            try:
                from redis.asyncio import ConnectionPool, Redis
            except ImportError as e:
                raise ImportError("Install redis: pip install bundlehost[redis]") from e

            pool = ConnectionPool.from_url(
                self._url, max_connections=self._pool_size, decode_responses=True
            )
            self._redis = Redis(connection_pool=pool)
            logger.info(f"Connected to Redis at {self._url_safe}")
        return self._redis

    def _serialize(self, instance: BundleInstance, action: str) -> str | None:
        try:
            return self._serializer.serialize(instance)
        except SerializationError as e:
            logger.error(
                f"Failed to {action} instance {instance.id}: {e}",
                extra={"instance_id": instance.id, "error": str(e)},
            )
            return None

    def _instance_key(self, instance_id: str) -> str:
        return f"{self.key_prefix}:instance:{instance_id}"

    def _bundle_key(self, bundle_id: str) -> str:
        return f"{self.key_prefix}:bundle:{bundle_id}"

    @property
    def _ids_key(self) -> str:
        return f"{self.key_prefix}:ids"

    @property
    def _seq_key(self) -> str:
        return f"{self.key_prefix}:seq"

    async def create(self, instance: BundleInstance) -> bool:
        if instance is None:
            raise ValueError("instance must not be None")
        data = self._serialize(instance, "create")
        if data is None:
            return False
        redis = await self._get_client()

        # SET NX makes the existence check and the write a single step
        created = await redis.set(self._instance_key(instance.id), data, nx=True)
        if not created:
            return False

        seq = await redis.incr(self._seq_key)
        async with redis.pipeline(transaction=True) as pipe:
            pipe.zadd(self._bundle_key(instance.bundle_id), {instance.id: seq})
            pipe.sadd(self._ids_key, instance.id)
            await pipe.execute()
        logger.debug(f"Created instance {instance.id}", extra={"instance_id": instance.id})
        return True

    async def get(self, instance_id: str) -> BundleInstance | None:
        require_id(instance_id)
        redis = await self._get_client()
        data = await redis.get(self._instance_key(instance_id))
        if data is None:
            return None
        instance = self._serializer.try_deserialize(data)
        if instance is None:
            logger.warning(
                f"Failed to deserialize instance {instance_id}", extra={"instance_id": instance_id}
            )
        return instance

    async def _load_many(self, ids: list[str]) -> list[BundleInstance]:
        if not ids:
            return []
        redis = await self._get_client()
        documents = await redis.mget([self._instance_key(i) for i in ids])
        instances: list[BundleInstance] = []
        for instance_id, data in zip(ids, documents):
            if data is None:
                # Deleted between the index read and the fetch
                continue
            instance = self._serializer.try_deserialize(data)
            if instance is None:
                logger.warning(
                    f"Failed to deserialize instance {instance_id}",
                    extra={"instance_id": instance_id},
                )
                continue
            instances.append(instance)
        return instances

    async def get_all(self) -> list[BundleInstance]:
        redis = await self._get_client()
        ids = sorted(await redis.smembers(self._ids_key))
        return await self._load_many(ids)

    async def get_by_bundle_id(
        self, bundle_id: str, pagination: PaginationRequest
    ) -> PaginatedResult[BundleInstance]:
        require_id(bundle_id, "bundle_id")
        redis = await self._get_client()
        start = pagination.skip
        stop = start + pagination.page_size - 1
        ids = await redis.zrange(self._bundle_key(bundle_id), start, stop)
        items = await self._load_many(list(ids))
        return PaginatedResult[BundleInstance](
            items=items, page_number=pagination.page_number, page_size=pagination.page_size
        )

    async def update(self, instance: BundleInstance) -> bool:
        if instance is None:
            raise ValueError("instance must not be None")
        data = self._serialize(instance, "update")
        if data is None:
            return False
        redis = await self._get_client()
        key = self._instance_key(instance.id)

        previous = await redis.get(key)
        if previous is None:
            return False

        # SET XX refuses to resurrect an instance deleted since the read above
        updated = await redis.set(key, data, xx=True)
        if not updated:
            return False

        old = self._serializer.try_deserialize(previous)
        if old is not None and old.bundle_id != instance.bundle_id:
            score = await redis.zscore(self._bundle_key(old.bundle_id), instance.id)
            if score is None:
                score = await redis.incr(self._seq_key)
            async with redis.pipeline(transaction=True) as pipe:
                pipe.zrem(self._bundle_key(old.bundle_id), instance.id)
                pipe.zadd(self._bundle_key(instance.bundle_id), {instance.id: score})
                await pipe.execute()
        logger.debug(f"Updated instance {instance.id}", extra={"instance_id": instance.id})
        return True

    async def delete(self, instance_id: str) -> bool:
        require_id(instance_id)
        redis = await self._get_client()
        key = self._instance_key(instance_id)
        data = await redis.get(key)
        if data is None:
            return False

        old = self._serializer.try_deserialize(data)
        async with redis.pipeline(transaction=True) as pipe:
            pipe.delete(key)
            pipe.srem(self._ids_key, instance_id)
            if old is not None:
                pipe.zrem(self._bundle_key(old.bundle_id), instance_id)
            results = await pipe.execute()
        logger.debug(f"Deleted instance {instance_id}", extra={"instance_id": instance_id})
        return bool(results[0])

    async def exists(self, instance_id: str) -> bool:
        require_id(instance_id)
        redis = await self._get_client()
        return bool(await redis.exists(self._instance_key(instance_id)))

    async def get_count(self) -> int:
        redis = await self._get_client()
        return int(await redis.scard(self._ids_key))

    async def get_count_by_bundle_id(self, bundle_id: str) -> int:
        require_id(bundle_id, "bundle_id")
        redis = await self._get_client()
        return int(await redis.zcard(self._bundle_key(bundle_id)))

    async def health(self) -> StorageHealth:
        """Check storage health."""
        start = time.monotonic()
        try:
            redis = await self._get_client()
            await redis.ping()
            count = await redis.scard(self._ids_key)
            return StorageHealth(
                healthy=True,
                latency_ms=(time.monotonic() - start) * 1000,
                details={"instances": count, "key_prefix": self.key_prefix},
            )
        except Exception as e:
            return StorageHealth(
                healthy=False,
                latency_ms=(time.monotonic() - start) * 1000,
                details={"error": str(e)},
            )

    async def close(self) -> None:
        """Close Redis connection."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            logger.info("Closed Redis connection")

    async def clear(self) -> None:
        """Delete every key under ``key_prefix`` (for testing)."""
        redis = await self._get_client()
        keys = [key async for key in redis.scan_iter(match=f"{self.key_prefix}:*")]
        if keys:
            await redis.delete(*keys)

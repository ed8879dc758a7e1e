"""
Cache Service

Fail-soft JSON key-value cache over ``redis.asyncio``. A cache outage never
raises to the caller: reads return None, writes return False, and the failure
is logged.
"""
from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from .rag_config_service import CacheConfig
from .service_contracts import CacheClientLike

logger = logging.getLogger(__name__)

EMBEDDING_PREFIX = "embedding:"
SEARCH_PREFIX = "rag:search:"


@dataclass
class CacheMetrics:
    hits: int = 0
    misses: int = 0
    sets: int = 0
    deletes: int = 0
    errors: int = 0

    @property
    def hit_ratio(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0


class CacheService:
    """Namespaced JSON cache with TTLs and soft failure."""

    def __init__(
        self,
        client: Optional[CacheClientLike],
        *,
        config: Optional[CacheConfig] = None,
    ):
        self.client = client
        self.config = config or CacheConfig()
        self.metrics = CacheMetrics()

    @classmethod
    def from_url(cls, redis_url: str, *, config: Optional[CacheConfig] = None) -> "CacheService":
        import redis.asyncio as redis_asyncio

        client = redis_asyncio.from_url(redis_url, decode_responses=True)
        return cls(client, config=config)

    @property
    def enabled(self) -> bool:
        return self.client is not None

    def _key(self, key: str) -> str:
        return f"{self.config.key_prefix}{key}"

    async def get(self, key: str) -> Optional[Any]:
        if self.client is None:
            return None
        try:
            raw = await self.client.get(self._key(key))
        except Exception as e:
            self.metrics.errors += 1
            logger.warning("Cache get failed for %s: %s", key, e)
            return None

        if raw is None:
            self.metrics.misses += 1
            return None
        try:
            value = json.loads(raw)
        except (TypeError, ValueError) as e:
            self.metrics.errors += 1
            logger.warning("Cache entry %s is not valid JSON: %s", key, e)
            return None
        self.metrics.hits += 1
        return value

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        if self.client is None:
            return False
        ttl_seconds = int(ttl if ttl is not None else self.config.default_ttl_seconds)
        try:
            payload = json.dumps(value, ensure_ascii=False)
            await self.client.set(self._key(key), payload, ex=ttl_seconds)
        except Exception as e:
            self.metrics.errors += 1
            logger.warning("Cache set failed for %s: %s", key, e)
            return False
        self.metrics.sets += 1
        return True

    async def delete(self, key: str) -> bool:
        if self.client is None:
            return False
        try:
            removed = await self.client.delete(self._key(key))
        except Exception as e:
            self.metrics.errors += 1
            logger.warning("Cache delete failed for %s: %s", key, e)
            return False
        self.metrics.deletes += 1
        return bool(removed)

    async def exists(self, key: str) -> bool:
        if self.client is None:
            return False
        try:
            return bool(await self.client.exists(self._key(key)))
        except Exception as e:
            self.metrics.errors += 1
            logger.warning("Cache exists failed for %s: %s", key, e)
            return False

    async def invalidate_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern. Returns the number removed."""
        if self.client is None:
            return 0
        try:
            keys = [key async for key in self.client.scan_iter(match=self._key(pattern))]
            if not keys:
                return 0
            removed = int(await self.client.delete(*keys) or 0)
        except Exception as e:
            self.metrics.errors += 1
            logger.warning("Cache invalidation failed for pattern %s: %s", pattern, e)
            return 0
        self.metrics.deletes += removed
        logger.info("Invalidated %d cache keys for pattern %s", removed, pattern)
        return removed

    async def ping(self) -> bool:
        if self.client is None:
            return False
        try:
            return bool(await self.client.ping())
        except Exception as e:
            logger.warning("Cache health check failed: %s", e)
            return False

    def get_metrics(self) -> Dict[str, Any]:
        payload = asdict(self.metrics)
        payload["hit_ratio"] = self.metrics.hit_ratio
        return payload

    def reset_metrics(self) -> None:
        self.metrics = CacheMetrics()

    async def close(self) -> None:
        if self.client is None:
            return
        close = getattr(self.client, "aclose", None) or getattr(self.client, "close", None)
        if close is None:
            return
        try:
            await close()
        except Exception as e:
            logger.warning("Cache close failed: %s", e)

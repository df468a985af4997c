"""Read-only metadata side-cache keyed by asset key."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Optional

from redis.asyncio import Redis, from_url as redis_from_url
from redis.exceptions import RedisError
import structlog


LOGGER = structlog.get_logger("blackroad_cdn.side_cache")


@dataclass(frozen=True)
class CachedMetadata:
    size: Optional[int] = None
    content_type: Optional[str] = None


class MetadataCache:
    async def lookup(self, key: str) -> Optional[CachedMetadata]:  # pragma: no cover - interface
        raise NotImplementedError

    async def close(self) -> None:
        return None


def parse_cached_metadata(raw: str | bytes | None) -> Optional[CachedMetadata]:
    """Decode ``{"size": ..., "ct": ...}`` records; anything malformed is a miss."""
    if not raw:
        return None
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(payload, dict):
        return None
    size = payload.get("size")
    content_type = payload.get("ct") or payload.get("content_type") or payload.get("contentType")
    if isinstance(size, bool) or not isinstance(size, int) or size < 0:
        size = None
    if not isinstance(content_type, str) or not content_type:
        content_type = None
    if size is None and content_type is None:
        return None
    return CachedMetadata(size=size, content_type=content_type)


class RedisMetadataCache(MetadataCache):
    def __init__(self, redis: Redis, prefix: str = "cdn:"):
        self._redis = redis
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str = "cdn:") -> "RedisMetadataCache":
        return cls(redis_from_url(url), prefix=prefix)

    def namespaced(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def lookup(self, key: str) -> Optional[CachedMetadata]:
        namespaced_key = self.namespaced(key)
        try:
            raw = await self._redis.get(namespaced_key)
        except RedisError as exc:
            LOGGER.warning("side_cache_error", key=namespaced_key, error=str(exc))
            return None
        return parse_cached_metadata(raw)

    async def close(self) -> None:
        await self._redis.aclose()

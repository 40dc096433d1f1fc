"""
Common — リードスルーキャッシュ

値は TTL 付きの JSON として Redis に置く。書き込み側はキャッシュ値を
更新しない: プレフィックス配下のキーを全て無効化 (SCAN + DEL) し、
次の読み込みでストアから取り直す。書き込みと競合した読み込みは、
次の無効化までに古い値を一度返すことがある。

キャッシュは任意。無効化されている場合や Redis が異常な場合は、
読み込みはローダーにそのまま流れる。
"""

import json
import logging
from typing import Any, Awaitable, Callable

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class Cache:
    def __init__(
        self,
        redis_url: str | None = None,
        *,
        client: aioredis.Redis | None = None,
        ttl: int = 3600,
        enabled: bool = True,
    ) -> None:
        self._url = redis_url
        self._client = client
        self._owns_client = client is None
        self.ttl = ttl
        self.enabled = enabled

    async def connect(self) -> None:
        if self.enabled and self._client is None:
            self._client = aioredis.from_url(self._url, decode_responses=True)
            self._owns_client = True

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    @property
    def active(self) -> bool:
        return self.enabled and self._client is not None

    async def get(self, key: str) -> Any | None:
        if not self.active:
            return None
        try:
            raw = await self._client.get(key)
        except RedisError:
            logger.warning("Cache read failed for %s", key, exc_info=True)
            return None
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any) -> None:
        if not self.active:
            return
        try:
            await self._client.set(key, json.dumps(value, default=str), ex=self.ttl)
        except RedisError:
            logger.warning("Cache write failed for %s", key, exc_info=True)

    async def get_or_load(self, key: str, loader: Callable[[], Awaitable[Any]]) -> Any:
        cached = await self.get(key)
        if cached is not None:
            return cached
        value = await loader()
        if value is not None:
            await self.set(key, value)
        return value

    async def invalidate(self, *prefixes: str) -> int:
        """いずれかのプレフィックスで始まるキーをすべて削除する。"""
        if not self.active:
            return 0
        deleted = 0
        try:
            for prefix in prefixes:
                keys = [key async for key in self._client.scan_iter(match=f"{prefix}*")]
                if keys:
                    deleted += await self._client.delete(*keys)
        except RedisError:
            logger.warning("Cache invalidation failed for %s", prefixes, exc_info=True)
        return deleted

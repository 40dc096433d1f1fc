"""
Common — サービスコンテナ

サービスプロセスが使う接続（DB エンジン、イベントチャネル、キャッシュ、
WebSocket ブロードキャスタ）をまとめて持ち、FastAPI の lifespan から
connect/close を明示的に呼ぶ。テストはモジュールグローバルを差し替えず、
クライアントを注入したコンテナを組み立てる。
"""

import asyncio
import logging

import redis.asyncio as aioredis
from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .broadcast import Broadcaster
from .cache import Cache
from .config import ServiceSettings
from .events import EventChannel, Handler

logger = logging.getLogger(__name__)


class ServiceContainer:
    def __init__(
        self,
        settings: ServiceSettings,
        metadata: MetaData,
        *,
        redis: aioredis.Redis | None = None,
    ) -> None:
        self.settings = settings
        self.metadata = metadata
        self.channel = EventChannel(
            settings.redis_url, client=redis, consumer_name=settings.consumer_name
        )
        self.cache = Cache(
            settings.redis_url,
            client=redis,
            ttl=settings.cache_ttl,
            enabled=settings.cache_enabled,
        )
        self.broadcaster = Broadcaster()
        self.engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None
        self._shutdown = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    async def connect(self) -> None:
        self.engine = create_async_engine(self.settings.database_url, echo=False)
        self._session_factory = async_sessionmaker(self.engine, expire_on_commit=False)
        async with self.engine.begin() as conn:
            await conn.run_sync(self.metadata.create_all)
        await self.channel.connect()
        await self.cache.connect()
        logger.info("%s connected", self.settings.service_name)

    async def close(self) -> None:
        self._shutdown.set()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        await self.cache.close()
        await self.channel.close()
        if self.engine is not None:
            await self.engine.dispose()
            self.engine = None
        logger.info("%s closed", self.settings.service_name)

    def session(self) -> AsyncSession:
        if self._session_factory is None:
            raise RuntimeError("Service container is not connected")
        return self._session_factory()

    def start_consumer(
        self, topic: str, group: str, handler: Handler, *, prefetch: int | None = None
    ) -> asyncio.Task:
        task = asyncio.create_task(
            self.channel.consume(topic, group, handler, self._shutdown, prefetch=prefetch),
            name=f"{group}:{topic}",
        )
        self._tasks.append(task)
        return task

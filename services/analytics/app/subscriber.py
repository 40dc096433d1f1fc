"""
Analytics Service — イベントサブスクライバー

トピックごとにコンシューマを 1 つ持ち、すべて `analytics` グループに属する。
他のどのサービスが購読していても、このサービスはそれらのトピックの全メッセージを
受け取る。各イベントは記録してから analytics_update として /ws クライアントに送る。
"""

import logging
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from services.common.broadcast import Broadcaster
from services.common.events import Handler

from . import projections

logger = logging.getLogger(__name__)


class EventRecorder:
    def __init__(self, session_factory: Callable[[], AsyncSession], broadcaster: Broadcaster) -> None:
        self.session_factory = session_factory
        self.broadcaster = broadcaster

    async def record(self, topic: str, event: str, data: dict) -> None:
        async with self.session_factory() as session:
            await projections.record_event(session, topic, event, data)
        logger.info("Recorded %s/%s", topic, event)
        await self.broadcaster.broadcast(
            "analytics_update", {"topic": topic, "event": event, "data": data}
        )

    def handler_for(self, topic: str) -> Handler:
        async def handle(event: str, data: dict) -> None:
            await self.record(topic, event, data)

        return handle

"""
Alerts Service — `alerts` トピックのサブスクライバー

他のサービスはこのサービスを HTTP で呼ばない。create_alert {type, message}
を発行すると、POST されたのと同じようにここでアラートが作られる。
"""

import logging
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from services.common.broadcast import Broadcaster

from . import store

logger = logging.getLogger(__name__)


class AlertSink:
    def __init__(self, session_factory: Callable[[], AsyncSession], broadcaster: Broadcaster) -> None:
        self.session_factory = session_factory
        self.broadcaster = broadcaster

    async def handle_event(self, event: str, data: dict) -> None:
        if event != "create_alert":
            logger.debug("Ignoring %s on the alerts topic", event)
            return
        if not data.get("type") or not data.get("message"):
            logger.warning("Dropping malformed alert request: %s", data)
            return
        async with self.session_factory() as session:
            await store.create_alert(session, self.broadcaster, data["type"], data["message"])

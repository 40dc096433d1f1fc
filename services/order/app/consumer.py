"""
Order Service — `products` トピックのサブスクライバー

  inventory_update_failed  ─▶ 注文を failed にして critical アラート
                              (async 在庫モードでの Saga 補償に相当)
  product_created,
  product_updated,
  inventory_updated,
  products_deleted         ─▶ 売上集計を再計算（売れ残り商品や商品数は
                              カタログに依存する）
"""

import logging
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from services.common.errors import NotFoundError
from services.common.events import EventChannel, publish_alert

from . import commands
from .sales import SalesAggregator

logger = logging.getLogger(__name__)

CATALOGUE_EVENTS = {"product_created", "product_updated", "inventory_updated", "products_deleted"}


class ProductEventHandler:
    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        channel: EventChannel,
        sales: SalesAggregator,
    ) -> None:
        self.session_factory = session_factory
        self.channel = channel
        self.sales = sales

    async def handle_event(self, event: str, data: dict) -> None:
        if event == "inventory_update_failed":
            await self.fail_order(data)
        elif event in CATALOGUE_EVENTS:
            await self.sales.refresh()

    async def fail_order(self, data: dict) -> None:
        order_ref = data.get("orderId")
        if not order_ref:
            logger.warning("inventory_update_failed without an orderId: %s", data)
            return
        reason = data.get("reason") or "Inventory update failed"
        try:
            async with self.session_factory() as session:
                order = await commands.mark_failed(session, order_ref, reason)
        except NotFoundError:
            logger.warning("inventory_update_failed for unknown order %s", order_ref)
            return

        logger.info("Order %s marked failed: %s", order_ref, reason)
        await publish_alert(
            self.channel,
            "critical",
            f"Order {order['orderId']} for customer {order['customerId']} failed: {reason}",
        )
        await self.sales.refresh()

"""
Product Service — 在庫引き当てコンシューマ

INVENTORY_MODE=async のときだけ動く。このモードでは注文 Saga は在庫に
触れず、代わりにこのコンシューマが order_created ごとに在庫を引き当て、
結果を `products` トピックで返す:

  order_created ──▶ 明細ごとに decrease_stock ──┬─ 全て成功 ─▶ inventory_updated_success
                                                └─ 失敗あり ─▶ 引き当て済み分を戻す
                                                               ▶ inventory_update_failed

Order Service は inventory_update_failed を受けて注文を failed にする。
注文イベントはどちらの場合も ACK し、失敗した引き当ては自動で再試行しない。
"""

import logging
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from services.common.cache import Cache
from services.common.errors import ServiceError
from services.common.events import PRODUCTS, EventChannel

from . import commands

logger = logging.getLogger(__name__)


class InventoryReconciler:
    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        channel: EventChannel,
        cache: Cache,
        *,
        low_stock_threshold: int = 10,
    ) -> None:
        self.session_factory = session_factory
        self.channel = channel
        self.cache = cache
        self.low_stock_threshold = low_stock_threshold

    async def handle_event(self, event: str, data: dict) -> None:
        if event == "order_created":
            await self.reconcile_order(data)

    async def reconcile_order(self, order: dict) -> bool:
        taken: list[dict] = []
        try:
            for item in order.get("items", []):
                async with self.session_factory() as session:
                    await commands.decrease_stock(
                        session,
                        self.channel,
                        self.cache,
                        item["productId"],
                        item["quantity"],
                        low_stock_threshold=self.low_stock_threshold,
                    )
                taken.append(item)
        except ServiceError as e:
            logger.warning("Stock update failed for order %s: %s", order.get("orderId"), e)
            await self._give_back(taken)
            await self.channel.publish(
                PRODUCTS,
                "inventory_update_failed",
                {
                    "orderId": order.get("orderId"),
                    "customerId": order.get("customerId"),
                    "reason": e.message,
                },
            )
            return False

        await self.channel.publish(
            PRODUCTS, "inventory_updated_success", {"orderId": order.get("orderId")}
        )
        return True

    async def _give_back(self, taken: list[dict]) -> None:
        for item in reversed(taken):
            try:
                async with self.session_factory() as session:
                    await commands.restore_stock(
                        session, self.channel, self.cache, item["productId"], item["quantity"]
                    )
            except ServiceError:
                logger.exception("Could not restore stock for %s", item["productId"])

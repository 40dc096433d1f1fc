"""
Order Service — 注文作成 Saga

Saga パターン（オーケストレーション型）:
  参加者は 2 つ（このサービスの注文ストアと Product Service）。
  分散トランザクションは使わず、条件付きの在庫引き当てと
  補償トランザクションで整合性を保つ。

  ┌──────────────────────────────────────────────────────────────────┐
  │  1. Validate   GET /products/bulk — 全商品が存在し、掲載中で、   │
  │                在庫が足りること（問題はまとめて報告し、          │
  │                何も書き込まない）                                │
  │  2. Persist    スナップショット価格で注文を `pending` として保存 │
  │  3. Reserve    明細ごとに PATCH /products/{id}/decrease-stock    │
  │                (inline 在庫モードのみ)                           │
  │  4. Publish    `orders` トピックに order_created を発行          │
  │                                                                  │
  │  3/4 失敗 ──▶ 引き当て済みの在庫を戻す                           │
  │              ▶ 注文を `failed` にする                            │
  │              ▶ critical アラート                                 │
  │              ▶ 呼び出し元に例外を再送出                          │
  └──────────────────────────────────────────────────────────────────┘

Step 1 の在庫チェックは Step 3 の時点では古くなっている可能性がある。
同時注文に対して安全なのは引き当てそのものだけ。
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.errors import EventPublishFailure, ServiceError, ValidationError
from services.common.events import ORDERS, EventChannel, publish_alert

from . import commands
from .config import INLINE
from .product_client import ProductClient

logger = logging.getLogger(__name__)


class OrderCreationSaga:
    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        products: ProductClient,
        channel: EventChannel,
        *,
        inventory_mode: str = INLINE,
        restore_stock: bool = True,
    ) -> None:
        self.session_factory = session_factory
        self.products = products
        self.channel = channel
        self.inventory_mode = inventory_mode
        self.restore_stock = restore_stock

    async def execute(self, customer_id: str, items: list[dict], total: float | None = None) -> dict:
        """
        items: [{"productId": ..., "quantity": ...}]。クライアントの価格と
        合計は信用しない。価格は Product Service からスナップショットし、
        合計はここで計算する。
        """
        saga_log: list[dict] = []

        # ── Step 1: 最新の商品データで検証 ──
        self._log(saga_log, "ValidateItems")
        priced_items = await self._validate(items)
        order_total = sum(
            (Decimal(str(item["price"])) * item["quantity"] for item in priced_items),
            Decimal("0"),
        )
        if total is not None and Decimal(str(total)) != order_total:
            logger.info(
                "Client total %s for customer %s replaced by computed total %s",
                total, customer_id, order_total,
            )
        saga_log[-1]["status"] = "COMPLETED"

        # ── Step 2: pending の注文を保存 ──
        self._log(saga_log, "PersistOrder")
        async with self.session_factory() as session:
            order = await commands.insert_order(session, customer_id, priced_items, order_total)
        saga_log[-1]["status"] = "COMPLETED"

        # ── Step 3: 在庫を引き当て ──
        reserved: list[dict] = []
        if self.inventory_mode == INLINE:
            self._log(saga_log, "ReserveStock")
            try:
                for item in priced_items:
                    await self.products.decrease_stock(item["productId"], item["quantity"])
                    reserved.append(item)
            except ServiceError as e:
                saga_log[-1].update(status="FAILED", error=e.message)
                await self._compensate(order, reserved, e.message, saga_log)
                raise
            saga_log[-1]["status"] = "COMPLETED"

        # ── Step 4: order_created を発行 ──
        self._log(saga_log, "PublishOrderCreated")
        try:
            await self.channel.publish(ORDERS, "order_created", order)
        except EventPublishFailure as e:
            saga_log[-1].update(status="FAILED", error=e.message)
            await self._compensate(order, reserved, e.message, saga_log)
            raise
        saga_log[-1]["status"] = "COMPLETED"

        logger.info("Order %s created: %s", order["orderId"], _summary(saga_log))
        return order

    async def _validate(self, items: list[dict]) -> list[dict]:
        if not items:
            raise ValidationError("Order must contain at least one item")

        # 複数行に出てくる商品は合計数量を満たす必要がある
        requested: dict[str, int] = {}
        for item in items:
            requested[item["productId"]] = requested.get(item["productId"], 0) + item["quantity"]

        found = {p["id"]: p for p in await self.products.get_many(list(requested))}

        missing, unavailable, short = [], [], []
        for product_id, quantity in requested.items():
            product = found.get(product_id)
            if product is None:
                missing.append(product_id)
            elif product.get("isDeleted"):
                unavailable.append(product["name"])
            elif quantity > product["inventoryCount"]:
                short.append(
                    f"{product['name']} (requested: {quantity}, "
                    f"available: {product['inventoryCount']})"
                )

        problems = []
        if missing:
            problems.append(f"Products not found: {', '.join(missing)}")
        if unavailable:
            problems.append(f"Products not available: {', '.join(unavailable)}")
        if short:
            problems.append(f"Insufficient inventory for: {', '.join(short)}")
        if problems:
            raise ValidationError("; ".join(problems))

        return [
            {
                "productId": item["productId"],
                "quantity": item["quantity"],
                "price": found[item["productId"]]["price"],
            }
            for item in items
        ]

    async def _compensate(
        self, order: dict, reserved: list[dict], reason: str, saga_log: list[dict]
    ) -> None:
        if self.restore_stock and reserved:
            self._log(saga_log, "RestoreStock (COMPENSATING)")
            failed = False
            for item in reversed(reserved):
                try:
                    await self.products.restore_stock(item["productId"], item["quantity"])
                except ServiceError:
                    failed = True
                    logger.exception(
                        "Could not restore %d units of %s for order %s",
                        item["quantity"], item["productId"], order["orderId"],
                    )
            saga_log[-1]["status"] = "FAILED" if failed else "COMPLETED"

        self._log(saga_log, "MarkOrderFailed (COMPENSATING)")
        try:
            async with self.session_factory() as session:
                await commands.mark_failed(session, order["orderId"], reason)
            saga_log[-1]["status"] = "COMPLETED"
        except (ServiceError, SQLAlchemyError):
            saga_log[-1]["status"] = "FAILED"
            logger.exception("Could not mark order %s as failed", order["orderId"])

        await publish_alert(
            self.channel,
            "critical",
            f"Order {order['orderId']} for customer {order['customerId']} failed: {reason}",
        )
        logger.warning("Order %s compensated: %s", order["orderId"], _summary(saga_log))

    @staticmethod
    def _log(saga_log: list[dict], action: str) -> None:
        saga_log.append(
            {
                "step": len(saga_log) + 1,
                "action": action,
                "status": "EXECUTING",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        )


def _summary(saga_log: list[dict]) -> str:
    return ", ".join(f"{entry['action']}={entry['status']}" for entry in saga_log)

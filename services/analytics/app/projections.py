"""
Analytics Service — イベントの投影 (Projection)

orders, products, analytics トピックのイベントはそれぞれ analytics_events の
1 行になる。生のペイロードに加えて、対象エンティティと代表値を 1 つ持つので、
JSON を展開せずにログを絞り込んだり合計したりできる:

  topic       event                    entity      value
  ─────────   ──────────────────────   ─────────   ──────────────
  orders      order_created            orderId     total
  orders      order_status_updated     orderId     total
  products    product_created/updated  productId   price
  products    inventory_updated        productId   inventory
  products    inventory_update_failed  orderId     -
  analytics   sales_rollup_updated     -           totalRevenue
"""

from datetime import datetime, timezone

from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncSession

from .tables import analytics_events

_VALUE_FIELDS = {
    "order_created": "total",
    "order_status_updated": "total",
    "product_created": "price",
    "product_updated": "price",
    "inventory_updated": "inventory",
    "sales_rollup_updated": "totalRevenue",
}


def _entity(data: dict) -> str | None:
    for key in ("orderId", "productId"):
        if data.get(key):
            return str(data[key])
    return None


def _value(event: str, data: dict) -> float | None:
    field = _VALUE_FIELDS.get(event)
    if field is None or data.get(field) is None:
        return None
    return float(data[field])


async def record_event(session: AsyncSession, topic: str, event: str, data: dict) -> None:
    await session.execute(
        insert(analytics_events).values(
            topic=topic,
            event=event,
            entity_id=_entity(data),
            value=_value(event, data),
            payload=data,
            created_at=datetime.now(timezone.utc),
        )
    )
    await session.commit()

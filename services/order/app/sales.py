"""
Order Service — 売上集計

すべての数値は呼び出しごとに注文ストアから計算し直す（マテリアライズ
しない）。注文量が控えめなバックオフィスなら問題なく、このサービスで
最初にスケールの限界が来るのはここになる。

failed の注文は売上に数えない。商品名と掲載状態は Product Service から
HTTP で取得する。

再集計のたびに結果を WebSocket 購読者へ送る:

  overallMetricsUpdate  salesOverviewUpdate  monthlySalesUpdate
  yearlySalesUpdate     topProductsUpdate    lowProductsUpdate
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.broadcast import Broadcaster
from services.common.errors import EventPublishFailure
from services.common.events import ANALYTICS, EventChannel

from .commands import FAILED
from .product_client import ProductClient
from .tables import order_items, orders

logger = logging.getLogger(__name__)

OVERVIEW_WINDOWS = {
    "last24Hours": timedelta(hours=24),
    "last7Days": timedelta(days=7),
    "last30Days": timedelta(days=30),
}

_counted = orders.c.status != FAILED


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def sales_overview(session: AsyncSession, now: datetime | None = None) -> dict:
    now = now or _now()
    overview = {}
    for label, window in OVERVIEW_WINDOWS.items():
        row = (
            await session.execute(
                select(func.coalesce(func.sum(orders.c.total), 0), func.count()).where(
                    _counted, orders.c.created_at >= now - window
                )
            )
        ).one()
        overview[label] = {"totalSales": float(row[0]), "count": row[1]}
    return overview


async def _bucketed(session: AsyncSession, key) -> dict:
    buckets: dict = {}
    result = await session.execute(select(orders.c.created_at, orders.c.total).where(_counted))
    for created_at, total in result.fetchall():
        bucket = buckets.setdefault(key(created_at), {"totalSales": 0.0, "orderCount": 0})
        bucket["totalSales"] += float(total)
        bucket["orderCount"] += 1
    return buckets


async def monthly_sales(session: AsyncSession) -> list[dict]:
    buckets = await _bucketed(session, lambda ts: (ts.year, ts.month))
    return [
        {"year": year, "month": month, **buckets[(year, month)]}
        for year, month in sorted(buckets, reverse=True)
    ]


async def yearly_sales(session: AsyncSession) -> list[dict]:
    buckets = await _bucketed(session, lambda ts: ts.year)
    return [{"year": year, **buckets[year]} for year in sorted(buckets, reverse=True)]


async def _product_sales(session: AsyncSession, since: datetime | None = None) -> list[dict]:
    total_sold = func.sum(order_items.c.quantity).label("total_sold")
    revenue = func.sum(order_items.c.quantity * order_items.c.price).label("revenue")
    stmt = (
        select(order_items.c.product_id, total_sold, revenue)
        .select_from(order_items.join(orders, order_items.c.order_pk == orders.c.id))
        .where(_counted)
        .group_by(order_items.c.product_id)
        .order_by(total_sold.desc(), order_items.c.product_id)
    )
    if since is not None:
        stmt = stmt.where(orders.c.created_at >= since)
    result = await session.execute(stmt)
    return [
        {"productId": row.product_id, "totalSold": int(row.total_sold), "totalRevenue": float(row.revenue)}
        for row in result.fetchall()
    ]


async def top_products(session: AsyncSession, products: ProductClient, limit: int = 10) -> list[dict]:
    top = (await _product_sales(session))[:limit]
    details = {p["id"]: p for p in await products.get_many([t["productId"] for t in top])}
    return [{**entry, "product": details.get(entry["productId"])} for entry in top]


async def low_products(
    session: AsyncSession,
    products: ProductClient,
    *,
    window: timedelta = timedelta(days=30),
    limit: int = 10,
    now: datetime | None = None,
) -> dict:
    """期間内の売れ行き下位商品と、期間内に一度も注文されなかった掲載商品"""
    sold = await _product_sales(session, since=(now or _now()) - window)
    sold_ids = {entry["productId"] for entry in sold}
    listed = await products.list_products()
    return {
        "lowSelling": sold[::-1][:limit],
        "unsoldProducts": [p for p in listed if p["id"] not in sold_ids],
    }


async def overall_metrics(session: AsyncSession, products: ProductClient) -> dict:
    row = (
        await session.execute(
            select(
                func.coalesce(func.sum(orders.c.total), 0),
                func.count(),
                func.count(func.distinct(orders.c.customer_id)),
            ).where(_counted)
        )
    ).one()
    counts = await products.counts()
    return {
        "totalRevenue": float(row[0]),
        "totalOrders": row[1],
        "totalCustomers": row[2],
        "totalProducts": counts.get("totalProducts", 0),
        "listedProducts": counts.get("listedProducts", 0),
        "unlistedProducts": counts.get("unlistedProducts", 0),
    }


class SalesAggregator:
    """全集計を計算し直して配信する"""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        products: ProductClient,
        broadcaster: Broadcaster,
        channel: EventChannel,
    ) -> None:
        self.session_factory = session_factory
        self.products = products
        self.broadcaster = broadcaster
        self.channel = channel

    async def snapshot(self) -> dict[str, object]:
        """全集計を WebSocket のイベントタグをキーにして返す。"""
        async with self.session_factory() as session:
            overview = await sales_overview(session)
            monthly = await monthly_sales(session)
            yearly = await yearly_sales(session)
            top = await top_products(session, self.products)
            low = await low_products(session, self.products)
            metrics = await overall_metrics(session, self.products)
        return {
            "overallMetricsUpdate": metrics,
            "salesOverviewUpdate": overview,
            "monthlySalesUpdate": monthly,
            "yearlySalesUpdate": yearly,
            "topProductsUpdate": top,
            "lowProductsUpdate": low,
        }

    async def refresh(self) -> dict[str, object] | None:
        """
        再集計してブロードキャストする。注文の書き込み後に呼ばれ、ここでの
        失敗はログに残すだけで、呼び出し元のリクエストには伝わらない。
        """
        try:
            snapshot = await self.snapshot()
        except Exception:
            logger.exception("Sales rollup recomputation failed")
            return None

        for event, data in snapshot.items():
            await self.broadcaster.broadcast(event, data)
        try:
            await self.channel.publish(
                ANALYTICS, "sales_rollup_updated", snapshot["overallMetricsUpdate"]
            )
        except EventPublishFailure:
            logger.exception("Could not publish sales rollup")
        return snapshot

    async def send_snapshot(self, websocket) -> None:
        snapshot = await self.snapshot()
        for event, data in snapshot.items():
            await self.broadcaster.send(websocket, event, data)

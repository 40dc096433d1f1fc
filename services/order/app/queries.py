"""
Order Service — 読み取り側 (Query)

注文は人が読める注文 ID (ORD-XXXXXX) と内部 ID のどちらでも引ける。
"""

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.schemas import iso, page_envelope

from .tables import order_items, orders

SORTABLE = {
    "orderId": orders.c.order_id,
    "customerId": orders.c.customer_id,
    "total": orders.c.total,
    "status": orders.c.status,
    "createdAt": orders.c.created_at,
}


def order_ref_clause(order_ref: str):
    return or_(orders.c.order_id == order_ref, orders.c.id == order_ref)


def order_to_dict(row, items: list[dict]) -> dict:
    return {
        "id": row.id,
        "orderId": row.order_id,
        "customerId": row.customer_id,
        "items": items,
        "total": float(row.total),
        "status": row.status,
        "failureReason": row.failure_reason,
        "createdAt": iso(row.created_at),
        "updatedAt": iso(row.updated_at),
    }


async def _items_by_order(session: AsyncSession, order_pks: list[str]) -> dict[str, list[dict]]:
    grouped: dict[str, list[dict]] = {pk: [] for pk in order_pks}
    if not order_pks:
        return grouped
    result = await session.execute(
        select(order_items)
        .where(order_items.c.order_pk.in_(order_pks))
        .order_by(order_items.c.order_pk, order_items.c.position)
    )
    for row in result.fetchall():
        grouped[row.order_pk].append(
            {"productId": row.product_id, "quantity": row.quantity, "price": float(row.price)}
        )
    return grouped


async def _with_items(session: AsyncSession, rows) -> list[dict]:
    items = await _items_by_order(session, [row.id for row in rows])
    return [order_to_dict(row, items[row.id]) for row in rows]


async def get_order(session: AsyncSession, order_ref: str) -> dict | None:
    row = (await session.execute(select(orders).where(order_ref_clause(order_ref)))).fetchone()
    if not row:
        return None
    return (await _with_items(session, [row]))[0]


async def list_orders(session: AsyncSession) -> list[dict]:
    result = await session.execute(select(orders).order_by(orders.c.created_at.desc()))
    return await _with_items(session, result.fetchall())


async def query_orders(
    session: AsyncSession,
    *,
    page: int = 1,
    limit: int = 10,
    search: str = "",
    sort_by: str = "createdAt",
    sort_order: str = "desc",
    status: str | None = None,
) -> dict:
    conditions = []
    if search:
        pattern = f"%{search}%"
        conditions.append(
            or_(orders.c.order_id.ilike(pattern), orders.c.customer_id.ilike(pattern))
        )
    if status:
        conditions.append(orders.c.status == status)

    column = SORTABLE.get(sort_by, orders.c.created_at)
    ordering = column.asc() if sort_order == "asc" else column.desc()

    total = await session.scalar(select(func.count()).select_from(orders).where(*conditions))
    result = await session.execute(
        select(orders)
        .where(*conditions)
        .order_by(ordering, orders.c.id)
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return page_envelope(await _with_items(session, result.fetchall()), page, limit, total)

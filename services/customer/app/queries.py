"""
Customer Service — 読み取り側 (Query)

論理削除された顧客はどの読み取りにも出てこない。
"""

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.schemas import iso, page_envelope

from .tables import customers

SORTABLE = {
    "customerName": customers.c.customer_name,
    "email": customers.c.email,
    "createdAt": customers.c.created_at,
    "updatedAt": customers.c.updated_at,
    "isBlocked": customers.c.is_blocked,
}

_active = customers.c.deleted_at.is_(None)


def customer_to_dict(row) -> dict:
    return {
        "id": row.id,
        "customerName": row.customer_name,
        "email": row.email,
        "phone": row.phone,
        "isBlocked": bool(row.is_blocked),
        "createdAt": iso(row.created_at),
        "updatedAt": iso(row.updated_at),
    }


async def get_customer(session: AsyncSession, customer_id: str) -> dict | None:
    row = (
        await session.execute(select(customers).where(customers.c.id == customer_id, _active))
    ).fetchone()
    return customer_to_dict(row) if row else None


async def list_customers(session: AsyncSession) -> list[dict]:
    result = await session.execute(
        select(customers).where(_active).order_by(customers.c.created_at.desc())
    )
    return [customer_to_dict(row) for row in result.fetchall()]


async def query_customers(
    session: AsyncSession,
    *,
    page: int = 1,
    limit: int = 10,
    search: str = "",
    sort_by: str = "createdAt",
    sort_order: str = "desc",
) -> dict:
    conditions = [_active]
    if search:
        pattern = f"%{search}%"
        conditions.append(
            or_(customers.c.customer_name.ilike(pattern), customers.c.email.ilike(pattern))
        )

    column = SORTABLE.get(sort_by, customers.c.created_at)
    ordering = column.asc() if sort_order == "asc" else column.desc()

    total = await session.scalar(select(func.count()).select_from(customers).where(*conditions))
    result = await session.execute(
        select(customers)
        .where(*conditions)
        .order_by(ordering, customers.c.id)
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return page_envelope([customer_to_dict(row) for row in result.fetchall()], page, limit, total)

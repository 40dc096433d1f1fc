"""
Product Service — 読み取り側 (Query)

通常の一覧は論理削除された商品を含まない。注文 Saga が使う一括取得は
論理削除済みの商品も isDeleted 付きで返すので、呼び出し側は
「存在しない商品」と「もう販売していない商品」を区別できる。
"""

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.schemas import iso

from .tables import categories, products

_product_columns = [*products.c, categories.c.name.label("category_name")]


def _product_select():
    return select(*_product_columns).select_from(
        products.outerjoin(categories, products.c.category_id == categories.c.id)
    )


def product_to_dict(row) -> dict:
    return {
        "id": row.id,
        "name": row.name,
        "category": row.category_id,
        "categoryName": getattr(row, "category_name", None),
        "price": float(row.price),
        "inventoryCount": row.inventory_count,
        "isDeleted": bool(row.is_deleted),
        "createdAt": iso(row.created_at),
        "updatedAt": iso(row.updated_at),
    }


def category_to_dict(row) -> dict:
    return {
        "id": row.id,
        "name": row.name,
        "description": row.description,
        "createdAt": iso(row.created_at),
        "updatedAt": iso(row.updated_at),
    }


async def get_product(
    session: AsyncSession, product_id: str, *, include_deleted: bool = False
) -> dict | None:
    stmt = _product_select().where(products.c.id == product_id)
    if not include_deleted:
        stmt = stmt.where(products.c.is_deleted.is_(False))
    row = (await session.execute(stmt)).fetchone()
    return product_to_dict(row) if row else None


async def list_products(session: AsyncSession) -> list[dict]:
    result = await session.execute(
        _product_select()
        .where(products.c.is_deleted.is_(False))
        .order_by(products.c.created_at.desc())
    )
    return [product_to_dict(row) for row in result.fetchall()]


async def list_products_page(session: AsyncSession, page: int, limit: int) -> dict:
    listed = products.c.is_deleted.is_(False)
    total = await session.scalar(select(func.count()).select_from(products).where(listed))
    result = await session.execute(
        _product_select()
        .where(listed)
        .order_by(products.c.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return {"products": [product_to_dict(row) for row in result.fetchall()], "total": total}


async def get_products_by_ids(session: AsyncSession, product_ids: list[str]) -> list[dict]:
    if not product_ids:
        return []
    result = await session.execute(_product_select().where(products.c.id.in_(product_ids)))
    return [product_to_dict(row) for row in result.fetchall()]


async def count_products(session: AsyncSession) -> dict:
    total = await session.scalar(select(func.count()).select_from(products))
    unlisted = await session.scalar(
        select(func.count()).select_from(products).where(products.c.is_deleted.is_(True))
    )
    return {
        "totalProducts": total,
        "listedProducts": total - unlisted,
        "unlistedProducts": unlisted,
    }


async def get_category(session: AsyncSession, category_id: str) -> dict | None:
    row = (
        await session.execute(select(categories).where(categories.c.id == category_id))
    ).fetchone()
    return category_to_dict(row) if row else None


async def list_categories(session: AsyncSession) -> list[dict]:
    result = await session.execute(select(categories).order_by(categories.c.name))
    return [category_to_dict(row) for row in result.fetchall()]

"""
Product Service — 書き込み側 (Command)

すべての変更はコミットし、商品キャッシュを無効化し、`products` トピックに
商品イベントを発行する。コミットが後戻りできない地点で、その後の発行失敗は
ログに残すだけで書き込みはそのまま残る。

在庫は 1 本の条件付き UPDATE でしか変更しない:

    UPDATE products
       SET inventory_count = inventory_count - :qty
     WHERE id = :id AND is_deleted = false AND inventory_count >= :qty

最後の在庫を取り合う 2 つの注文はどちらも検証の読み取りを通過するが、
この UPDATE にマッチするのは片方だけで、もう片方は行が返らず拒否される。
アプリが在庫を読んで計算して書き戻すことはない。
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import insert, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.cache import Cache
from services.common.errors import NotFoundError, ValidationError
from services.common.events import PRODUCTS, EventChannel, publish_alert, publish_committed

from . import queries
from .tables import categories, products

logger = logging.getLogger(__name__)

PRODUCT_CACHE_PREFIX = "products:"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _event_data(product: dict) -> dict:
    return {
        "productId": product["id"],
        "name": product["name"],
        "price": product["price"],
        "inventory": product["inventoryCount"],
        "categoryName": product.get("categoryName"),
    }


async def create_category(session: AsyncSession, name: str, description: str | None) -> dict:
    now = _now()
    category_id = str(uuid4())
    try:
        await session.execute(
            insert(categories).values(
                id=category_id, name=name, description=description, created_at=now, updated_at=now
            )
        )
        await session.commit()
    except IntegrityError as e:
        await session.rollback()
        raise ValidationError(f"Category {name} already exists") from e
    return await queries.get_category(session, category_id)


async def create_product(
    session: AsyncSession,
    channel: EventChannel,
    cache: Cache,
    *,
    name: str,
    category_id: str,
    price: Decimal,
    inventory_count: int,
) -> dict:
    if await queries.get_category(session, category_id) is None:
        raise ValidationError(f"Category {category_id} not found")

    now = _now()
    product_id = str(uuid4())
    await session.execute(
        insert(products).values(
            id=product_id,
            name=name,
            category_id=category_id,
            price=price,
            inventory_count=inventory_count,
            is_deleted=False,
            created_at=now,
            updated_at=now,
        )
    )
    await session.commit()
    await cache.invalidate(PRODUCT_CACHE_PREFIX)

    product = await queries.get_product(session, product_id)
    await publish_committed(channel, PRODUCTS, "product_created", _event_data(product))
    return product


async def update_product(
    session: AsyncSession, channel: EventChannel, cache: Cache, product_id: str, changes: dict
) -> dict:
    """changes のキーはカラム名: name, category_id, price"""
    if "category_id" in changes and await queries.get_category(session, changes["category_id"]) is None:
        raise ValidationError(f"Category {changes['category_id']} not found")

    result = await session.execute(
        update(products)
        .where(products.c.id == product_id, products.c.is_deleted.is_(False))
        .values(**changes, updated_at=_now())
    )
    if result.rowcount == 0:
        await session.rollback()
        raise NotFoundError("Product not found")
    await session.commit()
    await cache.invalidate(PRODUCT_CACHE_PREFIX)

    product = await queries.get_product(session, product_id)
    await publish_committed(channel, PRODUCTS, "product_updated", _event_data(product))
    return product


async def set_inventory(
    session: AsyncSession, channel: EventChannel, cache: Cache, product_id: str, count: int
) -> dict:
    """管理者による在庫数の上書き"""
    result = await session.execute(
        update(products)
        .where(products.c.id == product_id)
        .values(inventory_count=count, updated_at=_now())
    )
    if result.rowcount == 0:
        await session.rollback()
        raise NotFoundError("Product not found")
    await session.commit()
    await cache.invalidate(PRODUCT_CACHE_PREFIX)

    product = await queries.get_product(session, product_id, include_deleted=True)
    await publish_committed(channel, PRODUCTS, "inventory_updated", _event_data(product))
    return product


async def decrease_stock(
    session: AsyncSession,
    channel: EventChannel,
    cache: Cache,
    product_id: str,
    quantity: int,
    *,
    low_stock_threshold: int = 10,
) -> dict:
    """
    `quantity` 個をアトミックに引き当てる。商品が利用できない、または
    在庫が足りない場合は ValidationError を送出し、在庫は変わらない。
    """
    if quantity < 1:
        raise ValidationError("quantity must be at least 1")

    row = (
        await session.execute(
            update(products)
            .where(
                products.c.id == product_id,
                products.c.is_deleted.is_(False),
                products.c.inventory_count >= quantity,
            )
            .values(inventory_count=products.c.inventory_count - quantity, updated_at=_now())
            .returning(products.c.id, products.c.name, products.c.inventory_count)
        )
    ).fetchone()

    if row is None:
        await session.rollback()
        current = await queries.get_product(session, product_id, include_deleted=True)
        if current is None:
            raise NotFoundError(f"Product {product_id} not found")
        if current["isDeleted"]:
            raise ValidationError(f"Product {current['name']} is not available")
        raise ValidationError(
            f"Insufficient inventory for: {current['name']} "
            f"(requested: {quantity}, available: {current['inventoryCount']})"
        )

    await session.commit()
    await cache.invalidate(PRODUCT_CACHE_PREFIX)

    product = await queries.get_product(session, product_id)
    await publish_committed(channel, PRODUCTS, "inventory_updated", _event_data(product))

    if row.inventory_count < low_stock_threshold:
        await publish_alert(
            channel,
            "high",
            f'Inventory for product "{row.name}" is low: {row.inventory_count} left.',
        )
    return product


async def restore_stock(
    session: AsyncSession, channel: EventChannel, cache: Cache, product_id: str, quantity: int
) -> dict:
    """失敗した注文が引き当てた在庫を戻す"""
    if quantity < 1:
        raise ValidationError("quantity must be at least 1")

    result = await session.execute(
        update(products)
        .where(products.c.id == product_id)
        .values(inventory_count=products.c.inventory_count + quantity, updated_at=_now())
    )
    if result.rowcount == 0:
        await session.rollback()
        raise NotFoundError(f"Product {product_id} not found")
    await session.commit()
    await cache.invalidate(PRODUCT_CACHE_PREFIX)

    product = await queries.get_product(session, product_id, include_deleted=True)
    await publish_committed(channel, PRODUCTS, "inventory_updated", _event_data(product))
    logger.info("Restored %d units of %s", quantity, product_id)
    return product


async def soft_delete_products(
    session: AsyncSession, channel: EventChannel, cache: Cache, product_ids: list[str]
) -> int:
    now = _now()
    result = await session.execute(
        update(products)
        .where(products.c.id.in_(product_ids), products.c.is_deleted.is_(False))
        .values(is_deleted=True, deleted_at=now, updated_at=now)
    )
    await session.commit()
    await cache.invalidate(PRODUCT_CACHE_PREFIX)

    if result.rowcount:
        await publish_committed(channel, PRODUCTS, "products_deleted", {"productIds": product_ids})
    return result.rowcount

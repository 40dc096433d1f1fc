"""
Order Service — 書き込み側 (Command)

注文ステータス:
    pending, shipped, delivered, cancelled  — 管理者が任意の順で設定
    failed                                  — Saga の補償と在庫失敗
                                              コンシューマだけが設定
"""

import logging
import secrets
import string
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import insert, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.errors import NotFoundError, PersistenceFailure, ValidationError

from . import queries
from .tables import order_items, orders

logger = logging.getLogger(__name__)

ORDER_ID_PREFIX = "ORD-"
ORDER_ID_ALPHABET = string.ascii_uppercase + string.digits
ORDER_ID_LENGTH = 6
MAX_ORDER_ID_ATTEMPTS = 5

ADMIN_STATUSES = ("pending", "shipped", "delivered", "cancelled")
FAILED = "failed"
ALL_STATUSES = ADMIN_STATUSES + (FAILED,)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def generate_order_id() -> str:
    """ORD- に続けてランダムな英大文字・数字 6 桁"""
    suffix = "".join(secrets.choice(ORDER_ID_ALPHABET) for _ in range(ORDER_ID_LENGTH))
    return ORDER_ID_PREFIX + suffix


async def insert_order(
    session: AsyncSession, customer_id: str, items: list[dict], total: Decimal
) -> dict:
    """
    pending の注文を書き込む。items は productId, quantity とスナップショット
    価格を持つ。生成した注文 ID が衝突したら振り直す。
    """
    for attempt in range(1, MAX_ORDER_ID_ATTEMPTS + 1):
        pk = str(uuid4())
        order_id = generate_order_id()
        now = _now()
        try:
            await session.execute(
                insert(orders).values(
                    id=pk,
                    order_id=order_id,
                    customer_id=customer_id,
                    total=total,
                    status="pending",
                    created_at=now,
                    updated_at=now,
                )
            )
            await session.execute(
                insert(order_items),
                [
                    {
                        "order_pk": pk,
                        "position": position,
                        "product_id": item["productId"],
                        "quantity": item["quantity"],
                        "price": item["price"],
                    }
                    for position, item in enumerate(items)
                ],
            )
            await session.commit()
        except IntegrityError:
            await session.rollback()
            logger.warning("Order id %s already taken (attempt %d)", order_id, attempt)
            continue
        except SQLAlchemyError as e:
            await session.rollback()
            raise PersistenceFailure(f"Could not store order: {e}") from e
        return await queries.get_order(session, order_id)

    raise PersistenceFailure("Could not generate a unique order id")


async def update_status(session: AsyncSession, order_ref: str, status: str) -> dict:
    if status not in ADMIN_STATUSES:
        raise ValidationError(f"Invalid status {status}; expected one of {', '.join(ADMIN_STATUSES)}")
    return await _set_status(session, order_ref, status)


async def mark_failed(session: AsyncSession, order_ref: str, reason: str) -> dict:
    return await _set_status(session, order_ref, FAILED, failure_reason=reason)


async def _set_status(session: AsyncSession, order_ref: str, status: str, **extra) -> dict:
    result = await session.execute(
        update(orders)
        .where(queries.order_ref_clause(order_ref))
        .values(status=status, updated_at=_now(), **extra)
    )
    if result.rowcount == 0:
        await session.rollback()
        raise NotFoundError("Order not found")
    await session.commit()
    return await queries.get_order(session, order_ref)

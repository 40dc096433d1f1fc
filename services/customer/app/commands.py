"""
Customer Service — 書き込み側 (Command)

メールアドレスと電話番号は論理削除済みを含む全顧客で一意。削除済み
顧客のメールアドレスが黙って再利用されることはない。
書き込みのたびに顧客キャッシュを無効化する。
"""

import logging
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.cache import Cache
from services.common.errors import NotFoundError, ValidationError

from . import queries
from .tables import customers

logger = logging.getLogger(__name__)

CUSTOMER_CACHE_PREFIXES = ("customers:", "customer:")


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def _check_unique(
    session: AsyncSession, email: str, phone: str | None, exclude_id: str | None = None
) -> None:
    taken = customers.c.email == email
    if phone:
        taken = taken | (customers.c.phone == phone)
    stmt = select(customers.c.email, customers.c.phone).where(taken)
    if exclude_id:
        stmt = stmt.where(customers.c.id != exclude_id)
    for row in (await session.execute(stmt)).fetchall():
        if row.email == email:
            raise ValidationError(f"Email {email} is already registered")
        raise ValidationError(f"Phone {phone} is already registered")


async def create_customer(
    session: AsyncSession,
    cache: Cache,
    *,
    customer_name: str,
    email: str,
    phone: str | None = None,
    is_blocked: bool = False,
) -> dict:
    await _check_unique(session, email, phone)
    now = _now()
    customer_id = str(uuid4())
    try:
        await session.execute(
            insert(customers).values(
                id=customer_id,
                customer_name=customer_name,
                email=email,
                phone=phone,
                is_blocked=is_blocked,
                created_at=now,
                updated_at=now,
            )
        )
        await session.commit()
    except IntegrityError as e:
        # 同時登録との競合に負けた
        await session.rollback()
        raise ValidationError("Email or phone is already registered") from e
    await cache.invalidate(*CUSTOMER_CACHE_PREFIXES)
    logger.info("Customer %s registered", customer_id)
    return await queries.get_customer(session, customer_id)


async def update_customer(
    session: AsyncSession,
    cache: Cache,
    customer_id: str,
    *,
    customer_name: str,
    email: str,
    phone: str | None = None,
    is_blocked: bool = False,
) -> dict:
    if await queries.get_customer(session, customer_id) is None:
        raise NotFoundError("Customer not found")
    await _check_unique(session, email, phone, exclude_id=customer_id)
    try:
        await session.execute(
            update(customers)
            .where(customers.c.id == customer_id)
            .values(
                customer_name=customer_name,
                email=email,
                phone=phone,
                is_blocked=is_blocked,
                updated_at=_now(),
            )
        )
        await session.commit()
    except IntegrityError as e:
        await session.rollback()
        raise ValidationError("Email or phone is already registered") from e
    await cache.invalidate(*CUSTOMER_CACHE_PREFIXES)
    return await queries.get_customer(session, customer_id)


async def set_blocked(
    session: AsyncSession, cache: Cache, customer_id: str, is_blocked: bool
) -> dict:
    result = await session.execute(
        update(customers)
        .where(customers.c.id == customer_id, customers.c.deleted_at.is_(None))
        .values(is_blocked=is_blocked, updated_at=_now())
    )
    if result.rowcount == 0:
        await session.rollback()
        raise NotFoundError("Customer not found")
    await session.commit()
    await cache.invalidate(*CUSTOMER_CACHE_PREFIXES)
    logger.info("Customer %s %s", customer_id, "blocked" if is_blocked else "unblocked")
    return await queries.get_customer(session, customer_id)


async def soft_delete_customer(session: AsyncSession, cache: Cache, customer_id: str) -> None:
    now = _now()
    result = await session.execute(
        update(customers)
        .where(customers.c.id == customer_id, customers.c.deleted_at.is_(None))
        .values(deleted_at=now, updated_at=now)
    )
    if result.rowcount == 0:
        await session.rollback()
        raise NotFoundError("Customer not found")
    await session.commit()
    await cache.invalidate(*CUSTOMER_CACHE_PREFIXES)

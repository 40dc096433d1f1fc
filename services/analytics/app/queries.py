"""
Analytics Service — 読み取り側 (Query)
"""

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.schemas import iso

from .tables import analytics_events

DEFAULT_LIMIT = 50


def event_to_dict(row) -> dict:
    return {
        "id": row.id,
        "topic": row.topic,
        "event": row.event,
        "entityId": row.entity_id,
        "value": row.value,
        "data": row.payload,
        "timestamp": iso(row.created_at),
    }


async def recent_events(
    session: AsyncSession, limit: int = DEFAULT_LIMIT, event: str | None = None
) -> list[dict]:
    stmt = select(analytics_events).order_by(analytics_events.c.id.desc()).limit(limit)
    if event:
        stmt = stmt.where(analytics_events.c.event == event)
    result = await session.execute(stmt)
    return [event_to_dict(row) for row in result.fetchall()]


async def summary(session: AsyncSession) -> dict:
    """イベントタグごとの件数と、受け取った全 order_created の売上合計"""
    result = await session.execute(
        select(analytics_events.c.event, func.count())
        .group_by(analytics_events.c.event)
        .order_by(analytics_events.c.event)
    )
    counts = {event: count for event, count in result.fetchall()}
    revenue = await session.scalar(
        select(func.coalesce(func.sum(analytics_events.c.value), 0)).where(
            analytics_events.c.event == "order_created"
        )
    )
    return {
        "totalEvents": sum(counts.values()),
        "events": counts,
        "orderRevenue": float(revenue),
    }

"""
Alerts Service — アラートの保存と配信

アラートはまず保存し、それから接続中の全 WebSocket クライアントに送る。
配信ステータスはその送信結果を表す:

  pending ─▶ sent     1 つ以上のクライアントが受信した
          ─▶ failed   接続はあったが、どのクライアントも受信しなかった

誰も接続していなければ pending のまま残り、次に接続したクライアントが
接続時のスナップショットで受け取る。`new_alert` はまだ pending の状態で
送られるので、配信できたアラートには最終ステータスを載せた
`update_alert` が続く。
"""

import logging
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import delete, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.broadcast import Broadcaster
from services.common.errors import NotFoundError
from services.common.schemas import iso

from .tables import alerts

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 50

PENDING = "pending"
SENT = "sent"
FAILED = "failed"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def alert_to_dict(row) -> dict:
    return {
        "id": row.id,
        "type": row.type,
        "message": row.message,
        "status": row.status,
        "resolved": bool(row.resolved),
        "createdAt": iso(row.created_at),
        "updatedAt": iso(row.updated_at),
    }


async def get_alert(session: AsyncSession, alert_id: str) -> dict | None:
    row = (await session.execute(select(alerts).where(alerts.c.id == alert_id))).fetchone()
    return alert_to_dict(row) if row else None


async def list_alerts(session: AsyncSession, limit: int = DEFAULT_LIMIT) -> list[dict]:
    result = await session.execute(
        select(alerts).order_by(alerts.c.created_at.desc(), alerts.c.id).limit(limit)
    )
    return [alert_to_dict(row) for row in result.fetchall()]


async def create_alert(
    session: AsyncSession, broadcaster: Broadcaster, alert_type: str, message: str
) -> dict:
    now = _now()
    alert_id = str(uuid4())
    await session.execute(
        insert(alerts).values(
            id=alert_id,
            type=alert_type,
            message=message,
            status=PENDING,
            resolved=False,
            created_at=now,
            updated_at=now,
        )
    )
    await session.commit()
    alert = await get_alert(session, alert_id)

    connected = broadcaster.client_count
    delivered = await broadcaster.broadcast("new_alert", alert)
    if delivered:
        status = SENT
    elif connected:
        status = FAILED
    else:
        return alert

    await session.execute(
        update(alerts).where(alerts.c.id == alert_id).values(status=status, updated_at=_now())
    )
    await session.commit()
    logger.info("Alert %s (%s) %s to %d client(s)", alert_id, alert_type, status, delivered)
    alert = await get_alert(session, alert_id)
    if status == SENT:
        await broadcaster.broadcast("update_alert", alert)
    return alert


async def resolve_alert(session: AsyncSession, broadcaster: Broadcaster, alert_id: str) -> dict:
    result = await session.execute(
        update(alerts).where(alerts.c.id == alert_id).values(resolved=True, updated_at=_now())
    )
    if result.rowcount == 0:
        await session.rollback()
        raise NotFoundError("Alert not found")
    await session.commit()
    alert = await get_alert(session, alert_id)
    await broadcaster.broadcast("update_alert", alert)
    return alert


async def delete_alert(session: AsyncSession, broadcaster: Broadcaster, alert_id: str) -> None:
    result = await session.execute(delete(alerts).where(alerts.c.id == alert_id))
    if result.rowcount == 0:
        await session.rollback()
        raise NotFoundError("Alert not found")
    await session.commit()
    await broadcaster.broadcast("delete_alert", {"id": alert_id})


async def clear_alerts(session: AsyncSession, broadcaster: Broadcaster) -> int:
    result = await session.execute(delete(alerts))
    await session.commit()
    await broadcaster.broadcast("clear_alerts", {"deleted": result.rowcount})
    return result.rowcount

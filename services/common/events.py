"""
Common — イベントチャネル (Redis Streams)

トピックごとの永続的な Point-to-Point キュー。トピックは 1 本のストリーム
(`events:<topic>`) で、購読する各サービスは自分のコンシューマグループ
経由で読む。サービス内では各メッセージがちょうど 1 回ハンドラに届き、
購読サービス全体では全サービスが全メッセージを受け取る。

配信は at-least-once、ACK は手動:

  publish ──XADD──▶ events:orders ──XREADGROUP──▶ handler ──XACK

  - 未 ACK のエントリはコンシューマの pending リストに残り、
    同じ名前で再起動したときに再配信される
  - 解析できないメッセージは処理せずに ACK する（破棄）
  - ハンドラの例外はログに残し、メッセージはそのまま ACK する
"""

import asyncio
import json
import logging
from typing import Awaitable, Callable

import redis.asyncio as aioredis
from redis.exceptions import RedisError, ResponseError

from .errors import EventPublishFailure

logger = logging.getLogger(__name__)

ORDERS = "orders"
PRODUCTS = "products"
ANALYTICS = "analytics"
ALERTS = "alerts"

DEFAULT_BATCH = 10

Handler = Callable[[str, dict], Awaitable[None]]


def stream_key(topic: str) -> str:
    return f"events:{topic}"


def encode_envelope(event: str, data: dict) -> str:
    return json.dumps({"event": event, "data": data}, default=str)


def decode_envelope(raw: str) -> tuple[str, dict]:
    """ペイロードが正しいエンベロープでなければ ValueError を送出する。"""
    envelope = json.loads(raw)
    if not isinstance(envelope, dict) or not isinstance(envelope.get("event"), str):
        raise ValueError("envelope has no event tag")
    data = envelope.get("data") or {}
    if not isinstance(data, dict):
        raise ValueError("envelope data is not an object")
    return envelope["event"], data


class EventChannel:
    """発行・購読クライアント。注入されない限り Redis 接続を自前で持つ。"""

    def __init__(
        self,
        redis_url: str | None = None,
        *,
        client: aioredis.Redis | None = None,
        consumer_name: str = "consumer",
        block_ms: int = 1000,
    ) -> None:
        self._url = redis_url
        self._client = client
        self._owns_client = client is None
        self.consumer_name = consumer_name
        self.block_ms = block_ms

    async def connect(self) -> None:
        if self._client is None:
            self._client = aioredis.from_url(self._url, decode_responses=True)
            self._owns_client = True

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> aioredis.Redis:
        if self._client is None:
            raise RuntimeError("Event channel is not connected")
        return self._client

    # ── publish ─────────────────────────────────────

    async def publish(self, topic: str, event: str, data: dict) -> str:
        """トピックのストリームにメッセージを追記し、エントリ ID を返す。"""
        try:
            entry_id = await self.client.xadd(
                stream_key(topic), {"payload": encode_envelope(event, data)}
            )
        except RedisError as e:
            raise EventPublishFailure(f"Failed to publish {event} to {topic}: {e}") from e
        logger.debug("Published %s to %s (%s)", event, topic, entry_id)
        return entry_id

    # ── consume ─────────────────────────────────────

    async def ensure_group(self, topic: str, group: str) -> None:
        try:
            await self.client.xgroup_create(stream_key(topic), group, id="0", mkstream=True)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def poll(
        self,
        topic: str,
        group: str,
        handler: Handler,
        *,
        count: int | None = DEFAULT_BATCH,
        block_ms: int | None = None,
        pending: bool = False,
    ) -> int:
        """
        1 バッチ読み込んで処理する。pending=True の場合は新着ではなく、
        このコンシューマ自身の未 ACK エントリを読む。
        処理したエントリ数を返す。
        """
        response = await self.client.xreadgroup(
            group,
            self.consumer_name,
            {stream_key(topic): "0" if pending else ">"},
            count=count,
            block=None if pending else block_ms,
        )
        handled = 0
        for _stream, entries in response or []:
            for entry_id, fields in entries:
                await self._process(topic, group, entry_id, fields, handler)
                handled += 1
        return handled

    async def _process(
        self, topic: str, group: str, entry_id: str, fields: dict | None, handler: Handler
    ) -> None:
        try:
            event, data = decode_envelope((fields or {}).get("payload", ""))
        except ValueError:
            logger.error("Dropping unparseable message %s on %s", entry_id, topic)
            await self.client.xack(stream_key(topic), group, entry_id)
            return

        try:
            await handler(event, data)
            logger.info("Handled %s from %s", event, topic)
        except Exception:
            logger.exception("Handler failed for %s (%s) on %s", event, entry_id, topic)
        await self.client.xack(stream_key(topic), group, entry_id)

    async def consume(
        self,
        topic: str,
        group: str,
        handler: Handler,
        shutdown_event: asyncio.Event,
        *,
        prefetch: int | None = None,
    ) -> None:
        """shutdown_event がセットされるまで動く。バックグラウンドタスク用。"""
        await self.ensure_group(topic, group)
        logger.info("Consuming %s as %s/%s", topic, group, self.consumer_name)

        # 再起動前にこのコンシューマが ACK し残したものを再配信する
        while await self.poll(topic, group, handler, count=prefetch or DEFAULT_BATCH, pending=True):
            pass

        while not shutdown_event.is_set():
            try:
                await self.poll(
                    topic,
                    group,
                    handler,
                    count=prefetch or DEFAULT_BATCH,
                    block_ms=self.block_ms,
                )
            except RedisError:
                logger.exception("Reading %s failed; retrying", topic)
                await asyncio.sleep(1.0)


async def publish_alert(channel: EventChannel, alert_type: str, message: str) -> None:
    """アラートサービスにアラート記録を依頼する。ベストエフォート（失敗はログのみ）。"""
    try:
        await channel.publish(ALERTS, "create_alert", {"type": alert_type, "message": message})
    except EventPublishFailure:
        logger.exception("Could not publish alert: %s", message)


async def publish_committed(channel: EventChannel, topic: str, event: str, data: dict) -> bool:
    """
    コミット済みの書き込みについてイベントを発行する。書き込みはどちらに
    しても確定しているので、失敗はログに残して False を返す。
    """
    try:
        await channel.publish(topic, event, data)
    except EventPublishFailure:
        logger.exception("Committed change not announced: %s on %s", event, topic)
        return False
    return True

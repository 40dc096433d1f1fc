"""
Common — WebSocket ファンアウト

Fire-and-forget 方式: 接続中の全クライアントにエンベロープ
{"event": <tag>, "data": <payload>} を送る。リプレイもバックプレッシャーも
なく、受信に失敗したクライアントは切り離す。クライアントは再接続で
再同期するため、どのフィードも接続時にスナップショットを送る。
"""

import json
import logging

from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect

logger = logging.getLogger(__name__)


class Broadcaster:
    def __init__(self) -> None:
        self._clients: set[WebSocket] = set()

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def register(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self._clients.add(websocket)
        logger.info("WebSocket client connected (%d total)", len(self._clients))

    def unregister(self, websocket: WebSocket) -> None:
        if websocket in self._clients:
            self._clients.discard(websocket)
            logger.info("WebSocket client disconnected (%d total)", len(self._clients))

    @staticmethod
    async def send(websocket: WebSocket, event: str, data) -> None:
        await websocket.send_text(json.dumps({"event": event, "data": data}, default=str))

    async def broadcast(self, event: str, data) -> int:
        """エンベロープを渡せたクライアント数を返す。"""
        delivered = 0
        for websocket in list(self._clients):
            try:
                await self.send(websocket, event, data)
                delivered += 1
            except (WebSocketDisconnect, RuntimeError):
                self.unregister(websocket)
        return delivered

    async def serve(self, websocket: WebSocket, on_connect=None) -> None:
        """
        切断されるまでクライアントを登録しておく。on_connect は accept 直後に
        websocket を引数に await される（スナップショット送信用）。
        """
        await self.register(websocket)
        try:
            if on_connect is not None:
                await on_connect(websocket)
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            self.unregister(websocket)

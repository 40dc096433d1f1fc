"""
Order Service — Product Service 用 HTTP クライアント

Order Service が商品データを見る唯一の経路。通信エラーと 5xx は
DownstreamUnavailable になり、4xx は Product Service 自身のエラー
メッセージをそのまま持つ。
"""

import httpx

from services.common.errors import DownstreamUnavailable, NotFoundError, ValidationError


class ProductClient:
    def __init__(
        self,
        base_url: str,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    async def connect(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
            self._owns_client = True

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, path: str, **kwargs):
        if self._client is None:
            raise RuntimeError("Product client is not connected")
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise DownstreamUnavailable(f"Product service unavailable: {e}") from e

        if resp.status_code >= 500:
            raise DownstreamUnavailable(f"Product service error ({resp.status_code})")
        if resp.status_code == 404:
            raise NotFoundError(_error_message(resp, "Product not found"))
        if resp.status_code >= 400:
            raise ValidationError(_error_message(resp, "Product request rejected"))
        return resp.json()

    async def get_many(self, product_ids: list[str]) -> list[dict]:
        """一括取得。論理削除済みの商品は isDeleted 付きで返る。"""
        if not product_ids:
            return []
        return await self._request("GET", "/products/bulk", params={"ids": ",".join(product_ids)})

    async def list_products(self) -> list[dict]:
        return await self._request("GET", "/products")

    async def counts(self) -> dict:
        return await self._request("GET", "/products/counts")

    async def decrease_stock(self, product_id: str, quantity: int) -> dict:
        try:
            return await self._request(
                "PATCH", f"/products/{product_id}/decrease-stock", json={"quantity": quantity}
            )
        except NotFoundError as e:
            # 検証から引き当てまでの間に商品が消えたら入力エラー扱い
            raise ValidationError(e.message) from e

    async def restore_stock(self, product_id: str, quantity: int) -> dict:
        return await self._request(
            "PATCH", f"/products/{product_id}/restore-stock", json={"quantity": quantity}
        )


def _error_message(resp: httpx.Response, default: str) -> str:
    try:
        body = resp.json()
    except ValueError:
        return default
    if isinstance(body, dict):
        return body.get("error") or body.get("detail") or default
    return default

"""
API Gateway

ダッシュボードのフロントエンド用の唯一の入口。データは持たない:
/api/<resource>/... のリクエストはそのリソースを所有するサービスに転送し、
上流のステータスとボディをそのまま返す。

  ┌──────────┐     ┌─────────┐     ┌──────────────────┐
  │Dashboard │────▶│ Gateway │────▶│ Order Service    │  orders, sales
  │ Frontend │     │         │────▶│ Product Service  │  products, categories
  │          │     │         │────▶│ Customer Service │  customers
  │          │     │         │────▶│ Alerts Service   │  alerts
  │          │     │         │────▶│ Analytics Svc    │  analytics
  └──────────┘     └─────────┘     └──────────────────┘

集約するのは /api/dashboard だけで、全体メトリクスと直近のアラートを
並列に取得する。
"""

import asyncio
import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import APIRouter, Depends, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from services.common.errors import DownstreamUnavailable, NotFoundError, install_error_handlers
from services.common.log import configure_logging, install_request_logging

from .config import GatewaySettings

logger = logging.getLogger(__name__)

FORWARDED_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]
DASHBOARD_ALERTS = 10


class Gateway:
    def __init__(self, settings: GatewaySettings, *, client: httpx.AsyncClient | None = None):
        self.settings = settings
        self.routes = settings.routes()
        self._client = client
        self._owns_client = client is None

    async def connect(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.settings.http_timeout)
            self._owns_client = True

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def upstream_url(self, resource: str, path: str = "") -> str:
        base = self.routes.get(resource)
        if base is None:
            raise NotFoundError(f"Unknown resource {resource}")
        url = f"{base.rstrip('/')}/{resource}"
        return f"{url}/{path}" if path else url

    async def send(self, method: str, url: str, **kwargs) -> httpx.Response:
        if self._client is None:
            raise RuntimeError("Gateway is not connected")
        try:
            return await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.warning("%s %s failed: %s", method, url, e)
            raise DownstreamUnavailable("Service unavailable") from e

    async def forward(self, request: Request, resource: str, path: str = "") -> Response:
        headers = {}
        if "content-type" in request.headers:
            headers["content-type"] = request.headers["content-type"]
        upstream = await self.send(
            request.method,
            self.upstream_url(resource, path),
            params=list(request.query_params.multi_items()),
            content=await request.body(),
            headers=headers,
        )
        return Response(
            content=upstream.content,
            status_code=upstream.status_code,
            media_type=upstream.headers.get("content-type"),
        )

    async def get_json(self, resource: str, path: str = "", **params):
        resp = await self.send("GET", self.upstream_url(resource, path), params=params)
        if resp.status_code >= 400:
            raise DownstreamUnavailable("Service unavailable")
        return resp.json()


def get_gateway(request: Request) -> Gateway:
    return request.app.state.gateway


router = APIRouter()


@router.get("/api/dashboard")
async def get_dashboard(gw: Gateway = Depends(get_gateway)):
    metrics, alerts = await asyncio.gather(
        gw.get_json("sales", "metrics"),
        gw.get_json("alerts", limit=DASHBOARD_ALERTS),
    )
    return {"metrics": metrics, "alerts": alerts}


@router.api_route("/api/{resource}", methods=FORWARDED_METHODS)
async def forward_collection(resource: str, request: Request, gw: Gateway = Depends(get_gateway)):
    return await gw.forward(request, resource)


@router.api_route("/api/{resource}/{path:path}", methods=FORWARDED_METHODS)
async def forward_item(
    resource: str, path: str, request: Request, gw: Gateway = Depends(get_gateway)
):
    return await gw.forward(request, resource, path)


@router.get("/health")
async def health():
    return {"status": "ok", "service": "gateway"}


def create_app(gateway: Gateway | None = None) -> FastAPI:
    if gateway is None:
        settings = GatewaySettings.from_env()
        configure_logging("gateway", settings.log_level)
        gateway = Gateway(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await gateway.connect()
        yield
        await gateway.close()

    app = FastAPI(title="API Gateway", lifespan=lifespan)
    app.state.gateway = gateway

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(gateway.settings.cors_origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )
    install_error_handlers(app)
    install_request_logging(app)
    app.include_router(router)
    return app


app = create_app()

"""
Order Service — FastAPI エントリポイント

注文は注文作成 Saga (saga.py) で作る。書き込みのたびに売上集計を
再計算し、/sales/* で返すとともに /ws フィードで配信する。
"""

from contextlib import asynccontextmanager
from datetime import timedelta

import httpx
import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, FastAPI, Query, Request, WebSocket
from pydantic import Field

from services.common.container import ServiceContainer
from services.common.errors import NotFoundError, install_error_handlers
from services.common.events import ORDERS, PRODUCTS, publish_committed
from services.common.log import configure_logging, install_request_logging
from services.common.schemas import CamelModel

from . import commands, queries
from .config import OrderSettings
from .consumer import ProductEventHandler
from .product_client import ProductClient
from .saga import OrderCreationSaga
from .sales import (
    SalesAggregator,
    low_products,
    monthly_sales,
    overall_metrics,
    sales_overview,
    top_products,
    yearly_sales,
)
from .tables import metadata

ORDER_CACHE_PREFIX = "orders:"


class OrderContainer(ServiceContainer):
    settings: OrderSettings

    def __init__(
        self,
        settings: OrderSettings,
        *,
        redis: aioredis.Redis | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        super().__init__(settings, metadata, redis=redis)
        self.products = ProductClient(
            settings.product_service_url, client=http_client, timeout=settings.http_timeout
        )
        self.saga = OrderCreationSaga(
            self.session,
            self.products,
            self.channel,
            inventory_mode=settings.inventory_mode,
            restore_stock=settings.restore_stock_on_failure,
        )
        self.sales = SalesAggregator(self.session, self.products, self.broadcaster, self.channel)
        self.product_events = ProductEventHandler(self.session, self.channel, self.sales)

    async def connect(self) -> None:
        await super().connect()
        await self.products.connect()

    async def close(self) -> None:
        await super().close()
        await self.products.close()

    def start_consumers(self) -> None:
        self.start_consumer(PRODUCTS, "orders", self.product_events.handle_event)


def get_container(request: Request) -> OrderContainer:
    return request.app.state.container


router = APIRouter()


# ── Request Models ───────────────────────────────


class OrderItemRequest(CamelModel):
    product_id: str
    quantity: int = Field(ge=1)
    price: float | None = Field(default=None, ge=0)


class CreateOrderRequest(CamelModel):
    customer_id: str = Field(min_length=1)
    items: list[OrderItemRequest] = Field(min_length=1)
    total: float | None = None


class UpdateStatusRequest(CamelModel):
    status: str


# ── Orders ───────────────────────────────────────


@router.post("/orders", status_code=201)
async def create_order(req: CreateOrderRequest, c: OrderContainer = Depends(get_container)):
    order = await c.saga.execute(
        req.customer_id,
        [{"productId": item.product_id, "quantity": item.quantity} for item in req.items],
        req.total,
    )
    await c.cache.invalidate(ORDER_CACHE_PREFIX)
    await c.sales.refresh()
    return order


@router.get("/orders")
async def list_orders(c: OrderContainer = Depends(get_container)):
    async with c.session() as session:
        return await queries.list_orders(session)


@router.get("/orders/query")
async def query_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: str = "",
    sort_by: str = Query("createdAt", alias="sortBy"),
    sort_order: str = Query("desc", alias="sortOrder"),
    status: str | None = None,
    c: OrderContainer = Depends(get_container),
):
    if sort_by not in queries.SORTABLE:
        sort_by = "createdAt"
    if sort_order not in ("asc", "desc"):
        sort_order = "desc"
    if status not in commands.ALL_STATUSES:
        status = None

    async def load():
        async with c.session() as session:
            return await queries.query_orders(
                session,
                page=page,
                limit=limit,
                search=search,
                sort_by=sort_by,
                sort_order=sort_order,
                status=status,
            )

    key = f"{ORDER_CACHE_PREFIX}query:{page}:{limit}:{search}:{sort_by}:{sort_order}:{status or ''}"
    return await c.cache.get_or_load(key, load)


@router.get("/orders/{order_id}")
async def get_order(order_id: str, c: OrderContainer = Depends(get_container)):
    async with c.session() as session:
        order = await queries.get_order(session, order_id)
    if not order:
        raise NotFoundError("Order not found")
    return order


@router.patch("/orders/{order_id}/status")
async def update_order_status(
    order_id: str, req: UpdateStatusRequest, c: OrderContainer = Depends(get_container)
):
    async with c.session() as session:
        order = await commands.update_status(session, order_id, req.status)
    await c.cache.invalidate(ORDER_CACHE_PREFIX)
    await publish_committed(c.channel, ORDERS, "order_status_updated", order)
    await c.sales.refresh()
    return order


# ── Sales rollups (売上集計) ──────────────────────


@router.get("/sales/overview")
async def get_sales_overview(c: OrderContainer = Depends(get_container)):
    async with c.session() as session:
        return await sales_overview(session)


@router.get("/sales/monthly")
async def get_monthly_sales(c: OrderContainer = Depends(get_container)):
    async with c.session() as session:
        return await monthly_sales(session)


@router.get("/sales/yearly")
async def get_yearly_sales(c: OrderContainer = Depends(get_container)):
    async with c.session() as session:
        return await yearly_sales(session)


@router.get("/sales/top-products")
async def get_top_products(
    limit: int = Query(10, ge=1, le=100), c: OrderContainer = Depends(get_container)
):
    async with c.session() as session:
        return await top_products(session, c.products, limit=limit)


@router.get("/sales/low-products")
async def get_low_products(
    days: int = Query(30, ge=1, le=365),
    limit: int = Query(10, ge=1, le=100),
    c: OrderContainer = Depends(get_container),
):
    async with c.session() as session:
        return await low_products(session, c.products, window=timedelta(days=days), limit=limit)


@router.get("/sales/metrics")
async def get_overall_metrics(c: OrderContainer = Depends(get_container)):
    async with c.session() as session:
        return await overall_metrics(session, c.products)


@router.websocket("/ws")
async def sales_feed(websocket: WebSocket):
    c: OrderContainer = websocket.app.state.container
    await c.broadcaster.serve(websocket, c.sales.send_snapshot)


@router.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}


def create_app(container: OrderContainer | None = None) -> FastAPI:
    if container is None:
        settings = OrderSettings.from_env()
        configure_logging(settings.service_name, settings.log_level)
        container = OrderContainer(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await container.connect()
        if container.settings.run_consumers:
            container.start_consumers()
        yield
        await container.close()

    app = FastAPI(title="Order Service", lifespan=lifespan)
    app.state.container = container
    install_error_handlers(app)
    install_request_logging(app)
    app.include_router(router)
    return app


app = create_app()

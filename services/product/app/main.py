"""
Product Service — FastAPI エントリポイント

商品とカテゴリを所有する。CRUD に加えて、注文 Saga が使う 2 つの在庫操作
(decrease-stock / restore-stock) と、注文検証用の一括取得を公開する。

INVENTORY_MODE=async のときは order_created イベントも購読し、自分で
在庫を減らす（consumer.py 参照）。
"""

from contextlib import asynccontextmanager
from decimal import Decimal

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, FastAPI, Query, Request
from pydantic import Field

from services.common.container import ServiceContainer
from services.common.errors import NotFoundError, ValidationError, install_error_handlers
from services.common.events import ORDERS
from services.common.log import configure_logging, install_request_logging
from services.common.schemas import CamelModel

from . import commands, queries
from .config import ASYNC, ProductSettings
from .consumer import InventoryReconciler
from .tables import metadata


class ProductContainer(ServiceContainer):
    settings: ProductSettings

    def __init__(self, settings: ProductSettings, *, redis: aioredis.Redis | None = None):
        super().__init__(settings, metadata, redis=redis)
        self.reconciler = InventoryReconciler(
            self.session,
            self.channel,
            self.cache,
            low_stock_threshold=settings.low_stock_threshold,
        )

    def start_consumers(self) -> None:
        if self.settings.inventory_mode == ASYNC:
            self.start_consumer(ORDERS, "products", self.reconciler.handle_event, prefetch=1)


def get_container(request: Request) -> ProductContainer:
    return request.app.state.container


router = APIRouter()


# ── Request Models ───────────────────────────────


class CreateCategoryRequest(CamelModel):
    name: str = Field(min_length=1, max_length=100)
    description: str | None = None


class CreateProductRequest(CamelModel):
    name: str = Field(min_length=1, max_length=200)
    category: str
    price: Decimal = Field(ge=0)
    inventory_count: int = Field(default=0, ge=0)


class UpdateProductRequest(CamelModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    category: str | None = None
    price: Decimal | None = Field(default=None, ge=0)


class InventoryRequest(CamelModel):
    inventory_count: int = Field(ge=0)


class StockChangeRequest(CamelModel):
    quantity: int = Field(ge=1)


class BulkDeleteRequest(CamelModel):
    product_ids: list[str]


# ── Categories ───────────────────────────────────


@router.post("/categories", status_code=201)
async def create_category(req: CreateCategoryRequest, c: ProductContainer = Depends(get_container)):
    async with c.session() as session:
        return await commands.create_category(session, req.name, req.description)


@router.get("/categories")
async def list_categories(c: ProductContainer = Depends(get_container)):
    async with c.session() as session:
        return await queries.list_categories(session)


@router.get("/categories/{category_id}")
async def get_category(category_id: str, c: ProductContainer = Depends(get_container)):
    async with c.session() as session:
        category = await queries.get_category(session, category_id)
    if not category:
        raise NotFoundError("Category not found")
    return category


# ── Products: queries ────────────────────────────


@router.get("/products")
async def list_products(c: ProductContainer = Depends(get_container)):
    async def load():
        async with c.session() as session:
            return await queries.list_products(session)

    return await c.cache.get_or_load("products:all", load)


@router.get("/products/paginated")
async def list_products_page(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1),
    c: ProductContainer = Depends(get_container),
):
    limit = min(limit, 100)

    async def load():
        async with c.session() as session:
            return await queries.list_products_page(session, page, limit)

    return await c.cache.get_or_load(f"products:page:{page}:{limit}", load)


@router.get("/products/counts")
async def count_products(c: ProductContainer = Depends(get_container)):
    async with c.session() as session:
        return await queries.count_products(session)


@router.get("/products/bulk")
async def get_products_bulk(ids: str = "", c: ProductContainer = Depends(get_container)):
    product_ids = [pid.strip() for pid in ids.split(",") if pid.strip()]
    if not product_ids:
        raise ValidationError("Product IDs are required")
    async with c.session() as session:
        return await queries.get_products_by_ids(session, product_ids)


@router.get("/products/{product_id}")
async def get_product(product_id: str, c: ProductContainer = Depends(get_container)):
    async with c.session() as session:
        product = await queries.get_product(session, product_id)
    if not product:
        raise NotFoundError("Product not found")
    return product


# ── Products: commands ───────────────────────────


@router.post("/products", status_code=201)
async def create_product(req: CreateProductRequest, c: ProductContainer = Depends(get_container)):
    async with c.session() as session:
        return await commands.create_product(
            session,
            c.channel,
            c.cache,
            name=req.name,
            category_id=req.category,
            price=req.price,
            inventory_count=req.inventory_count,
        )


@router.patch("/products/bulk-delete")
async def bulk_delete_products(req: BulkDeleteRequest, c: ProductContainer = Depends(get_container)):
    if not req.product_ids:
        raise ValidationError("productIds must be a non-empty array")
    async with c.session() as session:
        deleted = await commands.soft_delete_products(session, c.channel, c.cache, req.product_ids)
    return {"message": f"{deleted} products soft deleted successfully", "deleted": deleted}


@router.patch("/products/{product_id}")
async def update_product(
    product_id: str, req: UpdateProductRequest, c: ProductContainer = Depends(get_container)
):
    changes = {}
    if req.name is not None:
        changes["name"] = req.name
    if req.category is not None:
        changes["category_id"] = req.category
    if req.price is not None:
        changes["price"] = req.price
    async with c.session() as session:
        return await commands.update_product(session, c.channel, c.cache, product_id, changes)


@router.patch("/products/{product_id}/inventory")
async def set_inventory(
    product_id: str, req: InventoryRequest, c: ProductContainer = Depends(get_container)
):
    async with c.session() as session:
        return await commands.set_inventory(
            session, c.channel, c.cache, product_id, req.inventory_count
        )


@router.patch("/products/{product_id}/decrease-stock")
async def decrease_stock(
    product_id: str, req: StockChangeRequest, c: ProductContainer = Depends(get_container)
):
    async with c.session() as session:
        return await commands.decrease_stock(
            session,
            c.channel,
            c.cache,
            product_id,
            req.quantity,
            low_stock_threshold=c.settings.low_stock_threshold,
        )


@router.patch("/products/{product_id}/restore-stock")
async def restore_stock(
    product_id: str, req: StockChangeRequest, c: ProductContainer = Depends(get_container)
):
    async with c.session() as session:
        return await commands.restore_stock(session, c.channel, c.cache, product_id, req.quantity)


@router.get("/health")
async def health():
    return {"status": "ok", "service": "product-service"}


def create_app(container: ProductContainer | None = None) -> FastAPI:
    if container is None:
        settings = ProductSettings.from_env()
        configure_logging(settings.service_name, settings.log_level)
        container = ProductContainer(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await container.connect()
        if container.settings.run_consumers:
            container.start_consumers()
        yield
        await container.close()

    app = FastAPI(title="Product Service", lifespan=lifespan)
    app.state.container = container
    install_error_handlers(app)
    install_request_logging(app)
    app.include_router(router)
    return app


app = create_app()

"""
共通フィクスチャ: ストアはすべて tmp_path 配下の SQLite ファイルで動き、
Redis クライアントはそれぞれ専用のインメモリ fakeredis サーバーにつながる。
"""

import fakeredis
import httpx
import pytest

from services.common.config import ServiceSettings


@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()


@pytest.fixture
def redis_client(redis_server):
    return fakeredis.FakeAsyncRedis(server=redis_server, decode_responses=True)


@pytest.fixture
def make_settings(tmp_path):
    """専用の DB ファイルを持ち、バックグラウンドコンシューマを起動しないサービス設定"""

    def make(settings_cls=ServiceSettings, name="service", **overrides):
        values = {
            "service_name": name,
            "database_url": f"sqlite+aiosqlite:///{tmp_path / name}.db",
            "consumer_name": f"{name}-test",
            "run_consumers": False,
        }
        values.update(overrides)
        return settings_cls(**values)

    return make


@pytest.fixture
async def product_container(make_settings, redis_client):
    from services.product.app.config import ProductSettings
    from services.product.app.main import ProductContainer

    container = ProductContainer(make_settings(ProductSettings, "products"), redis=redis_client)
    await container.connect()
    yield container
    await container.close()


@pytest.fixture
async def product_api(product_container):
    """プロセス内で動く Product Service 用の HTTP クライアント"""
    from services.product.app.main import create_app

    transport = httpx.ASGITransport(app=create_app(product_container))
    async with httpx.AsyncClient(transport=transport, base_url="http://product") as client:
        yield client


@pytest.fixture
def add_product(product_api):
    """API 経由で商品を作る（カテゴリは初回のみ作成）"""
    categories = {}

    async def add(name="Mug", price=12.5, inventory_count=5, category="Kitchen"):
        if category not in categories:
            resp = await product_api.post("/categories", json={"name": category})
            assert resp.status_code == 201
            categories[category] = resp.json()["id"]
        resp = await product_api.post(
            "/products",
            json={
                "name": name,
                "category": categories[category],
                "price": price,
                "inventoryCount": inventory_count,
            },
        )
        assert resp.status_code == 201, resp.text
        return resp.json()

    return add


@pytest.fixture
def topic_events(redis_client):
    """これまでにトピックへ発行された全 (event, data)"""
    from services.common.events import decode_envelope, stream_key

    async def read(topic):
        entries = await redis_client.xrange(stream_key(topic))
        return [decode_envelope(fields["payload"]) for _id, fields in entries]

    return read

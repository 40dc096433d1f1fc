import asyncio
import re

import httpx
import pytest

from services.common.errors import EventPublishFailure, ValidationError
from services.common.events import ALERTS, ANALYTICS, ORDERS
from services.order.app.config import OrderSettings
from services.order.app.main import OrderContainer, create_app


@pytest.fixture
async def order_container(make_settings, redis_client, product_api):
    settings = make_settings(OrderSettings, "orders", product_service_url="http://product")
    container = OrderContainer(settings, redis=redis_client, http_client=product_api)
    await container.connect()
    yield container
    await container.close()


@pytest.fixture
async def order_api(order_container):
    transport = httpx.ASGITransport(app=create_app(order_container))
    async with httpx.AsyncClient(transport=transport, base_url="http://order") as client:
        yield client


async def stock_of(product_api, product_id):
    return (await product_api.get(f"/products/{product_id}")).json()["inventoryCount"]


def created(events):
    return [data for event, data in events if event == "order_created"]


async def test_valid_order_is_created_with_computed_total(
    order_api, product_api, add_product, topic_events
):
    mug = await add_product(name="Mug", price=12.5, inventory_count=5)
    lamp = await add_product(name="Lamp", price=30, inventory_count=2)

    resp = await order_api.post(
        "/orders",
        json={
            "customerId": "cust-1",
            "items": [
                {"productId": mug["id"], "quantity": 2},
                {"productId": lamp["id"], "quantity": 1},
            ],
        },
    )

    assert resp.status_code == 201, resp.text
    order = resp.json()
    assert re.fullmatch(r"ORD-[A-Z0-9]{6}", order["orderId"])
    assert order["status"] == "pending"
    assert order["total"] == 55.0
    assert [i["price"] for i in order["items"]] == [12.5, 30.0]
    assert await stock_of(product_api, mug["id"]) == 3
    assert await stock_of(product_api, lamp["id"]) == 1

    events = created(await topic_events(ORDERS))
    assert len(events) == 1
    assert events[0]["orderId"] == order["orderId"]
    assert events[0]["total"] == 55.0


async def test_client_total_and_prices_are_not_trusted(order_api, add_product):
    mug = await add_product(name="Mug", price=10, inventory_count=5)

    resp = await order_api.post(
        "/orders",
        json={
            "customerId": "cust-1",
            "items": [{"productId": mug["id"], "quantity": 2, "price": 0.01}],
            "total": 0.02,
        },
    )

    assert resp.status_code == 201
    assert resp.json()["total"] == 20.0
    assert resp.json()["items"][0]["price"] == 10.0


async def test_invalid_order_lists_every_problem_and_stores_nothing(
    order_api, product_api, add_product, topic_events
):
    mug = await add_product(name="Mug", inventory_count=1)
    lamp = await add_product(name="Lamp", inventory_count=0)

    resp = await order_api.post(
        "/orders",
        json={
            "customerId": "cust-1",
            "items": [
                {"productId": mug["id"], "quantity": 2},
                {"productId": lamp["id"], "quantity": 1},
                {"productId": "ghost", "quantity": 1},
            ],
        },
    )

    assert resp.status_code == 400
    message = resp.json()["error"]
    assert "Products not found: ghost" in message
    assert "Insufficient inventory for: Mug (requested: 2, available: 1)" in message
    assert "Lamp (requested: 1, available: 0)" in message
    assert (await order_api.get("/orders")).json() == []
    assert created(await topic_events(ORDERS)) == []
    assert await stock_of(product_api, mug["id"]) == 1


async def test_quantities_for_the_same_product_are_summed(order_api, add_product):
    mug = await add_product(name="Mug", inventory_count=3)

    resp = await order_api.post(
        "/orders",
        json={
            "customerId": "cust-1",
            "items": [
                {"productId": mug["id"], "quantity": 2},
                {"productId": mug["id"], "quantity": 2},
            ],
        },
    )

    assert resp.status_code == 400
    assert resp.json()["error"] == "Insufficient inventory for: Mug (requested: 4, available: 3)"


async def test_empty_or_malformed_orders_are_rejected(order_api):
    assert (await order_api.post("/orders", json={"customerId": "c", "items": []})).status_code == 400
    resp = await order_api.post(
        "/orders", json={"customerId": "c", "items": [{"productId": "p", "quantity": 0}]}
    )
    assert resp.status_code == 400


async def test_deleted_product_cannot_be_ordered(order_api, product_api, add_product):
    vase = await add_product(name="Vase", inventory_count=5)
    await product_api.patch("/products/bulk-delete", json={"productIds": [vase["id"]]})

    resp = await order_api.post(
        "/orders", json={"customerId": "c", "items": [{"productId": vase["id"], "quantity": 1}]}
    )

    assert resp.status_code == 400
    assert resp.json()["error"] == "Products not available: Vase"


async def test_two_orders_for_the_last_units_only_one_wins(order_api, product_api, add_product):
    mug = await add_product(name="Mug", inventory_count=5)
    body = {"customerId": "cust-1", "items": [{"productId": mug["id"], "quantity": 3}]}

    first, second = await asyncio.gather(
        order_api.post("/orders", json=body), order_api.post("/orders", json=body)
    )

    assert sorted([first.status_code, second.status_code]) == [201, 400]
    assert await stock_of(product_api, mug["id"]) == 2


async def test_reservation_failure_restores_stock_and_marks_order_failed(
    order_container, order_api, product_api, add_product, topic_events, monkeypatch
):
    mug = await add_product(name="Mug", inventory_count=5)
    lamp = await add_product(name="Lamp", inventory_count=5)

    real_decrease = order_container.products.decrease_stock

    async def decrease_then_fail(product_id, quantity):
        if product_id == lamp["id"]:
            raise ValidationError("Insufficient inventory for: Lamp (requested: 1, available: 0)")
        return await real_decrease(product_id, quantity)

    monkeypatch.setattr(order_container.products, "decrease_stock", decrease_then_fail)

    resp = await order_api.post(
        "/orders",
        json={
            "customerId": "cust-9",
            "items": [
                {"productId": mug["id"], "quantity": 2},
                {"productId": lamp["id"], "quantity": 1},
            ],
        },
    )

    assert resp.status_code == 400
    assert await stock_of(product_api, mug["id"]) == 5

    [order] = (await order_api.get("/orders")).json()
    assert order["status"] == "failed"
    assert order["failureReason"].startswith("Insufficient inventory for: Lamp")
    assert created(await topic_events(ORDERS)) == []

    alerts = [data for event, data in await topic_events(ALERTS) if data["type"] == "critical"]
    assert alerts == [
        {
            "type": "critical",
            "message": f"Order {order['orderId']} for customer cust-9 failed: "
            "Insufficient inventory for: Lamp (requested: 1, available: 0)",
        }
    ]


async def test_publish_failure_compensates_and_returns_503(
    order_container, order_api, product_api, add_product, monkeypatch
):
    mug = await add_product(name="Mug", inventory_count=5)
    real_publish = order_container.channel.publish

    async def publish(topic, event, data):
        if topic == ORDERS:
            raise EventPublishFailure("Failed to publish order_created to orders: down")
        return await real_publish(topic, event, data)

    monkeypatch.setattr(order_container.channel, "publish", publish)

    resp = await order_api.post(
        "/orders", json={"customerId": "c", "items": [{"productId": mug["id"], "quantity": 2}]}
    )

    assert resp.status_code == 503
    assert await stock_of(product_api, mug["id"]) == 5
    [order] = (await order_api.get("/orders")).json()
    assert order["status"] == "failed"


def fail_product_events(product_container, monkeypatch):
    real_publish = product_container.channel.publish

    async def publish(topic, event, data):
        if event == "inventory_updated":
            raise EventPublishFailure(f"Failed to publish {event} to {topic}: down")
        return await real_publish(topic, event, data)

    monkeypatch.setattr(product_container.channel, "publish", publish)


async def test_order_succeeds_when_stock_event_cannot_be_published(
    product_container, order_api, product_api, add_product, monkeypatch
):
    mug = await add_product(name="Mug", inventory_count=5)
    fail_product_events(product_container, monkeypatch)

    resp = await order_api.post(
        "/orders", json={"customerId": "c", "items": [{"productId": mug["id"], "quantity": 3}]}
    )

    assert resp.status_code == 201, resp.text
    assert resp.json()["status"] == "pending"
    assert await stock_of(product_api, mug["id"]) == 2


async def test_compensation_restores_stock_when_stock_events_fail(
    product_container, order_container, order_api, product_api, add_product, monkeypatch
):
    mug = await add_product(name="Mug", inventory_count=5)
    fail_product_events(product_container, monkeypatch)

    async def publish(topic, event, data):
        raise EventPublishFailure("Failed to publish order_created to orders: down")

    monkeypatch.setattr(order_container.channel, "publish", publish)

    resp = await order_api.post(
        "/orders", json={"customerId": "c", "items": [{"productId": mug["id"], "quantity": 3}]}
    )

    assert resp.status_code == 503
    assert await stock_of(product_api, mug["id"]) == 5
    [order] = (await order_api.get("/orders")).json()
    assert order["status"] == "failed"


async def test_stock_is_kept_when_restore_is_disabled(
    make_settings, redis_client, product_api, add_product, monkeypatch
):
    settings = make_settings(
        OrderSettings, "orders-norestore", product_service_url="http://product",
        restore_stock_on_failure=False,
    )
    container = OrderContainer(settings, redis=redis_client, http_client=product_api)
    await container.connect()
    try:
        mug = await add_product(name="Mug", inventory_count=5)

        async def fail(topic, event, data):
            raise EventPublishFailure("down")

        monkeypatch.setattr(container.channel, "publish", fail)
        with pytest.raises(EventPublishFailure):
            await container.saga.execute("c", [{"productId": mug["id"], "quantity": 2}])
        assert await stock_of(product_api, mug["id"]) == 3
    finally:
        await container.close()


async def test_async_inventory_mode_leaves_stock_to_the_product_service(
    make_settings, redis_client, product_api, add_product, topic_events
):
    settings = make_settings(
        OrderSettings, "orders-async", product_service_url="http://product", inventory_mode="async"
    )
    container = OrderContainer(settings, redis=redis_client, http_client=product_api)
    await container.connect()
    try:
        mug = await add_product(name="Mug", inventory_count=5)
        order = await container.saga.execute("c", [{"productId": mug["id"], "quantity": 2}])
        assert order["status"] == "pending"
        assert await stock_of(product_api, mug["id"]) == 5
        assert len(created(await topic_events(ORDERS))) == 1
    finally:
        await container.close()


async def test_get_order_by_order_id(order_api, add_product):
    mug = await add_product(name="Mug", inventory_count=5)
    order = (
        await order_api.post(
            "/orders", json={"customerId": "c", "items": [{"productId": mug["id"], "quantity": 1}]}
        )
    ).json()

    assert (await order_api.get(f"/orders/{order['orderId']}")).json()["id"] == order["id"]
    assert (await order_api.get(f"/orders/{order['id']}")).json()["orderId"] == order["orderId"]
    resp = await order_api.get("/orders/ORD-NOPE00")
    assert resp.status_code == 404
    assert resp.json() == {"error": "Order not found"}


async def test_status_update(order_api, add_product, topic_events):
    mug = await add_product(name="Mug", inventory_count=5)
    order = (
        await order_api.post(
            "/orders", json={"customerId": "c", "items": [{"productId": mug["id"], "quantity": 1}]}
        )
    ).json()

    resp = await order_api.patch(f"/orders/{order['orderId']}/status", json={"status": "shipped"})
    assert resp.status_code == 200
    assert resp.json()["status"] == "shipped"
    event, data = (await topic_events(ORDERS))[-1]
    assert event == "order_status_updated"
    assert data["status"] == "shipped"

    resp = await order_api.patch(f"/orders/{order['orderId']}/status", json={"status": "failed"})
    assert resp.status_code == 400
    resp = await order_api.patch(f"/orders/{order['orderId']}/status", json={"status": "teleported"})
    assert resp.status_code == 400


async def test_status_update_is_kept_when_event_cannot_be_published(
    order_container, order_api, add_product, monkeypatch
):
    mug = await add_product(name="Mug", inventory_count=5)
    order = (
        await order_api.post(
            "/orders", json={"customerId": "c", "items": [{"productId": mug["id"], "quantity": 1}]}
        )
    ).json()

    async def publish(topic, event, data):
        raise EventPublishFailure("down")

    monkeypatch.setattr(order_container.channel, "publish", publish)

    resp = await order_api.patch(f"/orders/{order['orderId']}/status", json={"status": "shipped"})

    assert resp.status_code == 200
    assert resp.json()["status"] == "shipped"
    assert (await order_api.get(f"/orders/{order['orderId']}")).json()["status"] == "shipped"


async def test_status_update_of_unknown_order_is_404(order_api):
    resp = await order_api.patch("/orders/ORD-NOPE00/status", json={"status": "shipped"})
    assert resp.status_code == 404


async def test_order_query_paginates_filters_and_refreshes(order_api, add_product):
    mug = await add_product(name="Mug", inventory_count=50)
    for customer in ("alice", "bob", "alice"):
        await order_api.post(
            "/orders", json={"customerId": customer, "items": [{"productId": mug["id"], "quantity": 1}]}
        )

    page = (await order_api.get("/orders/query", params={"limit": 2})).json()
    assert page["total"] == 3
    assert page["totalPages"] == 2
    assert len(page["data"]) == 2

    alice = (await order_api.get("/orders/query", params={"search": "ali"})).json()
    assert alice["total"] == 2

    order_id = alice["data"][0]["orderId"]
    await order_api.patch(f"/orders/{order_id}/status", json={"status": "delivered"})
    delivered = (await order_api.get("/orders/query", params={"status": "delivered"})).json()
    assert [o["orderId"] for o in delivered["data"]] == [order_id]


async def test_order_writes_publish_sales_rollup(order_api, add_product, topic_events):
    mug = await add_product(name="Mug", price=10, inventory_count=5)
    await order_api.post(
        "/orders", json={"customerId": "c", "items": [{"productId": mug["id"], "quantity": 2}]}
    )

    rollups = [data for event, data in await topic_events(ANALYTICS) if event == "sales_rollup_updated"]
    assert rollups[-1]["totalRevenue"] == 20.0
    assert rollups[-1]["totalOrders"] == 1

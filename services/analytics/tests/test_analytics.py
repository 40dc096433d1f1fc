import httpx
import pytest

from services.analytics.app.main import AnalyticsContainer, create_app
from services.common.events import ANALYTICS, ORDERS, PRODUCTS


@pytest.fixture
async def container(make_settings, redis_client):
    c = AnalyticsContainer(make_settings(name="analytics"), redis=redis_client)
    await c.connect()
    yield c
    await c.close()


@pytest.fixture
async def api(container):
    transport = httpx.ASGITransport(app=create_app(container))
    async with httpx.AsyncClient(transport=transport, base_url="http://analytics") as client:
        yield client


async def test_events_from_every_topic_are_recorded(container, api):
    await container.recorder.handler_for(ORDERS)(
        "order_created", {"orderId": "ORD-AAAAAA", "customerId": "c", "total": 42.5}
    )
    await container.recorder.handler_for(PRODUCTS)(
        "inventory_updated", {"productId": "p1", "name": "Mug", "inventory": 3}
    )
    await container.recorder.handler_for(ANALYTICS)(
        "sales_rollup_updated", {"totalRevenue": 42.5, "totalOrders": 1}
    )

    events = (await api.get("/analytics")).json()

    assert [(e["topic"], e["event"], e["entityId"], e["value"]) for e in events] == [
        ("analytics", "sales_rollup_updated", None, 42.5),
        ("products", "inventory_updated", "p1", 3.0),
        ("orders", "order_created", "ORD-AAAAAA", 42.5),
    ]
    assert events[-1]["data"]["customerId"] == "c"


async def test_filter_limit_and_summary(container, api):
    handle = container.recorder.handler_for(ORDERS)
    await handle("order_created", {"orderId": "ORD-AAAAAA", "total": 10})
    await handle("order_created", {"orderId": "ORD-BBBBBB", "total": 15})
    await handle("order_status_updated", {"orderId": "ORD-AAAAAA", "status": "shipped", "total": 10})

    created = (await api.get("/analytics", params={"event": "order_created"})).json()
    assert [e["entityId"] for e in created] == ["ORD-BBBBBB", "ORD-AAAAAA"]
    assert len((await api.get("/analytics", params={"limit": 1})).json()) == 1

    summary = (await api.get("/analytics/summary")).json()
    assert summary == {
        "totalEvents": 3,
        "events": {"order_created": 2, "order_status_updated": 1},
        "orderRevenue": 25.0,
    }


async def test_events_consumed_from_the_channel(container, api):
    await container.channel.ensure_group(ORDERS, "analytics")
    await container.channel.publish(ORDERS, "order_created", {"orderId": "ORD-CCCCCC", "total": 5})

    handled = await container.channel.poll(ORDERS, "analytics", container.recorder.handler_for(ORDERS))

    assert handled == 1
    [event] = (await api.get("/analytics")).json()
    assert event["entityId"] == "ORD-CCCCCC"

import json

import httpx
import pytest
from fastapi.testclient import TestClient

from services.gateway.app.config import GatewaySettings
from services.gateway.app.main import Gateway, create_app

SETTINGS = GatewaySettings(
    order_service_url="http://order",
    product_service_url="http://product",
    customer_service_url="http://customer",
    alerts_service_url="http://alerts",
    analytics_service_url="http://analytics",
)


def make_client(handler):
    upstream = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TestClient(create_app(Gateway(SETTINGS, client=upstream)))


def test_requests_are_forwarded_to_the_owning_service():
    seen = []

    def handler(request: httpx.Request):
        seen.append((request.method, str(request.url), request.content))
        return httpx.Response(201, json={"orderId": "ORD-ABC123"})

    with make_client(handler) as client:
        resp = client.post("/api/orders", json={"customerId": "c", "items": []})

    assert resp.status_code == 201
    assert resp.json() == {"orderId": "ORD-ABC123"}
    method, url, body = seen[0]
    assert (method, url) == ("POST", "http://order/orders")
    assert json.loads(body) == {"customerId": "c", "items": []}


@pytest.mark.parametrize(
    "path, upstream",
    [
        ("/api/orders/query?page=2&limit=5", "http://order/orders/query?page=2&limit=5"),
        ("/api/sales/metrics", "http://order/sales/metrics"),
        ("/api/products/bulk?ids=p1", "http://product/products/bulk?ids=p1"),
        ("/api/categories", "http://product/categories"),
        ("/api/customers/42", "http://customer/customers/42"),
        ("/api/alerts", "http://alerts/alerts"),
        ("/api/analytics/summary", "http://analytics/analytics/summary"),
    ],
)
def test_routing_table(path, upstream):
    seen = []

    def handler(request: httpx.Request):
        seen.append(str(request.url))
        return httpx.Response(200, json=[])

    with make_client(handler) as client:
        assert client.get(path).status_code == 200

    assert seen == [upstream]


def test_upstream_errors_pass_through():
    def handler(request):
        return httpx.Response(404, json={"error": "Order not found"})

    with make_client(handler) as client:
        resp = client.get("/api/orders/ORD-NOPE00")

    assert resp.status_code == 404
    assert resp.json() == {"error": "Order not found"}


def test_unreachable_service_is_502():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with make_client(handler) as client:
        resp = client.get("/api/products")

    assert resp.status_code == 502
    assert resp.json() == {"error": "Service unavailable"}


def test_unknown_resource_is_404():
    with make_client(lambda request: httpx.Response(200)) as client:
        assert client.get("/api/warehouses").status_code == 404


def test_dashboard_combines_metrics_and_alerts():
    def handler(request: httpx.Request):
        if request.url.host == "order":
            return httpx.Response(200, json={"totalRevenue": 90.0})
        assert request.url.params["limit"] == "10"
        return httpx.Response(200, json=[{"type": "high", "message": "low stock"}])

    with make_client(handler) as client:
        resp = client.get("/api/dashboard")

    assert resp.json() == {
        "metrics": {"totalRevenue": 90.0},
        "alerts": [{"type": "high", "message": "low stock"}],
    }


def test_dashboard_with_a_service_down_is_502():
    def handler(request: httpx.Request):
        if request.url.host == "alerts":
            return httpx.Response(500)
        return httpx.Response(200, json={})

    with make_client(handler) as client:
        assert client.get("/api/dashboard").status_code == 502

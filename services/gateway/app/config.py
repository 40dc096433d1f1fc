import os
from dataclasses import dataclass


@dataclass(frozen=True)
class GatewaySettings:
    order_service_url: str = "http://localhost:8001"
    product_service_url: str = "http://localhost:8002"
    customer_service_url: str = "http://localhost:8003"
    alerts_service_url: str = "http://localhost:8004"
    analytics_service_url: str = "http://localhost:8005"
    http_timeout: float = 10.0
    cors_origins: tuple[str, ...] = ("*",)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "GatewaySettings":
        origins = os.environ.get("CORS_ORIGINS", "*")
        return cls(
            order_service_url=os.environ.get("ORDER_SERVICE_URL", cls.order_service_url),
            product_service_url=os.environ.get("PRODUCT_SERVICE_URL", cls.product_service_url),
            customer_service_url=os.environ.get("CUSTOMER_SERVICE_URL", cls.customer_service_url),
            alerts_service_url=os.environ.get("ALERTS_SERVICE_URL", cls.alerts_service_url),
            analytics_service_url=os.environ.get(
                "ANALYTICS_SERVICE_URL", cls.analytics_service_url
            ),
            http_timeout=float(os.environ.get("HTTP_TIMEOUT", "10")),
            cors_origins=tuple(o.strip() for o in origins.split(",") if o.strip()),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
        )

    def routes(self) -> dict[str, str]:
        """/api 直下の最初のパスセグメント → 所有サービス"""
        return {
            "orders": self.order_service_url,
            "sales": self.order_service_url,
            "products": self.product_service_url,
            "categories": self.product_service_url,
            "customers": self.customer_service_url,
            "alerts": self.alerts_service_url,
            "analytics": self.analytics_service_url,
        }

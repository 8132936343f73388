"""
merchant_data.py — sample merchant catalogue served by the demo resource API.
"""

import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

from oauth_errors import NotFound


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Merchant:
    id: str
    name: str
    email: str
    status: str = "active"
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)


@dataclass
class Product:
    id: str
    merchant_id: str
    name: str
    price: float
    description: str = ""
    status: str = "active"
    created_at: str = field(default_factory=_now_iso)


@dataclass
class OrderItem:
    product_id: str
    quantity: int
    price: float


@dataclass
class Order:
    id: str
    merchant_id: str
    customer_email: str
    total: float
    status: str
    items: list[OrderItem] = field(default_factory=list)
    created_at: str = field(default_factory=_now_iso)


class MerchantDirectory:
    """Read-only view over merchants and their products and orders."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.merchants: dict[str, Merchant] = {}
        self.products: dict[str, Product] = {}
        self.orders: dict[str, Order] = {}

    @classmethod
    def with_sample_data(cls) -> "MerchantDirectory":
        directory = cls()
        directory.add_merchant(Merchant(
            id="merchant_123", name="Sample Store", email="merchant@samplestore.com",
        ))
        directory.add_product(Product(
            id="product_1", merchant_id="merchant_123", name="Sample Product 1",
            price=29.99, description="A sample product for testing",
        ))
        directory.add_product(Product(
            id="product_2", merchant_id="merchant_123", name="Sample Product 2",
            price=49.99, description="Another sample product",
        ))
        directory.add_order(Order(
            id="order_1", merchant_id="merchant_123",
            customer_email="customer@example.com", total=79.98, status="completed",
            items=[OrderItem("product_1", 1, 29.99), OrderItem("product_2", 1, 49.99)],
        ))
        return directory

    def add_merchant(self, merchant: Merchant) -> None:
        with self._lock:
            self.merchants[merchant.id] = merchant

    def add_product(self, product: Product) -> None:
        with self._lock:
            self.products[product.id] = product

    def add_order(self, order: Order) -> None:
        with self._lock:
            self.orders[order.id] = order

    def list_merchants(self) -> list[dict[str, Any]]:
        with self._lock:
            return [asdict(m) for m in self.merchants.values()]

    def get_merchant(self, merchant_id: str) -> dict[str, Any]:
        with self._lock:
            merchant = self.merchants.get(merchant_id)
        if merchant is None:
            raise NotFound("Merchant not found")
        return asdict(merchant)

    def get_products(self, merchant_id: str) -> list[dict[str, Any]]:
        with self._lock:
            return [asdict(p) for p in self.products.values() if p.merchant_id == merchant_id]

    def get_product(self, merchant_id: str, product_id: str) -> dict[str, Any]:
        for product in self.get_products(merchant_id):
            if product["id"] == product_id:
                return product
        raise NotFound("Product not found")

    def get_orders(self, merchant_id: str) -> list[dict[str, Any]]:
        with self._lock:
            return [asdict(o) for o in self.orders.values() if o.merchant_id == merchant_id]

    def get_order(self, merchant_id: str, order_id: str) -> dict[str, Any]:
        for order in self.get_orders(merchant_id):
            if order["id"] == order_id:
                return order
        raise NotFound("Order not found")

    def summary(self, merchant_id: str, scopes: frozenset[str]) -> dict[str, Any]:
        """Merchant summary with a section per readable resource type."""
        merchant = self.get_merchant(merchant_id)
        result: dict[str, Any] = {
            "merchant": {
                "id": merchant["id"],
                "name": merchant["name"],
                "status": merchant["status"],
            },
        }
        if "read_products" in scopes:
            products = self.get_products(merchant_id)
            result["products"] = {
                "count": len(products),
                "total_value": round(sum(p["price"] for p in products), 2),
            }
        if "read_orders" in scopes:
            orders = self.get_orders(merchant_id)
            result["orders"] = {
                "count": len(orders),
                "total_revenue": round(sum(o["total"] for o in orders), 2),
            }
        return result

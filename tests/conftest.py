"""Shared pytest fixtures: fake Shopify API, temporary database, helpers."""

import json
import os
import re
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Tuple

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-key")

import httpx
import pytest
from sqlalchemy.orm import sessionmaker

from config import settings
from database import crud
from database.models import Base
from database.session import build_engine
from shopify_client import ShopifyClient

SHOP = "loyal-shop.myshopify.com"
TOKEN = "shpat_test_token"


class FakeShopify:
    """In-memory stand-in for the Shopify Admin REST API."""

    def __init__(self) -> None:
        self.price_rules: List[Dict[str, Any]] = []
        self.discount_codes: Dict[int, List[Dict[str, Any]]] = {}
        self.orders: Dict[int, Dict[str, Any]] = {}
        self.transactions: Dict[int, List[Dict[str, Any]]] = {}
        self.locations: List[Dict[str, Any]] = [{"id": 777, "name": "Main warehouse"}]
        self.variants: Dict[int, Dict[str, Any]] = {}
        self.shop: Dict[str, Any] = {"name": "Loyal Shop", "domain": SHOP}
        self.failures: Dict[Tuple[str, str], Tuple[int, Any]] = {}
        self.requests: List[Tuple[str, str, Any]] = []
        self.tokens: List[str] = []
        self._lock = threading.Lock()
        self._next_id = 9000

    # --- setup helpers -----------------------------------------------------

    def add_price_rule(self, rule_id: int, codes: List[str], usage_count: int = 0,
                       usage_limit: Optional[int] = 1, title: Optional[str] = None) -> None:
        self.price_rules.append(
            {
                "id": rule_id,
                "title": title or f"Discount: {codes[0] if codes else rule_id}",
                "usage_count": usage_count,
                "usage_limit": usage_limit,
            }
        )
        self.discount_codes[rule_id] = [
            {
                "id": rule_id * 10 + i,
                "code": code,
                "price_rule_id": rule_id,
                "created_at": "2024-10-01T10:00:00Z",
            }
            for i, code in enumerate(codes)
        ]

    def add_order(self, order: Dict[str, Any]) -> None:
        self.orders[order["id"]] = order

    def fail(self, method: str, path: str, status: int = 500, body: Any = None) -> None:
        self.failures[(method, path)] = (status, body if body is not None else {"errors": "boom"})

    # --- inspection --------------------------------------------------------

    @property
    def writes(self) -> List[Tuple[str, str, Any]]:
        with self._lock:
            return [r for r in self.requests if r[0] in ("POST", "PUT", "DELETE")]

    def requests_to(self, method: str, path: str) -> List[Any]:
        with self._lock:
            return [body for m, p, body in self.requests if m == method and p == path]

    # --- transport ---------------------------------------------------------

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def client_factory(self, shop_domain: str, access_token: str) -> ShopifyClient:
        return ShopifyClient(shop_domain, access_token, transport=self.transport)

    def _new_id(self) -> int:
        with self._lock:
            self._next_id += 1
            return self._next_id

    def handler(self, request: httpx.Request) -> httpx.Response:
        prefix = f"/admin/api/{settings.shopify_api_version}"
        path = request.url.path
        if path.startswith(prefix):
            path = path[len(prefix):]
        body = json.loads(request.content) if request.content else None

        with self._lock:
            self.requests.append((request.method, path, body))
            self.tokens.append(request.headers.get("X-Shopify-Access-Token"))

        failure = self.failures.get((request.method, path))
        if failure is not None:
            status, payload = failure
            if isinstance(payload, str):
                return httpx.Response(status, text=payload)
            return httpx.Response(status, json=payload)

        method = request.method

        if method == "GET" and path == "/shop.json":
            return httpx.Response(200, json={"shop": self.shop})
        if method == "GET" and path == "/price_rules.json":
            return httpx.Response(200, json={"price_rules": self.price_rules})
        if method == "POST" and path == "/price_rules.json":
            rule = dict(body["price_rule"], id=self._new_id())
            return httpx.Response(201, json={"price_rule": rule})

        m = re.fullmatch(r"/price_rules/(\d+)/discount_codes\.json", path)
        if m:
            rule_id = int(m.group(1))
            if method == "GET":
                return httpx.Response(200, json={"discount_codes": self.discount_codes.get(rule_id, [])})
            code = dict(body["discount_code"], id=self._new_id(), price_rule_id=rule_id)
            return httpx.Response(201, json={"discount_code": code})

        if method == "GET" and path == "/orders.json":
            return httpx.Response(200, json={"orders": list(self.orders.values())})

        m = re.fullmatch(r"/orders/(\d+)\.json", path)
        if m and method == "GET":
            order = self.orders.get(int(m.group(1)))
            if order is None:
                return httpx.Response(404, json={"errors": "Not Found"})
            return httpx.Response(200, json={"order": order})

        m = re.fullmatch(r"/orders/(\d+)/transactions\.json", path)
        if m and method == "GET":
            return httpx.Response(200, json={"transactions": self.transactions.get(int(m.group(1)), [])})

        m = re.fullmatch(r"/orders/(\d+)/refunds\.json", path)
        if m and method == "POST":
            refund = dict(body["refund"], id=5551, order_id=int(m.group(1)))
            return httpx.Response(201, json={"refund": refund})

        if method == "GET" and path == "/locations.json":
            return httpx.Response(200, json={"locations": self.locations})

        m = re.fullmatch(r"/variants/(\d+)\.json", path)
        if m and method == "GET":
            variant = self.variants.get(int(m.group(1)))
            if variant is None:
                return httpx.Response(404, json={"errors": "Not Found"})
            return httpx.Response(200, json={"variant": variant})

        if method == "POST" and path == "/inventory_levels/adjust.json":
            return httpx.Response(200, json={"inventory_level": dict(body, available=10)})

        return httpx.Response(404, json={"errors": f"Unhandled {method} {path}"})


def make_order(
    order_id: int = 1001,
    name: str = "#1001",
    code: Optional[str] = "LOYAL10",
    fulfillment_status: Optional[str] = "fulfilled",
    financial_status: str = "paid",
    total_price: str = "250.00",
    subtotal_price: str = "300.00",
    total_line_items_price: str = "320.00",
    line_items: Optional[List[Dict[str, Any]]] = None,
    fulfillments: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    if line_items is None:
        line_items = [
            {"id": 1, "product_id": 11, "variant_id": 101, "quantity": 2},
            {"id": 2, "product_id": 12, "variant_id": 102, "quantity": 1},
        ]
    if fulfillments is None:
        fulfillments = [{"id": 55, "location_id": 321}] if fulfillment_status == "fulfilled" else []
    return {
        "id": order_id,
        "name": name,
        "email": "jan@example.com",
        "currency": "PLN",
        "financial_status": financial_status,
        "fulfillment_status": fulfillment_status,
        "created_at": "2024-10-02T12:00:00Z",
        "discount_codes": [{"code": code, "amount": "50.00", "type": "percentage"}] if code else [],
        "customer": {"first_name": "Jan", "last_name": "Kowalski", "email": "jan@example.com"},
        "total_line_items_price": total_line_items_price,
        "subtotal_price": subtotal_price,
        "total_price": total_price,
        "line_items": line_items,
        "fulfillments": fulfillments,
    }


def wait_for(predicate: Callable[[], Any], timeout: float = 5.0, interval: float = 0.05) -> Any:
    """Poll until predicate returns a truthy value or fail after timeout."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        value = predicate()
        if value:
            return value
        time.sleep(interval)
    raise AssertionError(f"condition not met within {timeout}s")


@pytest.fixture
def session_factory(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'campaign.db'}")
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def shopify() -> FakeShopify:
    return FakeShopify()


@pytest.fixture
def installed_shop(db) -> str:
    crud.save_shop(db, SHOP, TOKEN)
    return SHOP


@pytest.fixture
def executor():
    pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix="test-restock")
    yield pool
    pool.shutdown(wait=True)


def read_campaign(session_factory, shop: str, order_id: Any):
    """Fresh read of a campaign record (new session, so background writes are visible)."""
    session = session_factory()
    try:
        return crud.get_order_campaign_status(session, shop, str(order_id))
    finally:
        session.close()

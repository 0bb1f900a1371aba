"""Tests for the OAuth install flow and its state store."""

from urllib.parse import parse_qs, urlparse

import time

import httpx
import pytest
from fastapi.testclient import TestClient

from config import settings
from database import crud
from database.session import get_db
from main import app
from oauth import (
    OAuthStateStore,
    clean_shop_domain,
    compute_hmac,
    get_oauth_transport,
    get_state_store,
    verify_hmac,
)

SECRET = "app-secret"
SHOP = "new-shop.myshopify.com"


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestOAuthStateStore:
    def test_state_is_single_use(self):
        store = OAuthStateStore()
        state = store.issue()

        assert store.consume(state) is True
        assert store.consume(state) is False

    def test_unknown_or_empty_state(self):
        store = OAuthStateStore()

        assert store.consume("nope") is False
        assert store.consume(None) is False

    def test_expired_state_is_rejected(self):
        clock = FakeClock()
        store = OAuthStateStore(ttl_seconds=300, clock=clock)
        state = store.issue()

        clock.now += 301

        assert store.consume(state) is False

    def test_sweep_removes_only_expired(self):
        clock = FakeClock()
        store = OAuthStateStore(ttl_seconds=300, clock=clock)
        store.add("old")
        clock.now += 200
        store.add("fresh")
        clock.now += 200

        assert store.sweep() == 1
        assert len(store) == 1
        assert store.consume("fresh") is True

    def test_background_sweeper_lifecycle(self):
        clock = FakeClock()
        store = OAuthStateStore(ttl_seconds=1, sweep_interval=0.01, clock=clock)
        store.add("old")
        clock.now += 5

        store.start()
        try:
            deadline = 200
            while len(store) and deadline:
                deadline -= 1
                time.sleep(0.01)
        finally:
            store.stop()

        assert len(store) == 0
        assert store._thread is None


class TestHelpers:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("shop.myshopify.com", "shop.myshopify.com"),
            ("https://shop.myshopify.com/", "shop.myshopify.com"),
            ("  http://shop.myshopify.com ", "shop.myshopify.com"),
            ("shop.example.com", None),
        ],
    )
    def test_clean_shop_domain(self, raw, expected):
        assert clean_shop_domain(raw) == expected

    def test_verify_hmac(self):
        params = {"code": "abc", "shop": SHOP, "state": "s1", "timestamp": "1700000000"}
        query = dict(params, hmac=compute_hmac(params, SECRET))

        assert verify_hmac(query, SECRET) is True
        assert verify_hmac(dict(query, code="tampered"), SECRET) is False
        assert verify_hmac(params, SECRET) is False
        assert verify_hmac(query, None) is False


@pytest.fixture
def oauth_client(db, monkeypatch):
    store = OAuthStateStore()

    def shopify_oauth(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/admin/oauth/access_token":
            return httpx.Response(200, json={"access_token": "shpat_new"})
        if request.url.path.endswith("/shop.json"):
            return httpx.Response(200, json={"shop": {"name": "New Shop"}})
        return httpx.Response(404, json={"errors": "Not Found"})

    monkeypatch.setattr(settings, "shopify_api_secret", SECRET)
    monkeypatch.setattr(settings, "shopify_api_key", "app-key")
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_state_store] = lambda: store
    app.dependency_overrides[get_oauth_transport] = lambda: httpx.MockTransport(shopify_oauth)
    try:
        yield TestClient(app), store
    finally:
        app.dependency_overrides.clear()


def _signed(params):
    return dict(params, hmac=compute_hmac(params, SECRET))


class TestOAuthRoutes:
    def test_start_redirects_to_shopify(self, oauth_client):
        client, store = oauth_client

        resp = client.get("/auth", params={"shop": "https://new-shop.myshopify.com/"}, follow_redirects=False)

        assert resp.status_code == 302
        location = urlparse(resp.headers["location"])
        assert location.netloc == SHOP
        assert location.path == "/admin/oauth/authorize"
        query = parse_qs(location.query)
        assert query["client_id"] == ["app-key"]
        assert store.consume(query["state"][0]) is True

    def test_start_rejects_foreign_domain(self, oauth_client):
        client, _ = oauth_client

        assert client.get("/auth", params={"shop": "evil.example.com"}).status_code == 400
        assert client.get("/auth").status_code == 400

    def test_callback_rejects_bad_hmac(self, oauth_client):
        client, store = oauth_client
        store.add("s1")

        resp = client.get("/auth/callback", params={"code": "c", "shop": SHOP, "state": "s1", "hmac": "bad"})

        assert resp.status_code == 403

    def test_callback_rejects_unknown_state(self, oauth_client):
        client, _ = oauth_client

        resp = client.get("/auth/callback", params=_signed({"code": "c", "shop": SHOP, "state": "s1"}))

        assert resp.status_code == 403
        assert resp.json() == {"error": "Invalid state parameter"}

    def test_callback_installs_shop(self, oauth_client, db):
        client, store = oauth_client
        store.add("s1")

        resp = client.get(
            "/auth/callback",
            params=_signed({"code": "c", "shop": SHOP, "state": "s1"}),
            follow_redirects=False,
        )

        assert resp.status_code == 302
        assert resp.headers["location"] == f"{settings.app_url}/"
        shop = crud.get_shop(db, SHOP)
        assert shop.access_token == "shpat_new"
        assert shop.shop_data == {"name": "New Shop"}
        # state jest jednorazowy
        assert store.consume("s1") is False

import hashlib
import hmac
import logging
import re
import secrets
import threading
import time
from typing import Callable, Dict, Mapping, Optional
from urllib.parse import urlencode

import httpx
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.orm import Session

from config import settings
from database import crud
from database.session import get_db
from shopify_client import ShopifyApiError, ShopifyClient

logger = logging.getLogger("campaign-refunds")

STATE_TTL_SECONDS = 5 * 60
SWEEP_INTERVAL_SECONDS = 10 * 60


class OAuthStateStore:
    """
    Jednorazowe tokeny state dla OAuth, ważne przez określony czas.

    Cykl życia: start() przy starcie aplikacji uruchamia wątek czyszczący,
    stop() przy zamknięciu go zatrzymuje.
    """

    def __init__(
        self,
        ttl_seconds: float = STATE_TTL_SECONDS,
        sweep_interval: float = SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._states: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._states)

    def issue(self) -> str:
        state = secrets.token_hex(16)
        self.add(state)
        return state

    def add(self, state: str) -> None:
        with self._lock:
            self._states[state] = self._clock()

    def consume(self, state: Optional[str]) -> bool:
        """
        Usuwa state i zwraca True, jeśli był znany i nie wygasł.
        """
        if not state:
            return False
        with self._lock:
            created = self._states.pop(state, None)
        if created is None:
            return False
        return self._clock() - created <= self.ttl_seconds

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [s for s, created in self._states.items() if now - created > self.ttl_seconds]
            for state in expired:
                del self._states[state]
        if expired:
            logger.debug("Usunięto %s wygasłych state OAuth.", len(expired))
        return len(expired)

    def _run(self) -> None:
        while not self._stop_event.wait(self.sweep_interval):
            self.sweep()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="oauth-state-sweeper", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None


state_store = OAuthStateStore()


# ------------------------------------------------------------------------------
# Funkcje pomocnicze
# ------------------------------------------------------------------------------


def clean_shop_domain(shop: str) -> Optional[str]:
    """
    Usuwa protokół i końcowy ukośnik; zwraca None dla domeny spoza myshopify.com.
    """
    cleaned = re.sub(r"^https?://", "", shop.strip()).rstrip("/")
    if not cleaned.endswith(".myshopify.com"):
        return None
    return cleaned


def compute_hmac(params: Mapping[str, str], secret: str) -> str:
    message = "&".join(f"{key}={params[key]}" for key in sorted(params))
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_hmac(query: Mapping[str, str], secret: Optional[str]) -> bool:
    received = query.get("hmac")
    if not received or not secret:
        return False
    params = {k: v for k, v in query.items() if k != "hmac"}
    return hmac.compare_digest(compute_hmac(params, secret), received)


def build_authorize_url(shop: str, state: str) -> str:
    query = urlencode(
        {
            "client_id": settings.shopify_api_key or "",
            "scope": settings.shopify_scopes,
            "redirect_uri": settings.callback_url,
            "state": state,
        }
    )
    return f"https://{shop}/admin/oauth/authorize?{query}"


def exchange_code_for_token(
    shop: str,
    code: str,
    transport: Optional[httpx.BaseTransport] = None,
) -> Optional[str]:
    with httpx.Client(timeout=settings.shopify_api_timeout, transport=transport) as client:
        resp = client.post(
            f"https://{shop}/admin/oauth/access_token",
            json={
                "client_id": settings.shopify_api_key,
                "client_secret": settings.shopify_api_secret,
                "code": code,
            },
        )
    resp.raise_for_status()
    return resp.json().get("access_token")


# ------------------------------------------------------------------------------
# Router
# ------------------------------------------------------------------------------


def get_state_store() -> OAuthStateStore:
    return state_store


def get_oauth_transport() -> Optional[httpx.BaseTransport]:
    return None


router = APIRouter(prefix="/auth")


@router.get("")
def start_oauth(shop: Optional[str] = None, store: OAuthStateStore = Depends(get_state_store)):
    """
    Krok 1: przekierowanie do ekranu autoryzacji aplikacji w Shopify.
    """
    if not shop:
        return JSONResponse({"error": "Missing shop parameter"}, status_code=400)

    clean_shop = clean_shop_domain(shop)
    if clean_shop is None:
        return JSONResponse({"error": "Invalid shop domain"}, status_code=400)

    state = store.issue()
    return RedirectResponse(build_authorize_url(clean_shop, state), status_code=302)


@router.get("/callback")
def oauth_callback(
    request: Request,
    db: Session = Depends(get_db),
    store: OAuthStateStore = Depends(get_state_store),
    transport: Optional[httpx.BaseTransport] = Depends(get_oauth_transport),
):
    """
    Krok 2: weryfikacja HMAC i state, wymiana kodu na token, zapis sklepu.
    """
    query = dict(request.query_params)

    if not verify_hmac(query, settings.shopify_api_secret):
        return JSONResponse({"error": "Invalid HMAC signature"}, status_code=403)

    if not store.consume(query.get("state")):
        return JSONResponse({"error": "Invalid state parameter"}, status_code=403)

    code = query.get("code")
    shop = query.get("shop")
    if not code or not shop:
        return JSONResponse({"error": "Missing code or shop parameter"}, status_code=400)

    try:
        access_token = exchange_code_for_token(shop, code, transport=transport)
    except httpx.HTTPError as e:
        logger.error("Błąd wymiany kodu OAuth dla sklepu %s: %s", shop, e)
        return JSONResponse(
            {"error": "Failed to complete OAuth flow", "details": str(e)},
            status_code=500,
        )

    if not access_token:
        return JSONResponse({"error": "Failed to get access token"}, status_code=500)

    shop_data = None
    try:
        shop_data = ShopifyClient(shop, access_token, transport=transport).get_shop()
    except ShopifyApiError as e:
        # brak danych sklepu nie blokuje instalacji
        logger.error("Błąd pobierania danych sklepu %s podczas OAuth: %s", shop, e)

    crud.save_shop(db, shop, access_token, shop_data)
    logger.info("Sklep %s zainstalował aplikację.", shop)

    return RedirectResponse(f"{settings.app_url}/", status_code=302)

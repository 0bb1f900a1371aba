import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.responses import PlainTextResponse, JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import settings
from database import crud
from database.models import Base
from database.encryption import get_fernet
from database.session import engine, get_db, SessionLocal
from discount_service import create_discount_code, generate_promo_code, get_all_discount_codes
from domain import DiscountConfig
from email_utils import sendgrid_configured
from errors import (
    CampaignError,
    OrderFetchFailed,
    PreconditionFailed,
    RefundFailed,
    ShopNotFound,
)
from oauth import router as oauth_router, state_store
from order_service import (
    get_all_orders,
    get_campaign_status,
    mark_campaign_promise_met,
    shutdown_restock_executor,
)
from shop_service import get_shop_details
from shopify_client import ShopifyApiError, ShopifyClient

# ------------------------------------------------------------------------------
# Konfiguracja aplikacji i logowania
# ------------------------------------------------------------------------------

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger("campaign-refunds")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # bez ENCRYPTION_KEY aplikacja nie startuje
    get_fernet()
    state_store.start()
    try:
        yield
    finally:
        state_store.stop()
        shutdown_restock_executor(wait=False)


app = FastAPI(title="Loyalty Campaign Refunds", lifespan=lifespan)
app.include_router(oauth_router)

Base.metadata.create_all(bind=engine)

if not (settings.shopify_api_key and settings.shopify_api_secret):
    logger.warning(
        "Brak konfiguracji SHOPIFY_API_KEY/SHOPIFY_API_SECRET – instalacja aplikacji (OAuth) nie zadziała."
    )


# ------------------------------------------------------------------------------
# Zależności (podmieniane w testach)
# ------------------------------------------------------------------------------


def get_client_factory():
    return ShopifyClient


def get_session_factory():
    return SessionLocal


def get_restock_executor():
    # None = wspólny executor z order_service
    return None


# ------------------------------------------------------------------------------
# Funkcje pomocnicze
# ------------------------------------------------------------------------------


def _http_error(e: Exception, default_message: str) -> HTTPException:
    """
    Mapuje błędy domenowe i błędy Shopify na odpowiedzi HTTP.
    """
    if isinstance(e, ShopNotFound):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, PreconditionFailed):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, (OrderFetchFailed, RefundFailed)):
        return HTTPException(status_code=502, detail=str(e))
    if isinstance(e, ShopifyApiError):
        return HTTPException(status_code=502, detail=e.message or default_message)
    if isinstance(e, CampaignError):
        return HTTPException(status_code=500, detail=str(e) or default_message)
    return HTTPException(status_code=500, detail=default_message)


def _require(value: Any, name: str) -> Any:
    if value is None or value == "":
        raise HTTPException(status_code=400, detail=f"Missing {name} parameter")
    return value


def _optional_float(value: Any, name: str) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail=f"Invalid {name}")


# ------------------------------------------------------------------------------
# Zamówienia i kampania
# ------------------------------------------------------------------------------


@app.get("/api/orders")
def list_orders(
    shop: Optional[str] = Query(None, description="Domena sklepu (*.myshopify.com)"),
    db: Session = Depends(get_db),
    client_factory=Depends(get_client_factory),
):
    """
    Kody rabatowe z zamówieniami i statusem kampanii.
    """
    _require(shop, "shop")
    try:
        orders = get_all_orders(db, shop, client_factory)
    except (CampaignError, ShopifyApiError) as e:
        logger.error("Błąd pobierania zamówień sklepu %s: %s", shop, e)
        raise _http_error(e, "Failed to fetch orders")

    return {"orders": [o.to_dict() for o in orders]}


@app.post("/api/orders/mark-campaign-promise-met")
def mark_promise_met(
    payload: Dict[str, Any],
    db: Session = Depends(get_db),
    client_factory=Depends(get_client_factory),
    session_factory=Depends(get_session_factory),
    executor=Depends(get_restock_executor),
):
    """
    Oznacza obietnicę kampanii jako spełnioną i zleca zwrot w Shopify.

    payload: { "shop", "orderId", "shopifyOrderId", "shouldRestock" }
    """
    shop = _require(payload.get("shop"), "shop")
    shopify_order_id = _require(payload.get("shopifyOrderId"), "shopifyOrderId")
    should_restock = payload.get("shouldRestock") is True

    try:
        result = mark_campaign_promise_met(
            db,
            shop,
            payload.get("orderId"),
            shopify_order_id,
            should_restock=should_restock,
            client_factory=client_factory,
            session_factory=session_factory,
            executor=executor,
        )
    except (CampaignError, ShopifyApiError) as e:
        logger.error("Błąd kampanii dla zamówienia %s (%s): %s", shopify_order_id, shop, e)
        raise _http_error(e, "Failed to mark campaign promise met")

    return {
        "success": True,
        "refundId": result.refund_id,
        "refundAmount": float(result.refund_amount),
        "message": "Refund initiated successfully",
        "restockInitiated": result.restock_initiated,
    }


@app.get("/api/orders/campaign-status")
def campaign_status(
    shop: Optional[str] = Query(None),
    shopifyOrderId: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    """
    Bieżący rekord kampanii zamówienia (np. do śledzenia restocku).
    """
    _require(shop, "shop")
    _require(shopifyOrderId, "shopifyOrderId")

    record = get_campaign_status(db, shop, shopifyOrderId)
    if record is None:
        raise HTTPException(status_code=404, detail="Campaign status not found")

    return {
        "shop_domain": record.shop_domain,
        "shopify_order_id": record.shopify_order_id,
        "campaign_status": record.campaign_status,
        "redeemed_code": record.redeemed_code,
        "refund_amount": record.refund_amount,
        "refund_transaction_id": record.refund_transaction_id,
        "restock_status": record.restock_status,
    }


@app.get("/api/orders/events")
def campaign_events(
    shop: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200, description="Maksymalna liczba zdarzeń"),
    db: Session = Depends(get_db),
):
    """
    Ostatnie zdarzenia kampanii (zwroty, restock) dla sklepu.
    """
    _require(shop, "shop")
    try:
        events = crud.list_campaign_events(db, shop, limit)
    except SQLAlchemyError as e:
        logger.exception("Błąd podczas pobierania zdarzeń kampanii: %s", e)
        raise HTTPException(status_code=500, detail="Błąd bazy danych")

    logs = []
    for event in events:
        created_at = None
        if event.created_at is not None:
            created_at = event.created_at.isoformat(sep=" ", timespec="seconds")
        logs.append(
            {
                "id": event.id,
                "event_type": event.event_type,
                "status": event.status,
                "message": event.message,
                "shopify_order_id": event.shopify_order_id,
                "created_at": created_at,
            }
        )
    return logs


# ------------------------------------------------------------------------------
# Kody rabatowe
# ------------------------------------------------------------------------------


@app.get("/api/discounts/generate-code")
def suggest_code():
    return {"code": generate_promo_code()}


@app.post("/api/discounts/create")
def create_discount(
    payload: Dict[str, Any],
    db: Session = Depends(get_db),
    client_factory=Depends(get_client_factory),
):
    """
    payload: { "shop", "code", "percentage", "minimumOrderAmount", "expiresAt", "usageLimit" }
    """
    shop = _require(payload.get("shop"), "shop")
    code = payload.get("code")
    percentage = _optional_float(payload.get("percentage"), "percentage")

    if not code or not percentage:
        raise HTTPException(status_code=400, detail="Missing required fields: code and percentage")
    if percentage < 1 or percentage > 100:
        raise HTTPException(status_code=400, detail="Percentage must be between 1 and 100")

    try:
        usage_limit = int(payload.get("usageLimit") or 1)
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail="Invalid usageLimit")

    config = DiscountConfig(
        code=str(code).strip(),
        percentage=percentage,
        minimum_order_amount=_optional_float(payload.get("minimumOrderAmount"), "minimumOrderAmount"),
        expires_at=payload.get("expiresAt") or None,
        usage_limit=usage_limit,
    )

    try:
        return create_discount_code(db, shop, config, client_factory)
    except (CampaignError, ShopifyApiError) as e:
        logger.error("Błąd tworzenia kodu rabatowego %s (%s): %s", config.code, shop, e)
        raise _http_error(e, "Failed to create discount code in Shopify")


@app.get("/api/discounts")
def list_discounts(
    shop: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    client_factory=Depends(get_client_factory),
):
    _require(shop, "shop")
    try:
        rows = get_all_discount_codes(db, shop, client_factory)
    except (CampaignError, ShopifyApiError) as e:
        logger.error("Błąd pobierania kodów rabatowych sklepu %s: %s", shop, e)
        raise _http_error(e, "Failed to fetch discount codes from Shopify")
    return {"discountCodes": [r.to_dict() for r in rows]}


# ------------------------------------------------------------------------------
# Sklepy
# ------------------------------------------------------------------------------


@app.get("/api/shops")
def list_shops(db: Session = Depends(get_db)):
    return {"shops": crud.get_all_shops(db)}


@app.get("/api/shop/{shop}")
def shop_details(
    shop: str,
    db: Session = Depends(get_db),
    client_factory=Depends(get_client_factory),
):
    try:
        return {"shop": get_shop_details(db, shop, client_factory)}
    except ShopNotFound as e:
        raise _http_error(e, "Shop not found")


@app.delete("/api/shops/{shop}")
def logout_shop(shop: str, db: Session = Depends(get_db)):
    crud.delete_shop(db, shop)
    logger.info("Sklep %s usunięty (wylogowanie).", shop)
    return {"success": True, "message": "Shop logged out successfully"}


# ------------------------------------------------------------------------------
# PROSTE ENDPOINTY POMOCNICZE
# ------------------------------------------------------------------------------


@app.get("/", response_class=PlainTextResponse)
def root():
    return PlainTextResponse("Loyalty Campaign Refunds – działa.")


@app.get("/health")
def health_check(db: Session = Depends(get_db)):
    """
    Sprawdzenie:
    - połączenia z DB
    - konfiguracji aplikacji Shopify
    - konfiguracji SendGrid (tylko gdy włączone powiadomienia)
    """
    db_ok = False
    try:
        db.execute(text("SELECT 1"))
        db_ok = True
    except SQLAlchemyError as e:
        logger.exception("Healthcheck DB failed: %s", e)

    shopify_ok = bool(settings.shopify_api_key and settings.shopify_api_secret)
    sendgrid_ok = sendgrid_configured()

    status_code = 200 if db_ok else 503

    return JSONResponse(
        {
            "database": db_ok,
            "shopify_app_configured": shopify_ok,
            "sendgrid_configured": sendgrid_ok,
            "customer_notifications": settings.notify_customer,
        },
        status_code=status_code,
    )

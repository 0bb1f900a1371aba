import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import settings
from database import crud
from database.models import OrderCampaignStatus
from database.session import SessionLocal
from discount_service import get_all_discount_codes
from domain import (
    CampaignResult,
    CampaignStatus,
    CampaignStatusUpdate,
    OrderTransaction,
    OrderView,
    RedemptionOrder,
    RestockStatus,
    to_decimal,
)
from email_utils import send_refund_email
from errors import (
    CampaignAlreadyCompleted,
    OrderFetchFailed,
    PreconditionFailed,
    RefundFailed,
)
from restock_service import restock_order_products
from shop_service import ClientFactory, open_shop_client
from shopify_client import ShopifyApiError, ShopifyClient, extract_error_message

logger = logging.getLogger("campaign-refunds")

REFUND_NOTE = "Campaign promise met - refund for loyalty program"

SessionFactory = Callable[[], Session]

# Restock działa w tle – wywołujący nie czeka na jego zakończenie
_restock_executor: Optional[ThreadPoolExecutor] = None
_executor_lock = threading.Lock()


def get_restock_executor() -> ThreadPoolExecutor:
    global _restock_executor
    with _executor_lock:
        if _restock_executor is None:
            _restock_executor = ThreadPoolExecutor(
                max_workers=max(1, settings.restock_workers),
                thread_name_prefix="campaign-restock",
            )
        return _restock_executor


def shutdown_restock_executor(wait: bool = True) -> None:
    global _restock_executor
    with _executor_lock:
        executor, _restock_executor = _restock_executor, None
    if executor is not None:
        executor.shutdown(wait=wait)


def _record_event(
    session_factory: SessionFactory,
    event_type: str,
    status: str,
    message: str,
    shop_domain: str,
    shopify_order_id: Any,
    payload: Any = None,
) -> None:
    """
    Zapisuje zdarzenie kampanii w tabeli campaign_events.
    Błędy zapisu logu nie blokują procesu.
    """
    db = session_factory()
    try:
        crud.add_campaign_event(
            db,
            event_type=event_type,
            status=status,
            message=message,
            payload=payload,
            shop_domain=shop_domain,
            shopify_order_id=shopify_order_id,
        )
    except Exception as e:
        logger.exception("Nie udało się zapisać zdarzenia kampanii: %s", e)
    finally:
        db.close()


# ------------------------------------------------------------------------------
# Lista zamówień ze statusem kampanii
# ------------------------------------------------------------------------------


def get_all_orders(
    db: Session,
    shop_domain: str,
    client_factory: ClientFactory = ShopifyClient,
) -> List[OrderView]:
    discount_rows = get_all_discount_codes(db, shop_domain, client_factory)

    statuses: Dict[str, OrderCampaignStatus] = {
        cs.shopify_order_id: cs for cs in crud.get_all_order_campaign_statuses(db, shop_domain)
    }

    orders: List[OrderView] = []
    for row in discount_rows:
        view = OrderView(discount=row)
        if row.shopify_order_id is not None:
            campaign = statuses.get(str(row.shopify_order_id))
            if campaign is not None:
                view.campaign_status = campaign.campaign_status
                view.refund_amount = campaign.refund_amount
                view.refund_transaction_id = campaign.refund_transaction_id
                view.restock_status = campaign.restock_status
        orders.append(view)
    return orders


def get_campaign_status(
    db: Session, shop_domain: str, shopify_order_id: Any
) -> Optional[OrderCampaignStatus]:
    return crud.get_order_campaign_status(db, shop_domain, str(shopify_order_id))


# ------------------------------------------------------------------------------
# Zwrot
# ------------------------------------------------------------------------------


def _fetch_order(client: ShopifyClient, shopify_order_id: Any) -> RedemptionOrder:
    try:
        raw = client.get_order(shopify_order_id)
    except ShopifyApiError as e:
        logger.error("Błąd pobierania zamówienia %s: %s", shopify_order_id, e)
        raise OrderFetchFailed("Failed to fetch order details from Shopify") from e
    return RedemptionOrder.from_api(raw)


def _fetch_sale_transactions(client: ShopifyClient, shopify_order_id: Any) -> List[OrderTransaction]:
    """
    Udane transakcje sprzedaży zamówienia. Błąd nie przerywa zwrotu –
    Shopify sam dopasuje transakcje, jeśli ich nie podamy.
    """
    try:
        raw = client.list_transactions(shopify_order_id)
    except ShopifyApiError as e:
        logger.error("Błąd pobierania transakcji zamówienia %s: %s", shopify_order_id, e)
        return []

    transactions = [OrderTransaction.from_api(t) for t in raw]
    return [t for t in transactions if t.is_successful_sale]


def build_refund_payload(
    order: RedemptionOrder,
    refund_amount: Decimal,
    sale_transactions: List[OrderTransaction],
) -> Dict[str, Any]:
    """
    Pełny zwrot: każda pozycja w pełnej ilości, bez powiadomienia klienta przez Shopify.
    """
    refund: Dict[str, Any] = {
        "note": REFUND_NOTE,
        "notify": False,
        "refund_line_items": [
            {"line_item_id": item.id, "quantity": item.quantity}
            for item in order.line_items
        ],
    }

    if sale_transactions:
        refund["transactions"] = [
            {
                "parent_id": txn.id,
                "amount": str(refund_amount),
                "gateway": txn.gateway or "manual",
                "kind": "refund",
            }
            for txn in sale_transactions
        ]

    return refund


def _check_not_already_refunded(db: Session, shop_domain: str, shopify_order_id: Any) -> None:
    existing = crud.get_order_campaign_status(db, shop_domain, str(shopify_order_id))
    if existing is None:
        return
    if (
        existing.campaign_status == CampaignStatus.COMPLETED.value
        or existing.refund_transaction_id
    ):
        raise CampaignAlreadyCompleted(
            f"Campaign for order {shopify_order_id} is already completed "
            f"(refund {existing.refund_transaction_id or 'unknown'})"
        )


def _save_refund_marker(
    session_factory: SessionFactory,
    shop_domain: str,
    order_key: str,
    promise_met: CampaignStatusUpdate,
) -> None:
    """
    Druga próba zapisu refund_transaction_id (osobna sesja) po udanym zwrocie.
    Bez tego zapisu blokada ponownego zwrotu nie zadziała.
    """
    db = session_factory()
    try:
        crud.update_order_campaign_status(db, shop_domain, order_key, promise_met)
    except SQLAlchemyError as e:
        logger.exception(
            "Ponowny zapis zwrotu %s dla zamówienia %s nieudany: %s",
            promise_met.refund_transaction_id,
            order_key,
            e,
        )
    finally:
        db.close()

    _record_event(
        session_factory, "refund", "unrecorded",
        f"Refund {promise_met.refund_transaction_id} created but status write failed",
        shop_domain, order_key,
        payload={"refund_id": promise_met.refund_transaction_id},
    )


def _notify_customer(order: RedemptionOrder, refund_amount: Decimal) -> None:
    if not settings.notify_customer:
        return
    if not order.customer_email:
        logger.warning("Zamówienie %s nie ma e-maila klienta – pomijam powiadomienie.", order.id)
        return

    try:
        send_refund_email(
            to_email=order.customer_email,
            order_name=order.name,
            amount=refund_amount,
            currency=order.currency,
        )
    except Exception as e:
        logger.exception("Błąd przy wysyłaniu e-maila o zwrocie dla zamówienia %s: %s", order.id, e)


# ------------------------------------------------------------------------------
# Restock w tle
# ------------------------------------------------------------------------------


def _set_restock_status(
    session_factory: SessionFactory,
    shop_domain: str,
    shopify_order_id: Any,
    status: RestockStatus,
) -> None:
    db = session_factory()
    try:
        crud.update_order_campaign_status(
            db, shop_domain, str(shopify_order_id), CampaignStatusUpdate(restock_status=status)
        )
    finally:
        db.close()


def _run_detached_restock(
    session_factory: SessionFactory,
    client: ShopifyClient,
    shop_domain: str,
    shopify_order_id: Any,
    order: RedemptionOrder,
) -> None:
    """
    Wynik restocku trafia wyłącznie do bazy (restock_status), nigdy do wywołującego.
    """
    try:
        result = restock_order_products(client, shopify_order_id, order)
    except Exception as e:
        logger.exception("Błąd restocku zamówienia %s (%s): %s", shopify_order_id, shop_domain, e)
        status = RestockStatus.FAILED
        _record_event(
            session_factory, "restock", "failed", str(e), shop_domain, shopify_order_id
        )
    else:
        status = RestockStatus.RESTOCKED
        _record_event(
            session_factory,
            "restock",
            "succeeded",
            f"Restocked {result.restocked_items} line items",
            shop_domain,
            shopify_order_id,
            payload={"location_id": result.location_id},
        )

    try:
        _set_restock_status(session_factory, shop_domain, shopify_order_id, status)
    except Exception as e:
        logger.exception(
            "Nie udało się zapisać statusu restocku %s dla zamówienia %s: %s",
            status.value,
            shopify_order_id,
            e,
        )


def schedule_restock(
    session_factory: SessionFactory,
    client: ShopifyClient,
    shop_domain: str,
    shopify_order_id: Any,
    order: RedemptionOrder,
    executor: Optional[ThreadPoolExecutor] = None,
) -> Future:
    return (executor or get_restock_executor()).submit(
        _run_detached_restock, session_factory, client, shop_domain, shopify_order_id, order
    )


# ------------------------------------------------------------------------------
# Główny proces: spełnienie obietnicy kampanii
# ------------------------------------------------------------------------------


def mark_campaign_promise_met(
    db: Session,
    shop_domain: str,
    order_id: Optional[str],
    shopify_order_id: Any,
    should_restock: bool = False,
    client_factory: ClientFactory = ShopifyClient,
    session_factory: SessionFactory = SessionLocal,
    executor: Optional[ThreadPoolExecutor] = None,
) -> CampaignResult:
    """
    Zwraca klientowi całą zapłaconą kwotę za zrealizowane zamówienie
    i opcjonalnie uruchamia restock w tle.

    Kolejność warunków wstępnych: sklep (ShopNotFound), zamówienie
    (OrderFetchFailed), realizacja (PreconditionFailed). Przy błędzie zwrotu
    w bazie zostaje 'Campaign Promise Met' bez refund_transaction_id,
    a wyjątek RefundFailed idzie do wywołującego.
    """
    client = open_shop_client(db, shop_domain, client_factory)
    order = _fetch_order(client, shopify_order_id)

    if not order.is_fulfilled:
        raise PreconditionFailed("Order must be fulfilled before marking campaign promise met")

    _check_not_already_refunded(db, shop_domain, shopify_order_id)

    order_key = str(shopify_order_id)
    # zwracamy to, co klient faktycznie zapłacił (po rabacie)
    refund_amount = to_decimal(order.total_price)

    sale_transactions = _fetch_sale_transactions(client, shopify_order_id)
    refund_payload = build_refund_payload(order, refund_amount, sale_transactions)

    logger.info(
        "Zwrot dla zamówienia %s (%s, sklep %s): kwota %s, transakcje: %s, restock: %s",
        order_key,
        order_id or order.name,
        shop_domain,
        refund_amount,
        len(sale_transactions),
        should_restock,
    )

    try:
        refund = client.create_refund(shopify_order_id, refund_payload)
    except ShopifyApiError as e:
        logger.error("Błąd tworzenia zwrotu dla zamówienia %s: %s (%s)", order_key, e, e.payload)
        try:
            crud.update_order_campaign_status(
                db,
                shop_domain,
                order_key,
                CampaignStatusUpdate(
                    campaign_status=CampaignStatus.PROMISE_MET,
                    redeemed_code=order.first_discount_code,
                    refund_amount=str(refund_amount),
                ),
            )
        except Exception as update_err:
            db.rollback()
            logger.exception("Błąd zapisu statusu kampanii: %s", update_err)

        _record_event(
            session_factory, "refund", "failed", str(e), shop_domain, order_key,
            payload={"refund_amount": str(refund_amount), "upstream": e.payload},
        )
        message = extract_error_message(e.payload) or "Failed to create refund in Shopify"
        raise RefundFailed(message) from e

    refund_id = str(refund["id"]) if refund.get("id") is not None else None

    promise_met = CampaignStatusUpdate(
        campaign_status=CampaignStatus.PROMISE_MET,
        redeemed_code=order.first_discount_code,
        refund_amount=str(refund_amount),
        refund_transaction_id=refund_id,
    )
    try:
        crud.update_order_campaign_status(db, shop_domain, order_key, promise_met)
    except SQLAlchemyError:
        db.rollback()
        logger.error(
            "Zwrot %s dla zamówienia %s (sklep %s) utworzony w Shopify, ale zapis statusu się nie powiódł.",
            refund_id,
            order_key,
            shop_domain,
        )
        _save_refund_marker(session_factory, shop_domain, order_key, promise_met)
        raise

    if should_restock:
        crud.update_order_campaign_status(
            db, shop_domain, order_key, CampaignStatusUpdate(restock_status=RestockStatus.PENDING)
        )
        schedule_restock(session_factory, client, shop_domain, shopify_order_id, order, executor)

    # zwrot w Shopify jest synchroniczny, więc kampanię zamykamy od razu
    crud.update_order_campaign_status(
        db, shop_domain, order_key, CampaignStatusUpdate(campaign_status=CampaignStatus.COMPLETED)
    )

    _record_event(
        session_factory, "refund", "succeeded", f"Refund {refund_id} created",
        shop_domain, order_key,
        payload={"refund_id": refund_id, "refund_amount": str(refund_amount)},
    )
    _notify_customer(order, refund_amount)

    logger.info("Zamówienie %s: zwrot %s utworzony, kampania zakończona.", order_key, refund_id)

    return CampaignResult(
        refund_id=refund_id,
        refund_amount=refund_amount,
        restock_initiated=should_restock,
    )

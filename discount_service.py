import logging
import secrets
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from domain import (
    DiscountCode,
    DiscountConfig,
    DiscountRow,
    DisplayStatus,
    PriceRule,
    RedemptionOrder,
)
from shop_service import ClientFactory, open_shop_client
from shopify_client import ShopifyApiError, ShopifyClient

logger = logging.getLogger("campaign-refunds")

# bez znaków łatwych do pomylenia (0/O, 1/I)
PROMO_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
PROMO_CODE_LENGTH = 8

# Shopify zwraca maks. 250 rekordów na stronę; dalej nie stronicujemy
PAGE_LIMIT = 250

ORDER_FIELDS = (
    "id,name,financial_status,fulfillment_status,created_at,discount_codes,"
    "customer,total_line_items_price,subtotal_price,total_price"
)


def generate_promo_code() -> str:
    return "".join(secrets.choice(PROMO_CODE_ALPHABET) for _ in range(PROMO_CODE_LENGTH))


# ------------------------------------------------------------------------------
# Tworzenie kodu rabatowego
# ------------------------------------------------------------------------------


def _build_price_rule(config: DiscountConfig) -> Dict[str, Any]:
    price_rule: Dict[str, Any] = {
        "title": f"Discount: {config.code}",
        "target_type": "line_item",
        "target_selection": "all",
        "allocation_method": "across",
        "value_type": "percentage",
        # Shopify oczekuje wartości ujemnej dla rabatu
        "value": f"-{config.percentage:g}",
        "customer_selection": "all",
        "starts_at": datetime.now(timezone.utc).isoformat(),
        "usage_limit": config.usage_limit,
    }
    if config.minimum_order_amount:
        price_rule["prerequisite_subtotal_range"] = {
            "greater_than_or_equal_to": str(config.minimum_order_amount),
        }
    if config.expires_at:
        price_rule["ends_at"] = config.expires_at
    return price_rule


def create_discount_code(
    db: Session,
    shop_domain: str,
    config: DiscountConfig,
    client_factory: ClientFactory = ShopifyClient,
) -> Dict[str, Any]:
    """
    Tworzy price rule (rabat procentowy) i przypięty do niego kod rabatowy.
    """
    client = open_shop_client(db, shop_domain, client_factory)

    price_rule = client.create_price_rule(_build_price_rule(config))
    discount_code = client.create_discount_code(price_rule["id"], config.code)

    logger.info(
        "Utworzono kod %s (%s%%) w sklepie %s, price rule %s.",
        config.code,
        config.percentage,
        shop_domain,
        price_rule.get("id"),
    )

    return {
        "success": True,
        "priceRule": price_rule,
        "discountCode": discount_code,
    }


# ------------------------------------------------------------------------------
# Korelacja kodów rabatowych z zamówieniami
# ------------------------------------------------------------------------------


def _fetch_orders_by_code(client: ShopifyClient, shop_domain: str) -> Dict[str, List[RedemptionOrder]]:
    """
    Mapa: kod (wielkie litery) -> zamówienia z tym kodem, w kolejności z listy Shopify.
    Błąd pobrania zamówień nie przerywa korelacji (np. brak uprawnienia read_orders).
    """
    try:
        raw_orders = client.list_orders(limit=PAGE_LIMIT, status="any", fields=ORDER_FIELDS)
    except ShopifyApiError as e:
        logger.error(
            "Nie udało się pobrać zamówień sklepu %s – statusy tylko z licznika użyć: %s",
            shop_domain,
            e,
        )
        raw_orders = []

    orders_by_code: Dict[str, List[RedemptionOrder]] = {}
    for raw in raw_orders:
        order = RedemptionOrder.from_api(raw)
        for code in order.discount_codes:
            orders_by_code.setdefault(code.upper(), []).append(order)
    return orders_by_code


def derive_status(price_rule: PriceRule, latest_order: Optional[RedemptionOrder]) -> DisplayStatus:
    if latest_order is not None:
        if latest_order.fulfillment_status == "fulfilled":
            return DisplayStatus.ORDER_DELIVERED
        if latest_order.fulfillment_status == "partial":
            return DisplayStatus.ORDER_PROCESSED
        if latest_order.financial_status == "paid":
            return DisplayStatus.ORDER_PROCESSED
        return DisplayStatus.REDEEMED

    if price_rule.usage_count > 0:
        if price_rule.usage_limit and price_rule.usage_count >= price_rule.usage_limit:
            return DisplayStatus.FULLY_USED
        return DisplayStatus.REDEEMED

    return DisplayStatus.NOT_REDEEMED


def build_discount_row(
    price_rule: PriceRule,
    discount_code: DiscountCode,
    orders: List[RedemptionOrder],
) -> DiscountRow:
    # ostatnie zamówienie z listy traktujemy jako aktualne
    latest = orders[-1] if orders else None

    row = DiscountRow(
        code=discount_code.code,
        id=discount_code.id,
        price_rule_id=price_rule.id,
        status=derive_status(price_rule, latest),
        usage_count=price_rule.usage_count,
        usage_limit=price_rule.usage_limit,
        created_at=discount_code.created_at,
        title=price_rule.title,
    )
    if latest is not None:
        row.order_id = latest.name
        row.shopify_order_id = latest.id
        row.ordered_by = latest.customer_name
        row.total_bill = latest.total_before_discount
        row.amount_paid = latest.amount_paid
    return row


def get_all_discount_codes(
    db: Session,
    shop_domain: str,
    client_factory: ClientFactory = ShopifyClient,
) -> List[DiscountRow]:
    """
    Wszystkie kody rabatowe sklepu z najlepiej znanym stanem wykorzystania.

    Błąd listowania price rules jest krytyczny. Błędy zamówień i kodów
    pojedynczych reguł są logowane, a korelacja idzie dalej.
    """
    client = open_shop_client(db, shop_domain, client_factory)

    price_rules = [PriceRule.from_api(pr) for pr in client.list_price_rules(limit=PAGE_LIMIT)]
    if not price_rules:
        return []

    orders_by_code = _fetch_orders_by_code(client, shop_domain)

    rows: List[DiscountRow] = []
    for price_rule in price_rules:
        try:
            raw_codes = client.list_discount_codes(price_rule.id)
        except ShopifyApiError as e:
            logger.error(
                "Błąd pobierania kodów dla price rule %s (sklep %s) – pomijam: %s",
                price_rule.id,
                shop_domain,
                e,
            )
            continue

        for raw in raw_codes:
            discount_code = DiscountCode.from_api(raw)
            orders = orders_by_code.get(discount_code.code.upper(), [])
            rows.append(build_discount_row(price_rule, discount_code, orders))

    return rows

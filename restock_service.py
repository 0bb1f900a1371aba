import logging
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from typing import Any, Optional

from config import settings
from domain import LineItem, RedemptionOrder, RestockResult
from errors import NoLocationFound, RestockFailed
from shopify_client import ShopifyApiError, ShopifyClient

logger = logging.getLogger("campaign-refunds")


def resolve_location_id(client: ShopifyClient, order: RedemptionOrder) -> Any:
    """
    Lokalizacja z pierwszej realizacji zamówienia, a gdy jej brak – pierwsza
    lokalizacja sklepu.
    """
    if order.fulfillments:
        location_id = order.fulfillments[0].location_id
    else:
        locations = client.list_locations()
        location_id = locations[0].get("id") if locations else None

    if not location_id:
        raise NoLocationFound(f"No location found for restocking order {order.id}")
    return location_id


def _restock_line_item(client: ShopifyClient, location_id: Any, line_item: LineItem) -> bool:
    """
    Zwraca True, jeśli pozycja została przywrócona na stan, False gdy pominięta.
    """
    if not line_item.variant_id:
        logger.warning("Pozycja %s nie ma variant_id – pomijam restock.", line_item.id)
        return False

    try:
        variant = client.get_variant(line_item.variant_id)
    except ShopifyApiError as e:
        logger.error("Błąd pobierania wariantu %s: %s", line_item.variant_id, e)
        raise RestockFailed(f"Failed to fetch variant {line_item.variant_id}") from e

    inventory_item_id: Optional[Any] = variant.get("inventory_item_id")
    if not inventory_item_id:
        logger.warning(
            "Wariant %s nie ma inventory_item_id – pomijam restock.", line_item.variant_id
        )
        return False

    try:
        client.adjust_inventory_level(location_id, inventory_item_id, line_item.quantity)
    except ShopifyApiError as e:
        logger.error(
            "Błąd korekty stanu dla wariantu %s: %s (%s)",
            line_item.variant_id,
            e,
            e.payload,
        )
        raise RestockFailed(f"Failed to restock variant {line_item.variant_id}") from e

    logger.info(
        "Przywrócono %s szt. wariantu %s (lokalizacja %s).",
        line_item.quantity,
        line_item.variant_id,
        location_id,
    )
    return True


def restock_order_products(
    client: ShopifyClient,
    shopify_order_id: Any,
    order: RedemptionOrder,
) -> RestockResult:
    """
    Przywraca na stan wszystkie pozycje zamówienia.

    Pozycje obsługiwane są równolegle. Pierwszy błąd przerywa cały restock,
    nie ma wyniku częściowego.
    """
    location_id = resolve_location_id(client, order)

    if not order.line_items:
        return RestockResult(location_id=location_id, restocked_items=0)

    with ThreadPoolExecutor(
        max_workers=max(1, settings.restock_workers),
        thread_name_prefix=f"restock-{shopify_order_id}",
    ) as executor:
        futures = [
            executor.submit(_restock_line_item, client, location_id, item)
            for item in order.line_items
        ]
        done, not_done = wait(futures, return_when=FIRST_EXCEPTION)
        for future in not_done:
            future.cancel()

        for future in futures:
            if future in done and future.exception() is not None:
                raise future.exception()

    restocked = sum(1 for future in futures if future.result())
    logger.info(
        "Restock zamówienia %s zakończony: %s pozycji, lokalizacja %s.",
        shopify_order_id,
        restocked,
        location_id,
    )
    return RestockResult(location_id=location_id, restocked_items=restocked)

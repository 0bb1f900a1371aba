import logging
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from database import crud
from errors import ShopNotFound
from shopify_client import ShopifyClient, ShopifyApiError

logger = logging.getLogger("campaign-refunds")

# (shop_domain, access_token) -> klient Shopify; w testach podmieniany
ClientFactory = Callable[[str, str], ShopifyClient]


def open_shop_client(
    db: Session,
    shop_domain: str,
    client_factory: ClientFactory = ShopifyClient,
) -> ShopifyClient:
    """
    Zwraca klienta Shopify dla zainstalowanego sklepu albo rzuca ShopNotFound.
    """
    shop = crud.get_shop(db, shop_domain)
    if shop is None:
        raise ShopNotFound(shop_domain)
    return client_factory(shop.shop_domain, shop.access_token)


def get_shop_details(
    db: Session,
    shop_domain: str,
    client_factory: ClientFactory = ShopifyClient,
) -> Optional[Dict[str, Any]]:
    """
    Dane sklepu z bazy; jeśli ich brak – pobiera je z Shopify i zapisuje.
    Błąd pobrania nie jest krytyczny (zwracamy None).
    """
    shop = crud.get_shop(db, shop_domain)
    if shop is None:
        raise ShopNotFound(shop_domain)

    if shop.shop_data:
        return shop.shop_data

    client = client_factory(shop.shop_domain, shop.access_token)
    try:
        shop_data = client.get_shop()
    except ShopifyApiError as e:
        logger.error("Nie udało się pobrać danych sklepu %s: %s", shop_domain, e)
        return None

    crud.save_shop(db, shop_domain, shop.access_token, shop_data)
    return shop_data

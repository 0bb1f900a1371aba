import json
from typing import Any, Dict, List, Optional

from cryptography.fernet import InvalidToken
from sqlalchemy import select, update, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database.encryption import encrypt_token, decrypt_token
from database.models import Shop, OrderCampaignStatus, CampaignEvent
from domain import CampaignStatusUpdate, StoredShop
from errors import ShopCredentialsInvalid


# ------------------------------------------------------------------------------
# Sklepy (dane dostępowe)
# ------------------------------------------------------------------------------


def save_shop(
    db: Session,
    shop_domain: str,
    access_token: str,
    shop_data: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Zapisuje lub aktualizuje sklep wraz z zaszyfrowanym tokenem.
    """
    encrypted = encrypt_token(access_token)
    shop_data_json = json.dumps(shop_data, ensure_ascii=False) if shop_data else None

    shop = db.execute(
        select(Shop).where(Shop.shop_domain == shop_domain)
    ).scalar_one_or_none()

    if shop is None:
        db.add(
            Shop(
                shop_domain=shop_domain,
                access_token_encrypted=encrypted,
                shop_data=shop_data_json,
            )
        )
    else:
        shop.access_token_encrypted = encrypted
        shop.shop_data = shop_data_json

    db.commit()


def get_shop(db: Session, shop_domain: str) -> Optional[StoredShop]:
    """
    Zwraca sklep z odszyfrowanym tokenem albo None, jeśli sklep nie jest zainstalowany.
    Token zaszyfrowany innym kluczem -> ShopCredentialsInvalid.
    """
    shop = db.execute(
        select(Shop).where(Shop.shop_domain == shop_domain)
    ).scalar_one_or_none()
    if shop is None:
        return None

    try:
        access_token = decrypt_token(shop.access_token_encrypted)
    except InvalidToken as e:
        raise ShopCredentialsInvalid(shop_domain) from e

    return StoredShop(
        shop_domain=shop.shop_domain,
        access_token=access_token,
        shop_data=json.loads(shop.shop_data) if shop.shop_data else None,
        installed_at=shop.installed_at,
        updated_at=shop.updated_at,
    )


def get_all_shops(db: Session) -> List[Dict[str, Any]]:
    rows = db.execute(
        text(
            """
            SELECT shop_domain, installed_at
            FROM shops
            ORDER BY installed_at DESC, id DESC
            """
        )
    ).fetchall()
    return [{"shop_domain": row.shop_domain, "installed_at": row.installed_at} for row in rows]


def delete_shop(db: Session, shop_domain: str) -> bool:
    res = db.execute(
        text("DELETE FROM shops WHERE shop_domain = :shop_domain"),
        {"shop_domain": shop_domain},
    )
    db.commit()
    return res.rowcount > 0


# ------------------------------------------------------------------------------
# Status kampanii zamówienia
# ------------------------------------------------------------------------------


def get_order_campaign_status(
    db: Session, shop_domain: str, shopify_order_id: str
) -> Optional[OrderCampaignStatus]:
    return db.execute(
        select(OrderCampaignStatus).where(
            OrderCampaignStatus.shop_domain == shop_domain,
            OrderCampaignStatus.shopify_order_id == str(shopify_order_id),
        )
    ).scalar_one_or_none()


def get_all_order_campaign_statuses(db: Session, shop_domain: str) -> List[OrderCampaignStatus]:
    return list(
        db.execute(
            select(OrderCampaignStatus).where(OrderCampaignStatus.shop_domain == shop_domain)
        ).scalars()
    )


def update_order_campaign_status(
    db: Session,
    shop_domain: str,
    shopify_order_id: str,
    changes: CampaignStatusUpdate,
) -> None:
    """
    Częściowa aktualizacja rekordu kampanii.

    Zapisywane są tylko pola ustawione w `changes`, reszta zostaje bez zmian.
    UPDATE dotyczy wyłącznie tych kolumn, więc równoległy zapis restock_status
    nie nadpisze campaign_status (i odwrotnie). Rekord tworzony jest przy
    pierwszym zapisie.
    """
    values = changes.present_fields()
    order_key = str(shopify_order_id)

    if not values:
        return

    stmt = (
        update(OrderCampaignStatus)
        .where(
            OrderCampaignStatus.shop_domain == shop_domain,
            OrderCampaignStatus.shopify_order_id == order_key,
        )
        .values(**values)
    )

    res = db.execute(stmt)
    if res.rowcount:
        db.commit()
        return

    try:
        db.add(OrderCampaignStatus(shop_domain=shop_domain, shopify_order_id=order_key, **values))
        db.commit()
    except IntegrityError:
        # ktoś inny utworzył rekord w międzyczasie
        db.rollback()
        db.execute(stmt)
        db.commit()


# ------------------------------------------------------------------------------
# Log zdarzeń kampanii
# ------------------------------------------------------------------------------


def add_campaign_event(
    db: Session,
    event_type: str,
    status: str,
    message: str,
    payload: Any = None,
    shop_domain: Optional[str] = None,
    shopify_order_id: Optional[str] = None,
) -> None:
    db.add(
        CampaignEvent(
            event_type=event_type,
            status=status,
            message=(message or "")[:500],
            shop_domain=shop_domain,
            shopify_order_id=str(shopify_order_id) if shopify_order_id is not None else None,
            payload=json.dumps(payload, ensure_ascii=False, default=str)[:8000]
            if payload is not None
            else None,
        )
    )
    db.commit()


def list_campaign_events(db: Session, shop_domain: str, limit: int = 50) -> List[CampaignEvent]:
    return list(
        db.execute(
            select(CampaignEvent)
            .where(CampaignEvent.shop_domain == shop_domain)
            .order_by(CampaignEvent.created_at.desc(), CampaignEvent.id.desc())
            .limit(limit)
        ).scalars()
    )

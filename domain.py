"""
Typowany model wewnętrzny.

Surowe JSON-y z Shopify zamieniamy na te klasy od razu po pobraniu,
dalej w serwisach nie krążą już słowniki z API.
"""
from dataclasses import dataclass, field, fields, asdict
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional


class CampaignStatus(str, Enum):
    PROMISE_MET = "Campaign Promise Met"
    COMPLETED = "Campaign Completed"


class RestockStatus(str, Enum):
    PENDING = "Restock Pending"
    RESTOCKED = "Restocked"
    FAILED = "Restock Failed"


class DisplayStatus(str, Enum):
    NOT_REDEEMED = "Not Redeemed"
    REDEEMED = "Redeemed"
    ORDER_PROCESSED = "Order Processed"
    ORDER_DELIVERED = "Order Delivered"
    FULLY_USED = "Fully Used"


def to_decimal(value: Any, default: str = "0") -> Decimal:
    if value is None or value == "":
        return Decimal(default)
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return Decimal(default)


def _optional_str(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


# ------------------------------------------------------------------------------
# Częściowa aktualizacja rekordu kampanii
# ------------------------------------------------------------------------------


class _Unset:
    """Znacznik pola, którego nie zmieniamy (None jest poprawną wartością)."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


@dataclass
class CampaignStatusUpdate:
    campaign_status: Any = UNSET
    redeemed_code: Any = UNSET
    refund_amount: Any = UNSET
    refund_transaction_id: Any = UNSET
    restock_status: Any = UNSET

    def present_fields(self) -> Dict[str, Any]:
        """
        Zwraca tylko pola ustawione jawnie, z enumami zamienionymi na tekst.
        """
        values: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is UNSET:
                continue
            if isinstance(value, Enum):
                value = value.value
            values[f.name] = value
        return values


# ------------------------------------------------------------------------------
# Sklep
# ------------------------------------------------------------------------------


@dataclass
class StoredShop:
    shop_domain: str
    access_token: str
    shop_data: Optional[Dict[str, Any]] = None
    installed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ------------------------------------------------------------------------------
# Zamówienia
# ------------------------------------------------------------------------------


@dataclass
class LineItem:
    id: int
    quantity: int
    product_id: Optional[int] = None
    variant_id: Optional[int] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "LineItem":
        return cls(
            id=data.get("id"),
            quantity=int(data.get("quantity") or 0),
            product_id=data.get("product_id"),
            variant_id=data.get("variant_id"),
        )


@dataclass
class Fulfillment:
    id: Optional[int]
    location_id: Optional[int]

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Fulfillment":
        return cls(id=data.get("id"), location_id=data.get("location_id"))


@dataclass
class OrderTransaction:
    id: int
    kind: Optional[str]
    status: Optional[str]
    amount: Decimal
    gateway: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "OrderTransaction":
        return cls(
            id=data.get("id"),
            kind=data.get("kind"),
            status=data.get("status"),
            amount=to_decimal(data.get("amount")),
            gateway=data.get("gateway"),
        )

    @property
    def is_successful_sale(self) -> bool:
        return self.kind == "sale" and self.status == "success" and self.amount > 0


@dataclass
class RedemptionOrder:
    id: int
    name: Optional[str]
    financial_status: Optional[str]
    fulfillment_status: Optional[str]
    created_at: Optional[str]
    total_line_items_price: Optional[str] = None
    subtotal_price: Optional[str] = None
    total_price: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    currency: Optional[str] = None
    discount_codes: List[str] = field(default_factory=list)
    line_items: List[LineItem] = field(default_factory=list)
    fulfillments: List[Fulfillment] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "RedemptionOrder":
        customer = data.get("customer") or {}
        customer_name = None
        if customer:
            first_name = customer.get("first_name") or ""
            last_name = customer.get("last_name") or ""
            customer_name = f"{first_name} {last_name}".strip() or None

        return cls(
            id=data.get("id"),
            name=data.get("name"),
            financial_status=data.get("financial_status"),
            fulfillment_status=data.get("fulfillment_status"),
            created_at=data.get("created_at"),
            total_line_items_price=_optional_str(data.get("total_line_items_price")),
            subtotal_price=_optional_str(data.get("subtotal_price")),
            total_price=_optional_str(data.get("total_price")),
            customer_name=customer_name,
            customer_email=data.get("email") or customer.get("email"),
            currency=data.get("currency"),
            discount_codes=[
                dc.get("code") for dc in (data.get("discount_codes") or []) if dc.get("code")
            ],
            line_items=[LineItem.from_api(li) for li in (data.get("line_items") or [])],
            fulfillments=[Fulfillment.from_api(f) for f in (data.get("fulfillments") or [])],
        )

    @property
    def is_fulfilled(self) -> bool:
        return self.fulfillment_status == "fulfilled"

    @property
    def total_before_discount(self) -> str:
        return self.total_line_items_price or self.subtotal_price or "0.00"

    @property
    def amount_paid(self) -> str:
        return self.total_price or self.subtotal_price or "0.00"

    @property
    def first_discount_code(self) -> Optional[str]:
        return self.discount_codes[0] if self.discount_codes else None


# ------------------------------------------------------------------------------
# Kody rabatowe
# ------------------------------------------------------------------------------


@dataclass
class PriceRule:
    id: int
    title: Optional[str]
    usage_count: int = 0
    usage_limit: Optional[int] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "PriceRule":
        return cls(
            id=data.get("id"),
            title=data.get("title"),
            usage_count=int(data.get("usage_count") or 0),
            usage_limit=data.get("usage_limit") or None,
        )


@dataclass
class DiscountCode:
    id: int
    code: str
    price_rule_id: Optional[int] = None
    created_at: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "DiscountCode":
        return cls(
            id=data.get("id"),
            code=data.get("code") or "",
            price_rule_id=data.get("price_rule_id"),
            created_at=data.get("created_at"),
        )


@dataclass
class DiscountConfig:
    code: str
    percentage: float
    minimum_order_amount: Optional[float] = None
    expires_at: Optional[str] = None
    usage_limit: int = 1


@dataclass
class DiscountRow:
    """Jeden kod rabatowy ze stanem jego wykorzystania."""

    code: str
    id: int
    price_rule_id: int
    status: DisplayStatus
    order_id: Optional[str] = None           # nazwa zamówienia, np. "#1001"
    shopify_order_id: Optional[int] = None
    ordered_by: Optional[str] = None
    total_bill: Optional[str] = None
    amount_paid: Optional[str] = None
    usage_count: int = 0
    usage_limit: Optional[int] = None
    created_at: Optional[str] = None
    title: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class OrderView:
    discount: DiscountRow
    campaign_status: Optional[str] = None
    refund_amount: Optional[str] = None
    refund_transaction_id: Optional[str] = None
    restock_status: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = self.discount.to_dict()
        data.update(
            {
                "campaign_status": self.campaign_status,
                "refund_amount": self.refund_amount,
                "refund_transaction_id": self.refund_transaction_id,
                "restock_status": self.restock_status,
            }
        )
        return data


# ------------------------------------------------------------------------------
# Wyniki procesu kampanii
# ------------------------------------------------------------------------------


@dataclass
class CampaignResult:
    refund_id: Optional[str]
    refund_amount: Decimal
    restock_initiated: bool


@dataclass
class RestockResult:
    location_id: int
    restocked_items: int = 0

from sqlalchemy import Column, Integer, String, DateTime, Text, UniqueConstraint
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()


class Shop(Base):
    __tablename__ = "shops"

    id = Column(Integer, primary_key=True, index=True)
    shop_domain = Column(String, unique=True, nullable=False, index=True)  # np. sklep.myshopify.com
    access_token_encrypted = Column(String, nullable=False)
    shop_data = Column(Text, nullable=True)                                # JSON z /shop.json
    installed_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )


class OrderCampaignStatus(Base):
    """
    Stan kampanii dla pojedynczego zamówienia Shopify.
    Jedyny zmienny rekord w procesie zwrotu.
    """
    __tablename__ = "order_campaign_status"
    __table_args__ = (
        UniqueConstraint("shop_domain", "shopify_order_id", name="uq_campaign_shop_order"),
    )

    id = Column(Integer, primary_key=True, index=True)
    shop_domain = Column(String, nullable=False, index=True)
    shopify_order_id = Column(String, nullable=False, index=True)

    campaign_status = Column(String, nullable=True)        # 'Campaign Promise Met' / 'Campaign Completed'
    redeemed_code = Column(String, nullable=True)
    refund_amount = Column(String, nullable=True)          # np. "250.00"
    refund_transaction_id = Column(String, nullable=True)
    restock_status = Column(String, nullable=True)         # 'Restock Pending' / 'Restocked' / 'Restock Failed'

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )


class CampaignEvent(Base):
    """
    Log zdarzeń kampanii (zwroty, restock), do podglądu przez operatora.
    """
    __tablename__ = "campaign_events"

    id = Column(Integer, primary_key=True, index=True)
    event_type = Column(String, nullable=False, index=True)  # np. 'refund', 'restock'
    status = Column(String, nullable=False, index=True)      # np. 'succeeded', 'failed'
    message = Column(String, nullable=True)

    shop_domain = Column(String, nullable=True, index=True)
    shopify_order_id = Column(String, nullable=True, index=True)

    payload = Column(Text, nullable=True)

    created_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True,
    )

import os
from typing import Optional


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """
    Konfiguracja aplikacji czytana ze zmiennych środowiskowych.
    """

    def __init__(self) -> None:
        self.database_url: str = os.getenv("DATABASE_URL", "sqlite:///./data/shops.db")
        self.encryption_key: Optional[str] = os.getenv("ENCRYPTION_KEY")

        self.shopify_api_key: Optional[str] = os.getenv("SHOPIFY_API_KEY")
        self.shopify_api_secret: Optional[str] = os.getenv("SHOPIFY_API_SECRET")
        self.shopify_scopes: str = os.getenv(
            "SHOPIFY_SCOPES", "read_products,write_price_rules,read_orders"
        )
        self.shopify_api_version: str = os.getenv("SHOPIFY_API_VERSION", "2024-10")
        self.shopify_api_timeout: float = float(os.getenv("SHOPIFY_API_TIMEOUT", "20"))

        self.app_url: str = os.getenv("APP_URL", "http://localhost:3000")
        self.callback_url: str = os.getenv("CALLBACK_URL", f"{self.app_url}/auth/callback")

        self.restock_workers: int = int(os.getenv("RESTOCK_WORKERS", "4"))
        self.log_level: str = os.getenv("LOG_LEVEL", "INFO")

        # powiadomienie klienta o zwrocie (Shopify dostaje notify=false)
        self.notify_customer: bool = _env_bool("CAMPAIGN_NOTIFY_CUSTOMER")


settings = Settings()

import httpx
from typing import Any, Dict, List, Optional

from config import settings


class ShopifyApiError(Exception):
    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        payload: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload


def extract_error_message(payload: Any) -> Optional[str]:
    """
    Wyciąga czytelny komunikat z odpowiedzi błędu Shopify.
    Shopify zwraca np. {"errors": {"message": ...}}, {"errors": "..."} albo {"error": "..."}.
    """
    if not isinstance(payload, dict):
        return None

    errors = payload.get("errors")
    if isinstance(errors, dict):
        if errors.get("message"):
            return str(errors["message"])
        parts = []
        for key, value in errors.items():
            if isinstance(value, list):
                value = ", ".join(str(v) for v in value)
            parts.append(f"{key}: {value}")
        if parts:
            return "; ".join(parts)
    elif isinstance(errors, str) and errors:
        return errors
    elif isinstance(errors, list) and errors:
        return ", ".join(str(e) for e in errors)

    if payload.get("error"):
        return str(payload["error"])

    return None


class ShopifyClient:
    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.shop_domain = shop_domain
        self.base_url = f"https://{shop_domain}/admin/api/{settings.shopify_api_version}"
        self.access_token = access_token
        self.timeout = settings.shopify_api_timeout
        self._transport = transport

    def _get_client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
            headers={
                "X-Shopify-Access-Token": self.access_token,
                "accept": "application/json",
                "content-type": "application/json",
            },
        )

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            with self._get_client() as client:
                resp = client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise ShopifyApiError(f"Shopify {method} {path} failed: {e}") from e

        if resp.status_code >= 400:
            try:
                payload = resp.json()
            except ValueError:
                payload = resp.text
            message = extract_error_message(payload) or f"HTTP {resp.status_code}: {resp.text[:200]}"
            raise ShopifyApiError(message, status_code=resp.status_code, payload=payload)

        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as e:
            raise ShopifyApiError(
                f"Shopify {method} {path} returned non-JSON response: {resp.text[:200]}",
                status_code=resp.status_code,
                payload=resp.text,
            ) from e

    # -------------------------------------------------------------------
    #  SKLEP
    # -------------------------------------------------------------------

    def get_shop(self) -> Dict[str, Any]:
        return self._request("GET", "/shop.json").get("shop") or {}

    # -------------------------------------------------------------------
    #  PRICE RULES / DISCOUNT CODES
    # -------------------------------------------------------------------

    def list_price_rules(self, limit: int = 250) -> List[Dict[str, Any]]:
        data = self._request("GET", "/price_rules.json", params={"limit": limit})
        return data.get("price_rules") or []

    def create_price_rule(self, price_rule: Dict[str, Any]) -> Dict[str, Any]:
        data = self._request("POST", "/price_rules.json", json={"price_rule": price_rule})
        return data.get("price_rule") or {}

    def list_discount_codes(self, price_rule_id: int) -> List[Dict[str, Any]]:
        data = self._request("GET", f"/price_rules/{price_rule_id}/discount_codes.json")
        return data.get("discount_codes") or []

    def create_discount_code(self, price_rule_id: int, code: str) -> Dict[str, Any]:
        data = self._request(
            "POST",
            f"/price_rules/{price_rule_id}/discount_codes.json",
            json={"discount_code": {"code": code}},
        )
        return data.get("discount_code") or {}

    # -------------------------------------------------------------------
    #  ZAMÓWIENIA / TRANSAKCJE / ZWROTY
    # -------------------------------------------------------------------

    def list_orders(
        self,
        limit: int = 250,
        status: str = "any",
        fields: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"limit": limit, "status": status}
        if fields:
            params["fields"] = fields
        data = self._request("GET", "/orders.json", params=params)
        return data.get("orders") or []

    def get_order(self, order_id: Any) -> Dict[str, Any]:
        order = self._request("GET", f"/orders/{order_id}.json").get("order")
        if not order:
            raise ShopifyApiError(f"Order {order_id} missing in Shopify response")
        return order

    def list_transactions(self, order_id: Any) -> List[Dict[str, Any]]:
        data = self._request("GET", f"/orders/{order_id}/transactions.json")
        return data.get("transactions") or []

    def create_refund(self, order_id: Any, refund: Dict[str, Any]) -> Dict[str, Any]:
        data = self._request("POST", f"/orders/{order_id}/refunds.json", json={"refund": refund})
        return data.get("refund") or {}

    # -------------------------------------------------------------------
    #  MAGAZYN
    # -------------------------------------------------------------------

    def list_locations(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/locations.json").get("locations") or []

    def get_variant(self, variant_id: Any) -> Dict[str, Any]:
        return self._request("GET", f"/variants/{variant_id}.json").get("variant") or {}

    def adjust_inventory_level(
        self,
        location_id: Any,
        inventory_item_id: Any,
        available_adjustment: int,
    ) -> Dict[str, Any]:
        payload = {
            "location_id": location_id,
            "inventory_item_id": inventory_item_id,
            "available_adjustment": available_adjustment,
        }
        data = self._request("POST", "/inventory_levels/adjust.json", json=payload)
        return data.get("inventory_level") or {}

import os
import logging
import requests
from decimal import Decimal
from typing import Any, Dict, Optional

logger = logging.getLogger("campaign-refunds")

SENDGRID_API_KEY = os.getenv("SENDGRID_API_KEY")
SENDGRID_FROM_EMAIL = os.getenv("SENDGRID_FROM_EMAIL")
SENDGRID_FROM_NAME = os.getenv("SENDGRID_FROM_NAME", "Loyalty Campaign")

SENDGRID_API_URL = "https://api.sendgrid.com/v3/mail/send"
SENDGRID_TIMEOUT = 10


def sendgrid_configured() -> bool:
    return bool(SENDGRID_API_KEY and SENDGRID_FROM_EMAIL)


def _plain_text_message(to_email: str, subject: str, body_text: str) -> Dict[str, Any]:
    return {
        "personalizations": [{"to": [{"email": to_email}]}],
        "from": {"email": SENDGRID_FROM_EMAIL, "name": SENDGRID_FROM_NAME},
        "subject": subject,
        "content": [{"type": "text/plain", "value": body_text}],
    }


def send_email(to_email: str, subject: str, body_text: str) -> None:
    """
    Wysyła wiadomość tekstową przez SendGrid; błąd HTTP jest logowany i rzucany dalej.
    """
    if not SENDGRID_API_KEY:
        raise RuntimeError("Brak SENDGRID_API_KEY w zmiennych środowiskowych")

    resp = requests.post(
        SENDGRID_API_URL,
        json=_plain_text_message(to_email, subject, body_text),
        headers={"Authorization": f"Bearer {SENDGRID_API_KEY}"},
        timeout=SENDGRID_TIMEOUT,
    )
    try:
        resp.raise_for_status()
    except requests.HTTPError as e:
        logger.error("SendGrid odrzucił wiadomość do %s: %s, response=%s", to_email, e, resp.text)
        raise

    logger.info("Wysłano e-mail '%s' na %s (SendGrid)", subject, to_email)


def refund_email_body(order_label: str, amount_text: str) -> str:
    return "\n".join(
        [
            "Thank you for taking part in our loyalty campaign!",
            "",
            f"We have refunded {amount_text} for {order_label}.",
            "The money should reach your account within a few business days.",
        ]
    )


def send_refund_email(
    to_email: str,
    order_name: Optional[str],
    amount: Decimal,
    currency: Optional[str] = None,
) -> None:
    """
    Informuje klienta o zwrocie w ramach kampanii (Shopify nie wysyła powiadomienia).
    """
    order_label = order_name or "your order"
    amount_text = f"{amount:.2f} {currency}" if currency else f"{amount:.2f}"

    send_email(
        to_email=to_email,
        subject=f"Your loyalty refund for {order_label}",
        body_text=refund_email_body(order_label, amount_text),
    )

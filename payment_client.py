"""
Payment provider (Razorpay) client: order creation and signature checks.
"""
import hashlib
import hmac
import logging
import time

import httpx

from config import Settings
from errors import InfrastructureError

logger = logging.getLogger(__name__)


def get_api_headers() -> dict:
    """Get API request headers."""
    return {
        "Accept": "application/json",
        "Content-Type": "application/json",
    }


def new_receipt_id() -> str:
    return f"receipt_order_{int(time.time() * 1000)}"


async def create_order(
    client: httpx.AsyncClient,
    settings: Settings,
    amount: int,
    currency: str,
    receipt: str,
) -> dict:
    """
    Create a payment order with the provider.

    Args:
        client: HTTP client instance
        settings: provides API URL, key id/secret and timeout
        amount: amount in minor currency units (paise, cents)
        currency: ISO currency code
        receipt: our receipt reference

    Returns:
        Dictionary with order_id, amount and currency as echoed by the provider

    Raises:
        InfrastructureError: if the provider is unreachable or answers with an error
    """
    url = f"{settings.razorpay_api_url}/orders"
    payload = {
        "amount": amount,
        "currency": currency,
        "receipt": receipt,
        "payment_capture": 1,
    }

    try:
        logger.info(f"Creating payment order: {amount} {currency} ({receipt})")
        response = await client.post(
            url,
            json=payload,
            headers=get_api_headers(),
            auth=(settings.razorpay_key_id, settings.razorpay_key_secret),
            timeout=settings.payment_timeout_seconds,
        )
        response.raise_for_status()
        data = response.json()
    except httpx.HTTPStatusError as e:
        logger.error(f"Payment provider error: {e.response.status_code} - {e.response.text}")
        raise InfrastructureError("Server error while creating payment order")
    except (httpx.HTTPError, ValueError) as e:
        logger.error(f"Error creating payment order: {str(e)}")
        raise InfrastructureError("Server error while creating payment order")

    if not isinstance(data, dict) or not data.get("id"):
        logger.error(f"Unexpected payment provider response format: {type(data)}")
        raise InfrastructureError("Server error while creating payment order")

    logger.info(f"Payment order {data['id']} created")
    return {
        "order_id": data["id"],
        "amount": data.get("amount", amount),
        "currency": data.get("currency", currency),
    }


def generate_signature(order_id: str, payment_id: str, secret: str) -> str:
    """HMAC-SHA256 of "order_id|payment_id" keyed with the provider secret, hex encoded."""
    body = f"{order_id}|{payment_id}"
    return hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_signature(order_id: str, payment_id: str, signature: str, secret: str) -> bool:
    expected = generate_signature(order_id, payment_id, secret)
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))

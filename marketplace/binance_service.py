import hashlib
import hmac
import json
import logging
import secrets
import time
from decimal import Decimal
from typing import Mapping, Optional, Union

import httpx

from marketplace import settings
from marketplace.errors import PaymentProviderError, Unauthenticated

logger = logging.getLogger(__name__)

TIMESTAMP_HEADER = "BinancePay-Timestamp"
NONCE_HEADER = "BinancePay-Nonce"
SIGNATURE_HEADER = "BinancePay-Signature"
CERTIFICATE_HEADER = "BinancePay-Certificate-SN"


def generate_signature(timestamp, nonce: str, body: Union[str, bytes], secret: Optional[str] = None) -> str:
    if isinstance(body, str):
        body = body.encode("utf-8")
    payload = f"{timestamp}\n{nonce}\n".encode("utf-8") + body + b"\n"
    key = (settings.BINANCE_SECRET_KEY if secret is None else secret).encode("utf-8")
    return hmac.new(key, payload, hashlib.sha512).hexdigest().upper()


def merchant_trade_no(order_id: int, timestamp: int) -> str:
    return f"ORDER_{order_id}_{timestamp}"


def verify_webhook_signature(headers: Mapping[str, str], body: bytes) -> None:
    """Reject a webhook unless it carries a fresh, valid signature."""
    timestamp = headers.get(TIMESTAMP_HEADER)
    nonce = headers.get(NONCE_HEADER)
    signature = headers.get(SIGNATURE_HEADER)
    if not (timestamp and nonce and signature):
        raise Unauthenticated("Missing webhook signature headers")
    if not settings.BINANCE_SECRET_KEY:
        raise Unauthenticated("Webhook verification is not configured")

    try:
        sent_at = int(timestamp)
    except ValueError:
        raise Unauthenticated("Invalid webhook timestamp")
    if abs(int(time.time() * 1000) - sent_at) > settings.WEBHOOK_TOLERANCE_SECONDS * 1000:
        raise Unauthenticated("Webhook timestamp outside tolerance")

    expected = generate_signature(timestamp, nonce, body)
    if not hmac.compare_digest(expected, signature.upper()):
        raise Unauthenticated("Invalid signature")


def _simulated_response(timestamp: int) -> dict:
    prepay_id = f"SIMULATED_{timestamp}"
    return {
        "status": "SUCCESS",
        "code": "000000",
        "data": {
            "prepayId": prepay_id,
            "terminalType": "WEB",
            "expireTime": timestamp + 3600000,
            "qrcodeLink": f"https://qr.binance.com/payment/{timestamp}",
            "qrContent": f"binancepay://payment?prepayId={prepay_id}",
            "checkoutUrl": f"https://pay.binance.com/checkout/{prepay_id}",
            "deeplink": f"bnc://app.binance.com/payment/{timestamp}",
            "universalUrl": f"https://app.binance.com/payment/{timestamp}",
        },
    }


def create_order(order_id: int, amount: Decimal, currency: str, return_url: str) -> dict:
    """Create a Binance Pay checkout for a marketplace order.

    Returns the provider's ``data`` object with the ``merchantTradeNo`` that
    webhooks will reference. Unless ``BINANCE_PAY_SIMULATE`` is off, the
    provider is not contacted and a simulated checkout is returned.
    """
    timestamp = int(time.time() * 1000)
    nonce = secrets.token_hex(16)
    trade_no = merchant_trade_no(order_id, timestamp)
    request_body = {
        "env": {"terminalType": "WEB"},
        "merchantTradeNo": trade_no,
        "orderAmount": f"{amount:.2f}",
        "currency": currency,
        "goods": {
            "goodsType": "02",  # virtual goods
            "goodsCategory": "Digital Products",
            "referenceGoodsId": str(order_id),
            "goodsName": "Digital Products Order",
        },
        "returnUrl": return_url,
        "cancelUrl": return_url,
    }
    body = json.dumps(request_body, separators=(",", ":"))
    signature = generate_signature(timestamp, nonce, body)

    if settings.BINANCE_PAY_SIMULATE:
        response = _simulated_response(timestamp)
    else:
        try:
            r = httpx.post(
                settings.BINANCE_PAY_URL,
                content=body,
                headers={
                    "Content-Type": "application/json",
                    TIMESTAMP_HEADER: str(timestamp),
                    NONCE_HEADER: nonce,
                    CERTIFICATE_HEADER: settings.BINANCE_API_KEY,
                    SIGNATURE_HEADER: signature,
                },
                timeout=settings.BINANCE_TIMEOUT_SECONDS,
            )
            r.raise_for_status()
            response = r.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Binance Pay request for order %s failed: %s", order_id, exc)
            raise PaymentProviderError("Payment provider unavailable, try again") from exc

    if response.get("status") != "SUCCESS" or not response.get("data"):
        logger.error("Binance Pay rejected order %s: %s", order_id, response.get("errorMessage"))
        raise PaymentProviderError("Payment provider rejected the request")

    return dict(response["data"], merchantTradeNo=trade_no)

"""
Confirmation notifications for CryptoPayLink.

The state machine calls a dispatcher at most once per confirmed payment.
Dispatchers raise NotificationError when delivery fails; they never change
payment state.
"""

import hashlib
import hmac
import json
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Optional

import requests

from .exceptions import ConfigurationError, NotificationError
from .models import PaymentIntent, Product
from .utils import redact_message, retry

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-CryptoPayLink-Signature"


def build_receipt(payment: PaymentIntent, product: Optional[Product]) -> dict[str, Any]:
    """Receipt body sent to the buyer's notification channel."""
    amount = payment.display_amount if payment.display_amount is not None else payment.expected_crypto_amount
    return {
        "paymentId": payment.id,
        "productId": payment.product_id,
        "productName": product.name if product else None,
        "priceUsd": str(product.price_usd) if product else None,
        "chain": product.chain.value if product else None,
        "currency": product.currency if product else None,
        "amount": str(amount),
        "buyerEmail": payment.buyer_email,
        "txHash": payment.tx_hash,
        "confirmedAt": payment.confirmed_at.isoformat() if payment.confirmed_at else None,
    }


class NotificationDispatcher(ABC):
    """Abstract base class for confirmation channels."""

    @abstractmethod
    def send_confirmation(self, payment: PaymentIntent, product: Optional[Product]) -> None:
        """
        Deliver the confirmation for a confirmed payment.

        Raises:
            NotificationError: if the confirmation could not be delivered.
        """
        pass


class LoggingNotificationDispatcher(NotificationDispatcher):
    """Writes receipts to the log. Default channel for development."""

    def __init__(self):
        self.sent: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    def send_confirmation(self, payment: PaymentIntent, product: Optional[Product]) -> None:
        receipt = build_receipt(payment, product)
        with self._lock:
            self.sent.append(receipt)
        logger.info(
            "Payment confirmation for %s: %s %s paid in %s",
            payment.id,
            receipt["amount"],
            receipt["currency"],
            payment.tx_hash,
        )


class WebhookNotificationDispatcher(NotificationDispatcher):
    """POSTs a JSON receipt to a merchant webhook, optionally HMAC-signed."""

    def __init__(
        self,
        url: str,
        secret: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
        max_attempts: int = 3,
        retry_delay: float = 0.5,
    ):
        if not url or not url.startswith(("http://", "https://")):
            raise ConfigurationError("Webhook URL must use HTTP or HTTPS", config_key="url", actual_value=url)
        self.url = url
        self.secret = secret
        self.session = session or requests.Session()
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay

    def _sign(self, body: bytes) -> str:
        return hmac.new(self.secret.encode("utf-8"), body, hashlib.sha256).hexdigest()

    def _post(self, body: bytes, headers: dict[str, str]) -> None:
        response = self.session.post(self.url, data=body, headers=headers, timeout=self.timeout)
        response.raise_for_status()

    def send_confirmation(self, payment: PaymentIntent, product: Optional[Product]) -> None:
        body = json.dumps(build_receipt(payment, product), separators=(",", ":")).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if self.secret:
            headers[SIGNATURE_HEADER] = self._sign(body)

        post = retry(
            exceptions=requests.exceptions.RequestException,
            max_attempts=self.max_attempts,
            initial_delay=self.retry_delay,
            max_delay=max(self.retry_delay, 5.0),
            logger=logger,
            retry_message=f"Retrying confirmation webhook for {payment.id}",
        )(self._post)
        try:
            post(body, headers)
        except requests.exceptions.RequestException as e:
            raise NotificationError(
                f"Confirmation webhook failed for payment {payment.id}",
                payment_id=payment.id,
                channel="webhook",
                details={"provider_error": redact_message(str(e))},
            ) from e
        logger.info("Delivered confirmation webhook for payment %s", payment.id)

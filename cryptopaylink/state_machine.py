"""
Payment lifecycle for CryptoPayLink.

Payments move ``pending -> confirmed`` or ``pending -> failed`` exactly once.
Every transition is serialized per payment id inside the process and applied
as a compare-and-set on the persisted status, so repeated or concurrent
requests (from the scheduler, a manual verification or another process)
collapse into one effect and one notification.
"""

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Optional

from .exceptions import DuplicateTransactionError, NotificationError, PaymentNotFound, ValidationError
from .models import PaymentIntent, PaymentStatus, Product, TransitionOutcome, TransitionResult
from .notifications import LoggingNotificationDispatcher, NotificationDispatcher
from .storage.base import StorageBackend
from .utils import get_current_timestamp, parse_email, validate_wallet_address

logger = logging.getLogger(__name__)


class _PaymentLock:
    __slots__ = ("rlock", "holders")

    def __init__(self):
        self.rlock = threading.RLock()
        self.holders = 0


class PaymentStateMachine:
    """Owns every write to a payment's status, tx_hash, confirmed_at and notified_at."""

    def __init__(
        self,
        storage: StorageBackend,
        dispatcher: Optional[NotificationDispatcher] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.storage = storage
        self.dispatcher = dispatcher or LoggingNotificationDispatcher()
        self._clock = clock or get_current_timestamp
        # Only payments with a holder or waiter have an entry
        self._locks: dict[str, _PaymentLock] = {}
        self._registry_lock = threading.Lock()

    @contextmanager
    def lock(self, payment_id: str) -> Iterator[None]:
        """Serialize transitions of ``payment_id`` within this process. Reentrant."""
        with self._registry_lock:
            entry = self._locks.get(payment_id)
            if entry is None:
                entry = self._locks[payment_id] = _PaymentLock()
            entry.holders += 1
        try:
            with entry.rlock:
                yield
        finally:
            with self._registry_lock:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._locks[payment_id]

    def get(self, payment_id: str) -> PaymentIntent:
        payment = self.storage.get_payment(payment_id)
        if payment is None:
            raise PaymentNotFound(f"Payment {payment_id} not found", entity_id=payment_id)
        return payment

    @staticmethod
    def validate_request(product: Product, buyer_email: str, buyer_wallet: str) -> None:
        """
        Check that a buyer may start paying for ``product``.

        Raises:
            ValidationError: if the product is inactive or unpriced, or the
                buyer's wallet or email is malformed.
        """
        if not product.is_active:
            raise ValidationError("Product is not available for sale", field="product_id", value=product.id)
        if product.price_usd <= 0:
            raise ValidationError("Product price must be positive", field="price_usd", value=str(product.price_usd))
        if not validate_wallet_address(product.chain.value, buyer_wallet):
            raise ValidationError(
                f"Invalid {product.chain.value} wallet address",
                field="buyer_wallet",
                value=buyer_wallet,
                constraints={"chain": product.chain.value},
            )
        if parse_email(buyer_email) is None:
            raise ValidationError("Invalid buyer email address", field="buyer_email", value=buyer_email)

    def create(self, intent: PaymentIntent, product: Product) -> PaymentIntent:
        """Validate and persist a new pending payment for ``product``."""
        if intent.product_id != product.id:
            raise ValidationError("Payment does not reference this product", field="product_id", value=intent.product_id)
        self.validate_request(product, intent.buyer_email, intent.buyer_wallet)
        if intent.status != PaymentStatus.PENDING:
            raise ValidationError("New payments must be pending", field="status", value=intent.status.value)

        self.storage.create_payment(intent)
        logger.info(
            "Created payment %s for product %s: expecting %s %s",
            intent.id,
            product.id,
            intent.expected_crypto_amount,
            product.currency,
        )
        return intent

    def _existing_result(self, payment: PaymentIntent, requested: PaymentStatus) -> TransitionResult:
        outcome = TransitionOutcome.DUPLICATE if payment.status == requested else TransitionOutcome.CONFLICT
        if outcome == TransitionOutcome.CONFLICT:
            logger.warning(
                "Ignoring request to mark %s payment %s as %s",
                payment.status.value,
                payment.id,
                requested.value,
            )
        return TransitionResult(
            payment_id=payment.id,
            outcome=outcome,
            status=payment.status,
            tx_hash=payment.tx_hash,
            payment=payment,
        )

    def request_confirm(self, payment_id: str, tx_hash: str) -> TransitionResult:
        """
        Confirm a pending payment with ``tx_hash`` and dispatch its notification.

        Returns a DUPLICATE result carrying the original tx_hash if the payment
        is already confirmed, CONFLICT if it already failed and REJECTED if the
        hash already confirmed another payment (the payment stays pending).
        """
        if not tx_hash or not isinstance(tx_hash, str):
            raise ValidationError("Transaction hash is required", field="tx_hash", value=tx_hash)

        with self.lock(payment_id):
            payment = self.get(payment_id)
            if payment.status.is_terminal:
                if payment.is_confirmed and payment.tx_hash != tx_hash:
                    logger.info("Payment %s already confirmed by %s, ignoring %s", payment_id, payment.tx_hash, tx_hash)
                return self._existing_result(payment, PaymentStatus.CONFIRMED)

            try:
                applied = self.storage.confirm_payment(payment_id, tx_hash, self._clock())
            except DuplicateTransactionError:
                logger.warning("Transaction %s already confirmed another payment; %s stays pending", tx_hash, payment_id)
                return TransitionResult(
                    payment_id=payment_id,
                    outcome=TransitionOutcome.REJECTED,
                    status=PaymentStatus.PENDING,
                    payment=payment,
                )

            payment = self.get(payment_id)
            if not applied:
                # Another process moved the payment first
                return self._existing_result(payment, PaymentStatus.CONFIRMED)

            logger.info("Payment %s confirmed by transaction %s", payment_id, tx_hash)
            result = TransitionResult(
                payment_id=payment_id,
                outcome=TransitionOutcome.APPLIED,
                status=PaymentStatus.CONFIRMED,
                tx_hash=tx_hash,
                payment=payment,
            )

        self._notify(payment_id)
        return result

    def request_fail(self, payment_id: str, reason: str) -> TransitionResult:
        """Fail a pending payment. DUPLICATE if already failed, CONFLICT if confirmed."""
        with self.lock(payment_id):
            payment = self.get(payment_id)
            if payment.status.is_terminal:
                return self._existing_result(payment, PaymentStatus.FAILED)

            applied = self.storage.fail_payment(payment_id, reason)
            payment = self.get(payment_id)
            if not applied:
                return self._existing_result(payment, PaymentStatus.FAILED)

            logger.warning("Payment %s failed: %s", payment_id, reason)
            return TransitionResult(
                payment_id=payment_id,
                outcome=TransitionOutcome.APPLIED,
                status=PaymentStatus.FAILED,
                payment=payment,
            )

    def send_confirmation(self, payment_id: str) -> bool:
        """
        Send the confirmation for a confirmed payment that was never notified.

        Returns False (and sends nothing) for pending or failed payments and
        for payments whose notification was already claimed.
        """
        payment = self.get(payment_id)
        if not payment.is_confirmed:
            logger.info("Not sending confirmation for %s payment %s", payment.status.value, payment_id)
            return False
        return self._notify(payment_id)

    def _notify(self, payment_id: str) -> bool:
        if not self.storage.claim_notification(payment_id, self._clock()):
            logger.debug("Confirmation for payment %s already claimed", payment_id)
            return False

        payment = self.get(payment_id)
        product = self.storage.get_product(payment.product_id)
        try:
            self.dispatcher.send_confirmation(payment, product)
        except NotificationError as e:
            logger.error("Confirmation for payment %s could not be delivered: %s", payment_id, e)
            return False
        except Exception:
            logger.exception("Notification dispatcher crashed for payment %s", payment_id)
            return False
        return True

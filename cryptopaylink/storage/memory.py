"""
In-memory storage backend for development and testing.

This backend stores all data in memory and is not persistent. Records are
kept in serialized form so callers never share mutable objects with the store.
"""

import logging
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..exceptions import DuplicateTransactionError, StorageError, ValidationError
from ..models import PaymentIntent, PaymentStatus, Product
from .base import StorageBackend, StorageCapabilities

logger = logging.getLogger(__name__)


class MemoryStorage(StorageBackend):
    """
    In-memory storage backend for development and testing.

    A single re-entrant lock makes every compare-and-set atomic within the process.
    """

    def __init__(self):
        """Initialize the memory storage backend."""
        self.products: Dict[str, Dict[str, Any]] = {}
        self.payments: Dict[str, Dict[str, Any]] = {}
        self.tx_hashes: Dict[str, str] = {}  # tx_hash -> payment_id
        self._lock = threading.RLock()
        super().__init__("MemoryStorage")

    def _get_capabilities(self):
        return StorageCapabilities(is_persistent=False, supports_multiple_processes=False, supports_indexing=True)

    def _validate_configuration(self):
        """No configuration needed for memory storage."""
        pass

    def _perform_health_check(self):
        with self._lock:
            _ = len(self.products)
            _ = len(self.payments)

    def save_product(self, product: Product) -> None:
        if not isinstance(product, Product):
            raise ValidationError("Invalid product object", field="product", value=product)
        with self._lock:
            self.products[product.id] = product.to_dict()
        logger.debug("Saved product: %s", product.id)

    def get_product(self, product_id: str) -> Optional[Product]:
        with self._lock:
            data = self.products.get(product_id)
        return Product.from_dict(data) if data else None

    def list_products(self, active_only: bool = False) -> List[Product]:
        with self._lock:
            rows = list(self.products.values())
        products = [Product.from_dict(row) for row in rows]
        if active_only:
            products = [p for p in products if p.is_active]
        return sorted(products, key=lambda p: p.created_at)

    def delete_product(self, product_id: str) -> bool:
        with self._lock:
            return self.products.pop(product_id, None) is not None

    def create_payment(self, payment: PaymentIntent) -> None:
        if not isinstance(payment, PaymentIntent):
            raise ValidationError("Invalid payment object", field="payment", value=payment)
        with self._lock:
            if payment.id in self.payments:
                raise StorageError(
                    f"Payment {payment.id} already exists", storage_type=self.name, operation="create_payment", entity_id=payment.id
                )
            self.payments[payment.id] = payment.to_dict()
            if payment.tx_hash:
                self.tx_hashes[payment.tx_hash] = payment.id
        logger.debug("Created payment: %s", payment.id)

    def get_payment(self, payment_id: str) -> Optional[PaymentIntent]:
        with self._lock:
            data = self.payments.get(payment_id)
            return PaymentIntent.from_dict(data) if data else None

    def get_payment_by_tx_hash(self, tx_hash: str) -> Optional[PaymentIntent]:
        with self._lock:
            payment_id = self.tx_hashes.get(tx_hash)
            return self.get_payment(payment_id) if payment_id else None

    def list_payments(
        self,
        product_id: Optional[str] = None,
        status: Optional[PaymentStatus] = None,
        limit: Optional[int] = None,
    ) -> List[PaymentIntent]:
        with self._lock:
            rows = list(self.payments.values())
        payments = [PaymentIntent.from_dict(row) for row in rows]
        if product_id is not None:
            payments = [p for p in payments if p.product_id == product_id]
        if status is not None:
            payments = [p for p in payments if p.status == PaymentStatus(status)]
        payments.sort(key=lambda p: p.created_at)
        return payments[:limit] if limit else payments

    def record_poll(
        self, payment_id: str, polled_at: datetime, attempt_increment: int = 0, error_increment: int = 0
    ) -> Optional[PaymentIntent]:
        with self._lock:
            data = self.payments.get(payment_id)
            if not data or data["status"] != PaymentStatus.PENDING.value:
                return None
            data["attempt_count"] += attempt_increment
            data["error_count"] += error_increment
            data["last_polled_at"] = polled_at.isoformat()
            return PaymentIntent.from_dict(data)

    def confirm_payment(self, payment_id: str, tx_hash: str, confirmed_at: datetime) -> bool:
        with self._lock:
            data = self.payments.get(payment_id)
            if not data or data["status"] != PaymentStatus.PENDING.value:
                return False
            owner = self.tx_hashes.get(tx_hash)
            if owner is not None and owner != payment_id:
                raise DuplicateTransactionError(
                    f"Transaction {tx_hash} already confirmed payment {owner}",
                    storage_type=self.name,
                    operation="confirm_payment",
                    entity_id=payment_id,
                    tx_hash=tx_hash,
                )
            data["status"] = PaymentStatus.CONFIRMED.value
            data["tx_hash"] = tx_hash
            data["confirmed_at"] = confirmed_at.isoformat()
            self.tx_hashes[tx_hash] = payment_id
            return True

    def fail_payment(self, payment_id: str, reason: str) -> bool:
        with self._lock:
            data = self.payments.get(payment_id)
            if not data or data["status"] != PaymentStatus.PENDING.value:
                return False
            data["status"] = PaymentStatus.FAILED.value
            data["failure_reason"] = reason
            return True

    def claim_notification(self, payment_id: str, notified_at: datetime) -> bool:
        with self._lock:
            data = self.payments.get(payment_id)
            if not data or data["status"] != PaymentStatus.CONFIRMED.value or data.get("notified_at"):
                return False
            data["notified_at"] = notified_at.isoformat()
            return True

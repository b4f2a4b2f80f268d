"""
Abstract base class for storage backends.

Defines the interface that all storage backends must implement. Every
status-changing write is a compare-and-set against the persisted status so
that the payment lifecycle holds even when several processes share a store.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..models import PaymentIntent, PaymentStatus, Product

logger = logging.getLogger(__name__)


@dataclass
class StorageCapabilities:
    """Represents the capabilities of a storage backend."""

    is_persistent: bool = False
    supports_multiple_processes: bool = False
    supports_indexing: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert capabilities to dictionary."""
        return {
            "is_persistent": self.is_persistent,
            "supports_multiple_processes": self.supports_multiple_processes,
            "supports_indexing": self.supports_indexing,
        }


@dataclass
class StorageStatus:
    """Represents the current status of a storage backend."""

    is_healthy: bool = True
    last_check: Optional[datetime] = None
    error_message: Optional[str] = None
    response_time_ms: Optional[float] = None

    def __post_init__(self):
        if self.last_check is None:
            self.last_check = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert status to dictionary."""
        return {
            "is_healthy": self.is_healthy,
            "last_check": self.last_check.isoformat() if self.last_check else None,
            "error_message": self.error_message,
            "response_time_ms": self.response_time_ms,
        }


class StorageBackend(ABC):
    """
    Abstract base class for storage backends.

    Products are plain records. Payments are created once and then only
    changed through ``record_poll``, ``confirm_payment``, ``fail_payment``
    and ``claim_notification``, each of which is a no-op (returning False or
    None) unless the persisted row is in the state the write expects.
    """

    def __init__(self, name: str):
        """Initialize the storage backend."""
        self.name = name
        self.capabilities = self._get_capabilities()
        self.status = StorageStatus()
        self._validate_configuration()
        logger.info("Initialized storage backend: %s", self.name)

    @abstractmethod
    def _get_capabilities(self) -> StorageCapabilities:
        """Get the capabilities of this storage backend."""
        pass

    @abstractmethod
    def _validate_configuration(self) -> None:
        """Validate the storage backend configuration."""
        pass

    @abstractmethod
    def _perform_health_check(self) -> None:
        """Return None when healthy, raise on failure."""
        pass

    # Products

    @abstractmethod
    def save_product(self, product: Product) -> None:
        """Insert or replace a product."""
        pass

    @abstractmethod
    def get_product(self, product_id: str) -> Optional[Product]:
        """Retrieve a product by ID."""
        pass

    @abstractmethod
    def list_products(self, active_only: bool = False) -> List[Product]:
        """List products, oldest first."""
        pass

    @abstractmethod
    def delete_product(self, product_id: str) -> bool:
        """Delete a product. Returns False if it did not exist."""
        pass

    # Payments

    @abstractmethod
    def create_payment(self, payment: PaymentIntent) -> None:
        """
        Persist a new payment.

        Raises:
            StorageError: if a payment with the same id already exists.
        """
        pass

    @abstractmethod
    def get_payment(self, payment_id: str) -> Optional[PaymentIntent]:
        """Retrieve a payment by ID."""
        pass

    @abstractmethod
    def get_payment_by_tx_hash(self, tx_hash: str) -> Optional[PaymentIntent]:
        """Retrieve the payment confirmed by a transaction hash."""
        pass

    @abstractmethod
    def list_payments(
        self,
        product_id: Optional[str] = None,
        status: Optional[PaymentStatus] = None,
        limit: Optional[int] = None,
    ) -> List[PaymentIntent]:
        """List payments with optional filtering, oldest first."""
        pass

    @abstractmethod
    def record_poll(
        self, payment_id: str, polled_at: datetime, attempt_increment: int = 0, error_increment: int = 0
    ) -> Optional[PaymentIntent]:
        """
        Record a verification tick on a pending payment.

        Returns the updated payment, or None if the payment is not pending.
        """
        pass

    @abstractmethod
    def confirm_payment(self, payment_id: str, tx_hash: str, confirmed_at: datetime) -> bool:
        """
        Move a pending payment to confirmed.

        Returns False if the payment is no longer pending.

        Raises:
            DuplicateTransactionError: if ``tx_hash`` already confirmed another payment.
        """
        pass

    @abstractmethod
    def fail_payment(self, payment_id: str, reason: str) -> bool:
        """Move a pending payment to failed. Returns False if it is no longer pending."""
        pass

    @abstractmethod
    def claim_notification(self, payment_id: str, notified_at: datetime) -> bool:
        """
        Mark a confirmed payment as notified.

        Returns True only for the single caller that set ``notified_at``.
        """
        pass

    def check_health(self) -> StorageStatus:
        """Check the health status of the storage backend."""
        start_time = time.time()
        try:
            self._perform_health_check()
            response_time = (time.time() - start_time) * 1000
            self.status = StorageStatus(is_healthy=True, response_time_ms=response_time)
            logger.debug("Health check passed for storage %s (%.2fms)", self.name, response_time)
        except Exception as e:
            response_time = (time.time() - start_time) * 1000
            logger.warning(
                "Health check failed for storage %s (%.2fms): %s (%s)", self.name, response_time, str(e), type(e).__name__
            )
            self.status = StorageStatus(
                is_healthy=False,
                error_message=f"Health check failed: {str(e)}",
                response_time_ms=response_time,
            )
        return self.status

    def get_capabilities(self) -> StorageCapabilities:
        """Get the storage capabilities."""
        return self.capabilities

    def get_storage_info(self) -> Dict[str, Any]:
        """Get comprehensive storage information."""
        return {
            "name": self.name,
            "capabilities": self.capabilities.to_dict(),
            "status": self.status.to_dict(),
        }

"""
Core classes for CryptoPayLink.

Contains the product catalog and the PaymentEngine facade that wires price
quotes, payment creation, background verification and confirmations together.
"""

import dataclasses
import logging
import os
from collections.abc import Callable
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional

from .chains import ChainWatcherRegistry, build_default_watchers
from .config import get_config_summary, is_dev_mode, is_storage_enabled
from .exceptions import ConfigurationError, ProductNotFound, StorageError, ValidationError
from .models import PaymentIntent, PaymentStatus, Product
from .notifications import LoggingNotificationDispatcher, NotificationDispatcher
from .oracle import CoinGeckoPriceOracle, PriceOracleClient
from .reconciler import AmountReconciler
from .scheduler import VerificationScheduler
from .state_machine import PaymentStateMachine
from .storage import DatabaseStorage, MemoryStorage, StorageBackend
from .utils import generate_id, get_current_timestamp

logger = logging.getLogger(__name__)

# Product fields that may change after a payment references the product
MUTABLE_REFERENCED_FIELDS = {"is_active"}
UPDATABLE_FIELDS = {"name", "description", "price_usd", "chain", "currency", "recipient_wallet", "is_active"}


def _create_environment_aware_storage() -> StorageBackend:
    """Create a storage backend based on environment and configuration."""
    is_production = os.getenv("CryptoPayLink_Environment", "").lower() == "production"

    if is_production and is_storage_enabled("database"):
        db_path = os.getenv("CryptoPayLink_DatabasePath", "cryptopaylink.db")
        try:
            logger.info("Initializing DatabaseStorage for production environment")
            return DatabaseStorage(db_path)
        except (ConfigurationError, StorageError) as e:
            logger.warning("Failed to initialize DatabaseStorage: %s", e)

    if not is_storage_enabled("memory"):
        logger.warning("No storage backends available from configuration, using MemoryStorage as fallback")
    else:
        logger.info("Initializing MemoryStorage (development/testing environment)")
    return MemoryStorage()


class ProductCatalog:
    """Product store keyed by product id."""

    def __init__(self, storage: StorageBackend):
        self.storage = storage
        logger.debug("ProductCatalog initialized with storage backend: %s", type(storage).__name__)

    def register_product(self, product: Product) -> Product:
        if not isinstance(product, Product):
            raise ValidationError("Invalid product object", field="product", value=product)
        if self.storage.get_product(product.id) is not None:
            raise ValidationError(f"Product {product.id} already exists", field="id", value=product.id)
        self.storage.save_product(product)
        logger.info("Registered product %s (%s %s USD on %s)", product.id, product.name, product.price_usd, product.chain.value)
        return product

    def get_product(self, product_id: str) -> Product:
        product = self.storage.get_product(product_id)
        if product is None:
            raise ProductNotFound(f"Product {product_id} not found", entity_id=product_id)
        return product

    def get_active_product(self, product_id: str) -> Product:
        """Return a product that is available for sale."""
        product = self.get_product(product_id)
        if not product.is_active:
            raise ProductNotFound(f"Product {product_id} is not available", entity_id=product_id)
        return product

    def list_products(self, active_only: bool = False) -> list[Product]:
        return self.storage.list_products(active_only=active_only)

    def update_product(self, product_id: str, **changes: Any) -> Product:
        """
        Update product fields.

        Once any payment references the product only ``is_active`` may change;
        other changes raise ValidationError so quotes stay consistent with
        what buyers were shown.
        """
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(
                f"Unknown product fields: {', '.join(sorted(unknown))}",
                field="changes",
                value=sorted(unknown),
                constraints={"allowed": sorted(UPDATABLE_FIELDS)},
            )
        product = self.get_product(product_id)
        updated = dataclasses.replace(product, **changes)

        changed = {name for name in changes if getattr(updated, name) != getattr(product, name)}
        if changed - MUTABLE_REFERENCED_FIELDS and self.storage.list_payments(product_id=product_id, limit=1):
            raise ValidationError(
                "Product is referenced by payments; only is_active can change",
                field=sorted(changed - MUTABLE_REFERENCED_FIELDS)[0],
                value=product_id,
                constraints={"mutable": sorted(MUTABLE_REFERENCED_FIELDS)},
            )
        self.storage.save_product(updated)
        logger.info("Updated product %s: %s", product_id, ", ".join(sorted(changed)) or "no changes")
        return updated

    def deactivate_product(self, product_id: str) -> Product:
        return self.update_product(product_id, is_active=False)

    def delete_product(self, product_id: str) -> bool:
        """Delete a product that has no confirmed payments."""
        self.get_product(product_id)
        if self.storage.list_payments(product_id=product_id, status=PaymentStatus.CONFIRMED, limit=1):
            raise ValidationError(
                "Cannot delete a product with confirmed payments; deactivate it instead",
                field="product_id",
                value=product_id,
            )
        deleted = self.storage.delete_product(product_id)
        logger.info("Deleted product %s", product_id)
        return deleted


class PaymentEngine:
    """Main class for quoting, creating, verifying and confirming crypto payments."""

    def __init__(
        self,
        storage: Optional[StorageBackend] = None,
        oracle: Optional[PriceOracleClient] = None,
        watchers: Optional[ChainWatcherRegistry] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        reconciler: Optional[AmountReconciler] = None,
        poll_interval: Optional[float] = None,
        max_attempts: Optional[int] = None,
        timeout: Optional[timedelta] = None,
        error_budget: Optional[int] = None,
        auto_start_polling: bool = True,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.storage = storage or _create_environment_aware_storage()
        self.oracle = oracle or CoinGeckoPriceOracle(api_key=os.getenv("COINGECKO_API_KEY"))
        self.watchers = watchers if watchers is not None else build_default_watchers(
            os.getenv("SOLANA_RPC_URL"), os.getenv("ETHEREUM_RPC_URL")
        )
        self.dispatcher = dispatcher or LoggingNotificationDispatcher()
        self.reconciler = reconciler or AmountReconciler()
        self.auto_start_polling = auto_start_polling
        self._clock = clock or get_current_timestamp

        self.catalog = ProductCatalog(self.storage)
        self.state_machine = PaymentStateMachine(self.storage, self.dispatcher, clock=self._clock)
        self.scheduler = VerificationScheduler(
            self.storage,
            self.state_machine,
            self.watchers,
            reconciler=self.reconciler,
            interval=poll_interval,
            max_attempts=max_attempts,
            timeout=timeout,
            error_budget=error_budget,
            clock=self._clock,
        )
        if is_dev_mode():
            logger.warning("PaymentEngine running in dev mode")
        logger.info(
            "PaymentEngine initialized (storage=%s, oracle=%s, chains=%s)",
            self.storage.name,
            self.oracle.name,
            ", ".join(sorted(chain.value for chain in self.watchers)),
        )

    # Product store

    def register_product(self, product: Product) -> Product:
        return self.catalog.register_product(product)

    def get_product(self, product_id: str) -> Product:
        return self.catalog.get_product(product_id)

    def get_active_product(self, product_id: str) -> Product:
        return self.catalog.get_active_product(product_id)

    def update_product(self, product_id: str, **changes: Any) -> Product:
        return self.catalog.update_product(product_id, **changes)

    def deactivate_product(self, product_id: str) -> Product:
        return self.catalog.deactivate_product(product_id)

    def delete_product(self, product_id: str) -> bool:
        return self.catalog.delete_product(product_id)

    def list_products(self, active_only: bool = False) -> list[Product]:
        return self.catalog.list_products(active_only=active_only)

    # Payments

    def create_payment(self, product_id: str, buyer_email: str, buyer_wallet: str) -> PaymentIntent:
        """
        Quote the product at the current price and open a pending payment.

        Raises:
            ProductNotFound: if the product is unknown.
            ValidationError: if the product is inactive or the buyer's email or wallet is malformed.
            PriceUnavailable: if no price could be fetched after retries.
        """
        product = self.catalog.get_product(product_id)
        buyer_email = buyer_email.strip() if isinstance(buyer_email, str) else buyer_email
        buyer_wallet = buyer_wallet.strip() if isinstance(buyer_wallet, str) else buyer_wallet
        self.state_machine.validate_request(product, buyer_email, buyer_wallet)

        asset_price = self.oracle.fetch_price_with_retry(product.currency)
        quote = self.reconciler.quote(product.price_usd, asset_price)
        intent = PaymentIntent(
            id=generate_id("pay_"),
            product_id=product.id,
            buyer_email=buyer_email,
            buyer_wallet=buyer_wallet,
            price_quote=quote.asset_price,
            expected_crypto_amount=quote.expected_amount,
            display_amount=quote.display_amount,
            created_at=self._clock(),
        )
        payment = self.state_machine.create(intent, product)
        if self.auto_start_polling:
            self.scheduler.start(payment.id)
        return payment

    def verify_payment(self, payment_id: str) -> PaymentIntent:
        """Run one verification tick unless the payment is already terminal."""
        return self.scheduler.poll_once(payment_id)

    def send_confirmation(self, payment_id: str) -> bool:
        return self.state_machine.send_confirmation(payment_id)

    def get_payment(self, payment_id: str) -> PaymentIntent:
        return self.state_machine.get(payment_id)

    def list_payments(
        self, product_id: Optional[str] = None, status: Optional[PaymentStatus | str] = None
    ) -> list[PaymentIntent]:
        return self.storage.list_payments(product_id=product_id, status=PaymentStatus(status) if status else None)

    def sales_summary(self, product_id: Optional[str] = None) -> dict[str, Any]:
        """Confirmed sales count and USD revenue, overall or for one product."""
        payments = self.storage.list_payments(product_id=product_id)
        prices: dict[str, Decimal] = {}
        revenue = Decimal("0")
        counts = {status.value: 0 for status in PaymentStatus}
        for payment in payments:
            counts[payment.status.value] += 1
            if not payment.is_confirmed:
                continue
            if payment.product_id not in prices:
                product = self.storage.get_product(payment.product_id)
                prices[payment.product_id] = product.price_usd if product else Decimal("0")
            revenue += prices[payment.product_id]
        return {
            "product_id": product_id,
            "confirmed_count": counts[PaymentStatus.CONFIRMED.value],
            "pending_count": counts[PaymentStatus.PENDING.value],
            "failed_count": counts[PaymentStatus.FAILED.value],
            "revenue_usd": str(revenue),
        }

    def health(self) -> dict[str, Any]:
        status = self.storage.check_health()
        return {
            "healthy": status.is_healthy,
            "storage": self.storage.get_storage_info(),
            "active_verifications": len(self.scheduler.active_payments()),
            "config": get_config_summary(),
        }

    # Background verification

    def start(self) -> int:
        """Resume polling for every pending payment. Returns how many tasks started."""
        return self.scheduler.resume_pending()

    def shutdown(self, timeout: Optional[float] = None) -> None:
        self.scheduler.shutdown(timeout)

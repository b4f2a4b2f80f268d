"""
Custom exceptions for CryptoPayLink.

Defines the error taxonomy for validation, external price/chain dependencies,
storage and notification failures.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

logger = logging.getLogger(__name__)


@dataclass
class CryptoPayLinkError(Exception):
    """Base exception for all CryptoPayLink errors."""

    message: str
    error_code: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        logger.error(
            "%s: %s (Code: %s, Details: %s)",
            self.__class__.__name__,
            self.message,
            self.error_code,
            self.details,
        )

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}" if self.error_code else self.message

    def _add_details(self, **values: Any) -> None:
        self.details.update({k: v for k, v in values.items() if v is not None})


@dataclass
class ValidationError(CryptoPayLinkError):
    """Raised for user-correctable input errors (bad shape, address format, inactive product)."""

    field: Optional[str] = None
    value: Any = None
    constraints: Optional[dict[str, Any]] = None

    def __post_init__(self):
        self._add_details(field=self.field, value=self.value, constraints=self.constraints)
        self.error_code = self.error_code or "VALIDATION_ERROR"
        super().__post_init__()


@dataclass
class InvalidPrice(CryptoPayLinkError):
    """Raised when a price used for quoting is zero, negative or not a finite number."""

    price: Any = None

    def __post_init__(self):
        self._add_details(price=self.price)
        self.error_code = self.error_code or "INVALID_PRICE"
        super().__post_init__()


@dataclass
class ConfigurationError(CryptoPayLinkError):
    """Raised for configuration errors."""

    config_key: Optional[str] = None
    expected_value: Optional[str] = None
    actual_value: Optional[str] = None

    def __post_init__(self):
        self._add_details(
            config_key=self.config_key,
            expected_value=self.expected_value,
            actual_value=self.actual_value,
        )
        self.error_code = self.error_code or "CONFIGURATION_ERROR"
        super().__post_init__()


@dataclass
class DependencyError(CryptoPayLinkError):
    """Base exception for transient failures of an external dependency."""

    provider_error: Optional[str] = None

    def __post_init__(self):
        self._add_details(provider_error=self.provider_error)
        self.error_code = self.error_code or "DEPENDENCY_ERROR"
        super().__post_init__()


@dataclass
class PriceUnavailable(DependencyError):
    """Raised when the price feed cannot produce a usable USD price."""

    asset: Optional[str] = None

    def __post_init__(self):
        self._add_details(asset=self.asset)
        self.error_code = self.error_code or "PRICE_UNAVAILABLE"
        super().__post_init__()


@dataclass
class ChainQueryError(DependencyError):
    """Raised when the chain RPC or explorer cannot be queried."""

    chain: Optional[str] = None

    def __post_init__(self):
        self._add_details(chain=self.chain)
        self.error_code = self.error_code or "CHAIN_QUERY_ERROR"
        super().__post_init__()


@dataclass
class NotFoundError(CryptoPayLinkError):
    """Base exception for lookups of unknown records."""

    entity_id: Optional[str] = None

    def __post_init__(self):
        self._add_details(entity_id=self.entity_id)
        self.error_code = self.error_code or "NOT_FOUND"
        super().__post_init__()


@dataclass
class ProductNotFound(NotFoundError):
    """Raised when a product does not exist or is not available for sale."""

    def __post_init__(self):
        self.error_code = self.error_code or "PRODUCT_NOT_FOUND"
        super().__post_init__()


@dataclass
class PaymentNotFound(NotFoundError):
    """Raised when a payment id is unknown."""

    def __post_init__(self):
        self.error_code = self.error_code or "PAYMENT_NOT_FOUND"
        super().__post_init__()


@dataclass
class StorageError(CryptoPayLinkError):
    """Base exception for storage backend errors."""

    storage_type: Optional[str] = None
    operation: Optional[str] = None
    entity_id: Optional[str] = None

    def __post_init__(self):
        self._add_details(storage_type=self.storage_type, operation=self.operation, entity_id=self.entity_id)
        self.error_code = self.error_code or "STORAGE_ERROR"
        super().__post_init__()


@dataclass
class DuplicateTransactionError(StorageError):
    """Raised when a transaction hash is already bound to another confirmed payment."""

    tx_hash: Optional[str] = None

    def __post_init__(self):
        self._add_details(tx_hash=self.tx_hash)
        self.error_code = self.error_code or "DUPLICATE_TRANSACTION"
        super().__post_init__()


@dataclass
class NotificationError(CryptoPayLinkError):
    """Raised by a notification dispatcher when a confirmation could not be delivered."""

    payment_id: Optional[str] = None
    channel: Optional[str] = None

    def __post_init__(self):
        self._add_details(payment_id=self.payment_id, channel=self.channel)
        self.error_code = self.error_code or "NOTIFICATION_ERROR"
        super().__post_init__()

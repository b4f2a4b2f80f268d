"""
Data models for CryptoPayLink.

Defines products, payment intents, observed chain transactions and the result
type returned by payment state transitions.
"""

import logging
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional

from .config import SUPPORTED_ASSETS
from .exceptions import ValidationError
from .utils import ensure_utc, parse_datetime, parse_email, validate_wallet_address

logger = logging.getLogger(__name__)


def _validate_string_field(value: str, field_name: str, max_length: int = 255) -> None:
    """Validate string fields for type, emptiness, length and control characters."""
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a string", field=field_name, value=value)

    if len(value.strip()) == 0:
        raise ValidationError(f"{field_name} cannot be empty", field=field_name, value=value)

    if len(value) > max_length:
        raise ValidationError(f"{field_name} exceeds maximum length of {max_length} characters", field=field_name, value=value)

    if re.search(r"[<>]|\.\./|\.\.\\", value):
        raise ValidationError(f"{field_name} contains potentially malicious content", field=field_name, value=value)

    if value != value.strip():
        raise ValidationError(f"{field_name} cannot start or end with whitespace", field=field_name, value=value)

    if not all(ord(c) >= 32 or c in "\t\n\r" for c in value):
        raise ValidationError(f"{field_name} contains non-printable characters", field=field_name, value=value)


def to_decimal(value: Any, field_name: str) -> Decimal:
    """Convert ints, strings and floats to Decimal without binary float artifacts."""
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool):
        raise ValidationError(f"{field_name} must be a number", field=field_name, value=value)
    elif isinstance(value, (int, float, str)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValidationError(f"{field_name} must be a number", field=field_name, value=value)
    else:
        raise ValidationError(f"{field_name} must be a number", field=field_name, value=value)
    if not result.is_finite():
        raise ValidationError(f"{field_name} must be finite", field=field_name, value=str(value))
    return result


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class Chain(Enum):
    """Blockchains a product can be paid on."""

    SOLANA = "solana"
    ETHEREUM = "ethereum"


class PaymentStatus(Enum):
    """Lifecycle of a payment intent. CONFIRMED and FAILED are terminal."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


class TransitionOutcome(Enum):
    """What a state transition request did."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    CONFLICT = "conflict"
    REJECTED = "rejected"


class FailureReason:
    """Failure reasons recorded on failed payments."""

    TIMED_OUT = "timed_out"
    DEPENDENCY_UNAVAILABLE = "dependency_unavailable"
    PRODUCT_UNAVAILABLE = "product_unavailable"


@dataclass
class Product:
    """A merchant product priced in USD and paid on a single chain."""

    id: str
    name: str
    price_usd: Decimal
    chain: Chain | str
    currency: str
    recipient_wallet: str
    description: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        """Normalize chain, currency and price, then validate the product."""
        if isinstance(self.chain, str):
            try:
                self.chain = Chain(self.chain.lower())
            except ValueError:
                raise ValidationError(
                    f"Invalid chain: {self.chain}. Must be one of: {', '.join(c.value for c in Chain)}",
                    field="chain",
                    value=self.chain,
                )
        if isinstance(self.currency, str):
            self.currency = self.currency.upper()
        self.price_usd = to_decimal(self.price_usd, "price_usd")
        self.created_at = ensure_utc(self.created_at)
        self.validate()
        logger.debug("Created product: %s", self.id)

    def validate(self) -> None:
        """Validate the product fields."""
        _validate_string_field(self.id, "Product ID", max_length=100)
        _validate_string_field(self.name, "Product name", max_length=255)
        if self.description is not None:
            _validate_string_field(self.description, "Description", max_length=1000)
        if self.price_usd <= 0:
            raise ValidationError("Product price must be positive", field="price_usd", value=str(self.price_usd))
        supported = SUPPORTED_ASSETS[self.chain.value]
        if self.currency not in supported:
            raise ValidationError(
                f"Currency {self.currency} is not supported on {self.chain.value}. Supported: {', '.join(sorted(supported))}",
                field="currency",
                value=self.currency,
            )
        if not validate_wallet_address(self.chain.value, self.recipient_wallet):
            raise ValidationError(
                f"Invalid {self.chain.value} recipient wallet address",
                field="recipient_wallet",
                value=self.recipient_wallet,
            )
        if not isinstance(self.is_active, bool):
            raise ValidationError("is_active must be a boolean", field="is_active", value=self.is_active)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary with proper serialization."""
        data = asdict(self)
        data["chain"] = self.chain.value
        data["price_usd"] = str(self.price_usd)
        data["created_at"] = self.created_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Product":
        return cls(
            id=data["id"],
            name=data["name"],
            price_usd=data["price_usd"],
            chain=data["chain"],
            currency=data["currency"],
            recipient_wallet=data["recipient_wallet"],
            description=data.get("description"),
            is_active=bool(data.get("is_active", True)),
            created_at=parse_datetime(data.get("created_at")) or datetime.now(timezone.utc),
        )


@dataclass
class PaymentIntent:
    """
    A buyer's intent to pay for a product.

    ``price_quote`` and ``expected_crypto_amount`` are fixed at creation.
    ``status``, ``tx_hash``, ``confirmed_at`` and ``notified_at`` are only
    changed by the state machine; ``attempt_count``, ``error_count`` and
    ``last_polled_at`` only by the verification scheduler while pending.
    """

    id: str
    product_id: str
    buyer_email: str
    buyer_wallet: str
    price_quote: Decimal
    expected_crypto_amount: Decimal
    display_amount: Optional[Decimal] = None
    status: PaymentStatus | str = PaymentStatus.PENDING
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    confirmed_at: Optional[datetime] = None
    tx_hash: Optional[str] = None
    attempt_count: int = 0
    error_count: int = 0
    last_polled_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    notified_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if isinstance(self.status, str):
            try:
                self.status = PaymentStatus(self.status)
            except ValueError:
                raise ValidationError(
                    f"Invalid payment status: {self.status}. Must be one of: {', '.join(s.value for s in PaymentStatus)}",
                    field="status",
                    value=self.status,
                )
        self.price_quote = to_decimal(self.price_quote, "price_quote")
        self.expected_crypto_amount = to_decimal(self.expected_crypto_amount, "expected_crypto_amount")
        if self.display_amount is not None:
            self.display_amount = to_decimal(self.display_amount, "display_amount")
        self.created_at = ensure_utc(self.created_at)
        self.validate()

    @property
    def is_pending(self) -> bool:
        return self.status == PaymentStatus.PENDING

    @property
    def is_confirmed(self) -> bool:
        return self.status == PaymentStatus.CONFIRMED

    @property
    def is_failed(self) -> bool:
        return self.status == PaymentStatus.FAILED

    def validate(self) -> None:
        """Validate the payment intent fields."""
        _validate_string_field(self.id, "Payment ID", max_length=100)
        _validate_string_field(self.product_id, "Product ID", max_length=100)
        if parse_email(self.buyer_email) is None:
            raise ValidationError("Invalid buyer email address", field="buyer_email", value=self.buyer_email)
        _validate_string_field(self.buyer_wallet, "Buyer wallet", max_length=100)
        if self.price_quote <= 0:
            raise ValidationError("Price quote must be positive", field="price_quote", value=str(self.price_quote))
        if self.expected_crypto_amount <= 0:
            raise ValidationError(
                "Expected crypto amount must be positive",
                field="expected_crypto_amount",
                value=str(self.expected_crypto_amount),
            )
        if self.attempt_count < 0:
            raise ValidationError("Attempt count cannot be negative", field="attempt_count", value=self.attempt_count)
        if self.error_count < 0:
            raise ValidationError("Error count cannot be negative", field="error_count", value=self.error_count)
        if self.status == PaymentStatus.CONFIRMED and not self.tx_hash:
            raise ValidationError("Confirmed payments must carry a transaction hash", field="tx_hash", value=self.tx_hash)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary with proper serialization."""
        data = asdict(self)
        data["status"] = self.status.value
        data["price_quote"] = str(self.price_quote)
        data["expected_crypto_amount"] = str(self.expected_crypto_amount)
        data["display_amount"] = str(self.display_amount) if self.display_amount is not None else None
        data["created_at"] = self.created_at.isoformat()
        data["confirmed_at"] = _isoformat(self.confirmed_at)
        data["last_polled_at"] = _isoformat(self.last_polled_at)
        data["notified_at"] = _isoformat(self.notified_at)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PaymentIntent":
        return cls(
            id=data["id"],
            product_id=data["product_id"],
            buyer_email=data["buyer_email"],
            buyer_wallet=data["buyer_wallet"],
            price_quote=data["price_quote"],
            expected_crypto_amount=data["expected_crypto_amount"],
            display_amount=data.get("display_amount"),
            status=data.get("status", PaymentStatus.PENDING.value),
            created_at=parse_datetime(data.get("created_at")) or datetime.now(timezone.utc),
            confirmed_at=parse_datetime(data.get("confirmed_at")),
            tx_hash=data.get("tx_hash"),
            attempt_count=int(data.get("attempt_count") or 0),
            error_count=int(data.get("error_count") or 0),
            last_polled_at=parse_datetime(data.get("last_polled_at")),
            failure_reason=data.get("failure_reason"),
            notified_at=parse_datetime(data.get("notified_at")),
        )


@dataclass
class ChainTransaction:
    """A transfer observed on chain. Never persisted."""

    hash: str
    from_address: Optional[str]
    to_address: str
    amount: Decimal
    asset: str
    confirmations: int
    observed_at: datetime
    settled: bool = False

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["amount"] = str(self.amount)
        data["observed_at"] = self.observed_at.isoformat()
        return data


@dataclass
class TransitionResult:
    """Outcome of a request_confirm / request_fail call."""

    payment_id: str
    outcome: TransitionOutcome
    status: PaymentStatus
    tx_hash: Optional[str] = None
    payment: Optional[PaymentIntent] = None

    @property
    def applied(self) -> bool:
        return self.outcome == TransitionOutcome.APPLIED

    def to_dict(self) -> dict[str, Any]:
        return {
            "payment_id": self.payment_id,
            "outcome": self.outcome.value,
            "status": self.status.value,
            "tx_hash": self.tx_hash,
        }

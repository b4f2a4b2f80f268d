"""
CryptoPayLink

Verifies on-chain crypto payments for USD-priced products and settles each
payment exactly once.
"""

from . import config, exceptions, models, storage, utils
from .chains import ChainWatcher, EthereumWatcher, InMemoryChainWatcher, SolanaWatcher
from .core import PaymentEngine, ProductCatalog
from .exceptions import ChainQueryError, PriceUnavailable, ValidationError
from .models import Chain, PaymentIntent, PaymentStatus, Product, TransitionOutcome
from .notifications import LoggingNotificationDispatcher, NotificationDispatcher, WebhookNotificationDispatcher
from .oracle import CoinGeckoPriceOracle, PriceOracleClient, StaticPriceOracle
from .reconciler import AmountReconciler
from .scheduler import TaskState, VerificationScheduler
from .state_machine import PaymentStateMachine
from .storage.memory import MemoryStorage

__version__ = "0.1.0"

__all__ = [
    "PaymentEngine",
    "ProductCatalog",
    "PaymentStateMachine",
    "VerificationScheduler",
    "TaskState",
    "AmountReconciler",
    "PriceOracleClient",
    "CoinGeckoPriceOracle",
    "StaticPriceOracle",
    "ChainWatcher",
    "EthereumWatcher",
    "SolanaWatcher",
    "InMemoryChainWatcher",
    "NotificationDispatcher",
    "LoggingNotificationDispatcher",
    "WebhookNotificationDispatcher",
    "models",
    "exceptions",
    "storage",
    "utils",
    "config",
    "Chain",
    "Product",
    "PaymentIntent",
    "PaymentStatus",
    "TransitionOutcome",
    "ValidationError",
    "PriceUnavailable",
    "ChainQueryError",
    "MemoryStorage",
]

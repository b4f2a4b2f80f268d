"""
conftest.py: Shared pytest fixtures for the cryptopaylink test suite.

- Wallets, products, payments and a controllable clock for unit tests.
- A fully wired PaymentEngine over in-memory storage, a static price table
  and a scripted Solana watcher, so no test touches the network.

Usage:
    def test_something(engine, product):
        payment = engine.create_payment(product.id, "buyer@example.com", BUYER_SOL)
"""

from datetime import datetime, timedelta, timezone

import pytest

from cryptopaylink import PaymentEngine
from cryptopaylink.chains import InMemoryChainWatcher
from cryptopaylink.models import Chain, PaymentIntent, Product
from cryptopaylink.notifications import LoggingNotificationDispatcher
from cryptopaylink.oracle import StaticPriceOracle
from cryptopaylink.reconciler import AmountReconciler
from cryptopaylink.state_machine import PaymentStateMachine
from cryptopaylink.storage import DatabaseStorage, MemoryStorage

MERCHANT_SOL = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"
BUYER_SOL = "4Nd1mBQtrMJVYVfKf2PJy9NZUZdTAsp7D4xWLs4gDB4T"
OTHER_SOL = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"
MERCHANT_ETH = "0x742d35Cc6634C0532925a3b844Bc454e4438f44e"
BUYER_ETH = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"
BUYER_EMAIL = "buyer@example.com"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def db_storage(tmp_path):
    return DatabaseStorage(str(tmp_path / "payments.db"))


@pytest.fixture
def product():
    """A $10 product paid in SOL."""
    return Product(
        id="ebook",
        name="Python eBook",
        price_usd="10",
        chain="solana",
        currency="SOL",
        recipient_wallet=MERCHANT_SOL,
        description="A practical guide",
    )


@pytest.fixture
def eth_product():
    return Product(
        id="course",
        name="Video Course",
        price_usd="50",
        chain="ethereum",
        currency="USDC",
        recipient_wallet=MERCHANT_ETH,
    )


@pytest.fixture
def make_payment(clock):
    """Factory for pending payments of ``product`` expecting 0.5 SOL by default."""
    counter = {"n": 0}

    def _make(product, **overrides):
        counter["n"] += 1
        values = {
            "id": f"pay_{counter['n']}",
            "product_id": product.id,
            "buyer_email": BUYER_EMAIL,
            "buyer_wallet": BUYER_SOL if product.chain == Chain.SOLANA else BUYER_ETH,
            "price_quote": "20",
            "expected_crypto_amount": "0.5",
            "display_amount": "0.5",
            "created_at": clock(),
        }
        values.update(overrides)
        return PaymentIntent(**values)

    return _make


@pytest.fixture
def oracle():
    return StaticPriceOracle({"SOL": "20", "ETH": "2500", "USDC": "1", "USDT": "1"})


@pytest.fixture
def watcher():
    """Scripted Solana watcher settling at 32 confirmations."""
    return InMemoryChainWatcher(Chain.SOLANA, required_confirmations=32)


@pytest.fixture
def dispatcher():
    return LoggingNotificationDispatcher()


@pytest.fixture
def state_machine(storage, dispatcher, clock):
    return PaymentStateMachine(storage, dispatcher, clock=clock)


@pytest.fixture
def engine(storage, oracle, watcher, dispatcher, clock, product):
    """Engine with the ``product`` registered and background polling disabled."""
    engine = PaymentEngine(
        storage=storage,
        oracle=oracle,
        watchers={Chain.SOLANA: watcher},
        dispatcher=dispatcher,
        reconciler=AmountReconciler(),
        poll_interval=0.01,
        max_attempts=5,
        timeout=timedelta(minutes=30),
        error_budget=3,
        auto_start_polling=False,
        clock=clock,
    )
    engine.register_product(product)
    yield engine
    engine.shutdown(timeout=2)

from datetime import datetime, timedelta, timezone

import pytest

from cryptopaylink.exceptions import ConfigurationError, DuplicateTransactionError, StorageError, ValidationError
from cryptopaylink.models import PaymentIntent, PaymentStatus, Product
from cryptopaylink.storage import DatabaseStorage, MemoryStorage, StorageBackend, create_storage

MERCHANT_SOL = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"
BUYER_SOL = "4Nd1mBQtrMJVYVfKf2PJy9NZUZdTAsp7D4xWLs4gDB4T"


@pytest.fixture(params=["memory", "database"])
def backend(request, tmp_path):
    if request.param == "memory":
        return MemoryStorage()
    return DatabaseStorage(str(tmp_path / "store.db"))


def make_product(product_id="ebook", **overrides):
    values = dict(
        id=product_id,
        name="Python eBook",
        price_usd="10",
        chain="solana",
        currency="SOL",
        recipient_wallet=MERCHANT_SOL,
    )
    values.update(overrides)
    return Product(**values)


def make_payment(payment_id="pay_1", product_id="ebook", created_at=None):
    return PaymentIntent(
        id=payment_id,
        product_id=product_id,
        buyer_email="buyer@example.com",
        buyer_wallet=BUYER_SOL,
        price_quote="20",
        expected_crypto_amount="0.5",
        display_amount="0.5",
        created_at=created_at or datetime.now(timezone.utc),
    )


def test_is_storage_backend(backend):
    assert isinstance(backend, StorageBackend)
    assert backend.check_health().is_healthy
    info = backend.get_storage_info()
    assert info["name"] == backend.name
    assert info["status"]["is_healthy"] is True


def test_product_round_trip(backend):
    product = make_product(description="A practical guide")
    backend.save_product(product)

    loaded = backend.get_product("ebook")
    assert loaded == product
    assert backend.get_product("missing") is None


def test_list_products_active_only(backend):
    backend.save_product(make_product("a"))
    backend.save_product(make_product("b", is_active=False))

    assert {p.id for p in backend.list_products()} == {"a", "b"}
    assert [p.id for p in backend.list_products(active_only=True)] == ["a"]


def test_delete_product(backend):
    backend.save_product(make_product())
    assert backend.delete_product("ebook")
    assert not backend.delete_product("ebook")
    assert backend.get_product("ebook") is None


def test_save_product_rejects_other_types(backend):
    with pytest.raises(ValidationError):
        backend.save_product({"id": "ebook"})


def test_payment_round_trip(backend):
    payment = make_payment()
    backend.create_payment(payment)

    loaded = backend.get_payment("pay_1")
    assert loaded == payment
    assert loaded.expected_crypto_amount == payment.expected_crypto_amount
    assert backend.get_payment("missing") is None


def test_create_payment_twice_fails(backend):
    backend.create_payment(make_payment())
    with pytest.raises(StorageError):
        backend.create_payment(make_payment())


def test_list_payments_filters(backend):
    base = datetime.now(timezone.utc)
    backend.create_payment(make_payment("pay_1", "a", base))
    backend.create_payment(make_payment("pay_2", "b", base + timedelta(seconds=1)))
    backend.create_payment(make_payment("pay_3", "a", base + timedelta(seconds=2)))
    backend.confirm_payment("pay_3", "sig-3", base)

    assert [p.id for p in backend.list_payments()] == ["pay_1", "pay_2", "pay_3"]
    assert [p.id for p in backend.list_payments(product_id="a")] == ["pay_1", "pay_3"]
    assert [p.id for p in backend.list_payments(status=PaymentStatus.CONFIRMED)] == ["pay_3"]
    assert [p.id for p in backend.list_payments(product_id="a", status="pending")] == ["pay_1"]
    assert len(backend.list_payments(limit=2)) == 2


def test_confirm_is_compare_and_set(backend):
    backend.create_payment(make_payment())
    confirmed_at = datetime.now(timezone.utc)

    assert backend.confirm_payment("pay_1", "sig-1", confirmed_at)
    assert not backend.confirm_payment("pay_1", "sig-2", confirmed_at)
    assert not backend.fail_payment("pay_1", "timed_out")

    payment = backend.get_payment("pay_1")
    assert payment.status == PaymentStatus.CONFIRMED
    assert payment.tx_hash == "sig-1"
    assert payment.confirmed_at == confirmed_at
    assert backend.get_payment_by_tx_hash("sig-1").id == "pay_1"


def test_tx_hash_confirms_at_most_one_payment(backend):
    backend.create_payment(make_payment("pay_1"))
    backend.create_payment(make_payment("pay_2"))
    now = datetime.now(timezone.utc)

    assert backend.confirm_payment("pay_1", "sig-shared", now)
    with pytest.raises(DuplicateTransactionError):
        backend.confirm_payment("pay_2", "sig-shared", now)
    assert backend.get_payment("pay_2").status == PaymentStatus.PENDING


def test_fail_is_compare_and_set(backend):
    backend.create_payment(make_payment())
    assert backend.fail_payment("pay_1", "timed_out")
    assert not backend.fail_payment("pay_1", "dependency_unavailable")
    assert not backend.confirm_payment("pay_1", "sig-1", datetime.now(timezone.utc))

    payment = backend.get_payment("pay_1")
    assert payment.status == PaymentStatus.FAILED
    assert payment.failure_reason == "timed_out"
    assert payment.tx_hash is None


def test_transitions_on_unknown_payment(backend):
    now = datetime.now(timezone.utc)
    assert not backend.confirm_payment("missing", "sig", now)
    assert not backend.fail_payment("missing", "timed_out")
    assert backend.record_poll("missing", now, attempt_increment=1) is None
    assert not backend.claim_notification("missing", now)


def test_record_poll_only_while_pending(backend):
    backend.create_payment(make_payment())
    now = datetime.now(timezone.utc)

    updated = backend.record_poll("pay_1", now, attempt_increment=1)
    assert updated.attempt_count == 1
    assert updated.error_count == 0
    assert updated.last_polled_at == now

    updated = backend.record_poll("pay_1", now, error_increment=1)
    assert updated.attempt_count == 1
    assert updated.error_count == 1

    backend.fail_payment("pay_1", "timed_out")
    assert backend.record_poll("pay_1", now, attempt_increment=1) is None
    assert backend.get_payment("pay_1").attempt_count == 1


def test_claim_notification_once(backend):
    backend.create_payment(make_payment())
    now = datetime.now(timezone.utc)

    assert not backend.claim_notification("pay_1", now)
    backend.confirm_payment("pay_1", "sig-1", now)
    assert backend.claim_notification("pay_1", now)
    assert not backend.claim_notification("pay_1", now)
    assert backend.get_payment("pay_1").notified_at == now


def test_database_is_shared_between_instances(tmp_path):
    path = str(tmp_path / "shared.db")
    first = DatabaseStorage(path)
    second = DatabaseStorage(path)

    first.save_product(make_product())
    first.create_payment(make_payment())
    assert second.confirm_payment("pay_1", "sig-1", datetime.now(timezone.utc))
    assert not first.confirm_payment("pay_1", "sig-2", datetime.now(timezone.utc))
    assert first.get_payment("pay_1").tx_hash == "sig-1"
    assert second.get_product("ebook").name == "Python eBook"


def test_memory_storage_returns_copies():
    storage = MemoryStorage()
    storage.create_payment(make_payment())
    payment = storage.get_payment("pay_1")
    payment.attempt_count = 99
    assert storage.get_payment("pay_1").attempt_count == 0


def test_capabilities():
    assert not MemoryStorage().get_capabilities().is_persistent


def test_create_storage(tmp_path):
    assert isinstance(create_storage("memory"), MemoryStorage)
    assert isinstance(create_storage("database", db_path=str(tmp_path / "x.db")), DatabaseStorage)
    with pytest.raises(ConfigurationError):
        create_storage("redis")

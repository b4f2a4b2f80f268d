from datetime import timedelta
from decimal import Decimal

import pytest

from cryptopaylink import PaymentEngine
from cryptopaylink.core import _create_environment_aware_storage
from cryptopaylink.exceptions import PaymentNotFound, PriceUnavailable, ProductNotFound, ValidationError
from cryptopaylink.models import Chain, PaymentStatus, Product
from cryptopaylink.oracle import StaticPriceOracle
from cryptopaylink.storage import DatabaseStorage, MemoryStorage

MERCHANT_SOL = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"
BUYER_SOL = "4Nd1mBQtrMJVYVfKf2PJy9NZUZdTAsp7D4xWLs4gDB4T"
EMAIL = "buyer@example.com"


class TestProductCatalog:
    def test_register_and_get(self, engine, product):
        assert engine.get_product("ebook") == product
        assert engine.get_active_product("ebook") == product
        assert [p.id for p in engine.list_products()] == ["ebook"]

    def test_register_duplicate(self, engine, product):
        with pytest.raises(ValidationError):
            engine.register_product(product)

    def test_unknown_product(self, engine):
        with pytest.raises(ProductNotFound):
            engine.get_product("missing")

    def test_inactive_product_is_not_for_sale(self, engine):
        engine.deactivate_product("ebook")
        assert engine.get_product("ebook").is_active is False
        with pytest.raises(ProductNotFound):
            engine.get_active_product("ebook")
        assert engine.list_products(active_only=True) == []

    def test_update_before_any_payment(self, engine):
        updated = engine.update_product("ebook", price_usd="12", name="Python eBook 2nd ed.")
        assert updated.price_usd == Decimal("12")
        assert engine.get_product("ebook").name == "Python eBook 2nd ed."

    def test_referenced_product_only_toggles_active(self, engine):
        engine.create_payment("ebook", EMAIL, BUYER_SOL)
        with pytest.raises(ValidationError):
            engine.update_product("ebook", price_usd="12")
        assert engine.update_product("ebook", is_active=False).is_active is False
        assert engine.update_product("ebook", is_active=True).is_active is True

    def test_update_unknown_field(self, engine):
        with pytest.raises(ValidationError):
            engine.update_product("ebook", tx_hash="sig")

    def test_delete_refused_with_confirmed_payments(self, engine):
        payment = engine.create_payment("ebook", EMAIL, BUYER_SOL)
        engine.state_machine.request_confirm(payment.id, "sig-1")
        with pytest.raises(ValidationError):
            engine.delete_product("ebook")
        assert engine.get_product("ebook") is not None

    def test_delete_without_confirmed_payments(self, engine):
        assert engine.delete_product("ebook") is True
        with pytest.raises(ProductNotFound):
            engine.delete_product("ebook")


class TestCreatePayment:
    def test_quotes_at_current_price(self, engine, clock):
        payment = engine.create_payment("ebook", EMAIL, BUYER_SOL)
        assert payment.status == PaymentStatus.PENDING
        assert payment.price_quote == Decimal("20")
        assert payment.expected_crypto_amount == Decimal("0.5")
        assert payment.display_amount == Decimal("0.5")
        assert payment.created_at == clock()
        assert payment.id.startswith("pay_")
        assert engine.get_payment(payment.id) == payment

    def test_expected_amount_is_fixed_at_creation(self, engine, oracle):
        first = engine.create_payment("ebook", EMAIL, BUYER_SOL)
        oracle.set_price("SOL", "40")
        second = engine.create_payment("ebook", EMAIL, BUYER_SOL)

        assert engine.get_payment(first.id).expected_crypto_amount == Decimal("0.5")
        assert second.expected_crypto_amount == Decimal("0.25")

    def test_trims_buyer_input(self, engine):
        payment = engine.create_payment("ebook", f"  {EMAIL} ", f" {BUYER_SOL}")
        assert payment.buyer_email == EMAIL
        assert payment.buyer_wallet == BUYER_SOL

    @pytest.mark.parametrize(
        "email, wallet",
        [
            (EMAIL, "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"),
            (EMAIL, "tooShort"),
            ("buyer-at-example.com", BUYER_SOL),
        ],
    )
    def test_invalid_buyer(self, engine, email, wallet):
        with pytest.raises(ValidationError):
            engine.create_payment("ebook", email, wallet)
        assert engine.list_payments() == []

    def test_unknown_product(self, engine):
        with pytest.raises(ProductNotFound):
            engine.create_payment("missing", EMAIL, BUYER_SOL)

    def test_inactive_product_is_a_validation_error(self, engine):
        engine.deactivate_product("ebook")
        with pytest.raises(ValidationError) as exc_info:
            engine.create_payment("ebook", EMAIL, BUYER_SOL)
        assert exc_info.value.field == "product_id"
        assert engine.list_payments() == []

    def test_price_unavailable(self, engine):
        engine.oracle = StaticPriceOracle({})
        with pytest.raises(PriceUnavailable):
            engine.create_payment("ebook", EMAIL, BUYER_SOL)
        assert engine.list_payments() == []

    def test_auto_start_polling(self, storage, oracle, watcher, dispatcher, clock, product):
        engine = PaymentEngine(
            storage=storage,
            oracle=oracle,
            watchers={Chain.SOLANA: watcher},
            dispatcher=dispatcher,
            poll_interval=0.01,
            clock=clock,
        )
        try:
            engine.register_product(product)
            payment = engine.create_payment("ebook", EMAIL, BUYER_SOL)
            assert payment.id in engine.scheduler.active_payments()

            watcher.add_transaction("sig-1", BUYER_SOL, MERCHANT_SOL, "0.5005", confirmations=32)
            assert engine.scheduler.join(payment.id, timeout=5)
            assert engine.get_payment(payment.id).status == PaymentStatus.CONFIRMED
            assert len(dispatcher.sent) == 1
        finally:
            engine.shutdown(timeout=2)


class TestVerification:
    def test_verify_and_send_confirmation(self, engine, watcher, dispatcher):
        payment = engine.create_payment("ebook", EMAIL, BUYER_SOL)
        assert engine.verify_payment(payment.id).is_pending

        watcher.add_transaction("sig-1", BUYER_SOL, MERCHANT_SOL, "0.5", confirmations=32)
        verified = engine.verify_payment(payment.id)
        assert verified.status == PaymentStatus.CONFIRMED
        assert verified.tx_hash == "sig-1"
        assert engine.send_confirmation(payment.id) is False
        assert len(dispatcher.sent) == 1

    def test_verify_unknown_payment(self, engine):
        with pytest.raises(PaymentNotFound):
            engine.verify_payment("pay_missing")
        with pytest.raises(PaymentNotFound):
            engine.send_confirmation("pay_missing")

    def test_start_resumes_pending_payments(self, engine):
        payment = engine.create_payment("ebook", EMAIL, BUYER_SOL)
        assert engine.start() == 1
        assert engine.scheduler.active_payments() == [payment.id]
        engine.shutdown(timeout=2)
        assert engine.scheduler.active_payments() == []


class TestReporting:
    def test_sales_summary(self, engine, product):
        engine.register_product(
            Product(
                id="course",
                name="Course",
                price_usd="25.50",
                chain="solana",
                currency="USDC",
                recipient_wallet=MERCHANT_SOL,
            )
        )
        ebook_1 = engine.create_payment("ebook", EMAIL, BUYER_SOL)
        ebook_2 = engine.create_payment("ebook", EMAIL, BUYER_SOL)
        course = engine.create_payment("course", EMAIL, BUYER_SOL)
        failed = engine.create_payment("ebook", EMAIL, BUYER_SOL)
        engine.create_payment("ebook", EMAIL, BUYER_SOL)

        engine.state_machine.request_confirm(ebook_1.id, "sig-1")
        engine.state_machine.request_confirm(ebook_2.id, "sig-2")
        engine.state_machine.request_confirm(course.id, "sig-3")
        engine.state_machine.request_fail(failed.id, "timed_out")

        summary = engine.sales_summary()
        assert summary["confirmed_count"] == 3
        assert summary["pending_count"] == 1
        assert summary["failed_count"] == 1
        assert Decimal(summary["revenue_usd"]) == Decimal("45.50")

        ebook_summary = engine.sales_summary("ebook")
        assert ebook_summary["confirmed_count"] == 2
        assert Decimal(ebook_summary["revenue_usd"]) == Decimal("20")

    def test_list_payments_by_status(self, engine):
        first = engine.create_payment("ebook", EMAIL, BUYER_SOL)
        engine.create_payment("ebook", EMAIL, BUYER_SOL)
        engine.state_machine.request_confirm(first.id, "sig-1")

        assert [p.id for p in engine.list_payments(status="confirmed")] == [first.id]
        assert len(engine.list_payments(product_id="ebook")) == 2

    def test_health(self, engine):
        report = engine.health()
        assert report["healthy"] is True
        assert report["storage"]["name"] == "MemoryStorage"
        assert report["active_verifications"] == 0
        assert report["config"]["max_attempts"] >= 1


class TestEnvironmentStorage:
    def test_defaults_to_memory(self, monkeypatch):
        monkeypatch.delenv("CryptoPayLink_Environment", raising=False)
        assert isinstance(_create_environment_aware_storage(), MemoryStorage)

    def test_production_uses_database(self, monkeypatch, tmp_path):
        monkeypatch.setenv("CryptoPayLink_Environment", "production")
        monkeypatch.setenv("CryptoPayLink_DatabasePath", str(tmp_path / "prod.db"))
        storage = _create_environment_aware_storage()
        assert isinstance(storage, DatabaseStorage)
        assert storage.db_path == str(tmp_path / "prod.db")

    def test_engine_timeout_setting(self, engine):
        assert engine.scheduler.timeout == timedelta(minutes=30)
        assert engine.scheduler.max_attempts == 5

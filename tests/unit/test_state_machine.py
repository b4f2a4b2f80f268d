import threading

import pytest

from cryptopaylink.exceptions import NotificationError, PaymentNotFound, ValidationError
from cryptopaylink.models import PaymentStatus, TransitionOutcome
from cryptopaylink.notifications import LoggingNotificationDispatcher, NotificationDispatcher
from cryptopaylink.state_machine import PaymentStateMachine


class FailingDispatcher(NotificationDispatcher):
    def __init__(self, error):
        self.error = error
        self.calls = 0

    def send_confirmation(self, payment, product):
        self.calls += 1
        raise self.error


@pytest.fixture
def pending(state_machine, storage, product, make_payment):
    storage.save_product(product)
    return state_machine.create(make_payment(product), product)


class TestCreate:
    def test_create_persists_pending_payment(self, state_machine, storage, pending):
        stored = storage.get_payment(pending.id)
        assert stored.status == PaymentStatus.PENDING
        assert stored.expected_crypto_amount == pending.expected_crypto_amount

    def test_rejects_malformed_buyer_wallet(self, state_machine, product, make_payment):
        with pytest.raises(ValidationError) as exc_info:
            state_machine.create(make_payment(product, buyer_wallet="0OIl-not-base58"), product)
        assert exc_info.value.field == "buyer_wallet"

    def test_rejects_ethereum_wallet_for_solana_product(self, state_machine, product, make_payment):
        with pytest.raises(ValidationError):
            state_machine.create(make_payment(product, buyer_wallet="0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"), product)

    def test_rejects_inactive_product(self, state_machine, product, make_payment):
        product.is_active = False
        with pytest.raises(ValidationError):
            state_machine.create(make_payment(product), product)

    def test_rejects_mismatched_product(self, state_machine, product, eth_product, make_payment):
        with pytest.raises(ValidationError):
            state_machine.create(make_payment(product), eth_product)

    def test_validate_request_rejects_bad_email(self, product):
        with pytest.raises(ValidationError) as exc_info:
            PaymentStateMachine.validate_request(product, "not-an-email", "4Nd1mBQtrMJVYVfKf2PJy9NZUZdTAsp7D4xWLs4gDB4T")
        assert exc_info.value.field == "buyer_email"


class TestConfirm:
    def test_confirm_applies_and_notifies_once(self, state_machine, dispatcher, pending):
        result = state_machine.request_confirm(pending.id, "sig-1")
        assert result.outcome == TransitionOutcome.APPLIED
        assert result.applied
        assert result.status == PaymentStatus.CONFIRMED
        assert result.tx_hash == "sig-1"
        assert result.payment.confirmed_at is not None
        assert state_machine.get(pending.id).notified_at is not None
        assert len(dispatcher.sent) == 1
        assert dispatcher.sent[0]["txHash"] == "sig-1"

    def test_second_confirm_returns_original_result(self, state_machine, dispatcher, pending):
        first = state_machine.request_confirm(pending.id, "sig-1")
        again = state_machine.request_confirm(pending.id, "sig-1")
        other = state_machine.request_confirm(pending.id, "sig-2")

        assert again.outcome == TransitionOutcome.DUPLICATE
        assert again.tx_hash == "sig-1"
        assert other.outcome == TransitionOutcome.DUPLICATE
        assert other.tx_hash == "sig-1"
        assert state_machine.get(pending.id).confirmed_at == first.payment.confirmed_at
        assert len(dispatcher.sent) == 1

    def test_confirm_after_fail_is_conflict(self, state_machine, dispatcher, pending):
        state_machine.request_fail(pending.id, "timed_out")
        result = state_machine.request_confirm(pending.id, "sig-1")

        assert result.outcome == TransitionOutcome.CONFLICT
        assert result.status == PaymentStatus.FAILED
        payment = state_machine.get(pending.id)
        assert payment.status == PaymentStatus.FAILED
        assert payment.tx_hash is None
        assert dispatcher.sent == []

    def test_tx_hash_already_used_is_rejected(self, state_machine, storage, product, make_payment, dispatcher):
        storage.save_product(product)
        first = state_machine.create(make_payment(product), product)
        second = state_machine.create(make_payment(product), product)

        state_machine.request_confirm(first.id, "sig-shared")
        result = state_machine.request_confirm(second.id, "sig-shared")

        assert result.outcome == TransitionOutcome.REJECTED
        assert result.status == PaymentStatus.PENDING
        assert state_machine.get(second.id).is_pending
        assert len(dispatcher.sent) == 1

    def test_confirm_requires_tx_hash(self, state_machine, pending):
        with pytest.raises(ValidationError):
            state_machine.request_confirm(pending.id, "")

    def test_unknown_payment(self, state_machine):
        with pytest.raises(PaymentNotFound):
            state_machine.request_confirm("pay_missing", "sig-1")
        with pytest.raises(PaymentNotFound):
            state_machine.request_fail("pay_missing", "timed_out")


class TestFail:
    def test_fail_applies(self, state_machine, pending):
        result = state_machine.request_fail(pending.id, "timed_out")
        assert result.outcome == TransitionOutcome.APPLIED
        assert result.payment.failure_reason == "timed_out"

    def test_second_fail_is_duplicate(self, state_machine, pending):
        state_machine.request_fail(pending.id, "timed_out")
        result = state_machine.request_fail(pending.id, "dependency_unavailable")
        assert result.outcome == TransitionOutcome.DUPLICATE
        assert state_machine.get(pending.id).failure_reason == "timed_out"

    def test_fail_after_confirm_is_conflict(self, state_machine, pending):
        state_machine.request_confirm(pending.id, "sig-1")
        result = state_machine.request_fail(pending.id, "timed_out")
        assert result.outcome == TransitionOutcome.CONFLICT
        assert state_machine.get(pending.id).status == PaymentStatus.CONFIRMED


class TestTerminalStates:
    @pytest.mark.parametrize(
        "calls",
        [
            [("confirm", "sig-1"), ("fail", "timed_out"), ("confirm", "sig-2")],
            [("fail", "timed_out"), ("confirm", "sig-1"), ("fail", "other")],
        ],
    )
    def test_no_sequence_leaves_a_terminal_state(self, state_machine, pending, calls):
        statuses = []
        for action, arg in calls:
            if action == "confirm":
                state_machine.request_confirm(pending.id, arg)
            else:
                state_machine.request_fail(pending.id, arg)
            statuses.append(state_machine.get(pending.id).status)
        assert len(set(statuses)) == 1
        assert statuses[0].is_terminal


class TestNotifications:
    def test_send_confirmation_is_noop_when_already_sent(self, state_machine, dispatcher, pending):
        state_machine.request_confirm(pending.id, "sig-1")
        assert state_machine.send_confirmation(pending.id) is False
        assert len(dispatcher.sent) == 1

    def test_send_confirmation_refuses_pending_and_failed(self, state_machine, dispatcher, pending):
        assert state_machine.send_confirmation(pending.id) is False
        state_machine.request_fail(pending.id, "timed_out")
        assert state_machine.send_confirmation(pending.id) is False
        assert dispatcher.sent == []

    def test_send_confirmation_sends_unclaimed(self, storage, product, make_payment, clock):
        storage.save_product(product)
        payment = make_payment(product)
        storage.create_payment(payment)
        storage.confirm_payment(payment.id, "sig-1", clock())

        dispatcher = LoggingNotificationDispatcher()
        machine = PaymentStateMachine(storage, dispatcher, clock=clock)
        assert machine.send_confirmation(payment.id) is True
        assert machine.send_confirmation(payment.id) is False
        assert len(dispatcher.sent) == 1

    @pytest.mark.parametrize(
        "error", [NotificationError("smtp down", channel="email"), RuntimeError("dispatcher bug")]
    )
    def test_dispatch_failure_keeps_payment_confirmed(self, storage, product, make_payment, clock, error):
        storage.save_product(product)
        dispatcher = FailingDispatcher(error)
        machine = PaymentStateMachine(storage, dispatcher, clock=clock)
        payment = machine.create(make_payment(product), product)

        result = machine.request_confirm(payment.id, "sig-1")
        assert result.outcome == TransitionOutcome.APPLIED
        assert machine.get(payment.id).status == PaymentStatus.CONFIRMED
        assert machine.send_confirmation(payment.id) is False
        assert dispatcher.calls == 1


class TestConcurrency:
    def test_concurrent_confirms_apply_once(self, state_machine, dispatcher, pending):
        barrier = threading.Barrier(8)
        outcomes = []
        lock = threading.Lock()

        def confirm():
            barrier.wait()
            result = state_machine.request_confirm(pending.id, "sig-1")
            with lock:
                outcomes.append(result.outcome)

        threads = [threading.Thread(target=confirm) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert outcomes.count(TransitionOutcome.APPLIED) == 1
        assert outcomes.count(TransitionOutcome.DUPLICATE) == 7
        assert len(dispatcher.sent) == 1

    def test_confirm_races_fail(self, state_machine, pending):
        barrier = threading.Barrier(2)
        results = {}

        def confirm():
            barrier.wait()
            results["confirm"] = state_machine.request_confirm(pending.id, "sig-1")

        def fail():
            barrier.wait()
            results["fail"] = state_machine.request_fail(pending.id, "timed_out")

        threads = [threading.Thread(target=confirm), threading.Thread(target=fail)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        applied = [name for name, result in results.items() if result.applied]
        assert len(applied) == 1
        final = state_machine.get(pending.id).status
        assert final == (PaymentStatus.CONFIRMED if applied == ["confirm"] else PaymentStatus.FAILED)

    def test_lock_registry_does_not_grow(self, state_machine, storage, product, make_payment):
        storage.save_product(product)
        for n in range(20):
            payment = state_machine.create(make_payment(product), product)
            if n % 2:
                state_machine.request_confirm(payment.id, f"sig-{n}")
            else:
                state_machine.request_fail(payment.id, "timed_out")
        assert len(state_machine._locks) == 0

    def test_lock_is_reentrant_and_exclusive(self, state_machine, pending):
        acquired = threading.Event()

        def contend():
            with state_machine.lock(pending.id):
                acquired.set()

        with state_machine.lock(pending.id):
            with state_machine.lock(pending.id):
                thread = threading.Thread(target=contend)
                thread.start()
                assert not acquired.wait(0.1)
        thread.join(timeout=5)
        assert acquired.is_set()
        assert state_machine._locks == {}

    def test_separate_engines_share_one_database(self, db_storage, product, make_payment, clock):
        db_storage.save_product(product)
        dispatchers = [LoggingNotificationDispatcher() for _ in range(4)]
        machines = [PaymentStateMachine(db_storage, d, clock=clock) for d in dispatchers]
        payment = machines[0].create(make_payment(product), product)

        barrier = threading.Barrier(len(machines))
        outcomes = []
        lock = threading.Lock()

        def confirm(machine):
            barrier.wait()
            result = machine.request_confirm(payment.id, "sig-1")
            with lock:
                outcomes.append(result.outcome)

        threads = [threading.Thread(target=confirm, args=(m,)) for m in machines]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert outcomes.count(TransitionOutcome.APPLIED) == 1
        assert sum(len(d.sent) for d in dispatchers) == 1

"""
Background verification for CryptoPayLink.

Each pending payment gets its own polling thread. A tick looks for a settled
transfer from the buyer to the product's wallet that covers the expected
amount, and asks the state machine to confirm it. Payments that never see
such a transfer are failed after a bounded number of successful polls or a
wall-clock ceiling; payments whose chain stays unreachable are failed after
an error budget. All counters live in storage, so a restarted process
resumes with the same limits.
"""

import logging
import threading
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from . import config
from .chains.base import ChainWatcherRegistry
from .exceptions import ChainQueryError, PriceUnavailable, ValidationError
from .models import FailureReason, PaymentIntent, PaymentStatus, TransitionOutcome
from .reconciler import AmountReconciler
from .state_machine import PaymentStateMachine
from .storage.base import StorageBackend
from .utils import addresses_equal, get_current_timestamp

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (ChainQueryError, PriceUnavailable)

# Finished task states kept in memory; older ones are derived from storage
RECENT_STATES_LIMIT = 1024


class TaskState(Enum):
    """State of a payment's polling task."""

    IDLE = "idle"
    POLLING = "polling"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    STOPPED = "stopped"

    @property
    def is_final(self) -> bool:
        return self not in (TaskState.IDLE, TaskState.POLLING)


@dataclass
class _PollingTask:
    payment_id: str
    stop_event: threading.Event = field(default_factory=threading.Event)
    tick_lock: threading.Lock = field(default_factory=threading.Lock)
    state: TaskState = TaskState.IDLE
    thread: Optional[threading.Thread] = None


def _task_state_for(payment: PaymentIntent) -> Optional[TaskState]:
    if payment.status == PaymentStatus.CONFIRMED:
        return TaskState.CONFIRMED
    if payment.status == PaymentStatus.FAILED:
        return TaskState.TIMED_OUT if payment.failure_reason == FailureReason.TIMED_OUT else TaskState.FAILED
    return None


class VerificationScheduler:
    """Runs one polling thread per pending payment."""

    def __init__(
        self,
        storage: StorageBackend,
        state_machine: PaymentStateMachine,
        watchers: ChainWatcherRegistry,
        reconciler: Optional[AmountReconciler] = None,
        interval: Optional[float] = None,
        max_attempts: Optional[int] = None,
        timeout: Optional[timedelta] = None,
        error_budget: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.storage = storage
        self.state_machine = state_machine
        self.watchers = watchers
        self.reconciler = reconciler or AmountReconciler()
        self.interval = config.POLL_INTERVAL_SECONDS if interval is None else interval
        self.max_attempts = config.MAX_ATTEMPTS if max_attempts is None else max_attempts
        self.timeout = timeout if timeout is not None else timedelta(minutes=config.TIMEOUT_MINUTES)
        self.error_budget = config.ERROR_BUDGET if error_budget is None else error_budget
        self._clock = clock or get_current_timestamp
        if self.interval < 0:
            raise ValidationError("Poll interval cannot be negative", field="interval", value=self.interval)
        if self.max_attempts < 1 or self.error_budget < 1:
            raise ValidationError(
                "max_attempts and error_budget must be at least 1",
                field="max_attempts",
                value=self.max_attempts,
                constraints={"error_budget": self.error_budget},
            )

        self._tasks: dict[str, _PollingTask] = {}
        self._recent_states: OrderedDict[str, TaskState] = OrderedDict()
        self._lock = threading.Lock()

    def start(self, payment_id: str) -> bool:
        """
        Start polling a payment in the background.

        Returns False if the payment is already being polled or is no longer pending.
        """
        payment = self.state_machine.get(payment_id)
        final_state = _task_state_for(payment)
        with self._lock:
            current = self._tasks.get(payment_id)
            if current is not None and current.thread is not None and current.thread.is_alive():
                logger.debug("Payment %s is already being polled", payment_id)
                return False
            if final_state is not None:
                self._remember(payment_id, final_state)
                return False

            task = _PollingTask(payment_id=payment_id)
            task.thread = threading.Thread(target=self._run, args=(task,), name=f"verify-{payment_id}", daemon=True)
            self._tasks[payment_id] = task
            self._recent_states.pop(payment_id, None)
            task.thread.start()
        logger.info("Started verification for payment %s (every %ss)", payment_id, self.interval)
        return True

    def stop(self, payment_id: str, timeout: Optional[float] = None) -> bool:
        """
        Stop polling a payment. Once this returns no further tick runs.

        Returns False if no task was running for the payment.
        """
        with self._lock:
            task = self._tasks.get(payment_id)
        if task is None:
            return False

        task.stop_event.set()
        if threading.current_thread() is task.thread:
            # Called from inside a tick; the loop exits after it
            return True
        with task.tick_lock:
            if not task.state.is_final:
                task.state = TaskState.STOPPED
        task.thread.join(timeout)
        self._release(task)
        logger.info("Stopped verification for payment %s", payment_id)
        return True

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Stop every polling task."""
        with self._lock:
            payment_ids = list(self._tasks)
        for payment_id in payment_ids:
            self.stop(payment_id, timeout)
        logger.info("Verification scheduler shut down (%d tasks stopped)", len(payment_ids))

    def resume_pending(self) -> int:
        """Start tasks for every pending payment in storage. Returns how many were started."""
        started = 0
        for payment in self.storage.list_payments(status=PaymentStatus.PENDING):
            if self.start(payment.id):
                started += 1
        logger.info("Resumed verification for %d pending payments", started)
        return started

    def join(self, payment_id: str, timeout: Optional[float] = None) -> bool:
        """Wait for a payment's task to finish. Returns True if it is no longer running."""
        with self._lock:
            task = self._tasks.get(payment_id)
        if task is None or task.thread is None:
            return True
        task.thread.join(timeout)
        return not task.thread.is_alive()

    def state(self, payment_id: str) -> Optional[TaskState]:
        """Live task state, else the state a recent task ended in, else what storage implies."""
        with self._lock:
            task = self._tasks.get(payment_id)
            if task is not None:
                return task.state
            recent = self._recent_states.get(payment_id)
        if recent is not None:
            return recent
        payment = self.storage.get_payment(payment_id)
        return _task_state_for(payment) if payment is not None else None

    def active_payments(self) -> list[str]:
        with self._lock:
            return [pid for pid, task in self._tasks.items() if task.thread is not None and task.thread.is_alive()]

    def poll_once(self, payment_id: str) -> PaymentIntent:
        """Run one verification tick now and return the payment afterwards."""
        payment = self.state_machine.get(payment_id)
        if payment.is_pending:
            final_state = self._tick(payment_id)
            if final_state is not None:
                with self._lock:
                    if payment_id not in self._tasks:
                        self._remember(payment_id, final_state)
        return self.state_machine.get(payment_id)

    def _remember(self, payment_id: str, state: TaskState) -> None:
        # Caller holds self._lock
        self._recent_states[payment_id] = state
        self._recent_states.move_to_end(payment_id)
        while len(self._recent_states) > RECENT_STATES_LIMIT:
            self._recent_states.popitem(last=False)

    def _release(self, task: _PollingTask) -> None:
        with self._lock:
            if self._tasks.get(task.payment_id) is task:
                del self._tasks[task.payment_id]
                self._remember(task.payment_id, task.state)

    def _run(self, task: _PollingTask) -> None:
        try:
            while not task.stop_event.is_set():
                with task.tick_lock:
                    if task.stop_event.is_set():
                        break
                    task.state = TaskState.POLLING
                    try:
                        final_state = self._tick(task.payment_id)
                    except Exception:
                        logger.exception("Verification tick for payment %s crashed", task.payment_id)
                        final_state = None
                    if final_state is not None:
                        task.state = final_state
                        break
                task.stop_event.wait(self.interval)
        finally:
            if not task.state.is_final:
                task.state = TaskState.STOPPED
            self._release(task)
            logger.debug("Verification task for payment %s ended in %s", task.payment_id, task.state.value)

    def _tick(self, payment_id: str) -> Optional[TaskState]:
        """
        One verification attempt. Returns the final task state, or None to keep polling.

        The chain scan runs without the payment lock; every write afterwards is
        a compare-and-set on the pending status, so a concurrent tick or manual
        verification that finished first simply wins.
        """
        with self.state_machine.lock(payment_id):
            payment = self.storage.get_payment(payment_id)
            if payment is None:
                logger.error("Payment %s disappeared from storage", payment_id)
                return TaskState.STOPPED
            final_state = _task_state_for(payment)
            if final_state is not None:
                return final_state

            now = self._clock()
            if now - payment.created_at >= self.timeout:
                logger.info("Payment %s reached the %s verification ceiling", payment_id, self.timeout)
                return self._fail(payment_id, FailureReason.TIMED_OUT)

            product = self.storage.get_product(payment.product_id)
            if product is None:
                return self._fail(payment_id, FailureReason.PRODUCT_UNAVAILABLE)
            watcher = self.watchers.get(product.chain)
            if watcher is None:
                return self._fail(payment_id, f"no watcher for {product.chain.value}")

        try:
            for tx in watcher.find_matching(
                product.chain, product.recipient_wallet, payment.created_at, asset=product.currency
            ):
                if not tx.settled:
                    logger.debug("Transfer %s has %d confirmations, waiting", tx.hash, tx.confirmations)
                    continue
                if tx.asset != product.currency:
                    continue
                if not addresses_equal(product.chain.value, tx.from_address, payment.buyer_wallet):
                    continue
                if not self.reconciler.matches(payment.expected_crypto_amount, tx.amount):
                    logger.debug(
                        "Transfer %s pays %s, below expected %s", tx.hash, tx.amount, payment.expected_crypto_amount
                    )
                    continue
                result = self.state_machine.request_confirm(payment_id, tx.hash)
                if result.outcome == TransitionOutcome.REJECTED:
                    continue
                return _task_state_for(result.payment or self.state_machine.get(payment_id))
        except TRANSIENT_ERRORS as e:
            return self._record_error(payment_id, now, e)

        with self.state_machine.lock(payment_id):
            updated = self.storage.record_poll(payment_id, now, attempt_increment=1)
            if updated is None:
                return _task_state_for(self.state_machine.get(payment_id))
            if updated.attempt_count >= self.max_attempts:
                logger.info("Payment %s found no matching transfer after %d polls", payment_id, updated.attempt_count)
                return self._fail(payment_id, FailureReason.TIMED_OUT)
        return None

    def _record_error(self, payment_id: str, now: datetime, error: Exception) -> Optional[TaskState]:
        with self.state_machine.lock(payment_id):
            updated = self.storage.record_poll(payment_id, now, error_increment=1)
            if updated is None:
                return _task_state_for(self.state_machine.get(payment_id))
            logger.warning(
                "Verification of payment %s hit a transient error (%d/%d): %s",
                payment_id,
                updated.error_count,
                self.error_budget,
                error,
            )
            if updated.error_count >= self.error_budget:
                return self._fail(payment_id, FailureReason.DEPENDENCY_UNAVAILABLE)
        return None

    def _fail(self, payment_id: str, reason: str) -> TaskState:
        result = self.state_machine.request_fail(payment_id, reason)
        return _task_state_for(result.payment or self.state_machine.get(payment_id))

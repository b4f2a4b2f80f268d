"""
In-memory chain watcher for development and tests.

Transactions are scripted with ``add_transaction`` and their depth advanced
with ``set_confirmations``; ``fail_next`` makes upcoming queries raise
ChainQueryError.
"""

import logging
import threading
from collections.abc import Iterator
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from ..exceptions import ChainQueryError
from ..models import Chain, ChainTransaction
from ..utils import addresses_equal, ensure_utc, get_current_timestamp
from .base import ChainWatcher

logger = logging.getLogger(__name__)


class InMemoryChainWatcher(ChainWatcher):
    """Chain watcher over a scripted list of transfers."""

    def __init__(self, chain: Chain | str = Chain.SOLANA, required_confirmations: Optional[int] = None):
        super().__init__(Chain(chain) if isinstance(chain, str) else chain, required_confirmations)
        self._transactions: list[ChainTransaction] = []
        self._failures_pending = 0
        self._lock = threading.Lock()
        self.query_count = 0

    def add_transaction(
        self,
        hash: str,
        from_address: Optional[str],
        to_address: str,
        amount: Any,
        asset: Optional[str] = None,
        confirmations: int = 0,
        observed_at: Optional[datetime] = None,
    ) -> ChainTransaction:
        tx = ChainTransaction(
            hash=hash,
            from_address=from_address,
            to_address=to_address,
            amount=Decimal(str(amount)),
            asset=(asset or self.native_asset).upper(),
            confirmations=confirmations,
            observed_at=ensure_utc(observed_at) if observed_at else get_current_timestamp(),
        )
        with self._lock:
            self._transactions.append(tx)
        logger.debug("Scripted %s transfer %s of %s %s", self.chain.value, hash, tx.amount, tx.asset)
        return tx

    def set_confirmations(self, hash: str, confirmations: int) -> None:
        with self._lock:
            for tx in self._transactions:
                if tx.hash == hash:
                    tx.confirmations = confirmations

    def fail_next(self, count: int = 1) -> None:
        """Make the next ``count`` queries raise ChainQueryError."""
        with self._lock:
            self._failures_pending += count

    def find_matching(
        self, chain: Chain, recipient: str, since: datetime, asset: Optional[str] = None
    ) -> Iterator[ChainTransaction]:
        self._check_chain(chain)
        asset = self._check_asset(asset)
        since = ensure_utc(since)
        with self._lock:
            self.query_count += 1
            if self._failures_pending > 0:
                self._failures_pending -= 1
                raise ChainQueryError("Scripted chain outage", chain=self.chain.value, provider_error="scripted")
            snapshot = [
                ChainTransaction(
                    hash=tx.hash,
                    from_address=tx.from_address,
                    to_address=tx.to_address,
                    amount=tx.amount,
                    asset=tx.asset,
                    confirmations=tx.confirmations,
                    observed_at=tx.observed_at,
                    settled=self.is_settled(tx.confirmations),
                )
                for tx in self._transactions
                if tx.asset == asset
                and addresses_equal(self.chain.value, tx.to_address, recipient)
                and tx.observed_at >= since
            ]
        return iter(snapshot)

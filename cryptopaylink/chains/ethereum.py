"""
Ethereum chain watcher using web3.py.

Native ETH transfers are found by scanning full blocks since the payment was
created; ERC-20 transfers (USDT, USDC) are read from ``Transfer`` event logs
filtered on the recipient.
"""

import logging
import math
from collections.abc import Iterator
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from .. import config
from ..exceptions import ConfigurationError
from ..models import Chain, ChainTransaction
from ..utils import ensure_utc, get_current_timestamp
from .base import ChainWatcher

logger = logging.getLogger(__name__)

ERC20_TRANSFER_ABI = [
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "from", "type": "address"},
            {"indexed": True, "name": "to", "type": "address"},
            {"indexed": False, "name": "value", "type": "uint256"},
        ],
        "name": "Transfer",
        "type": "event",
    },
]

# Mainnet averages one block every 12 seconds since the merge
DEFAULT_BLOCK_TIME = 12
# Extra blocks scanned before the estimated start to absorb clock skew
BLOCK_MARGIN = 25


def _hex(value: Any) -> str:
    if isinstance(value, str):
        return value if value.startswith("0x") else f"0x{value}"
    return "0x" + bytes(value).hex()


class EthereumWatcher(ChainWatcher):
    """Watches Ethereum mainnet for ETH and ERC-20 transfers to a wallet."""

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        w3: Any = None,
        required_confirmations: Optional[int] = None,
        max_block_range: int = 1000,
        block_step: int = 100,
        block_time: float = DEFAULT_BLOCK_TIME,
        contracts: Optional[dict[str, str]] = None,
        request_timeout: int = 30,
    ):
        super().__init__(Chain.ETHEREUM, required_confirmations)
        if max_block_range < 1 or block_step < 1:
            raise ConfigurationError("Block ranges must be positive", config_key="max_block_range")
        self.rpc_url = rpc_url or config.DEFAULT_RPC_URLS["ethereum"]
        self.max_block_range = max_block_range
        self.block_step = block_step
        self.block_time = block_time
        self.contracts = dict(contracts or config.ERC20_CONTRACTS)
        self.request_timeout = request_timeout
        self._w3 = w3

    @property
    def w3(self):
        """Web3 client, created on first use."""
        if self._w3 is None:
            import web3

            self._w3 = web3.Web3(web3.Web3.HTTPProvider(self.rpc_url, request_kwargs={"timeout": self.request_timeout}))
        return self._w3

    def find_matching(
        self, chain: Chain, recipient: str, since: datetime, asset: Optional[str] = None
    ) -> Iterator[ChainTransaction]:
        self._check_chain(chain)
        asset = self._check_asset(asset)
        since = ensure_utc(since)

        with self._query("block number lookup"):
            latest = int(self.w3.eth.block_number)
        from_block = self._estimate_start_block(latest, since)
        logger.debug("Scanning %s transfers to %s in blocks %d-%d", asset, recipient, from_block, latest)

        if asset == self.native_asset:
            yield from self._native_transfers(recipient, since, from_block, latest)
        else:
            yield from self._token_transfers(asset, recipient, since, from_block, latest)

    def _estimate_start_block(self, latest: int, since: datetime) -> int:
        elapsed = max(0.0, (get_current_timestamp() - since).total_seconds())
        blocks_back = math.ceil(elapsed / self.block_time) + BLOCK_MARGIN
        return max(0, latest - min(blocks_back, self.max_block_range))

    def _confirmations(self, latest: int, block_number: int) -> int:
        return max(0, latest - block_number + 1)

    def _native_transfers(self, recipient: str, since: datetime, from_block: int, latest: int) -> Iterator[ChainTransaction]:
        recipient_lower = recipient.lower()
        for number in range(latest, from_block - 1, -1):
            with self._query(f"block {number} fetch"):
                block = self.w3.eth.get_block(number, full_transactions=True)
            observed_at = datetime.fromtimestamp(int(block["timestamp"]), tz=timezone.utc)
            if observed_at < since:
                break
            for tx in block["transactions"]:
                to_address = tx.get("to")
                if not to_address or to_address.lower() != recipient_lower or int(tx["value"]) <= 0:
                    continue
                tx_hash = _hex(tx["hash"])
                with self._query(f"receipt fetch for {tx_hash}"):
                    receipt = self.w3.eth.get_transaction_receipt(tx_hash)
                if int(receipt["status"]) != 1:
                    logger.debug("Skipping reverted transaction %s", tx_hash)
                    continue
                confirmations = self._confirmations(latest, number)
                yield ChainTransaction(
                    hash=tx_hash,
                    from_address=tx.get("from"),
                    to_address=to_address,
                    amount=Decimal(int(tx["value"])).scaleb(-config.ASSET_DECIMALS["ETH"]),
                    asset="ETH",
                    confirmations=confirmations,
                    observed_at=observed_at,
                    settled=self.is_settled(confirmations),
                )

    def _token_transfers(
        self, asset: str, recipient: str, since: datetime, from_block: int, latest: int
    ) -> Iterator[ChainTransaction]:
        contract_address = self.contracts.get(asset)
        if not contract_address:
            raise ConfigurationError(f"No ERC-20 contract configured for {asset}", config_key="contracts", actual_value=asset)

        with self._query("contract setup"):
            contract = self.w3.eth.contract(address=self.w3.to_checksum_address(contract_address), abi=ERC20_TRANSFER_ABI)
            checksum_recipient = self.w3.to_checksum_address(recipient)

        decimals = config.ASSET_DECIMALS[asset]
        block_times: dict[int, datetime] = {}
        for start in range(from_block, latest + 1, self.block_step):
            end = min(start + self.block_step - 1, latest)
            with self._query(f"Transfer logs {start}-{end}"):
                events = contract.events.Transfer.get_logs(
                    from_block=start, to_block=end, argument_filters={"to": checksum_recipient}
                )
            for event in events:
                block_number = int(event["blockNumber"])
                if block_number not in block_times:
                    with self._query(f"block {block_number} fetch"):
                        block = self.w3.eth.get_block(block_number)
                    block_times[block_number] = datetime.fromtimestamp(int(block["timestamp"]), tz=timezone.utc)
                observed_at = block_times[block_number]
                if observed_at < since:
                    continue
                args = event["args"]
                confirmations = self._confirmations(latest, block_number)
                yield ChainTransaction(
                    hash=_hex(event["transactionHash"]),
                    from_address=args.get("from"),
                    to_address=args.get("to", checksum_recipient),
                    amount=Decimal(int(args["value"])).scaleb(-decimals),
                    asset=asset,
                    confirmations=confirmations,
                    observed_at=observed_at,
                    settled=self.is_settled(confirmations),
                )

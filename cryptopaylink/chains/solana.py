"""
Solana chain watcher using the JSON-RPC API over requests.

Native SOL transfers are read from parsed system ``transfer`` instructions.
SPL token transfers (USDC, USDT) are read from the pre/post token balance
deltas of the recipient's token accounts.
"""

import itertools
import logging
from collections.abc import Iterator
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

import requests

from .. import config
from ..exceptions import ChainQueryError
from ..models import Chain, ChainTransaction
from ..utils import ensure_utc, redact_message
from .base import ChainWatcher

logger = logging.getLogger(__name__)

SIGNATURE_PAGE_SIZE = 100
STATUS_BATCH_SIZE = 256
SYSTEM_TRANSFER_TYPES = {"transfer", "transferWithSeed"}


class SolanaWatcher(ChainWatcher):
    """Watches Solana mainnet for SOL and SPL token transfers to a wallet."""

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        session: Optional[requests.Session] = None,
        required_confirmations: Optional[int] = None,
        timeout: float = 15.0,
        mints: Optional[dict[str, str]] = None,
        max_signatures: int = 1000,
        commitment: str = "confirmed",
    ):
        super().__init__(Chain.SOLANA, required_confirmations)
        self.rpc_url = rpc_url or config.DEFAULT_RPC_URLS["solana"]
        self.session = session or requests.Session()
        self.timeout = timeout
        self.mints = dict(mints or config.SPL_MINTS)
        self.max_signatures = max_signatures
        self.commitment = commitment
        self._ids = itertools.count(1)

    def _rpc(self, method: str, params: list) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            response = self.session.post(self.rpc_url, json=payload, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise ChainQueryError(
                f"Solana RPC {method} request failed", chain="solana", provider_error=redact_message(str(e))
            ) from e
        if response.status_code == 429:
            raise ChainQueryError(f"Solana RPC {method} rate limited", chain="solana", provider_error="HTTP 429")
        try:
            response.raise_for_status()
            body = response.json()
        except (requests.exceptions.HTTPError, ValueError) as e:
            raise ChainQueryError(
                f"Solana RPC {method} returned an invalid response", chain="solana", provider_error=redact_message(str(e))
            ) from e
        if not isinstance(body, dict):
            raise ChainQueryError(f"Solana RPC {method} returned a non-object body", chain="solana", provider_error=str(body))
        if body.get("error"):
            raise ChainQueryError(f"Solana RPC {method} returned an error", chain="solana", provider_error=str(body["error"]))
        if "result" not in body:
            raise ChainQueryError(f"Solana RPC {method} response has no result", chain="solana", provider_error=str(body))
        return body["result"]

    def find_matching(
        self, chain: Chain, recipient: str, since: datetime, asset: Optional[str] = None
    ) -> Iterator[ChainTransaction]:
        self._check_chain(chain)
        asset = self._check_asset(asset)
        since = ensure_utc(since)
        since_ts = int(since.timestamp())

        if asset == self.native_asset:
            watched = [recipient]
            mint = None
        else:
            mint = self.mints[asset]
            with self._query("token account lookup"):
                watched = self._token_accounts(recipient, mint)
            if not watched:
                logger.debug("%s has no %s token account yet", recipient, asset)
                return

        signatures = []
        with self._query("signature lookup"):
            for address in watched:
                for signature in self._signatures_since(address, since_ts):
                    if signature not in signatures:
                        signatures.append(signature)
            if not signatures:
                return
            confirmations = self._confirmations(signatures)

        for signature in signatures:
            with self._query(f"transaction {signature} fetch"):
                observed = self._fetch_transfer(signature, recipient, asset, mint, since, confirmations.get(signature, 0))
            if observed is not None:
                yield observed

    def _fetch_transfer(
        self, signature: str, recipient: str, asset: str, mint: Optional[str], since: datetime, depth: int
    ) -> Optional[ChainTransaction]:
        tx = self._rpc(
            "getTransaction",
            [
                signature,
                {"encoding": "jsonParsed", "maxSupportedTransactionVersion": 0, "commitment": self.commitment},
            ],
        )
        if tx is None:
            logger.debug("Transaction %s not yet available", signature)
            return None
        if not isinstance(tx, dict):
            raise ChainQueryError("Malformed getTransaction response", chain="solana", provider_error=str(tx))
        observed = self._parse_transfer(tx, recipient, asset, mint)
        if observed is None:
            return None
        sender, amount = observed
        block_time = tx.get("blockTime")
        observed_at = datetime.fromtimestamp(block_time, tz=timezone.utc) if block_time else since
        return ChainTransaction(
            hash=signature,
            from_address=sender,
            to_address=recipient,
            amount=amount,
            asset=asset,
            confirmations=depth,
            observed_at=observed_at,
            settled=self.is_settled(depth),
        )

    def _token_accounts(self, owner: str, mint: str) -> list[str]:
        result = self._rpc("getTokenAccountsByOwner", [owner, {"mint": mint}, {"encoding": "jsonParsed"}])
        try:
            return [entry["pubkey"] for entry in result["value"]]
        except (KeyError, TypeError) as e:
            raise ChainQueryError("Malformed getTokenAccountsByOwner response", chain="solana", provider_error=str(e)) from e

    def _signatures_since(self, address: str, since_ts: int) -> list[str]:
        """Page newest-first through the address history until blockTime drops below since."""
        found: list[str] = []
        before = None
        while len(found) < self.max_signatures:
            options: dict[str, Any] = {"limit": SIGNATURE_PAGE_SIZE, "commitment": self.commitment}
            if before:
                options["before"] = before
            page = self._rpc("getSignaturesForAddress", [address, options])
            if not isinstance(page, list):
                raise ChainQueryError("Malformed getSignaturesForAddress response", chain="solana", provider_error=str(page))
            reached_start = False
            for entry in page:
                block_time = entry.get("blockTime")
                if block_time is not None and block_time < since_ts:
                    reached_start = True
                    break
                if entry.get("err") is None:
                    found.append(entry["signature"])
            if reached_start or len(page) < SIGNATURE_PAGE_SIZE:
                break
            before = page[-1]["signature"]
        return found

    def _confirmations(self, signatures: list[str]) -> dict[str, int]:
        depths: dict[str, int] = {}
        for i in range(0, len(signatures), STATUS_BATCH_SIZE):
            batch = signatures[i : i + STATUS_BATCH_SIZE]
            result = self._rpc("getSignatureStatuses", [batch, {"searchTransactionHistory": True}])
            try:
                statuses = result["value"]
            except (KeyError, TypeError) as e:
                raise ChainQueryError("Malformed getSignatureStatuses response", chain="solana", provider_error=str(e)) from e
            for signature, status in zip(batch, statuses):
                if not status:
                    depths[signature] = 0
                elif status.get("confirmationStatus") == "finalized" or status.get("confirmations") is None:
                    # Finalized blocks report no count; treat them as fully settled
                    depths[signature] = self.required_confirmations
                else:
                    depths[signature] = int(status["confirmations"])
        return depths

    def _parse_transfer(
        self, tx: dict, recipient: str, asset: str, mint: Optional[str]
    ) -> Optional[tuple[Optional[str], Decimal]]:
        meta = tx.get("meta") or {}
        if meta.get("err") is not None:
            return None
        if mint is None:
            return self._parse_native(tx, recipient)
        return self._parse_token(meta, recipient, mint, config.ASSET_DECIMALS[asset])

    def _parse_native(self, tx: dict, recipient: str) -> Optional[tuple[Optional[str], Decimal]]:
        message = (tx.get("transaction") or {}).get("message") or {}
        instructions = list(message.get("instructions") or [])
        for inner in (tx.get("meta") or {}).get("innerInstructions") or []:
            instructions.extend(inner.get("instructions") or [])

        lamports = 0
        sender = None
        for instruction in instructions:
            if instruction.get("program") != "system":
                continue
            parsed = instruction.get("parsed")
            if not isinstance(parsed, dict) or parsed.get("type") not in SYSTEM_TRANSFER_TYPES:
                continue
            info = parsed.get("info") or {}
            if info.get("destination") != recipient:
                continue
            lamports += int(info.get("lamports", 0))
            sender = sender or info.get("source")
        if lamports <= 0:
            return None
        return sender, Decimal(lamports).scaleb(-config.ASSET_DECIMALS["SOL"])

    def _parse_token(
        self, meta: dict, recipient: str, mint: str, decimals: int
    ) -> Optional[tuple[Optional[str], Decimal]]:
        def balances(key: str) -> dict[int, tuple[Optional[str], int]]:
            result = {}
            for entry in meta.get(key) or []:
                if entry.get("mint") != mint:
                    continue
                raw = (entry.get("uiTokenAmount") or {}).get("amount", "0")
                result[entry["accountIndex"]] = (entry.get("owner"), int(raw))
            return result

        pre = balances("preTokenBalances")
        post = balances("postTokenBalances")
        received = 0
        sender = None
        for index in set(pre) | set(post):
            owner = (post.get(index) or pre.get(index))[0]
            delta = post.get(index, (owner, 0))[1] - pre.get(index, (owner, 0))[1]
            if owner == recipient and delta > 0:
                received += delta
            elif owner != recipient and delta < 0 and sender is None:
                sender = owner
        if received <= 0:
            return None
        return sender, Decimal(received).scaleb(-decimals)

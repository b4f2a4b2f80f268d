"""
Chain watchers for CryptoPayLink.
"""

from typing import Optional

from ..models import Chain
from .base import ChainWatcher, ChainWatcherRegistry
from .ethereum import EthereumWatcher
from .memory import InMemoryChainWatcher
from .solana import SolanaWatcher


def build_default_watchers(
    solana_rpc_url: Optional[str] = None, ethereum_rpc_url: Optional[str] = None
) -> ChainWatcherRegistry:
    """Create one RPC-backed watcher per supported chain."""
    return {
        Chain.SOLANA: SolanaWatcher(rpc_url=solana_rpc_url),
        Chain.ETHEREUM: EthereumWatcher(rpc_url=ethereum_rpc_url),
    }


__all__ = [
    "ChainWatcher",
    "ChainWatcherRegistry",
    "EthereumWatcher",
    "InMemoryChainWatcher",
    "SolanaWatcher",
    "build_default_watchers",
]

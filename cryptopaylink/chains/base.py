"""
Base chain watcher for CryptoPayLink.

A chain watcher observes transfers to a wallet. It never signs or broadcasts
anything; it only reads chain state and reports how deep each transfer is.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Optional

from .. import config
from ..exceptions import ChainQueryError, ValidationError
from ..models import Chain, ChainTransaction
from ..utils import redact_message

logger = logging.getLogger(__name__)


class ChainWatcher(ABC):
    """
    Abstract base class for chain watchers.

    Subclasses implement ``find_matching`` and mark each yielded transaction
    ``settled`` using ``is_settled`` so callers never apply the confirmation
    policy themselves.
    """

    def __init__(self, chain: Chain, required_confirmations: Optional[int] = None):
        self.chain = chain
        self.required_confirmations = required_confirmations or config.required_confirmations(chain.value)
        if self.required_confirmations < 1:
            raise ValidationError(
                "Required confirmations must be at least 1",
                field="required_confirmations",
                value=self.required_confirmations,
            )
        logger.info(
            "Initialized %s for %s (settles at %d confirmations)",
            self.__class__.__name__,
            chain.value,
            self.required_confirmations,
        )

    @property
    def native_asset(self) -> str:
        return config.NATIVE_ASSETS[self.chain.value]

    @abstractmethod
    def find_matching(
        self, chain: Chain, recipient: str, since: datetime, asset: Optional[str] = None
    ) -> Iterator[ChainTransaction]:
        """
        Yield transfers of ``asset`` (native asset by default) to ``recipient``
        observed at or after ``since``.

        Raises:
            ChainQueryError: if the chain cannot be queried or answers with
                something malformed. An empty iteration always means the
                query succeeded and found nothing.
        """
        pass

    def is_settled(self, confirmations: int) -> bool:
        return confirmations >= self.required_confirmations

    def _check_chain(self, chain: Chain | str) -> None:
        value = chain.value if isinstance(chain, Chain) else chain
        if value != self.chain.value:
            raise ValidationError(
                f"{self.__class__.__name__} watches {self.chain.value}, not {value}",
                field="chain",
                value=value,
            )

    def _check_asset(self, asset: Optional[str]) -> str:
        asset = (asset or self.native_asset).upper()
        if asset not in config.SUPPORTED_ASSETS[self.chain.value]:
            raise ValidationError(f"Asset {asset} is not supported on {self.chain.value}", field="asset", value=asset)
        return asset

    @contextmanager
    def _query(self, operation: str):
        """Convert any provider failure during ``operation`` into ChainQueryError."""
        try:
            yield
        except ChainQueryError:
            raise
        except Exception as e:
            raise ChainQueryError(
                f"{self.chain.value} query failed during {operation}",
                chain=self.chain.value,
                provider_error=redact_message(str(e)),
            ) from e


ChainWatcherRegistry = dict[Chain, ChainWatcher]

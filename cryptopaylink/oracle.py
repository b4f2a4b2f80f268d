"""
USD price feeds for CryptoPayLink.

Price oracles turn an asset symbol (SOL, ETH, USDC, USDT) into its current USD
price. Every failure mode surfaces as PriceUnavailable so callers only have
to handle one transient error.
"""

import logging
import threading
from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import requests
from ratelimit import limits, sleep_and_retry

from . import config
from .exceptions import ConfigurationError, PriceUnavailable
from .utils import redact_message, retry

logger = logging.getLogger(__name__)

COINGECKO_PUBLIC_URL = "https://api.coingecko.com/api/v3"
COINGECKO_PRO_URL = "https://pro-api.coingecko.com/api/v3"

# CoinGecko public tier allows roughly 30 calls per minute
RATE_LIMIT_CALLS = 30
RATE_LIMIT_PERIOD = 60


def _positive_price(asset: str, value: Any) -> Decimal:
    try:
        price = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise PriceUnavailable(f"Price feed returned a non-numeric price for {asset}", asset=asset, provider_error=str(value))
    if not price.is_finite() or price <= 0:
        raise PriceUnavailable(f"Price feed returned an unusable price for {asset}", asset=asset, provider_error=str(value))
    return price


class PriceOracleClient(ABC):
    """Abstract base class for USD price feeds."""

    def __init__(self, name: str, max_attempts: Optional[int] = None, retry_delay: float = 0.5):
        self.name = name
        self.max_attempts = config.ORACLE_MAX_ATTEMPTS if max_attempts is None else max_attempts
        self.retry_delay = retry_delay
        if self.max_attempts < 1:
            raise ConfigurationError("Oracle max_attempts must be at least 1", config_key="max_attempts")

    @abstractmethod
    def fetch_price(self, asset: str) -> Decimal:
        """
        Return the USD price of one unit of ``asset``.

        Raises:
            PriceUnavailable: for transport errors, HTTP errors, rate limiting,
                malformed responses, unknown assets and non-positive prices.
        """
        pass

    def fetch_price_with_retry(self, asset: str) -> Decimal:
        """Fetch a price, retrying PriceUnavailable with exponential backoff."""
        fetch = retry(
            exceptions=PriceUnavailable,
            max_attempts=self.max_attempts,
            initial_delay=self.retry_delay,
            max_delay=max(self.retry_delay, 5.0),
            logger=logger,
            retry_message=f"Retrying {self.name} price fetch for {asset}",
        )(self.fetch_price)
        return fetch(asset)


class CoinGeckoPriceOracle(PriceOracleClient):
    """Price oracle backed by the CoinGecko ``/simple/price`` endpoint."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
        asset_ids: Optional[dict[str, str]] = None,
        max_attempts: Optional[int] = None,
        retry_delay: float = 0.5,
    ):
        super().__init__("coingecko", max_attempts=max_attempts, retry_delay=retry_delay)
        self.api_key = api_key
        self.base_url = (base_url or (COINGECKO_PRO_URL if api_key else COINGECKO_PUBLIC_URL)).rstrip("/")
        self.timeout = timeout or config.ORACLE_TIMEOUT_SECONDS
        if not isinstance(self.timeout, (int, float)) or self.timeout <= 0:
            raise ConfigurationError("Oracle timeout must be a positive number", config_key="timeout")
        self.asset_ids = dict(asset_ids or config.ORACLE_ASSET_IDS)
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json"})
        if api_key:
            self.session.headers.update({"x-cg-pro-api-key": api_key})
        logger.info("CoinGecko price oracle initialized (%s)", self.base_url)

    @sleep_and_retry
    @limits(calls=RATE_LIMIT_CALLS, period=RATE_LIMIT_PERIOD)
    def _get(self, path: str, params: dict[str, str]) -> requests.Response:
        return self.session.get(f"{self.base_url}{path}", params=params, timeout=self.timeout)

    def fetch_price(self, asset: str) -> Decimal:
        asset = asset.upper() if isinstance(asset, str) else asset
        feed_id = self.asset_ids.get(asset)
        if feed_id is None:
            raise PriceUnavailable(f"No price feed configured for asset {asset}", asset=asset)

        try:
            response = self._get("/simple/price", {"ids": feed_id, "vs_currencies": "usd"})
        except requests.exceptions.RequestException as e:
            raise PriceUnavailable(
                f"Price feed request failed for {asset}", asset=asset, provider_error=redact_message(str(e))
            ) from e

        if response.status_code == 429:
            raise PriceUnavailable(f"Price feed rate limit hit for {asset}", asset=asset, provider_error="HTTP 429")
        try:
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            raise PriceUnavailable(
                f"Price feed returned HTTP {response.status_code} for {asset}",
                asset=asset,
                provider_error=redact_message(str(e)),
            ) from e

        try:
            body = response.json(parse_float=Decimal)
        except ValueError as e:
            raise PriceUnavailable(f"Price feed returned malformed JSON for {asset}", asset=asset, provider_error=str(e)) from e

        entry = body.get(feed_id) if isinstance(body, dict) else None
        if not isinstance(entry, dict) or "usd" not in entry:
            raise PriceUnavailable(f"Price feed response has no USD price for {asset}", asset=asset, provider_error=str(body))

        price = _positive_price(asset, entry["usd"])
        logger.debug("Fetched %s price: %s USD", asset, price)
        return price


class StaticPriceOracle(PriceOracleClient):
    """Fixed price table for development and tests."""

    def __init__(self, prices: Optional[dict[str, Any]] = None, max_attempts: Optional[int] = None, retry_delay: float = 0.0):
        super().__init__("static", max_attempts=max_attempts, retry_delay=retry_delay)
        self._prices: dict[str, Decimal] = {}
        self._lock = threading.Lock()
        for asset, price in (prices or {}).items():
            self.set_price(asset, price)

    def set_price(self, asset: str, price: Any) -> None:
        with self._lock:
            self._prices[asset.upper()] = Decimal(str(price))

    def fetch_price(self, asset: str) -> Decimal:
        asset = asset.upper()
        with self._lock:
            value = self._prices.get(asset)
        if value is None:
            raise PriceUnavailable(f"No static price configured for {asset}", asset=asset)
        return _positive_price(asset, value)

"""
Configuration module for CryptoPayLink.

Handles environment-based configuration for polling, reconciliation, price feeds,
chain confirmation policy and storage backends.
"""

import logging
import os
from decimal import Decimal, InvalidOperation
from typing import List

logger = logging.getLogger(__name__)

# Default configuration values
DEFAULT_ENABLED_STORAGE = "memory,database"
DEFAULT_POLL_INTERVAL_SECONDS = 10.0
DEFAULT_MAX_ATTEMPTS = 180
DEFAULT_TIMEOUT_MINUTES = 30
DEFAULT_ERROR_BUDGET = 30
DEFAULT_AMOUNT_TOLERANCE = "0.01"
DEFAULT_DISPLAY_PRECISION = 6
DEFAULT_ORACLE_TIMEOUT_SECONDS = 10.0
DEFAULT_ORACLE_MAX_ATTEMPTS = 3
DEFAULT_CONFIRMATIONS_SOLANA = 32
DEFAULT_CONFIRMATIONS_ETHEREUM = 12

VALID_STORAGE_BACKENDS = {"memory", "database"}

# Assets accepted per chain
SUPPORTED_ASSETS = {
    "solana": {"SOL", "USDC", "USDT"},
    "ethereum": {"ETH", "USDC", "USDT"},
}

# On-chain decimals for each asset
ASSET_DECIMALS = {
    "SOL": 9,
    "ETH": 18,
    "USDC": 6,
    "USDT": 6,
}

# Price feed ids (CoinGecko)
ORACLE_ASSET_IDS = {
    "SOL": "solana",
    "ETH": "ethereum",
    "USDT": "tether",
    "USDC": "usd-coin",
}

# ERC-20 contracts on Ethereum mainnet
ERC20_CONTRACTS = {
    "USDT": "0xdAC17F958D2ee523a2206206994597C13D831ec7",
    "USDC": "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48",
}

# SPL token mints on Solana mainnet
SPL_MINTS = {
    "USDC": "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
    "USDT": "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB",
}

# Native asset of each chain
NATIVE_ASSETS = {
    "solana": "SOL",
    "ethereum": "ETH",
}

DEFAULT_RPC_URLS = {
    "solana": "https://api.mainnet-beta.solana.com",
    "ethereum": "https://cloudflare-eth.com",
}

# Configuration limits
MAX_CONFIG_STRING_LENGTH = 1000
MAX_CONFIG_VALUES = 20


def _validate_config_string(config_string: str, config_name: str) -> str:
    """Validate configuration string for type, length, and content."""
    if not isinstance(config_string, str):
        raise TypeError(f"{config_name} must be a string, got {type(config_string).__name__}")

    if len(config_string) > MAX_CONFIG_STRING_LENGTH:
        raise ValueError(f"{config_name} string too long ({len(config_string)} chars). Max: {MAX_CONFIG_STRING_LENGTH}")

    if any(char in config_string for char in ["\0", "\r", "\n", "\t"]):
        raise ValueError(f"{config_name} contains invalid characters")

    return config_string


def _normalize_config_list(config_string: str, valid_values: set[str], config_name: str) -> List[str]:
    """Normalize and validate a comma-separated configuration string."""
    if not config_string:
        return []

    config_string = _validate_config_string(config_string, config_name)

    values = [s.strip().lower() for s in config_string.split(",") if s.strip()]

    if len(values) > MAX_CONFIG_VALUES:
        raise ValueError(f"Too many {config_name} values ({len(values)}). Max: {MAX_CONFIG_VALUES}")

    invalid_values = [v for v in values if v not in valid_values]

    if invalid_values:
        raise ValueError(
            f"Invalid {config_name} values: {invalid_values}. " f"Valid values are: {', '.join(sorted(valid_values))}"
        )

    return values


def _get_number_setting(name: str, default, cast, minimum):
    """Read a numeric setting from the environment, falling back to the default when invalid."""
    raw = os.getenv(f"CryptoPayLink_{name}")
    if raw is None or raw.strip() == "":
        return default
    try:
        value = cast(_validate_config_string(raw, name).strip())
    except (TypeError, ValueError) as e:
        logger.error("Invalid value for CryptoPayLink_%s: %s. Using default %s.", name, e, default)
        return default
    if value < minimum:
        logger.error("CryptoPayLink_%s must be >= %s, got %s. Using default %s.", name, minimum, value, default)
        return default
    return value


def _get_tolerance() -> Decimal:
    raw = os.getenv("CryptoPayLink_AmountTolerance", DEFAULT_AMOUNT_TOLERANCE)
    try:
        tolerance = Decimal(_validate_config_string(raw, "AmountTolerance").strip())
    except (InvalidOperation, TypeError, ValueError) as e:
        logger.error("Invalid amount tolerance %r: %s. Using default.", raw, e)
        return Decimal(DEFAULT_AMOUNT_TOLERANCE)
    if not tolerance.is_finite() or tolerance < 0 or tolerance >= 1:
        logger.error("Amount tolerance must be in [0, 1), got %s. Using default.", tolerance)
        return Decimal(DEFAULT_AMOUNT_TOLERANCE)
    return tolerance


def _get_enabled_storage() -> List[str]:
    """Get enabled storage backends from environment variables."""
    try:
        config_string = os.getenv("CryptoPayLink_EnabledStorage", DEFAULT_ENABLED_STORAGE)
        return _normalize_config_list(config_string, VALID_STORAGE_BACKENDS, "storage backends")
    except Exception as e:
        logger.error("Failed to parse storage configuration: %s. Using safe default.", e)
        return ["memory"]


POLL_INTERVAL_SECONDS = _get_number_setting("PollIntervalSeconds", DEFAULT_POLL_INTERVAL_SECONDS, float, 0)
MAX_ATTEMPTS = _get_number_setting("MaxAttempts", DEFAULT_MAX_ATTEMPTS, int, 1)
TIMEOUT_MINUTES = _get_number_setting("TimeoutMinutes", DEFAULT_TIMEOUT_MINUTES, float, 0)
ERROR_BUDGET = _get_number_setting("ErrorBudget", DEFAULT_ERROR_BUDGET, int, 1)
AMOUNT_TOLERANCE = _get_tolerance()
DISPLAY_PRECISION = _get_number_setting("DisplayPrecision", DEFAULT_DISPLAY_PRECISION, int, 0)
ORACLE_TIMEOUT_SECONDS = _get_number_setting("OracleTimeoutSeconds", DEFAULT_ORACLE_TIMEOUT_SECONDS, float, 0.1)
ORACLE_MAX_ATTEMPTS = _get_number_setting("OracleMaxAttempts", DEFAULT_ORACLE_MAX_ATTEMPTS, int, 1)

REQUIRED_CONFIRMATIONS = {
    "solana": _get_number_setting("ConfirmationsSolana", DEFAULT_CONFIRMATIONS_SOLANA, int, 1),
    "ethereum": _get_number_setting("ConfirmationsEthereum", DEFAULT_CONFIRMATIONS_ETHEREUM, int, 1),
}

ENABLED_STORAGE = _get_enabled_storage()
if not ENABLED_STORAGE:
    logger.warning("No storage backends enabled. Using memory storage as fallback.")
    ENABLED_STORAGE = ["memory"]


def is_dev_mode() -> bool:
    """Return True if running in dev/test mode."""
    return os.getenv("CryptoPayLink_DevMode", "").lower() in ("1", "true", "yes")


def is_storage_enabled(storage_name: str) -> bool:
    """Check if a specific storage backend is enabled."""
    if not isinstance(storage_name, str):
        return False
    return storage_name.lower() in ENABLED_STORAGE


def required_confirmations(chain: str) -> int:
    """Confirmation depth after which a transaction on ``chain`` counts as settled."""
    try:
        return REQUIRED_CONFIRMATIONS[chain]
    except KeyError:
        raise ValueError(f"Unsupported chain: {chain}")


def get_config_summary() -> dict:
    """Get a summary of the current configuration."""
    return {
        "enabled_storage": ENABLED_STORAGE,
        "poll_interval_seconds": POLL_INTERVAL_SECONDS,
        "max_attempts": MAX_ATTEMPTS,
        "timeout_minutes": TIMEOUT_MINUTES,
        "error_budget": ERROR_BUDGET,
        "amount_tolerance": str(AMOUNT_TOLERANCE),
        "display_precision": DISPLAY_PRECISION,
        "oracle_timeout_seconds": ORACLE_TIMEOUT_SECONDS,
        "oracle_max_attempts": ORACLE_MAX_ATTEMPTS,
        "required_confirmations": dict(REQUIRED_CONFIRMATIONS),
        "supported_assets": {chain: sorted(assets) for chain, assets in SUPPORTED_ASSETS.items()},
        "dev_mode": is_dev_mode(),
    }

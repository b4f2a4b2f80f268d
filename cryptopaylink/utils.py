"""
Utility functions for CryptoPayLink.

Wallet address checks, id and timestamp helpers, and the retry decorator used by
the price oracle, the webhook dispatcher and the SQLite backend.
"""

import logging
import random
import re
import time
import uuid
from collections.abc import Callable, Iterator
from datetime import datetime, timezone
from functools import wraps
from typing import Optional, TypeVar, Union

from .logging_config import SecretRedactor

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRY_EXCEPTIONS = (ConnectionError, TimeoutError)

# Never retried: interpreter shutdown and programming errors
_NON_RETRYABLE = (KeyboardInterrupt, SystemExit, MemoryError, ValueError, TypeError)

WALLET_PATTERNS = {
    "solana": re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$"),
    "ethereum": re.compile(r"^0x[a-fA-F0-9]{40}$"),
}

EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")


def redact_message(msg: str) -> str:
    """Apply the logging secret patterns to an arbitrary message."""
    return SecretRedactor.redact(msg)


def generate_id(prefix: str = "") -> str:
    """Generate a unique identifier with an optional prefix."""
    return f"{prefix}{uuid.uuid4()}" if prefix else str(uuid.uuid4())


def validate_wallet_address(chain: str, address: str) -> bool:
    """
    Return True if address is well formed for the given chain.

    Solana addresses are base58 strings of 32 to 44 characters, Ethereum
    addresses are 0x followed by 40 hex digits. Unknown chains never validate.
    """
    pattern = WALLET_PATTERNS.get(chain)
    if pattern is None or not isinstance(address, str):
        return False
    return bool(pattern.match(address))


def addresses_equal(chain: str, left: Optional[str], right: Optional[str]) -> bool:
    """Compare two addresses the way the chain does (hex is case-insensitive, base58 is not)."""
    if left is None or right is None:
        return False
    if chain == "ethereum":
        return left.lower() == right.lower()
    return left == right


def parse_email(email: str) -> Optional[str]:
    """Return the stripped email if it looks deliverable, else None."""
    if not isinstance(email, str):
        return None
    email = email.strip()
    return email if EMAIL_PATTERN.match(email) else None


def get_current_timestamp() -> datetime:
    """Return the current UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_datetime(datetime_str: Optional[str]) -> Optional[datetime]:
    """Parse an ISO datetime string to an aware datetime, or None if missing or invalid."""
    if not isinstance(datetime_str, str) or not datetime_str:
        return None
    try:
        return ensure_utc(datetime.fromisoformat(datetime_str.replace("Z", "+00:00")))
    except ValueError as e:
        logger.debug("Invalid datetime format: %s", redact_message(str(e)))
        return None


def _retryable(exceptions) -> tuple[type[BaseException], ...]:
    if exceptions is Exception:
        return DEFAULT_RETRY_EXCEPTIONS
    candidates = exceptions if isinstance(exceptions, tuple) else (exceptions,)
    kept = tuple(exc for exc in candidates if not issubclass(exc, _NON_RETRYABLE))
    if not kept:
        raise ValueError("No retryable exceptions provided after excluding critical/logic errors")
    return kept


def backoff_delays(initial_delay: float, backoff_factor: float, max_delay: float, jitter: bool) -> Iterator[float]:
    """Yield successive sleep durations, capped at max_delay and spread by +/-25% when jittered."""
    delay = initial_delay
    while True:
        capped = min(delay, max_delay)
        yield capped * (0.75 + random.random() * 0.5) if jitter else capped
        delay *= backoff_factor


def retry(
    exceptions: Union[type[Exception], tuple[type[Exception], ...]] = DEFAULT_RETRY_EXCEPTIONS,
    max_attempts: int = 3,
    initial_delay: float = 0.5,
    backoff_factor: float = 2.0,
    max_delay: float = 60.0,
    jitter: bool = True,
    logger: Optional[logging.Logger] = None,
    retry_message: Optional[str] = None,
    on_retry: Optional[Callable[[int, Exception], None]] = None,
):
    """
    Retry the decorated call on transient errors with exponential backoff.

    Only the listed exception types are retried, and ValueError/TypeError are
    always treated as bugs. Once attempts run out the last exception propagates
    unchanged, so callers can still map it to a domain error. Exception text is
    redacted before it is logged.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    if initial_delay < 0:
        raise ValueError("initial_delay must be non-negative")
    if backoff_factor < 1:
        raise ValueError("backoff_factor must be at least 1")
    if max_delay < initial_delay:
        raise ValueError("max_delay must be at least initial_delay")
    retry_on = _retryable(exceptions)

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        label = retry_message or f"Retrying {func.__name__}..."

        @wraps(func)
        def wrapper(*args, **kwargs):
            delays = backoff_delays(initial_delay, backoff_factor, max_delay, jitter)
            attempt = 1
            while True:
                try:
                    return func(*args, **kwargs)
                except retry_on as e:
                    if attempt >= max_attempts:
                        if logger:
                            logger.error(
                                "%s failed after %d attempts: %s", func.__name__, attempt, redact_message(str(e))
                            )
                        raise
                    pause = next(delays)
                    if logger:
                        logger.warning(
                            "%s (attempt %d/%d, delay %.2fs): %s",
                            label,
                            attempt,
                            max_attempts,
                            pause,
                            redact_message(str(e)),
                        )
                    if on_retry:
                        try:
                            on_retry(attempt, e)
                        except Exception as callback_error:
                            (logger or logging.getLogger(__name__)).warning(
                                "Retry callback failed: %s", redact_message(str(callback_error))
                            )
                    time.sleep(pause)
                    attempt += 1

        return wrapper

    return decorator

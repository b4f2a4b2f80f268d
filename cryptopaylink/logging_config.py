"""
Logging configuration for CryptoPayLink.

Every handler installed here carries a SecretRedactor, so price feed keys and
RPC project ids never reach a console or log file, even when they appear inside
request URLs or exception text.
"""

import logging
import logging.handlers
import os
import re
import sys
from pathlib import Path

REDACTED = "***REDACTED***"

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
SHORT_FORMAT = "%(name)s - %(levelname)s - %(message)s"

LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

_MAX_PATH = 260 if os.name == "nt" else 4096


class SecretRedactor(logging.Filter):
    """Scrub credentials from log records before they are formatted."""

    SECRET_PATTERNS = [
        # CoinGecko pro keys, as header or query parameter
        re.compile(r"(x-cg-pro-api-key[:=]\s*)[a-zA-Z0-9\-_]+", re.IGNORECASE),
        re.compile(r"(x_cg_pro_api_key=)[^&\s]+", re.IGNORECASE),
        # RPC providers embed the project id in the path or query
        re.compile(r"(/v3/)[a-fA-F0-9]{32}"),
        re.compile(r"(api-key=)[^&\s]+", re.IGNORECASE),
        re.compile(r"(api_key=)[^&\s]+", re.IGNORECASE),
        re.compile(r"(key=)[a-zA-Z0-9\-_\.]+", re.IGNORECASE),
        # Webhook signing secrets and generic credentials
        re.compile(r"(secret=)[^&\s]+", re.IGNORECASE),
        re.compile(r"(password=)[^&\s]+", re.IGNORECASE),
        re.compile(r"(token=)[^&\s]+", re.IGNORECASE),
        re.compile(r"(Bearer )[a-zA-Z0-9\-_\.]+", re.IGNORECASE),
        re.compile(r"(Authorization: )[a-zA-Z0-9\-_\.]+", re.IGNORECASE),
    ]

    @classmethod
    def redact(cls, text: str) -> str:
        for pattern in cls.SECRET_PATTERNS:
            text = pattern.sub(lambda m: m.group(1) + REDACTED, text)
        return text

    def filter(self, record):
        record.msg = self.redact(str(record.msg))
        if record.args and isinstance(record.args, tuple):
            # numbers stay numbers so %d and %.2f placeholders keep working
            record.args = tuple(
                arg if isinstance(arg, (int, float)) else self.redact(str(arg)) for arg in record.args
            )
        return True


class ColoredFormatter(logging.Formatter):
    """Console formatter that colors the level name."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record):
        original = record.levelname
        color = self.COLORS.get(original)
        if color:
            record.levelname = f"{color}{original}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = original


def _resolve_level(level: str) -> str:
    name = str(level).upper()
    if name not in LEVELS:
        logging.warning("Invalid log level %s, defaulting to INFO", level)
        return "INFO"
    return name


def _colors_enabled(requested: bool) -> bool:
    from_env = os.environ.get("CryptoPayLink_LogColors", "true").lower() == "true"
    return requested and from_env and sys.stderr.isatty()


def _check_log_file(log_file: str) -> None:
    valid = (
        isinstance(log_file, str)
        and log_file.strip() != ""
        and "\0" not in log_file
        and len(os.path.abspath(log_file)) <= _MAX_PATH
    )
    if not valid:
        logging.error("Invalid log file path: %r", log_file)
        raise ValueError(f"Invalid log file path: {log_file!r}")


def _attach(root: logging.Logger, handler: logging.Handler, level: int, formatter: logging.Formatter) -> None:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    handler.addFilter(SecretRedactor())
    root.addHandler(handler)


def setup_logging(
    level: str = "INFO",
    log_file: str | None = None,
    log_format: str | None = None,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    use_colors: bool = True,
    include_timestamp: bool = True,
    clear_handlers: bool = False,
) -> None:
    """
    Configure the root logger for the engine, the HTTP API and the CLI.

    Console output goes to stderr so CLI output on stdout stays parseable. When
    log_file is given a rotating file handler is added next to it; an unusable
    path raises ValueError rather than silently logging nowhere.
    """
    if log_file is not None:
        _check_log_file(log_file)
    if not isinstance(max_bytes, int) or max_bytes <= 0:
        max_bytes = 10 * 1024 * 1024
    if not isinstance(backup_count, int) or backup_count < 0:
        backup_count = 5

    level_name = _resolve_level(level)
    numeric_level = getattr(logging, level_name)
    fmt = log_format or (DEFAULT_FORMAT if include_timestamp else SHORT_FORMAT)
    colored = _colors_enabled(use_colors)

    root = logging.getLogger()
    root.setLevel(numeric_level)
    if clear_handlers:
        for handler in list(root.handlers):
            root.removeHandler(handler)

    console_formatter = ColoredFormatter(fmt) if colored else logging.Formatter(fmt)
    _attach(root, logging.StreamHandler(sys.stderr), numeric_level, console_formatter)

    if log_file:
        try:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
            )
        except OSError as e:
            logging.error("Failed to open log file %s: %s", log_file, e)
            raise
        _attach(root, file_handler, numeric_level, logging.Formatter(fmt))

    logging.getLogger("cryptopaylink").setLevel(numeric_level)
    logging.info("Logging configured - Level: %s, File: %s, Colors: %s", level_name, log_file or "None", colored)

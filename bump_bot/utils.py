"""
Shared Helpers

The bump bot exception hierarchy, redacting logger setup, and the
formatting used in log lines, activity messages and CLI tables.

SECURITY:
- Every log line passes through redact() before any handler sees it
- Error text stored in the activity feed also has URLs stripped
"""

import re
import logging
from pathlib import Path
from typing import Optional

from web3 import Web3
from rich.logging import RichHandler
from rich.console import Console

from bump_bot.logging_utils import JsonLogFormatter

# Shared by the log handler and CLI output
console = Console()


class BumpBotError(Exception):
    """Base exception for bump bot failures."""
    pass


class ValidationError(BumpBotError):
    """Rejected request parameters (interval, notional, address, amounts)."""
    pass


class InsufficientFundsError(BumpBotError):
    """A credit scope cannot cover a requested transfer."""
    pass


class InsufficientTotalCreditError(InsufficientFundsError):
    """Owner's combined credit is below one trade's notional."""

    def __init__(self, available: int, required: int):
        super().__init__(
            f"Insufficient credit: {format_units(available)} available, "
            f"{format_units(required)} required"
        )
        self.available = available
        self.required = required


class SessionConflictError(BumpBotError):
    """Owner already has a running session."""
    pass


class SessionNotFoundError(BumpBotError):
    """No running session for the owner."""
    pass


class StaleWriteError(BumpBotError):
    """Session row changed underneath an optimistic update."""
    pass


class LedgerConflictError(BumpBotError):
    """Concurrent ledger writes kept racing after all retries."""
    pass


class ExternalServiceError(BumpBotError):
    """A collaborator (price feed, aggregator, chain) failed."""
    pass


class PriceFeedError(ExternalServiceError):
    """Price lookup failed or returned garbage."""
    pass


class QuoteError(ExternalServiceError):
    """Aggregator could not produce a usable quote."""
    pass


class TransactionError(ExternalServiceError):
    """Submitting or confirming an on-chain batch failed."""
    pass


class ConfirmationTimeout(TransactionError):
    """Transaction was submitted but not confirmed in time."""
    pass


class SecurityError(BumpBotError):
    """Keystore, password or key handling refused an operation."""
    pass


# Applied to every log line and to error text shown in the activity feed
REDACTIONS = [
    (re.compile(r'0x[a-fA-F0-9]{64}(?![a-fA-F0-9])'), '[PRIVATE_KEY]'),
    (re.compile(r'(password|passphrase)["\']?\s*[:=]\s*["\']?[^"\'\s,}]+["\']?', re.IGNORECASE), r'\1=[REDACTED]'),
    (re.compile(r'(x-cg-pro-api-key|0x-api-key|api[_-]?key)["\']?\s*[:=]\s*["\']?[^"\'\s,}]+["\']?', re.IGNORECASE), r'\1=[REDACTED]'),
]

URL_PATTERN = re.compile(r'https?://\S+')


def redact(text: str) -> str:
    for pattern, replacement in REDACTIONS:
        text = pattern.sub(replacement, text)
    return text


class SecureLogger:
    """
    Wrapper around the ``bump_bot`` logger that redacts every message.

    Worker keys, API keys and the keystore password must never reach the
    console or the log file, whatever a caller interpolates.
    """

    def __init__(self, base: logging.Logger):
        self._logger = base

    def _emit(self, level: int, msg, args, kwargs):
        if self._logger.isEnabledFor(level):
            kwargs.setdefault('stacklevel', 3)
            self._logger.log(level, redact(str(msg)), *args, **kwargs)

    def debug(self, msg, *args, **kwargs):
        self._emit(logging.DEBUG, msg, args, kwargs)

    def info(self, msg, *args, **kwargs):
        self._emit(logging.INFO, msg, args, kwargs)

    def warning(self, msg, *args, **kwargs):
        self._emit(logging.WARNING, msg, args, kwargs)

    def error(self, msg, *args, **kwargs):
        self._emit(logging.ERROR, msg, args, kwargs)

    def exception(self, msg, *args, **kwargs):
        kwargs.setdefault('exc_info', True)
        self._emit(logging.ERROR, msg, args, kwargs)

    def critical(self, msg, *args, **kwargs):
        self._emit(logging.CRITICAL, msg, args, kwargs)


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    json_file: bool = False,
) -> SecureLogger:
    """
    Route ``bump_bot`` logs to the rich console and, optionally, a file.

    Safe to call more than once: handlers from a previous call are closed
    and replaced. With ``json_file`` the file gets one JSON object per line.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    base = logging.getLogger("bump_bot")
    for handler in list(base.handlers):
        base.removeHandler(handler)
        handler.close()
    base.setLevel(level)
    base.propagate = False

    base.addHandler(RichHandler(console=console, show_path=False, rich_tracebacks=True, markup=False))

    if log_file:
        Path(log_file).expanduser().parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(Path(log_file).expanduser(), encoding="utf-8")
        if json_file:
            file_handler.setFormatter(JsonLogFormatter())
        else:
            file_handler.setFormatter(logging.Formatter(
                "%(asctime)s %(levelname)-7s [%(name)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
            ))
        base.addHandler(file_handler)

    return logger


# Handlers are attached by setup_logging from the CLI
logger = SecureLogger(logging.getLogger("bump_bot"))


# Formatting

# Credits are stored as integer gwei of the funding token
CREDIT_DECIMALS = 9


def format_wei(amount: int, decimals: int = 18) -> str:
    """Base-unit token amount as a decimal string, with precision scaled to size."""
    if amount == 0:
        return "0"
    value = amount / 10 ** decimals
    if value >= 1000:
        return f"{value:,.2f}"
    places = 8 if value < 0.0001 else 6 if value < 1 else 4
    return f"{value:.{places}f}"


def format_units(units: int) -> str:
    return f"{format_wei(units, CREDIT_DECIMALS)} WETH"


def format_duration(seconds: int) -> str:
    """``90`` -> ``1m 30s``; zero parts are dropped."""
    hours, rest = divmod(int(seconds), 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        parts = [(hours, "h"), (minutes, "m")]
    elif minutes:
        parts = [(minutes, "m"), (secs, "s")]
    else:
        return f"{secs}s"
    return " ".join(f"{value}{unit}" for value, unit in parts if value)


def _shorten(value: str, head: int, tail: int) -> str:
    if len(value) <= head + tail + 3:
        return value
    return f"{value[:head]}...{value[-tail:]}"


def format_address(address: str, length: int = 6) -> str:
    return _shorten(address, length + 2, length)


def format_tx_hash(tx_hash: str, length: int = 8) -> str:
    return _shorten(tx_hash, length, length)


# Validation

def validate_address(address: str) -> bool:
    """
    True for a well-formed EVM address.

    Mixed-case input must carry a valid EIP-55 checksum; all-lower or
    all-upper input is accepted and checksummed by the caller.
    """
    if not address or not isinstance(address, str):
        return False
    return Web3.is_address(address)


def sanitize_error_message(error, limit: int = 500) -> str:
    """
    Error text safe to store in the activity feed an owner can read.

    Accepts an exception or a string. Secrets and URLs (RPC endpoints often
    embed keys) are removed and the result is capped at ``limit`` characters.
    """
    text = error if isinstance(error, str) else (str(error) or type(error).__name__)
    return redact(URL_PATTERN.sub('[URL]', text))[:limit]

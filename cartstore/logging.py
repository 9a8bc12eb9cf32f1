"""
Centralized logging configuration for the cart store.

Usage:
    from cartstore.logging import get_logger
    logger = get_logger(__name__)

    logger.info("Cart persisted")
    logger.warning("Discarding corrupted record", exc_info=True)
"""

import logging
import os
import sys
from functools import cache

# Hosts that stamp their own timestamps set CART_STORE_EMBEDDED=1
_FORMAT_STANDALONE = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_FORMAT_EMBEDDED = "%(levelname)s - %(name)s - %(message)s"


def _log_level() -> int:
    # CART_STORE_LOG_LEVEL wins over the host-wide LOG_LEVEL
    level_name = os.environ.get("CART_STORE_LOG_LEVEL") or os.environ.get("LOG_LEVEL", "INFO")
    return getattr(logging, level_name.upper(), logging.INFO)


def _configure_root_logger() -> None:
    """Attach a stdout handler unless the host already configured logging."""
    root = logging.getLogger()
    if root.handlers:
        return

    level = _log_level()
    root.setLevel(level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)

    embedded = os.environ.get("CART_STORE_EMBEDDED") == "1"
    handler.setFormatter(logging.Formatter(_FORMAT_EMBEDDED if embedded else _FORMAT_STANDALONE))

    root.addHandler(handler)

    # The redis client is chatty at DEBUG
    logging.getLogger("redis").setLevel(logging.WARNING)


# Configure once on module import
_configure_root_logger()


@cache
def get_logger(name: str) -> logging.Logger:
    """
    Get or create a logger with the given name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)


def _escape_log_injection(value: str) -> str:
    """
    Escape characters that could be used for log injection (CWE-117).

    Storage values are written by other contexts and must be treated as
    untrusted when they end up in a log line.
    """
    return (
        value.replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\t", "\\t")
        .replace("\x00", "")
    )


def sanitize_id_for_logging(id_value: str | None) -> str:
    """
    Sanitize ID for safe logging (first 8 chars, injection characters escaped).

    Args:
        id_value: ID value to sanitize (can be None)

    Returns:
        Sanitized ID string (first 8 chars) or "N/A" if None
    """
    if not id_value:
        return "N/A"
    safe_value = _escape_log_injection(str(id_value))
    return safe_value[:8] if len(safe_value) > 8 else safe_value


def sanitize_string_for_logging(value: str | None, max_length: int = 50) -> str:
    """
    Sanitize string for safe logging (truncated to max_length).

    Args:
        value: String value to sanitize (can be None)
        max_length: Maximum length to keep (default: 50)

    Returns:
        Sanitized string or "N/A" if None
    """
    if not value:
        return "N/A"
    safe_value = _escape_log_injection(str(value))
    if len(safe_value) <= max_length:
        return safe_value
    return safe_value[:max_length] + "..."


__all__ = [
    "get_logger",
    "sanitize_id_for_logging",
    "sanitize_string_for_logging",
]

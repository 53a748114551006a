"""Shared utilities for the Wake-on-Demand Game Server Proxy."""

import logging
import re
from typing import Any
from urllib.parse import urlparse


logger = logging.getLogger(__name__)

# Everything that is not an ASCII word character
_NON_TOKEN_CHARS = re.compile(r'\W', re.ASCII)


def extract_token(data: bytes) -> str:
    """
    Extract the connection token from a raw first packet.

    Args:
        data: Raw bytes of the first inbound chunk

    Returns:
        The packet decoded as UTF-8 with every character that is not
        alphanumeric or underscore removed (may be empty)
    """
    text = data.decode('utf-8', errors='ignore')
    return _NON_TOKEN_CHARS.sub('', text)


def validate_port(port: Any) -> bool:
    """
    Validate port number.

    Args:
        port: Port number to validate

    Returns:
        True if valid port number, False otherwise
    """
    if isinstance(port, bool):
        return False
    try:
        port_int = int(port)
        return 1 <= port_int <= 65535
    except (ValueError, TypeError):
        return False


def validate_http_url(url: Any) -> bool:
    """Check that a value is an absolute http(s) URL."""
    if not isinstance(url, str):
        return False
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def format_duration(seconds: float) -> str:
    """
    Format duration in human readable format.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted duration string (e.g., "1h 30m 45s")
    """
    if seconds < 0:
        return "0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")

    return " ".join(parts)


def mask_secret(value: str, visible: int = 4) -> str:
    """Mask a secret for log output, keeping only its last characters."""
    if not value:
        return ""
    if len(value) <= visible:
        return "*" * len(value)
    return "*" * (len(value) - visible) + value[-visible:]

"""
Utility Functions

Common helpers used across the gateway, primarily for log hygiene.
"""

from typing import Any


def sanitize_for_log(input_str: Any) -> str:
    """
    Sanitize a value for safe logging.

    Control characters (newlines, carriage returns, escapes) are replaced by
    `\\xNN` sequences to prevent **Log Injection** (CWE-117): a datagram
    sender or a config value must not be able to forge extra log lines.

    Args:
        input_str: The input string (or object convertible to string).

    Returns:
        A single-line string safe for logging.
    """
    if input_str is None:
        return "None"

    s = str(input_str)
    return "".join(c if c.isprintable() else f"\\x{ord(c):02x}" for c in s)


def format_payload_preview(payload: bytes, limit: int = 16) -> str:
    """Hex dump of the first `limit` bytes of a payload, for debug output."""
    preview = " ".join(f"{b:02X}" for b in payload[:limit])
    if len(payload) > limit:
        preview += " ..."
    return preview

"""Security utilities for the wiki OAuth gateway.

Secret redaction for logs, session id generation and constant-time
comparison.
"""

from __future__ import annotations

import hmac
import secrets
from typing import Any

# Bytes of entropy in a session id (hex-encoded to 64 characters)
SESSION_ID_BYTES = 32

# How much of an identifier may appear in logs
HINT_LENGTH = 8

DEFAULT_SENSITIVE_KEYS = frozenset({
    "access_token",
    "request_token",
    "token",
    "secret",
    "password",
    "authorization",
    "verifier",
    "verification_code",
    "verificationcode",
})


def redact(value: str | None) -> str:
    """Redact a potentially sensitive value for safe logging.

    Args:
        value: The value to redact

    Returns:
        "***" if value is non-empty, "<empty>" if empty/None
    """
    if value is None or value == "":
        return "<empty>"
    return "***"


def token_hint(value: str | None) -> str:
    """Return a short, non-secret prefix of an identifier for logging.

    Session ids and token keys are logged this way so that log lines
    can be correlated without exposing the full value.

    Args:
        value: Identifier to shorten

    Returns:
        The first few characters followed by an ellipsis, or "<empty>"
    """
    if not value:
        return "<empty>"
    if len(value) <= HINT_LENGTH:
        return "***"
    return f"{value[:HINT_LENGTH]}…"


def constant_time_equals(a: str | None, b: str | None) -> bool:
    """Compare two strings in constant time.

    Args:
        a: First string to compare
        b: Second string to compare

    Returns:
        True if strings are equal, False otherwise
    """
    if a is None and b is None:
        return True
    if a is None or b is None:
        return False
    return hmac.compare_digest(a.encode(), b.encode())


def generate_session_id() -> str:
    """Generate an unguessable, fixed-length session identifier.

    Returns:
        64 hexadecimal characters (256 bits of randomness)
    """
    return secrets.token_hex(SESSION_ID_BYTES)


def mask_sensitive_data(
    data: dict[str, Any], sensitive_keys: frozenset[str] | set[str] | None = None
) -> dict[str, Any]:
    """Mask sensitive data in a dictionary for logging.

    Args:
        data: Dictionary potentially containing sensitive data
        sensitive_keys: Key fragments to mask (uses defaults if not provided)

    Returns:
        Copy of dictionary with sensitive values masked
    """
    if sensitive_keys is None:
        sensitive_keys = DEFAULT_SENSITIVE_KEYS

    result: dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, dict):
            result[key] = mask_sensitive_data(value, sensitive_keys)
        elif any(sensitive in key.lower() for sensitive in sensitive_keys):
            result[key] = "***"
        else:
            result[key] = value

    return result

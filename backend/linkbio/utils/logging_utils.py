"""Logging utilities for PII redaction and secure logging."""

import hashlib
from typing import Optional
from urllib.parse import parse_qsl, urlencode

# Query parameters that carry credentials somewhere in the auth flow
SENSITIVE_QUERY_PARAMS = frozenset({"token", "code", "state", "password"})


def redact_email(email: Optional[str]) -> str:
    """
    Redact email address for logging while maintaining uniqueness.

    Args:
        email: Email address to redact

    Returns:
        Redacted email in format: u***@example.com or hash:abc123@example.com
        for short local parts. Returns 'N/A' if email is None or empty

    Examples:
        >>> redact_email("user@example.com")
        'u***@example.com'
        >>> redact_email(None)
        'N/A'
    """
    if not email:
        return "N/A"

    try:
        local, domain = email.split("@", 1)

        if len(local) < 3:
            email_hash = hashlib.sha256(email.encode()).hexdigest()[:6]
            return f"hash:{email_hash}@{domain}"

        return f"{local[0]}***@{domain}"

    except (ValueError, IndexError):
        # Malformed email - hash it
        email_hash = hashlib.sha256(str(email).encode()).hexdigest()[:6]
        return f"hash:{email_hash}"


def redact_ip(ip_address: Optional[str]) -> str:
    """
    Redact IP address for logging while maintaining network info.

    Examples:
        >>> redact_ip("192.168.1.100")
        '192.168.1.***'
        >>> redact_ip(None)
        'N/A'
    """
    if not ip_address:
        return "N/A"

    if "." in ip_address:
        parts = ip_address.split(".")
        if len(parts) == 4:
            return f"{parts[0]}.{parts[1]}.{parts[2]}.***"

    if ":" in ip_address:
        parts = ip_address.split(":")
        if len(parts) >= 4:
            return ":".join(parts[:3]) + ":***"

    ip_hash = hashlib.sha256(str(ip_address).encode()).hexdigest()[:6]
    return f"hash:{ip_hash}"


def redact_query(query: str) -> str:
    """
    Mask credential-bearing values in a raw query string.

    Examples:
        >>> redact_query("token=abc&username=alice")
        'token=%5Bredacted%5D&username=alice'
    """
    if not query:
        return ""
    pairs = parse_qsl(query, keep_blank_values=True)
    return urlencode(
        [(k, "[redacted]" if k.lower() in SENSITIVE_QUERY_PARAMS else v) for k, v in pairs]
    )

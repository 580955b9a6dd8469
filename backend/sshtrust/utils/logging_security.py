"""
Security Logging Utilities for sshtrust
Prevents log injection (CWE-117) when echoing key files and catalog values.

Public key files, catalog entries and generator stderr all come from outside
the process. Anything echoed from them into a log line goes through these
helpers first.
"""

import re
from typing import Any, Optional

# Patterns for detecting potentially malicious content
LOG_INJECTION_PATTERNS = [
    r"[\r\n]",  # CRLF injection
    r"%0[ad]",  # URL-encoded CRLF
    r"\x00",  # Null bytes
    r"[\x01-\x08\x0b\x0c\x0e-\x1f\x7f]",  # Control characters
]


def sanitize_for_log(value: Optional[Any], max_length: int = 100) -> str:
    """
    Sanitize any value for safe logging.

    Args:
        value: Value to sanitize
        max_length: Maximum length of output

    Returns:
        str: Sanitized string safe for logging
    """
    if value is None:
        return "null"

    str_value = str(value)

    if len(str_value) > max_length:
        str_value = str_value[:max_length] + "..."

    for pattern in LOG_INJECTION_PATTERNS:
        str_value = re.sub(pattern, " ", str_value)

    if not str_value.strip():
        return "[sanitized]"

    return str_value.strip()


def sanitize_key_line_for_log(line: Optional[str]) -> str:
    """
    Shorten a public key line for logging.

    Long base64 runs are cut to their first characters so logs identify a
    key without carrying the whole blob.
    """
    if not line:
        return "[empty]"
    shortened = re.sub(r"([A-Za-z0-9+/]{12})[A-Za-z0-9+/]{20,}={0,2}", r"\1...", str(line))
    return sanitize_for_log(shortened, max_length=160)

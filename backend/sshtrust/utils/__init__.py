"""
sshtrust utility functions
"""

from sshtrust.utils.logging_security import sanitize_for_log, sanitize_key_line_for_log  # noqa: F401

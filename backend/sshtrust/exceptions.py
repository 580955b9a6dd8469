"""
SSH Trust Exceptions

Exception classes for the trust bootstrap pipeline. Every failure carries an
ErrorKind so a reconciliation pass can report which stage failed and for
which catalog identifier without inspecting exception types.

This module defines:
- SSHTrustError: Base class with kind, message, details and identifier
- MalformedKeyLineError: Public key text that does not parse
- PathNotFoundError: Missing key directory or key file
- GenerationFailedError: The external key generator failed
- CatalogUnavailableError: The shared export catalog could not be accessed

A lookup that finds nothing is NOT an error: ExportCatalog.lookup() returns
None and the consumer treats it as "not yet converged".

Security Considerations:
- Exception messages never contain private key material
- Raw public key lines are kept on the exception for diagnostics but are
  passed through sanitize_for_log() before being written to logs

Usage:
    from sshtrust.exceptions import MalformedKeyLineError

    try:
        record = parse_key_line(raw)
    except MalformedKeyLineError as e:
        logger.error("Key parse failed: %s", e)
"""

from enum import Enum
from typing import List, Optional


class ErrorKind(str, Enum):
    """Failure taxonomy shared by every stage of a reconciliation pass."""

    MALFORMED_KEY_LINE = "malformed_key_line"
    PATH_NOT_FOUND = "path_not_found"
    GENERATION_FAILED = "generation_failed"
    CATALOG_UNAVAILABLE = "catalog_unavailable"


class SSHTrustError(Exception):
    """
    Base exception for trust bootstrap failures.

    Attributes:
        kind: ErrorKind used for reporting
        message: Human-readable error description
        details: Additional context for debugging
        identifier: Catalog identifier the failure relates to (if known)
    """

    kind: ErrorKind

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        identifier: Optional[str] = None,
    ) -> None:
        self.message = message
        self.details = details
        self.identifier = identifier
        super().__init__(self.message)

    def __str__(self) -> str:
        """Return string representation of the error."""
        if self.identifier:
            return f"{self.message} (identifier: {self.identifier})"
        return self.message

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(message={self.message!r}, "
            f"details={self.details!r}, identifier={self.identifier!r})"
        )


class MalformedKeyLineError(SSHTrustError):
    """
    Raised when text does not match ``[options] algorithm material [comment]``.

    No partial record is ever produced. The offending input is kept on
    the ``line`` attribute for diagnostics.
    """

    kind = ErrorKind.MALFORMED_KEY_LINE

    def __init__(self, line: str, details: Optional[str] = None, identifier: Optional[str] = None) -> None:
        self.line = line
        super().__init__("Wrong key line format", details=details, identifier=identifier)


class PathNotFoundError(SSHTrustError):
    """Raised when a key directory or public key file does not exist."""

    kind = ErrorKind.PATH_NOT_FOUND

    def __init__(self, path: str, details: Optional[str] = None, identifier: Optional[str] = None) -> None:
        self.path = str(path)
        super().__init__(f"Path not found: {self.path}", details=details, identifier=identifier)


class GenerationFailedError(SSHTrustError):
    """
    Raised when the external key pair generator fails.

    Attributes:
        command: The argv that was run (or would have been run)
        exit_code: Process exit code, None when the process never ran
        stderr: Captured standard error
    """

    kind = ErrorKind.GENERATION_FAILED

    def __init__(
        self,
        message: str,
        command: Optional[List[str]] = None,
        exit_code: Optional[int] = None,
        stderr: str = "",
        identifier: Optional[str] = None,
    ) -> None:
        self.command = list(command or [])
        self.exit_code = exit_code
        self.stderr = stderr.strip()
        super().__init__(message, details=self.stderr or None, identifier=identifier)

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.command:
            parts.append(f"command: {' '.join(self.command)}")
        if self.exit_code is not None:
            parts.append(f"exit: {self.exit_code}")
        if self.stderr:
            parts.append(f"stderr: {self.stderr}")
        return " | ".join(parts)


class CatalogUnavailableError(SSHTrustError):
    """
    Raised when the shared export catalog cannot be read or written.

    Fatal to the current pass only; the next scheduled pass retries.
    """

    kind = ErrorKind.CATALOG_UNAVAILABLE

    def __init__(self, location: str, details: Optional[str] = None, identifier: Optional[str] = None) -> None:
        self.location = location
        super().__init__(f"Export catalog unavailable: {location}", details=details, identifier=identifier)


__all__ = [
    "ErrorKind",
    "SSHTrustError",
    "MalformedKeyLineError",
    "PathNotFoundError",
    "GenerationFailedError",
    "CatalogUnavailableError",
]

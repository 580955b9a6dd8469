"""
Export Catalog Module

Shared key/value store mapping a catalog identifier to the public key a host
exported. Hosts never contact each other; all coordination goes through one
of these backends.

Available Backends:
- InMemoryCatalog: process-local dict (tests, single-process convergence)
- FileCatalog: flat ``identifier = value`` file with flock + atomic replace
- SQLCatalog: one table in any SQLAlchemy database

Usage:
    from sshtrust.catalog import get_catalog

    catalog = get_catalog("sqlite:////var/lib/sshtrust/catalog.db")
    catalog.publish(identifier, record)
"""

import logging
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

from .base import ExportCatalog, decode_value, encode_value, resolve_snapshot  # noqa: E402
from .file import FileCatalog  # noqa: E402
from .memory import InMemoryCatalog  # noqa: E402
from .sql import SQLCatalog  # noqa: E402


def get_catalog(url: str) -> ExportCatalog:
    """
    Factory function returning the catalog backend for ``url``.

    Args:
        url: ``memory://``, ``file:///path``, a bare filesystem path, or any
            SQLAlchemy database URL (``sqlite:///...``, ``postgresql://...``)

    Returns:
        Configured ExportCatalog

    Raises:
        ValueError: Empty URL
        CatalogUnavailableError: The database backend cannot be created
    """
    if not url:
        raise ValueError("Catalog URL is required")

    parsed = urlparse(url)
    if parsed.scheme == "memory":
        return InMemoryCatalog()
    if parsed.scheme == "file":
        return FileCatalog(parsed.path)
    if parsed.scheme == "":
        return FileCatalog(url)

    logger.debug("Using SQL catalog backend: %s", parsed.scheme)
    return SQLCatalog(url)


__all__ = [
    "ExportCatalog",
    "InMemoryCatalog",
    "FileCatalog",
    "SQLCatalog",
    "get_catalog",
    "encode_value",
    "decode_value",
    "resolve_snapshot",
]

"""
Export Catalog Base Class

Defines the contract every export catalog backend implements. The catalog is
the only shared mutable resource between hosts: each host writes only its
own identifiers and every host reads the whole catalog.

Contract:
    - publish(identifier, value): total overwrite of one entry,
      last-writer-wins per identifier, disjoint identifiers never conflict
    - lookup(identifier): the current value, or None when nothing has been
      published yet ("not yet converged", never an error)
    - withdraw(identifier): remove an entry so consumers garbage-collect it
    - snapshot(): every decodable entry; not transactional across entries

Persisted Form:
    A flat mapping of identifier string to value string. Values starting
    with "/" are path references (KeyPath); anything else is a serialized
    public key line (KeyRecord).

Implementation Requirements:
    Backends implement the four raw string operations (_read, _read_all,
    _write, _delete) and raise CatalogUnavailableError on storage failures.
"""

import logging
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Tuple

from ..exceptions import MalformedKeyLineError, SSHTrustError
from ..key_parser import parse_key_line, read_key_file
from ..models import CatalogIdentifier, CatalogValue, KeyPath, KeyRecord
from ..utils.logging_security import sanitize_for_log, sanitize_key_line_for_log

logger = logging.getLogger(__name__)


def encode_value(value: CatalogValue) -> str:
    """Serialize a catalog value to its persisted single-line form."""
    if isinstance(value, KeyRecord):
        return value.to_line()
    if isinstance(value, KeyPath):
        if not value.path.startswith("/"):
            raise ValueError(f"Key path references must be absolute: {value.path!r}")
        return value.path
    raise TypeError(f"Unsupported catalog value: {type(value).__name__}")


def decode_value(text: str) -> CatalogValue:
    """
    Deserialize a persisted value.

    Raises:
        MalformedKeyLineError: If a non-path value is not a key line
    """
    text = text.strip()
    if text.startswith("/"):
        return KeyPath(text)
    return parse_key_line(text)


class ExportCatalog(ABC):
    """
    Abstract base class for export catalog backends.

    Usage:
        catalog = get_catalog("file:///var/cache/sshtrust/exported_keys.ini")
        catalog.publish(CatalogIdentifier.user("pgbackup", "repo01"), record)
        value = catalog.lookup(CatalogIdentifier.user("postgres", "psql01"))
        if value is None:
            ...  # not yet converged, check again next pass
    """

    #: Human-readable location used in errors and logs
    location: str = ""

    # -- raw storage operations -------------------------------------------

    @abstractmethod
    def _read(self, key: str) -> Optional[str]:
        """Return the stored string for ``key`` or None."""

    @abstractmethod
    def _read_all(self) -> Dict[str, str]:
        """Return every stored entry."""

    @abstractmethod
    def _write(self, key: str, value: str) -> bool:
        """Store ``value`` under ``key``; return True if the stored value changed."""

    @abstractmethod
    def _delete(self, key: str) -> bool:
        """Remove ``key``; return True if it existed."""

    # -- public contract ---------------------------------------------------

    def publish(self, identifier: CatalogIdentifier, value: CatalogValue) -> bool:
        """
        Overwrite the entry for ``identifier``.

        Args:
            identifier: Entry owned by the publishing host
            value: Parsed key or path reference

        Returns:
            True if the stored value changed

        Raises:
            CatalogUnavailableError: Storage failure
        """
        encoded = encode_value(value)
        changed = self._write(str(identifier), encoded)
        if changed:
            logger.info("Published %s to %s", identifier, self.location)
        else:
            logger.debug("Catalog entry %s unchanged", identifier)
        return changed

    def lookup(self, identifier: CatalogIdentifier) -> Optional[CatalogValue]:
        """
        Return the current value for ``identifier``, or None if not published.

        Raises:
            CatalogUnavailableError: Storage failure
            MalformedKeyLineError: The stored value is corrupt
        """
        raw = self._read(str(identifier))
        if raw is None:
            return None
        try:
            return decode_value(raw)
        except MalformedKeyLineError as e:
            e.identifier = str(identifier)
            raise

    def withdraw(self, identifier: CatalogIdentifier) -> bool:
        """Remove the entry for ``identifier``; returns True if it existed."""
        removed = self._delete(str(identifier))
        if removed:
            logger.info("Withdrew %s from %s", identifier, self.location)
        return removed

    def snapshot(self) -> Dict[CatalogIdentifier, CatalogValue]:
        """
        Return every valid entry currently visible.

        Entries with an unparseable identifier or a corrupt value are
        logged and left out.
        """
        entries: Dict[CatalogIdentifier, CatalogValue] = {}
        for key, raw in self._read_all().items():
            try:
                identifier = CatalogIdentifier.parse(key)
            except ValueError:
                logger.debug("Ignoring foreign catalog key: %s", sanitize_for_log(key))
                continue
            try:
                entries[identifier] = decode_value(raw)
            except MalformedKeyLineError:
                logger.error(
                    "Corrupt catalog value for %s: %s",
                    identifier,
                    sanitize_key_line_for_log(raw),
                )
        return entries

    def close(self) -> None:
        """Release backend resources."""

    def __enter__(self) -> "ExportCatalog":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def resolve_snapshot(
    snapshot: Dict[CatalogIdentifier, CatalogValue],
    reader: Callable[[str], KeyRecord] = read_key_file,
) -> Tuple[Dict[CatalogIdentifier, KeyRecord], Dict[CatalogIdentifier, SSHTrustError]]:
    """
    Resolve path references in a snapshot on the consumer side.

    Args:
        snapshot: Result of ExportCatalog.snapshot()
        reader: Reads and parses a public key file

    Returns:
        (resolved entries, per-identifier errors). Entries that fail to
        resolve are reported and left out of the resolved mapping.
    """
    resolved: Dict[CatalogIdentifier, KeyRecord] = {}
    errors: Dict[CatalogIdentifier, SSHTrustError] = {}

    for identifier, value in snapshot.items():
        if isinstance(value, KeyRecord):
            resolved[identifier] = value
            continue
        try:
            resolved[identifier] = reader(value.path)
        except SSHTrustError as e:
            e.identifier = str(identifier)
            errors[identifier] = e
            logger.warning("Could not resolve %s -> %s: %s", identifier, value.path, e)

    return resolved, errors


__all__ = [
    "encode_value",
    "decode_value",
    "ExportCatalog",
    "resolve_snapshot",
]

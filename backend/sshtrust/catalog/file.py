"""
File-backed export catalog.

Stores entries as ``identifier = value`` lines in one flat file, e.g.
``/var/cache/sshtrust/exported_keys.ini``:

    # managed by sshtrust
    user:pgbackup@repo01 = ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAI... pgbackup@repo01
    host:ed25519@psql01 = /etc/ssh/ssh_host_ed25519_key.pub

Concurrency:
    Writers take an exclusive flock on a sidecar ``<file>.lock`` for the whole
    read-modify-write and replace the catalog atomically (temp file, fsync,
    os.replace). Publishes to different identifiers from different processes
    therefore never lose each other's entries. Readers take a shared lock.
"""

import fcntl
import logging
import os
import re
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Optional, Union

from ..exceptions import CatalogUnavailableError
from .base import ExportCatalog

logger = logging.getLogger(__name__)

ENTRY_RE = re.compile(r"^\s*([^\s=#;]+)\s*=\s*(.*?)\s*$")
HEADER = "# sshtrust export catalog: one 'identifier = value' entry per line\n"


def parse_catalog_text(text: str) -> Dict[str, str]:
    """Parse catalog file content; comments and non-entry lines are ignored."""
    entries: Dict[str, str] = {}
    for line in text.splitlines():
        m = ENTRY_RE.match(line)
        if m and m.group(2):
            entries[m.group(1)] = m.group(2)
    return entries


def render_catalog_text(entries: Dict[str, str]) -> str:
    lines = [HEADER]
    for key in sorted(entries):
        lines.append(f"{key} = {entries[key]}\n")
    return "".join(lines)


class FileCatalog(ExportCatalog):
    """
    Export catalog persisted in a single flat file.

    Attributes:
        path: Catalog file; its directory must exist
        lock_path: Sidecar lock file
    """

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self.location = f"file://{self.path}"

    @contextmanager
    def _locked(self, exclusive: bool) -> Iterator[None]:
        if not self.path.parent.is_dir():
            raise CatalogUnavailableError(self.location, details=f"directory {self.path.parent} does not exist")
        try:
            fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as e:
            raise CatalogUnavailableError(self.location, details=str(e))
        try:
            fcntl.flock(fd, fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH)
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)

    def _load(self) -> Dict[str, str]:
        try:
            return parse_catalog_text(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except OSError as e:
            raise CatalogUnavailableError(self.location, details=str(e))

    def _store(self, entries: Dict[str, str]) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=str(self.path.parent), prefix=f".{self.path.name}.", suffix=".tmp")
        tmp = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(render_catalog_text(entries))
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp, 0o644)
            os.replace(tmp, self.path)
        except OSError as e:
            raise CatalogUnavailableError(self.location, details=str(e))
        finally:
            if tmp.exists():
                tmp.unlink()

    def _read(self, key: str) -> Optional[str]:
        with self._locked(exclusive=False):
            return self._load().get(key)

    def _read_all(self) -> Dict[str, str]:
        with self._locked(exclusive=False):
            return self._load()

    def _write(self, key: str, value: str) -> bool:
        if "\n" in value or "\r" in value:
            raise ValueError("Catalog values must be single lines")
        with self._locked(exclusive=True):
            entries = self._load()
            if entries.get(key) == value:
                return False
            entries[key] = value
            self._store(entries)
            return True

    def _delete(self, key: str) -> bool:
        with self._locked(exclusive=True):
            entries = self._load()
            if key not in entries:
                return False
            del entries[key]
            self._store(entries)
            return True

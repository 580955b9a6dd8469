"""In-process export catalog for tests and single-process convergence runs."""

import threading
from typing import Dict, Optional

from .base import ExportCatalog


class InMemoryCatalog(ExportCatalog):
    """Thread-safe dict-backed catalog."""

    location = "memory://"

    def __init__(self, entries: Optional[Dict[str, str]] = None) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[str, str] = dict(entries or {})

    def _read(self, key: str) -> Optional[str]:
        with self._lock:
            return self._entries.get(key)

    def _read_all(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._entries)

    def _write(self, key: str, value: str) -> bool:
        with self._lock:
            changed = self._entries.get(key) != value
            self._entries[key] = value
            return changed

    def _delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

"""
JSON-file record store.

In-memory dict guarded by a lock, written through to an indented JSON file
when a path is configured. Each repository (strategies, trades, identities)
owns one store; nothing here is a process global.
"""

import os
import json
import logging
import threading
from typing import Optional, Dict, Any, List, Iterable

log = logging.getLogger(__name__)


class JsonStore:
    """Keyed dict of JSON-serialisable records with optional file persistence."""

    def __init__(self, path: Optional[str] = None, strip_fields: Iterable[str] = ()):
        """
        Args:
            path: JSON file to persist to (None = memory only)
            strip_fields: record keys never written to disk
        """
        self.path = os.path.expanduser(path) if path else None
        self.lock = threading.RLock()
        self._strip_fields = tuple(strip_fields)
        self._data: Dict[str, Dict[str, Any]] = {}
        self._load()

    def __len__(self) -> int:
        with self.lock:
            return len(self._data)

    def __contains__(self, key: str) -> bool:
        with self.lock:
            return key in self._data

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self.lock:
            record = self._data.get(key)
            return dict(record) if record is not None else None

    def put(self, key: str, record: Dict[str, Any]):
        with self.lock:
            self._data[key] = dict(record)
            self.save()

    def delete(self, key: str) -> bool:
        with self.lock:
            if key not in self._data:
                return False
            del self._data[key]
            self.save()
            return True

    def values(self) -> List[Dict[str, Any]]:
        with self.lock:
            return [dict(r) for r in self._data.values()]

    def save(self):
        """Write the whole table to disk (no-op for memory-only stores)."""
        if not self.path:
            return
        with self.lock:
            safe = {}
            for key, record in self._data.items():
                entry = dict(record)
                for name in self._strip_fields:
                    entry.pop(name, None)
                safe[key] = entry
            directory = os.path.dirname(self.path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            tmp_path = f"{self.path}.tmp"
            try:
                with open(tmp_path, "w") as f:
                    json.dump(safe, f, indent=2)
                os.replace(tmp_path, self.path)
            except OSError as e:
                log.error(f"Failed to save {self.path}: {e}")
                raise

    def _load(self):
        if not self.path or not os.path.exists(self.path):
            return
        try:
            with open(self.path, "r") as f:
                self._data = json.load(f)
            log.info(f"Loaded {len(self._data)} records from {self.path}")
        except (OSError, ValueError) as e:
            log.error(f"Failed to load {self.path}: {e}")
            self._data = {}

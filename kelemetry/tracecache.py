"""In-memory store mapping cache ids to trace identifiers."""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from typing import Any, Iterable


@dataclass
class Entry:
    """An identifier to remember under the low half of a cache id."""

    low_id: int
    identifier: Any


class TraceCacheError(Exception):
    """Raised when an entry cannot be stored or found."""


class LocalTraceCache:
    """Keeps JSON-encoded trace identifiers in process memory."""

    def __init__(self) -> None:
        self._data: dict[int, str] = {}
        self._lock = threading.RLock()

    def persist(self, entries: Iterable[Entry]) -> None:
        with self._lock:
            for entry in entries:
                try:
                    encoded = json.dumps(entry.identifier)
                except (TypeError, ValueError) as exc:
                    raise TraceCacheError(str(exc)) from exc
                self._data[entry.low_id] = encoded

    def fetch(self, low_id: int) -> str:
        """Return the stored JSON text for ``low_id``."""
        with self._lock:
            try:
                return self._data[low_id]
            except KeyError:
                raise TraceCacheError(f"No trace cache for key {low_id:x}") from None
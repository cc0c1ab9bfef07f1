"""
Cached collections with an explicit TTL policy.

Each collection remembers when it was last loaded and refetches only when the
TTL has passed or the caller forces a refresh. Locally mutated rows and rows
pushed by a realtime signal are merged by id; the row with the newer
``updated_at`` wins.
"""

import os
import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from dotenv import load_dotenv

from utils import utc_now

load_dotenv()

logger = logging.getLogger(__name__)

CACHE_TTL_SECONDS = int(os.getenv("CACHE_TTL_SECONDS", "30"))


def _row_key(row: Any):
    return row["id"] if isinstance(row, dict) else row.id


def _row_updated_at(row: Any) -> Optional[datetime]:
    return row.get("updated_at") if isinstance(row, dict) else getattr(row, "updated_at", None)


class CachedCollection:
    def __init__(
        self,
        name: str,
        loader: Callable[[], List[Any]],
        ttl_seconds: int = CACHE_TTL_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.name = name
        self.loader = loader
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._rows: Dict[Any, Any] = {}
        self._order: List[Any] = []
        self._loaded_at: Optional[datetime] = None
        self._lock = threading.Lock()

    @property
    def is_stale(self) -> bool:
        if self._loaded_at is None:
            return True
        return (self.clock() - self._loaded_at).total_seconds() >= self.ttl_seconds

    def get(self, force: bool = False) -> List[Any]:
        with self._lock:
            if force or self.is_stale:
                logger.debug(f"cache {self.name}: reloading (force={force})")
                self._merge(self.loader())
            return [self._rows[k] for k in self._order if k in self._rows]

    def invalidate(self):
        with self._lock:
            self._loaded_at = None
        logger.debug(f"cache {self.name}: invalidated")

    def apply(self, row: Any) -> bool:
        """
        Merge one row by id. Returns False when the cached copy is newer and
        the incoming row was dropped.
        """
        key = _row_key(row)
        with self._lock:
            current = self._rows.get(key)
            if current is not None:
                incoming_ts, current_ts = _row_updated_at(row), _row_updated_at(current)
                if incoming_ts is not None and current_ts is not None and incoming_ts < current_ts:
                    return False
            else:
                self._order.append(key)
            self._rows[key] = row
            return True

    def clear(self):
        with self._lock:
            self._rows = {}
            self._order = []
            self._loaded_at = None

    def remove(self, key: Any):
        with self._lock:
            self._rows.pop(key, None)
            self._order = [k for k in self._order if k != key]

    def reconcile(self, rows: List[Any]) -> List[Any]:
        """Merge a freshly fetched list without losing newer local writes."""
        with self._lock:
            return self._merge(rows)

    def _merge(self, rows: List[Any]) -> List[Any]:
        # Caller holds the lock
        merged: Dict[Any, Any] = {}
        for row in rows:
            key = _row_key(row)
            current = self._rows.get(key)
            incoming_ts = _row_updated_at(row)
            current_ts = _row_updated_at(current) if current is not None else None
            if current is not None and incoming_ts is not None and current_ts is not None and current_ts > incoming_ts:
                merged[key] = current
            else:
                merged[key] = row
        self._rows = merged
        self._order = [_row_key(r) for r in rows]
        self._loaded_at = self.clock()
        return [self._rows[k] for k in self._order]

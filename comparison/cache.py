"""Write-once memoization for per-page analysis shared between worker threads."""
from __future__ import annotations

import threading
from typing import Any, Callable, Dict, Hashable, Optional, Tuple, TypeVar

T = TypeVar("T")

CacheKey = Tuple[Hashable, ...]


class AnalysisCache:
    """
    Cache keyed by ``(document_id, page_index[, resource_id], kind)``.

    Entries are computed once and never invalidated during a comparison. Two
    threads racing on the same missing key may both compute it; the first
    stored value wins and is returned to both.
    """

    def __init__(self) -> None:
        self._entries: Dict[CacheKey, Any] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def key(document_id: str, page_index: int, resource_id: Optional[str] = None, kind: str = "") -> CacheKey:
        if resource_id is None:
            return (document_id, page_index, kind)
        return (document_id, page_index, resource_id, kind)

    def get_or_compute(self, key: CacheKey, factory: Callable[[], T]) -> T:
        with self._lock:
            if key in self._entries:
                self.hits += 1
                return self._entries[key]
            self.misses += 1

        value = factory()

        with self._lock:
            return self._entries.setdefault(key, value)

    def __contains__(self, key: CacheKey) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

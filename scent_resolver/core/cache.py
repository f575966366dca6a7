"""
Result cache.

In-process TTL cache for resolution results, keyed by a request fingerprint.
"""

import hashlib
import json
import time
import unicodedata
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .sanitize import normalize_key


def fingerprint(operation: str, provider: str, **params: Any) -> str:
    """Derive a cache key from normalized request parameters.

    String parameters are NFKC-normalized and case-folded, so "Sauvage" and
    " sauvage " share a key. The provider is always part of the key.
    """
    normalized: Dict[str, Any] = {"operation": operation, "provider": provider}
    for name, value in params.items():
        if isinstance(value, str):
            value = normalize_key(unicodedata.normalize("NFKC", value))
        normalized[name] = value
    payload = json.dumps(normalized, sort_keys=True, ensure_ascii=False)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass
class CacheEntry:
    value: Any
    expires_at: float


class ResultCache:
    """LRU cache whose entries expire after a per-entry TTL.

    Concurrent fills of the same key are harmless: values for one key are
    derived identically, so the last writer wins.
    """

    def __init__(self, max_entries: int = 1000, clock: Callable[[], float] = time.monotonic):
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        if entry.expires_at <= self._clock():
            del self._entries[key]
            self.misses += 1
            return None
        self._entries.move_to_end(key)
        self.hits += 1
        return entry.value

    def set(self, key: str, value: Any, ttl: float) -> None:
        if ttl <= 0:
            return
        self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + ttl)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def stats(self) -> Dict[str, Any]:
        lookups = self.hits + self.misses
        return {
            "entries": len(self._entries),
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hits / lookups, 4) if lookups else 0.0,
        }

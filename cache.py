# cache.py
"""In-memory TTL cache for API responses."""
import time
from typing import Any, Dict, Mapping, Optional, Tuple

# Seconds each route family stays cached
QUEUE_TTL = 30
LISTING_TTL = 60
RELEASES_TTL = 60 * 60
PLAY_TTL = 60 * 60


def cache_key(path: str, query: Mapping[str, str]) -> str:
    """Path plus the query string with its keys sorted."""
    if not query:
        return path
    return path + "?" + "&".join(f"{key}={query[key]}" for key in sorted(query))


class ResponseCache:
    def __init__(self, clock=time.monotonic, max_entries: int = 1000):
        self.clock = clock
        self.max_entries = max_entries
        self._entries: Dict[str, Tuple[float, Any]] = {}

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self.clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: Any, ttl: float) -> None:
        if len(self._entries) >= self.max_entries:
            self.purge()
        if len(self._entries) >= self.max_entries:
            # Drop the entry closest to expiry
            oldest = min(self._entries, key=lambda k: self._entries[k][0])
            del self._entries[oldest]
        self._entries[key] = (self.clock() + ttl, value)

    def purge(self) -> None:
        now = self.clock()
        for key in [k for k, (expires_at, _) in self._entries.items() if now >= expires_at]:
            del self._entries[key]

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

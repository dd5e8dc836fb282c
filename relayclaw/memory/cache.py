"""In-memory TTL cache shared by the fetcher and the guard.

Channel lookups are cached for an hour and history pages for a few seconds,
so repeated polls inside one daemon skip platform calls. The counters feed
``relayclaw queue status``.
"""

import threading
import time

CHANNEL_TTL = 3600
HISTORY_TTL = 30
CLAIM_TTL = 3600


class TTLCache:
    def __init__(self, default_ttl=300, clock=time.monotonic):
        self.default_ttl = default_ttl
        self.clock = clock
        self._data = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.sets = 0
        self.deletes = 0
        self.rate_limits_saved = 0

    def get(self, key, default=None):
        """Return the cached value, or ``default`` once ``now >= expires_at``."""
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                self.misses += 1
                return default
            value, expires_at = entry
            if self.clock() >= expires_at:
                del self._data[key]
                self.misses += 1
                return default
            self.hits += 1
            return value

    def __contains__(self, key):
        with self._lock:
            entry = self._data.get(key)
            return entry is not None and self.clock() < entry[1]

    def set(self, key, value, ttl=None):
        ttl = self.default_ttl if ttl is None else ttl
        with self._lock:
            self._data[key] = (value, self.clock() + ttl)
            self.sets += 1

    def delete(self, key):
        with self._lock:
            if self._data.pop(key, None) is None:
                return False
            self.deletes += 1
            return True

    def clear(self):
        with self._lock:
            self._data.clear()

    def cleanup(self):
        """Drop expired entries; returns how many were removed."""
        with self._lock:
            now = self.clock()
            expired = [key for key, (_, expires_at) in self._data.items() if now >= expires_at]
            for key in expired:
                del self._data[key]
            return len(expired)

    def increment_rate_limit_saves(self):
        with self._lock:
            self.rate_limits_saved += 1

    def __len__(self):
        with self._lock:
            return len(self._data)

    def stats(self):
        with self._lock:
            lookups = self.hits + self.misses
            return {
                "hits": self.hits,
                "misses": self.misses,
                "sets": self.sets,
                "deletes": self.deletes,
                "rate_limits_saved": self.rate_limits_saved,
                "hit_rate": round(self.hits / lookups * 100, 2) if lookups else 0.0,
                "size": len(self._data),
            }

import time
from typing import Any

from experiment_service.config import settings


# ----- In-memory TTL cache -----
class TTLCache:
    def __init__(self, ttl_seconds: int = 30):
        self.ttl = ttl_seconds
        self.store: dict[str, tuple[float, Any]] = {}

    @property
    def enabled(self) -> bool:
        return self.ttl > 0

    def get(self, key: str):
        if not self.enabled:
            return None
        v = self.store.get(key)
        if not v:
            return None
        expires, data = v
        if time.time() > expires:
            self.store.pop(key, None)
            return None
        return data

    def set(self, key: str, value: Any):
        if not self.enabled:
            return
        self.store[key] = (time.time() + self.ttl, value)


# ----- Singleton instance for flag definitions -----
# Performance only: evaluation never depends on a cache hit, and assignments
# are never cached.
flag_cache = TTLCache(ttl_seconds=settings.flag_cache_ttl)
FLAG_CACHE_PREFIX = "flag:"


def get_flag_cache_key(project_id: str | None, key: str) -> str:
    """Construct a consistent cache key for a flag definition"""
    return f"{FLAG_CACHE_PREFIX}{project_id or '*'}:{key}"

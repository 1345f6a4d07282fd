"""
Simple in-memory cache with TTL support for derived views.

Keys embed the version or content hash of the inputs they were computed
from, so a stale entry is never returned for changed inputs; the TTL only
bounds memory held by entries nobody asks for again.
"""
import time
from typing import Optional, Any, Dict, Tuple


class MemoryCache:
    """
    An in-memory cache with a time-to-live (TTL) and a soft entry limit.
    """

    def __init__(self, ttl: int = 300, max_entries: int = 256):
        """
        Initialize the cache.

        Args:
            ttl: Default time-to-live for cache entries in seconds.
            max_entries: Oldest entries are evicted beyond this count.
        """
        self._cache: Dict[str, Tuple[Any, float]] = {}
        self.default_ttl = ttl
        self.max_entries = max_entries

    def get(self, key: str) -> Optional[Any]:
        """
        Retrieve an item from the cache.

        Returns:
            The cached item, or None if the item is not found or expired.
        """
        if key not in self._cache:
            return None

        value, expiry = self._cache[key]

        if time.time() > expiry:
            # Entry has expired
            del self._cache[key]
            return None

        return value

    def set(self, key: str, value: Any, ttl: Optional[int] = None):
        """
        Add an item to the cache.

        Args:
            key: The key of the item to add.
            value: The item to add to the cache (any type).
            ttl: Time-to-live for this specific entry. If None, use default.
        """
        ttl_to_use = ttl if ttl is not None else self.default_ttl
        expiry = time.time() + ttl_to_use
        self._cache.pop(key, None)
        self._cache[key] = (value, expiry)
        while len(self._cache) > self.max_entries:
            del self._cache[next(iter(self._cache))]

    def clear(self):
        """Clear all items from the cache."""
        self._cache.clear()

    def delete(self, key: str):
        """Delete a specific key from the cache."""
        self._cache.pop(key, None)

    def invalidate_prefix(self, prefix: str) -> int:
        """Delete every key starting with prefix; returns the number removed"""
        stale = [k for k in self.get_all_keys() if k.startswith(prefix)]
        for key in stale:
            self.delete(key)
        return len(stale)

    def get_all_keys(self):
        """Get all live keys in the cache, dropping expired entries."""
        current_time = time.time()
        valid_keys = []
        for key, (value, expiry) in list(self._cache.items()):
            if current_time <= expiry:
                valid_keys.append(key)
            else:
                del self._cache[key]
        return valid_keys

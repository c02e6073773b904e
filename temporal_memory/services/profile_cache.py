"""
Per-process cache of assembled context documents.

Entries are keyed by (user_id, variant) so that different renderings of the
same user's graph are cached side by side and invalidated together.
"""

import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional, Tuple

from ..utils.config import CacheConfig
from ..utils.logging_config import get_logger

logger = get_logger(__name__)


class ProfileCache:
    """TTL and capacity bounded cache with an injected clock."""

    def __init__(self, config: CacheConfig, clock: Callable[[], float] = time.monotonic):
        """
        Initialize the cache.

        Args:
            config: CacheConfig with TTL and capacity
            clock: Returns the current time in seconds; monotonic by default
        """
        self.config = config
        self.clock = clock
        self._entries: 'OrderedDict[Tuple[str, str], Tuple[float, Any]]' = OrderedDict()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, user_id: str, variant: str = 'document') -> Optional[Any]:
        key = (user_id, variant)
        item = self._entries.get(key)
        if item is None:
            self.misses += 1
            return None
        stored_at, value = item
        if self.clock() - stored_at >= self.config.ttl_seconds:
            del self._entries[key]
            self.misses += 1
            return None
        self._entries.move_to_end(key)
        self.hits += 1
        return value

    def put(self, user_id: str, value: Any, variant: str = 'document') -> None:
        key = (user_id, variant)
        self._entries[key] = (self.clock(), value)
        self._entries.move_to_end(key)
        while len(self._entries) > self.config.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f'Evicted cached profile {evicted}')

    def invalidate(self, user_id: str) -> int:
        """Drop every cached rendering for one user; returns how many were dropped."""
        keys = [key for key in self._entries if key[0] == user_id]
        for key in keys:
            del self._entries[key]
        return len(keys)

    async def invalidate_async(self, user_id: str) -> None:
        """Awaitable form of `invalidate`, used as a write-path change hook."""
        self.invalidate(user_id)

    def clear(self) -> None:
        self._entries.clear()

    def stats(self) -> Dict[str, Any]:
        return {'entries': len(self._entries), 'hits': self.hits, 'misses': self.misses}

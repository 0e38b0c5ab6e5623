"""
Performance utilities: result caching and timing
"""
import copy
import functools
import itertools
import time
import logging
from typing import Any, Callable, Dict, Hashable, Optional


class CalculationCache:
    """Least-recently-used cache for complete calculation results.

    Keys must be hashable; the calculator builds them from its frozen
    input records and settings, so identical inputs map to one entry.
    Values are stored and returned as deep copies, so callers cannot
    change a cached result.
    """

    def __init__(self, max_size: int = 32):
        self.cache: Dict[Hashable, Any] = {}
        self.max_size = max_size
        self.access_times: Dict[Hashable, int] = {}
        self._clock = itertools.count()
        self.hits = 0
        self.misses = 0

    def get(self, key: Hashable) -> Optional[Any]:
        """Get cached value"""
        if key in self.cache:
            self.access_times[key] = next(self._clock)
            self.hits += 1
            return copy.deepcopy(self.cache[key])
        self.misses += 1
        return None

    def set(self, key: Hashable, value: Any) -> None:
        """Set cached value"""
        if key not in self.cache and len(self.cache) >= self.max_size:
            self._evict_oldest()

        self.cache[key] = copy.deepcopy(value)
        self.access_times[key] = next(self._clock)

    def _evict_oldest(self) -> None:
        """Remove least recently used item"""
        if not self.access_times:
            return

        oldest_key = min(self.access_times.keys(), key=lambda k: self.access_times[k])
        del self.cache[oldest_key]
        del self.access_times[oldest_key]

    def clear(self) -> None:
        """Clear all cached items"""
        self.cache.clear()
        self.access_times.clear()
        self.hits = 0
        self.misses = 0

    def stats(self) -> Dict[str, Any]:
        return {
            'size': len(self.cache),
            'max_size': self.max_size,
            'hits': self.hits,
            'misses': self.misses,
        }


def timed(func: Callable) -> Callable:
    """Decorator to measure function execution time"""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        start_time = time.time()
        result = func(*args, **kwargs)
        end_time = time.time()

        logger = logging.getLogger(func.__module__)
        logger.debug(f"{func.__name__} executed in {end_time - start_time:.4f} seconds")

        return result
    return wrapper

"""
In-process key/value cache with a fixed per-entry TTL.

Used to avoid repeating slow or rate-limited geodata calls (Overpass, SCB,
Wikipedia) for listings in the same neighbourhood.  Entries expire lazily:
a get() past the expiry deletes the entry and reports a miss.  There is no
background sweep.

The cache is a pure optimization.  Every component must behave correctly
when it always misses, so callers only store successful results.

The clock is injectable so tests can step time deterministically.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, Optional

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 30 * 60

# 3 decimal places ~ 110 m of latitude; listings on the same block share
# amenity and walkability data.
COORD_PRECISION = 3


@dataclass
class _Entry:
    value: Any
    expires_at: float


class ExpiringCache:
    """Process-lifetime TTL cache.  Not shared across processes."""

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[Hashable, _Entry] = {}

    def get(self, key: Hashable) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            # A concurrent reader may have evicted it already.
            self._entries.pop(key, None)
            logger.debug("Cache entry expired: %s", key)
            return None
        return entry.value

    def set(self, key: Hashable, value: Any) -> None:
        self._entries[key] = _Entry(value, self._clock() + self.ttl_seconds)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key) is not None


def coord_key(prefix: str, lat: float, lng: float) -> str:
    """Cache key for a coordinate-based lookup, rounded to ~100 m."""
    return f"{prefix}:{lat:.{COORD_PRECISION}f},{lng:.{COORD_PRECISION}f}"

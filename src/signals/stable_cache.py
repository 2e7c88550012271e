"""
Stable Cache - throttles recalculation of levels and signals.

Keeps dependent engines from re-running on every sub-percent tick:
- Recalculate when price moved more than the threshold (0.5% by default)
- Recalculate when the hard TTL (15 minutes) has elapsed regardless of price
- Cache computed values with a TTL and the price they were computed at
"""

import logging
import time
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class StableCache:
    """
    Price-change recalculation gate plus a TTL value cache.

    Owned by a single caller (the desk keeps one per asset); tests can
    inject a fake clock and call clear() to replay from a cold start.
    """

    DEFAULT_THRESHOLD = 0.005  # 0.5%
    DEFAULT_TTL_MINUTES = 15
    FORCED_RECALC_MINUTES = 15

    def __init__(
        self,
        clock: Optional[Callable[[], float]] = None,
        forced_recalc_minutes: float = FORCED_RECALC_MINUTES,
    ):
        """
        Args:
            clock: Returns the current time in seconds (default time.time)
            forced_recalc_minutes: Age after which recalculation is forced
        """
        self._clock = clock or time.time
        self.forced_recalc_minutes = forced_recalc_minutes
        # {key: {"data": ..., "timestamp": seconds, "ttl": seconds, "base_price": float}}
        self._entries: Dict[str, Dict[str, Any]] = {}
        self.last_significant_price = 0.0
        self.last_recalculation_time = 0.0

    def set(self, key: str, data: Any, ttl_minutes: float = DEFAULT_TTL_MINUTES, base_price: float = 0.0) -> None:
        """Cache a value computed at `base_price`."""
        self._entries[key] = {
            "data": data,
            "timestamp": self._clock(),
            "ttl": ttl_minutes * 60,
            "base_price": base_price,
        }

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None if missing or expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None

        age = self._clock() - entry["timestamp"]
        if age > entry["ttl"]:
            del self._entries[key]
            logger.debug(f"Cache entry {key} expired after {age:.0f}s")
            return None

        return entry["data"]

    def peek(self, key: str) -> Optional[Any]:
        """Return the cached value even when it is past its TTL."""
        entry = self._entries.get(key)
        return entry["data"] if entry else None

    def is_stale(self, key: str) -> bool:
        """True when the entry exists but is past its TTL."""
        entry = self._entries.get(key)
        if entry is None:
            return False
        return self._clock() - entry["timestamp"] > entry["ttl"]

    def should_recalculate(self, new_price: float, threshold: float = DEFAULT_THRESHOLD) -> bool:
        """
        Decide whether dependent engines should re-run.

        Args:
            new_price: Latest price
            threshold: Relative change that counts as significant

        Returns:
            True on the first call, when the price moved more than the
            threshold since the last mark, or when the forced TTL elapsed
        """
        now = self._clock()

        if self.last_significant_price == 0:
            self.last_significant_price = new_price
            self.last_recalculation_time = now
            return True

        change = abs(new_price - self.last_significant_price) / self.last_significant_price
        if change > threshold:
            logger.debug(f"Price moved {change:.2%} (> {threshold:.2%}), recalculating")
            return True

        if now - self.last_recalculation_time > self.forced_recalc_minutes * 60:
            logger.debug(f"Forced recalculation after {self.forced_recalc_minutes} minutes")
            return True

        return False

    def mark_recalculated(self, price: float) -> None:
        """Record that a recalculation happened at `price`."""
        self.last_significant_price = price
        self.last_recalculation_time = self._clock()

    def get_price_change_percent(self, current_price: float) -> float:
        """Percent change since the last recalculation mark."""
        if self.last_significant_price == 0:
            return 0.0
        return (current_price - self.last_significant_price) / self.last_significant_price * 100

    def clear(self) -> None:
        """Drop all cached values and reset the gate."""
        self._entries.clear()
        self.last_significant_price = 0.0
        self.last_recalculation_time = 0.0
        logger.info("Stable cache cleared")

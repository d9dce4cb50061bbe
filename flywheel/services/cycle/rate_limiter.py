"""
Global trade rate limiter

One limiter is shared by every token the scheduler drives. It caps the
number of trade executions in a sliding window (MAX_TRADES_PER_MINUTE per
RATE_LIMIT_WINDOW_SECONDS by default).

Acquisition never blocks: a denied token records rate_limited for the
tick and tries again on its next due tick.

Per-token share (TokenConfig.rate_limit_per_minute) is a soft threshold
against global usage: once the window already holds `share` trades, a
token with that share is denied even if global capacity remains.
Tokens configured with a small share therefore back off first when the
engine is busy.
"""

import time
from collections import deque
from dataclasses import dataclass, asdict
from threading import Lock
from typing import Callable, Deque, Dict, Iterable, List, Optional, Tuple

from loguru import logger

from config.config import MAX_TRADES_PER_MINUTE, RATE_LIMIT_WINDOW_SECONDS


@dataclass
class RateLimitStats:
    """Counters for monitoring"""
    granted: int = 0
    denied: int = 0
    denied_by_share: int = 0

    def denied_pct(self) -> float:
        total = self.granted + self.denied
        if total == 0:
            return 0.0
        return (self.denied / total) * 100.0


class GlobalRateLimiter:
    """
    Sliding-window limiter shared by all tokens.

    Usage:
        limiter = GlobalRateLimiter(max_operations=30, window_seconds=60)

        for token_id in limiter.order_fairly(due_tokens):
            if limiter.try_acquire(token_id, share=config.rate_limit_per_minute):
                ...  # execute trade
    """

    def __init__(
        self,
        max_operations: int = MAX_TRADES_PER_MINUTE,
        window_seconds: float = RATE_LIMIT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            max_operations: Global ceiling per window (K)
            window_seconds: Sliding window length
            clock: Monotonic time source (injectable for tests)
        """
        if max_operations <= 0:
            raise ValueError("max_operations must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        self.max_operations = max_operations
        self.window_seconds = float(window_seconds)
        self._clock = clock

        # (timestamp, weight) of granted operations inside the window
        self._events: Deque[Tuple[float, int]] = deque()
        self._used = 0
        self._last_granted: Dict[int, float] = {}
        self._stats = RateLimitStats()

        self._lock = Lock()

        logger.info(
            f"Initialized GlobalRateLimiter: {max_operations} ops / {self.window_seconds:.0f}s"
        )

    def _prune(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._events and self._events[0][0] <= cutoff:
            _, weight = self._events.popleft()
            self._used -= weight

    def try_acquire(self, token_id: int, weight: int = 1, share: Optional[int] = None) -> bool:
        """
        Try to take `weight` slots for a token without waiting

        Args:
            token_id: Token asking for capacity
            weight: Slots to consume (one per trade)
            share: Optional per-token soft limit (rate_limit_per_minute)

        Returns:
            True if capacity was granted
        """
        with self._lock:
            now = self._clock()
            self._prune(now)

            if self._used + weight > self.max_operations:
                self._stats.denied += 1
                logger.debug(
                    f"Rate limit: token {token_id} denied ({self._used}/{self.max_operations} used)"
                )
                return False

            if share is not None and self._used >= share:
                self._stats.denied += 1
                self._stats.denied_by_share += 1
                logger.debug(
                    f"Rate limit: token {token_id} denied by share ({self._used} used, share={share})"
                )
                return False

            self._events.append((now, weight))
            self._used += weight
            self._last_granted[token_id] = now
            self._stats.granted += 1
            return True

    def order_fairly(self, token_ids: Iterable[int]) -> List[int]:
        """
        Round-robin order for a batch of due tokens

        Tokens that never got capacity come first, then the least recently
        granted. Ties keep the input order.
        """
        ids = list(token_ids)
        with self._lock:
            last = dict(self._last_granted)
        return sorted(ids, key=lambda t: last.get(t, float("-inf")))

    def remaining(self) -> int:
        with self._lock:
            self._prune(self._clock())
            return self.max_operations - self._used

    def forget(self, token_id: int) -> None:
        """Drop fairness bookkeeping for a token that left the schedule."""
        with self._lock:
            self._last_granted.pop(token_id, None)

    def get_stats(self) -> Dict[str, object]:
        with self._lock:
            self._prune(self._clock())
            return {
                "max_operations": self.max_operations,
                "window_seconds": self.window_seconds,
                "used": self._used,
                **asdict(self._stats),
                "denied_pct": round(self._stats.denied_pct(), 2),
            }

    def reset(self) -> None:
        """Clear window and statistics (tests / restart)."""
        with self._lock:
            self._events.clear()
            self._used = 0
            self._last_granted.clear()
            self._stats = RateLimitStats()

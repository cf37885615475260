"""Per-sender fixed-window rate limiting.

The window resets when it expires rather than sliding, so bursts at window
boundaries are possible. Good enough for abuse mitigation, not for quotas.
"""

from __future__ import annotations

import time
from typing import Callable, Optional

from core.models import RateLimitBucket


class RateLimiter:
    """Tracks one bucket per sender and answers allow/deny."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._buckets: dict[str, RateLimitBucket] = {}
        self._last_prune = clock()

    def __len__(self) -> int:
        return len(self._buckets)

    def allow(self, sender_key: str, limit: int, window_seconds: float) -> bool:
        """Count one call for ``sender_key`` and return whether it is within budget."""

        now = self._clock()
        # Sweep at most once per window so the map only holds recent senders.
        if now >= self._last_prune + window_seconds:
            self.prune(window_seconds)
        bucket = self._buckets.get(sender_key)
        if bucket is None or now >= bucket.window_start + window_seconds:
            bucket = RateLimitBucket(sender_key=sender_key, count=1, window_start=now)
            self._buckets[sender_key] = bucket
            return limit >= 1
        bucket = RateLimitBucket(
            sender_key=sender_key,
            count=bucket.count + 1,
            window_start=bucket.window_start,
        )
        self._buckets[sender_key] = bucket
        return bucket.count <= limit

    def bucket(self, sender_key: str) -> Optional[RateLimitBucket]:
        return self._buckets.get(sender_key)

    def prune(self, window_seconds: float) -> int:
        """Drop expired buckets and return how many were removed."""

        now = self._clock()
        self._last_prune = now
        expired = [
            key
            for key, bucket in self._buckets.items()
            if now >= bucket.window_start + window_seconds
        ]
        for key in expired:
            del self._buckets[key]
        return len(expired)

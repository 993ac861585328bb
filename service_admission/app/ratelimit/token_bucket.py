"""
Token bucket used for per-key rate accounting.
"""

import math

from shared.errors import ConfigurationError


class TokenBucket:
    """Continuously refilling token bucket.

    Tokens regenerate at ``refill_rate`` per second up to ``capacity``.
    There is no window reset, so a client cannot double its burst by
    straddling a window boundary. All timestamps are seconds on the same
    monotonic clock supplied by the caller.

    The bucket itself is not thread-safe; ``BucketStore`` serializes access
    per key.
    """

    __slots__ = ("capacity", "refill_rate", "tokens", "last_refill_at")

    def __init__(self, capacity: float, refill_rate: float, now: float):
        if capacity <= 0:
            raise ConfigurationError("Bucket capacity must be positive", {"capacity": capacity})
        if refill_rate <= 0:
            raise ConfigurationError("Bucket refill rate must be positive", {"refill_rate": refill_rate})

        self.capacity = float(capacity)
        self.refill_rate = float(refill_rate)
        # Buckets start full so the first burst is always admitted
        self.tokens = float(capacity)
        self.last_refill_at = now

    def refill(self, now: float) -> None:
        """Add the tokens earned since the last refill.

        A ``now`` at or before ``last_refill_at`` is a no-op, so a stale
        timestamp can never rewind the bucket and credit an interval twice.
        """
        if now <= self.last_refill_at:
            return
        elapsed = now - self.last_refill_at
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill_at = now

    def consume(self, now: float, cost: float = 1.0) -> bool:
        """Take ``cost`` tokens if available; tokens are untouched on denial."""
        self.refill(now)
        if self.tokens >= cost:
            self.tokens -= cost
            return True
        return False

    def available_tokens(self, now: float) -> int:
        """Whole tokens left, rounded down."""
        self.refill(now)
        return math.floor(self.tokens)

    def seconds_until_next_token(self, now: float) -> float:
        """Seconds until at least one whole token is available."""
        self.refill(now)
        if self.tokens >= 1:
            return 0.0
        return (1 - self.tokens) / self.refill_rate

    def is_full(self, now: float) -> bool:
        """Whether the bucket would be at capacity at ``now``, without refilling it."""
        elapsed = max(0.0, now - self.last_refill_at)
        projected = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        return math.floor(projected) >= self.capacity

    def __repr__(self) -> str:
        return (
            f"TokenBucket(capacity={self.capacity}, refill_rate={self.refill_rate}, "
            f"tokens={self.tokens:.3f})"
        )

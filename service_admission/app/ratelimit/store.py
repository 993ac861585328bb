"""
In-memory bucket store with a background idle sweep.
"""

import threading
import time
import zlib
from typing import Callable, Dict, List, NamedTuple, Optional

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from .token_bucket import TokenBucket


DEFAULT_SWEEP_INTERVAL_SECONDS = 5 * 60
DEFAULT_IDLE_SECONDS = 10 * 60
DEFAULT_SHARDS = 64


class ConsumeResult(NamedTuple):
    """Bucket state captured under the key's lock at consumption time."""
    admitted: bool
    remaining: int
    retry_after_seconds: float


class _Shard:
    __slots__ = ("lock", "buckets")

    def __init__(self):
        self.lock = threading.Lock()
        self.buckets: Dict[str, TokenBucket] = {}


class BucketStore:
    """Maps rate limit keys to token buckets.

    Keys are spread over a fixed number of lock-guarded shards, so admission
    checks for unrelated keys rarely contend while checks for the same key
    are always serialized. The sweeper thread takes the same shard lock
    before evicting, so a bucket is never removed mid-consumption.
    """

    def __init__(
        self,
        sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        idle_seconds: float = DEFAULT_IDLE_SECONDS,
        shards: int = DEFAULT_SHARDS,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional[MetricsCollector] = None,
        start_sweeper: bool = True,
    ):
        self.sweep_interval_seconds = sweep_interval_seconds
        self.idle_seconds = idle_seconds
        self.clock = clock
        self.metrics = metrics
        self.logger = get_logger("admission.bucket_store")

        self._shards: List[_Shard] = [_Shard() for _ in range(max(1, shards))]
        self._stop_event = threading.Event()
        self._sweeper: Optional[threading.Thread] = None

        if self.metrics:
            self.metrics.track_bucket_count(self.__len__)

        if start_sweeper:
            self.start()

    def _shard_for(self, key: str) -> _Shard:
        return self._shards[zlib.crc32(key.encode("utf-8")) % len(self._shards)]

    def get_or_create(self, key: str, capacity: float, refill_rate: float,
                      now: Optional[float] = None) -> TokenBucket:
        """Return the bucket for ``key``, creating a full one on first use.

        ``capacity`` and ``refill_rate`` only apply when the bucket is
        created; an existing bucket keeps its original parameters.
        """
        shard = self._shard_for(key)
        with shard.lock:
            return self._get_or_create_locked(shard, key, capacity, refill_rate, now)

    def _get_or_create_locked(self, shard: _Shard, key: str, capacity: float,
                              refill_rate: float, now: Optional[float]) -> TokenBucket:
        bucket = shard.buckets.get(key)
        if bucket is None:
            bucket = TokenBucket(capacity, refill_rate, self.clock() if now is None else now)
            shard.buckets[key] = bucket
        return bucket

    def consume(self, key: str, capacity: float, refill_rate: float,
                now: Optional[float] = None, cost: float = 1.0) -> ConsumeResult:
        """Atomically get-or-create the bucket for ``key`` and take ``cost`` tokens."""
        shard = self._shard_for(key)
        with shard.lock:
            # Read under the lock so timestamps reach a bucket in order
            if now is None:
                now = self.clock()
            bucket = self._get_or_create_locked(shard, key, capacity, refill_rate, now)
            admitted = bucket.consume(now, cost)
            return ConsumeResult(
                admitted=admitted,
                remaining=bucket.available_tokens(now),
                retry_after_seconds=bucket.seconds_until_next_token(now),
            )

    def get(self, key: str) -> Optional[TokenBucket]:
        """Look up a bucket without creating it."""
        shard = self._shard_for(key)
        with shard.lock:
            return shard.buckets.get(key)

    def sweep(self, now: Optional[float] = None) -> int:
        """Evict buckets that are full and have been idle past ``idle_seconds``.

        Returns the number of evicted buckets.
        """
        if now is None:
            now = self.clock()
        cutoff = now - self.idle_seconds
        evicted = 0

        for shard in self._shards:
            with shard.lock:
                stale = []
                for key, bucket in shard.buckets.items():
                    if bucket.last_refill_at < cutoff and bucket.is_full(now):
                        stale.append(key)
                for key in stale:
                    del shard.buckets[key]
                evicted += len(stale)

        remaining = len(self)
        self.logger.debug("Rate limit cleanup", evicted=evicted, buckets_remaining=remaining)
        if self.metrics:
            self.metrics.record_sweep(evicted)
        return evicted

    def start(self) -> None:
        """Start the periodic sweeper thread if it is not already running."""
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop_event.clear()
        self._sweeper = threading.Thread(
            target=self._sweep_loop,
            name="bucket-store-sweeper",
            daemon=True,
        )
        self._sweeper.start()
        self.logger.info(
            "Bucket sweeper started",
            interval_seconds=self.sweep_interval_seconds,
            idle_seconds=self.idle_seconds,
        )

    def _sweep_loop(self) -> None:
        while not self._stop_event.wait(self.sweep_interval_seconds):
            try:
                self.sweep()
            except Exception as e:
                self.logger.error("Error in bucket sweep", error=str(e), exc_info=True)

    def shutdown(self) -> None:
        """Stop the sweeper and drop all buckets. Safe to call more than once."""
        self._stop_event.set()
        sweeper, self._sweeper = self._sweeper, None
        if sweeper is not None and sweeper is not threading.current_thread():
            sweeper.join(timeout=5)

        for shard in self._shards:
            with shard.lock:
                shard.buckets.clear()

        self.logger.info("Bucket store shut down")

    @property
    def running(self) -> bool:
        return self._sweeper is not None and self._sweeper.is_alive()

    def __len__(self) -> int:
        return sum(len(shard.buckets) for shard in self._shards)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

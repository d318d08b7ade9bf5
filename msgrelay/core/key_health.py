"""Upstream API key failure tracking with time-based recovery."""
import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Set

from msgrelay.core.logging import mask_api_key
from msgrelay.metrics.prometheus import failed_keys

logger = logging.getLogger(__name__)

# Configuration constants
KEY_RECOVERY_SECONDS = 300.0  # 5 minutes
MAX_FAILURE_COUNT = 3
SWEEP_INTERVAL_SECONDS = 60.0


@dataclass
class KeyHealthRecord:
    """Failure bookkeeping for a single API key."""

    api_key: str
    failure_count: int = 0
    last_failure_at: float = 0.0


class KeyHealthTracker:
    """Tracks failed API keys and decides when they may be used again.

    A key is failed for ``recovery_seconds`` after its last failure, or twice
    that once it has failed more than ``max_failures`` times. Records are
    dropped by ``sweep()`` when their window has elapsed, which also resets
    the failure count.
    """

    def __init__(
        self,
        recovery_seconds: float = KEY_RECOVERY_SECONDS,
        max_failures: int = MAX_FAILURE_COUNT,
        sweep_interval_seconds: float = SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            recovery_seconds: Base recovery window in seconds
            max_failures: Failure count above which the window doubles
            sweep_interval_seconds: Interval for the background sweep task
            clock: Time source, injectable for tests
        """
        self.recovery_seconds = recovery_seconds
        self.max_failures = max_failures
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._records: Dict[str, KeyHealthRecord] = {}
        self._lock = threading.Lock()

        self._sweep_task: Optional[asyncio.Task] = None
        self._shutdown = False

    def recovery_window(self, failure_count: int) -> float:
        """Recovery window in seconds for a key with ``failure_count`` failures."""
        if failure_count > self.max_failures:
            return self.recovery_seconds * 2
        return self.recovery_seconds

    def _in_window(self, record: KeyHealthRecord, now: float) -> bool:
        return now - record.last_failure_at < self.recovery_window(record.failure_count)

    def mark_failed(self, api_key: str) -> KeyHealthRecord:
        """Record a failure for ``api_key`` and stamp the current time."""
        now = self._clock()
        with self._lock:
            record = self._records.get(api_key)
            if record is None:
                record = KeyHealthRecord(api_key=api_key)
                self._records[api_key] = record
            record.failure_count += 1
            record.last_failure_at = now
            window = self.recovery_window(record.failure_count)
            snapshot = KeyHealthRecord(api_key, record.failure_count, record.last_failure_at)
            tracked = sum(1 for r in self._records.values() if self._in_window(r, now))

        logger.warning(
            f"Key {mask_api_key(api_key)} marked as failed "
            f"(failures={snapshot.failure_count}, recovery_window={int(window)}s)"
        )
        failed_keys.set(tracked)
        return snapshot

    def is_failed(self, api_key: str) -> bool:
        """Check whether ``api_key`` is still inside its recovery window."""
        now = self._clock()
        with self._lock:
            record = self._records.get(api_key)
            if record is None:
                return False
            return self._in_window(record, now)

    def get_record(self, api_key: str) -> Optional[KeyHealthRecord]:
        """Get a copy of the failure record for ``api_key``, if any."""
        with self._lock:
            record = self._records.get(api_key)
            if record is None:
                return None
            return KeyHealthRecord(record.api_key, record.failure_count, record.last_failure_at)

    def partition(self, keys: Iterable[str], excluded: Set[str]) -> List[str]:
        """Return ``keys`` in order, minus excluded and currently failed ones.

        Evaluated under a single lock acquisition so a concurrent sweep
        cannot produce a mixed view.
        """
        now = self._clock()
        available = []
        with self._lock:
            for key in keys:
                if key in excluded:
                    continue
                record = self._records.get(key)
                if record is not None and self._in_window(record, now):
                    continue
                available.append(key)
        return available

    def oldest_failed(self, keys: Iterable[str], excluded: Set[str]) -> Optional[str]:
        """Return the non-excluded key whose last failure is the oldest."""
        oldest_key = None
        oldest_at = None
        with self._lock:
            for key in keys:
                if key in excluded:
                    continue
                record = self._records.get(key)
                if record is None:
                    continue
                if oldest_at is None or record.last_failure_at < oldest_at:
                    oldest_at = record.last_failure_at
                    oldest_key = key
        return oldest_key

    def failed_keys(self) -> List[str]:
        """Keys currently inside their recovery window."""
        now = self._clock()
        with self._lock:
            return [key for key, record in self._records.items() if self._in_window(record, now)]

    def sweep(self) -> int:
        """Delete every record whose recovery window has elapsed.

        Returns:
            Number of records removed
        """
        now = self._clock()
        with self._lock:
            expired = [key for key, record in self._records.items() if not self._in_window(record, now)]
            for key in expired:
                del self._records[key]
            remaining = len(self._records)

        for key in expired:
            logger.info(f"Key {mask_api_key(key)} recovered from failed state")
        failed_keys.set(remaining)
        return len(expired)

    async def start_sweep_task(self):
        """Start the background sweep task."""
        if self._sweep_task is None:
            self._shutdown = False
            self._sweep_task = asyncio.create_task(self._sweep_loop())
            logger.info("Key health sweep task started")

    async def stop_sweep_task(self):
        """Stop the background sweep task."""
        self._shutdown = True
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
            logger.info("Key health sweep task stopped")

    async def _sweep_loop(self):
        """Background loop for periodic record expiry."""
        while not self._shutdown:
            try:
                await asyncio.sleep(self.sweep_interval_seconds)
                self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in key health sweep: {e}")

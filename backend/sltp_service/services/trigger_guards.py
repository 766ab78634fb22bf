"""
Trigger Guards

Two pieces of in-process state shared across trigger invocations:

- DispatchLocks: one asyncio.Lock per (user, exchange, symbol). A tenant's
  dispatch holds it from reading the holding until the exit is booked, so
  overlapping triggers for the same symbol (TP1_HIT racing SL_HIT) sell
  sequentially against the updated quantity instead of double-selling.
- TriggerCooldown: remembers (symbol, trigger_type) keys that actually sold
  something and turns repeats inside the cooldown window into no-ops.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

LockKey = Tuple[str, str, str]


class DispatchLocks:
    """Per-(user, exchange, symbol) single-flight guard."""

    def __init__(self):
        self._locks: Dict[LockKey, asyncio.Lock] = {}
        self._waiters: Dict[LockKey, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def is_locked(self, user_id: str, exchange: str, symbol: str) -> bool:
        lock = self._locks.get((user_id, exchange, symbol))
        return bool(lock and lock.locked())

    @asynccontextmanager
    async def hold(self, user_id: str, exchange: str, symbol: str):
        key = (user_id, exchange, symbol)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._waiters[key] = self._waiters.get(key, 0) + 1

        try:
            if lock.locked():
                logger.info(f"⏳ Waiting for in-flight dispatch on {symbol} for user {user_id[:8]}...")
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                # Last user of this key, drop it so the map does not grow forever
                del self._waiters[key]
                self._locks.pop(key, None)


class TriggerCooldown:
    """
    Suppresses repeated (symbol, trigger_type) triggers for a window.

    A key is only recorded after a trigger sold for at least one tenant, so
    a trigger where every tenant failed can be retried straight away.
    """

    def __init__(self, cooldown_seconds: float, clock: Optional[Callable[[], float]] = None):
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock or time.monotonic
        self._processed: Dict[Tuple[str, str], float] = {}

    @property
    def enabled(self) -> bool:
        return self.cooldown_seconds > 0

    def seconds_since(self, symbol: str, trigger_type: str) -> Optional[float]:
        """Seconds since the key was recorded, or None if not inside the window."""
        if not self.enabled:
            return None
        self._purge()
        recorded = self._processed.get((symbol, trigger_type))
        if recorded is None:
            return None
        return self._clock() - recorded

    def record(self, symbol: str, trigger_type: str):
        if not self.enabled:
            return
        self._processed[(symbol, trigger_type)] = self._clock()
        logger.info(f"✅ Cooldown SET for {symbol}:{trigger_type} ({int(self.cooldown_seconds)}s)")

    def _purge(self):
        now = self._clock()
        expired = [k for k, ts in self._processed.items() if now - ts >= self.cooldown_seconds]
        for key in expired:
            del self._processed[key]

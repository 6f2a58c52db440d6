# Copyright 2025 John Brosnihan
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Resilience utilities for deadlines, throttling and per-game serialization.

Key Features:
- Stage deadlines for gateway calls (asyncio.wait_for)
- Token bucket rate limiting per game
- Per-game asyncio locks so actions on one game never interleave
"""

import asyncio
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Dict, TypeVar

from adventure_dm.logging import StructuredLogger
from adventure_dm.services.errors import StageTimeoutError

logger = StructuredLogger(__name__)

T = TypeVar('T')


async def call_with_timeout(awaitable: Awaitable[T], stage: str, timeout_seconds: float) -> T:
    """Await a gateway call under the stage deadline.

    Args:
        awaitable: The gateway call
        stage: Pipeline stage name (for logs and the raised error)
        timeout_seconds: Deadline in seconds

    Raises:
        StageTimeoutError: If the deadline passes first
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_seconds)
    except asyncio.TimeoutError as e:
        logger.error(
            "Gateway call exceeded stage deadline",
            stage=stage,
            timeout_seconds=timeout_seconds
        )
        raise StageTimeoutError(stage, timeout_seconds) from e


class GameLocks:
    """One asyncio.Lock per game id, kept only while someone needs it.

    The pipeline itself does no locking; the HTTP layer holds the game's
    lock from load to save so concurrent actions cannot lose updates.
    A lock is dropped once its last holder or waiter leaves, so games that
    go idle (or are evicted from the store) leave nothing behind.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, game_id: str) -> AsyncIterator[None]:
        """Hold the game's lock for the duration of the block."""
        lock = self._locks.get(game_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[game_id] = lock
        self._users[game_id] = self._users.get(game_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[game_id] -= 1
            if self._users[game_id] == 0:
                del self._users[game_id]
                del self._locks[game_id]

    def __len__(self) -> int:
        return len(self._locks)


class RateLimiter:
    """Simple token bucket rate limiter for per-game throttling.

    Each game has its own bucket that refills at the configured rate.
    A bucket that has refilled completely behaves exactly like a missing
    one, so full buckets are pruned at most once per prune interval.
    """

    def __init__(self, max_rate: float, prune_interval_seconds: float = 60.0):
        """Initialize rate limiter.

        Args:
            max_rate: Maximum operations per second per key
            prune_interval_seconds: Minimum time between sweeps of full buckets
        """
        self.max_rate = max_rate
        self.capacity = max(1.0, max_rate)
        self.prune_interval_seconds = prune_interval_seconds
        self.buckets: dict[str, tuple[float, float]] = {}  # key -> (tokens, last_update)
        self._last_prune = time.time()

    def _refilled(self, tokens: float, last_update: float, now: float) -> float:
        return min(self.capacity, tokens + ((now - last_update) * self.max_rate))

    def _prune(self, now: float) -> None:
        if now - self._last_prune < self.prune_interval_seconds:
            return
        self._last_prune = now
        full = [
            key for key, (tokens, last_update) in self.buckets.items()
            if self._refilled(tokens, last_update, now) >= self.capacity
        ]
        for key in full:
            del self.buckets[key]
        if full:
            logger.debug("Pruned idle rate limit buckets", pruned=len(full))

    async def acquire(self, key: str) -> bool:
        """Try to acquire a token for the given key.

        Args:
            key: Unique identifier (e.g., game_id)

        Returns:
            True if token acquired, False if rate limit exceeded
        """
        now = time.time()
        self._prune(now)

        if key not in self.buckets:
            self.buckets[key] = (self.capacity - 1.0, now)
            return True

        tokens = self._refilled(*self.buckets[key], now)

        if tokens >= 1.0:
            self.buckets[key] = (tokens - 1.0, now)
            return True

        self.buckets[key] = (tokens, now)
        return False

    def get_retry_after(self, key: str) -> float:
        """Calculate seconds until next token is available.

        Args:
            key: Unique identifier

        Returns:
            Seconds until next token available (minimum 0.1)
        """
        if key not in self.buckets:
            return 0.0

        current_tokens = self._refilled(*self.buckets[key], time.time())

        if current_tokens >= 1.0:
            return 0.0

        seconds_needed = (1.0 - current_tokens) / self.max_rate
        return max(0.1, seconds_needed)

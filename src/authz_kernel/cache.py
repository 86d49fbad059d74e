"""
Decision cache.

In-memory TTL store for terminal ``CheckResult`` values, shared by every
concurrent check of one engine. Expired entries are dropped on read and by
an optional background sweep; there is no per-key invalidation, so a changed
fact becomes visible only once the affected entries expire.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, Optional

from .models import CheckResult

logger = logging.getLogger(__name__)

CHECK_KIND = "check"
ROLE_KIND = "checkRole"


def check_key(user_id: str, action: str, resource_type: str, resource_id: str) -> str:
    return json.dumps([CHECK_KIND, user_id, action, resource_type, resource_id], separators=(",", ":"))


def role_key(resource_type: str, role_name: str, user_id: str, resource_id: str) -> str:
    return json.dumps([ROLE_KIND, resource_type, role_name, user_id, resource_id], separators=(",", ":"))


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    expirations: int = 0


@dataclass(frozen=True)
class _Entry:
    result: CheckResult
    expires_at: float


class DecisionCache:
    """TTL key-value store with a periodic expired-key sweep."""

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        sweep_interval_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0.")
        if sweep_interval_seconds <= 0:
            raise ValueError("sweep_interval_seconds must be > 0.")
        self.ttl_seconds = ttl_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}
        self._lock = Lock()
        self._sweeper: Optional[asyncio.Task] = None
        self.stats = CacheStats()

    def get(self, key: str) -> Optional[CheckResult]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.stats.misses += 1
                return None
            if entry.expires_at <= now:
                del self._entries[key]
                self.stats.expirations += 1
                self.stats.misses += 1
                return None
            self.stats.hits += 1
            return entry.result

    def set(self, key: str, result: CheckResult) -> None:
        entry = _Entry(result=result, expires_at=self._clock() + self.ttl_seconds)
        with self._lock:
            self._entries[key] = entry

    def sweep(self) -> int:
        """Remove every expired entry and return how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
            for key in expired:
                del self._entries[key]
            self.stats.expirations += len(expired)
        if expired:
            logger.debug("Swept %d expired decisions", len(expired))
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    # --- Background sweep ---

    @property
    def sweeping(self) -> bool:
        return self._sweeper is not None and not self._sweeper.done()

    def start(self) -> None:
        """Start the periodic sweep on the running event loop."""
        if self.sweeping:
            return
        self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def close(self) -> None:
        task, self._sweeper = self._sweeper, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                self.sweep()
            except Exception as exc:  # noqa: BLE001
                logger.error("Decision cache sweep failed: %s", exc, exc_info=True)


__all__ = ["CacheStats", "DecisionCache", "check_key", "role_key", "CHECK_KIND", "ROLE_KIND"]

import logging
import threading
import time
from dataclasses import dataclass
from datetime import date
from typing import Callable, Generic, Optional, Protocol, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class InvalidationScope:
    period: date
    user_id: str
    household_id: Optional[str] = None


class CacheInvalidator(Protocol):
    def invalidate(self, scope: InvalidationScope) -> None: ...


class NullInvalidator:
    def invalidate(self, scope: InvalidationScope) -> None:
        return None


class BudgetListCache(Generic[T]):
    """Per-user, per-period cache of budget listings with a TTL.

    Invalidation drops every entry for the scope's period: a household budget
    change is visible to all members, not only to the user who made it.

    Each period also carries a generation number that invalidation bumps. A
    reader takes ``generation(period)`` before computing a listing and passes
    it to ``put``; a listing computed before a concurrent mutation is then
    discarded instead of cached.
    """

    def __init__(
        self, ttl_secs: float, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.ttl_secs = ttl_secs
        self._clock = clock
        self._entries: dict[tuple[str, date], tuple[float, T]] = {}
        self._generations: dict[date, int] = {}
        self._clears = 0
        self._lock = threading.Lock()

    def generation(self, period: date) -> tuple[int, int]:
        with self._lock:
            return self._current_generation(period)

    def _current_generation(self, period: date) -> tuple[int, int]:
        return self._clears, self._generations.get(period, 0)

    def get(self, user_id: str, period: date) -> Optional[T]:
        key = (user_id, period)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            stored_at, value = entry
            if self._clock() - stored_at > self.ttl_secs:
                del self._entries[key]
                return None
            return value

    def put(
        self,
        user_id: str,
        period: date,
        value: T,
        *,
        generation: Optional[tuple[int, int]] = None,
    ) -> bool:
        if self.ttl_secs <= 0:
            return False
        with self._lock:
            if generation is not None and generation != self._current_generation(period):
                return False
            self._entries[(user_id, period)] = (self._clock(), value)
        return True

    def invalidate(self, scope: InvalidationScope) -> None:
        with self._lock:
            self._generations[scope.period] = self._generations.get(scope.period, 0) + 1
            stale = [key for key in self._entries if key[1] == scope.period]
            for key in stale:
                del self._entries[key]
        logger.debug(
            f"budget_cache_invalidate: period={scope.period.isoformat()} "
            f"user_id={scope.user_id} dropped={len(stale)}"
        )

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._clears += 1

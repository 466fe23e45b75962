# ================================================================
# File     : modules/pim/role_cache.py
# Purpose  : TTL cache of the last BatchFetchResult, plus the bounded
#            refresh that follows an activation/deactivation
# Notes    : Readers never wait on an in-flight fetch (peek returns
#            the previous value). Last writer wins, except a fetch
#            started before invalidate() never repopulates the cache.
# ================================================================

import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from core.models import BatchFetchResult
from core.utils import fncPrintMessage
from modules.pim.batch_fetcher import FetchFlags, ProgressSink


@dataclass
class _Entry:
    created_at: float
    user_id: str
    flags: FetchFlags
    result: BatchFetchResult


class RoleCache:
    def __init__(self, fetcher, ttl_seconds: float = 120, clock: Callable[[], float] = time.monotonic):
        self.fetcher = fetcher
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entry: Optional[_Entry] = None
        self._generation = 0
        self._lock = threading.Lock()

    def peek(self) -> Optional[BatchFetchResult]:
        with self._lock:
            return self._entry.result if self._entry else None

    def invalidate(self) -> None:
        with self._lock:
            self._entry = None
            self._generation += 1
        fncPrintMessage("Role cache invalidated", "debug")

    def _is_fresh(self, entry: Optional[_Entry], user_id: str, flags: FetchFlags) -> bool:
        return bool(entry and entry.user_id == user_id and entry.flags == flags
                    and self.clock() - entry.created_at < self.ttl_seconds)

    def get_or_fetch(self, user_id: str, flags: Optional[FetchFlags] = None,
                     progress: Optional[ProgressSink] = None) -> BatchFetchResult:
        flags = flags or FetchFlags()
        with self._lock:
            entry = self._entry
            generation = self._generation
        if self._is_fresh(entry, user_id, flags):
            fncPrintMessage("Role list served from cache", "debug")
            return entry.result

        result = self.fetcher.fetch_all(user_id, flags, progress)
        with self._lock:
            if generation == self._generation:
                self._entry = _Entry(self.clock(), user_id, flags, result)
            else:
                fncPrintMessage("Cache invalidated during fetch; not storing stale result", "debug")
        return result


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    initial_delay: float = 2.0
    backoff: float = 2.0

    def delay_before(self, attempt: int) -> float:
        """Delay before the 1-based attempt number."""
        return self.initial_delay * (self.backoff ** (attempt - 1))

    @classmethod
    def from_config(cls, cfg: dict) -> "RetryPolicy":
        block = (cfg or {}).get("refresh") or {}
        return cls(
            attempts=max(1, int(block.get("attempts", cls.attempts))),
            initial_delay=float(block.get("initial_delay_seconds", cls.initial_delay)),
            backoff=float(block.get("backoff", cls.backoff)),
        )


# ================================================================
# Function: fncRefreshAfterMutation
# Purpose : Invalidate, wait out Graph's replication lag, re-fetch
# Notes   : Retries until reflects(result) or attempts run out.
#           Returns (last result, whether the change showed up).
# ================================================================
def fncRefreshAfterMutation(
    cache: RoleCache,
    user_id: str,
    reflects: Callable[[BatchFetchResult], bool],
    policy: RetryPolicy = RetryPolicy(),
    flags: Optional[FetchFlags] = None,
    sleep: Callable[[float], None] = time.sleep,
    progress: Optional[ProgressSink] = None,
) -> Tuple[Optional[BatchFetchResult], bool]:
    result = None
    for attempt in range(1, policy.attempts + 1):
        cache.invalidate()
        sleep(policy.delay_before(attempt))
        result = cache.get_or_fetch(user_id, flags, progress)
        if reflects(result):
            fncPrintMessage(f"Role list up to date after {attempt} attempt(s)", "debug")
            return result, True
        fncPrintMessage(f"Role list not updated yet (attempt {attempt}/{policy.attempts})", "debug")
    fncPrintMessage("Changes may take a few minutes to appear. Refresh again shortly.", "warn")
    return result, False

"""Tests for the TTL role cache and post-mutation refresh."""

from core.models import BatchFetchResult
from modules.pim.batch_fetcher import FetchFlags
from modules.pim.role_cache import RetryPolicy, RoleCache, fncRefreshAfterMutation


class CountingFetcher:
    def __init__(self, results=None):
        self.calls = 0
        self.results = list(results or [])
        self.hook = None

    def fetch_all(self, user_id, flags=None, progress=None):
        self.calls += 1
        if self.hook:
            self.hook()
        if self.results:
            return self.results.pop(0)
        return BatchFetchResult(warnings=[f"fetch {self.calls}"])


class TestRoleCache:
    """Single-entry TTL cache."""

    def test_fresh_entry_is_returned_unchanged(self, monotonic):
        fetcher = CountingFetcher()
        cache = RoleCache(fetcher, ttl_seconds=120, clock=monotonic)
        first = cache.get_or_fetch("user-1")
        monotonic.value += 119
        assert cache.get_or_fetch("user-1") is first
        assert fetcher.calls == 1

    def test_expired_entry_refetches(self, monotonic):
        fetcher = CountingFetcher()
        cache = RoleCache(fetcher, ttl_seconds=120, clock=monotonic)
        first = cache.get_or_fetch("user-1")
        monotonic.value += 120
        assert cache.get_or_fetch("user-1") is not first
        assert fetcher.calls == 2

    def test_invalidate_forces_fetch(self, monotonic):
        fetcher = CountingFetcher()
        cache = RoleCache(fetcher, clock=monotonic)
        cache.get_or_fetch("user-1")
        cache.invalidate()
        assert cache.peek() is None
        cache.get_or_fetch("user-1")
        assert fetcher.calls == 2

    def test_other_user_or_flags_miss(self, monotonic):
        fetcher = CountingFetcher()
        cache = RoleCache(fetcher, clock=monotonic)
        cache.get_or_fetch("user-1")
        cache.get_or_fetch("user-2")
        cache.get_or_fetch("user-2", FetchFlags(include_groups=False))
        assert fetcher.calls == 3
        cache.get_or_fetch("user-2")
        assert fetcher.calls == 4

    def test_fetch_started_before_invalidate_is_not_stored(self, monotonic):
        fetcher = CountingFetcher()
        cache = RoleCache(fetcher, clock=monotonic)
        fetcher.hook = cache.invalidate
        result = cache.get_or_fetch("user-1")
        assert result is not None
        assert cache.peek() is None


class TestRefreshAfterMutation:
    """Bounded retries until the list reflects the change."""

    def test_stops_when_reflected(self, monotonic, sleep):
        stale, fresh = BatchFetchResult(warnings=["stale"]), BatchFetchResult(warnings=["fresh"])
        fetcher = CountingFetcher([stale, fresh])
        cache = RoleCache(fetcher, clock=monotonic)

        result, ok = fncRefreshAfterMutation(cache, "user-1", lambda r: r is fresh,
                                             policy=RetryPolicy(3, 2.0, 2.0), sleep=sleep)
        assert ok
        assert result is fresh
        assert sleep.calls == [2.0, 4.0]
        assert fetcher.calls == 2

    def test_gives_up_after_attempts(self, monotonic, sleep):
        fetcher = CountingFetcher()
        cache = RoleCache(fetcher, clock=monotonic)
        result, ok = fncRefreshAfterMutation(cache, "user-1", lambda r: False,
                                             policy=RetryPolicy(3, 1.0, 3.0), sleep=sleep)
        assert not ok
        assert result is not None
        assert sleep.calls == [1.0, 3.0, 9.0]
        assert fetcher.calls == 3

    def test_retry_policy_from_config(self):
        policy = RetryPolicy.from_config({"refresh": {"attempts": 0, "initial_delay_seconds": 0.5, "backoff": 1}})
        assert policy.attempts == 1
        assert policy.delay_before(3) == 0.5

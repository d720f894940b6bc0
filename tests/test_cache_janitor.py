import time

from cache_janitor import MIN_INTERVAL_SECONDS, CacheJanitor
from cache_keys import CacheKey


def _store(cache, prefix):
    return cache.store(CacheKey(digest=(prefix * 64)[:64], extension=".jpg"), b"data")


class TestCacheJanitor:
    def test_sweep_uses_configured_age(self, cache):
        _store(cache, "a1")
        janitor = CacheJanitor(cache, max_age_days=30)
        assert janitor.sweep() == 0
        assert janitor.last_deleted == 0

    def test_sweep_with_explicit_age(self, cache):
        path = _store(cache, "a1")
        janitor = CacheJanitor(cache, max_age_days=30)
        time.sleep(0.01)
        assert janitor.sweep(0) == 1
        assert not path.exists()
        assert janitor.last_deleted == 1

    def test_negative_age_is_clamped(self, cache):
        assert CacheJanitor(cache, max_age_days=-5).max_age_days == 0

    def test_disabled_without_interval(self, cache):
        janitor = CacheJanitor(cache, max_age_days=30)
        assert janitor.start() is False
        assert janitor.running is False

    def test_start_and_stop(self, cache):
        janitor = CacheJanitor(cache, max_age_days=30, interval=1)
        try:
            assert janitor.start() is True
            assert janitor.running is True
            assert janitor.start() is False
        finally:
            janitor.stop()
        assert janitor.running is False

    def test_short_interval_is_raised_to_minimum(self, cache):
        janitor = CacheJanitor(cache, max_age_days=30, interval=5)
        assert janitor._interval == MIN_INTERVAL_SECONDS

"""
Tests for CleanupScheduler lifecycle, sweeping and background refresh.
"""

import logging
import time

import pytest

from dashboard_cache import CleanupScheduler, DataCache


@pytest.fixture
def sweepers():
    """Collect schedulers created by a test and stop them afterwards."""
    created = []
    yield created
    for sweeper in created:
        sweeper.stop(wait=False)


class TestLifecycle:
    def test_not_started_on_construction(self, cache, sweepers):
        sweeper = CleanupScheduler(cache)
        sweepers.append(sweeper)
        assert sweeper.running is False

    def test_start_and_stop(self, cache, sweepers):
        sweeper = CleanupScheduler(cache, interval_seconds=60)
        sweepers.append(sweeper)

        sweeper.start()
        assert sweeper.running is True

        sweeper.stop()
        assert sweeper.running is False

    def test_start_and_stop_are_idempotent(self, cache, sweepers):
        sweeper = CleanupScheduler(cache, interval_seconds=60)
        sweepers.append(sweeper)

        sweeper.start()
        sweeper.start()
        assert sweeper.running

        sweeper.stop()
        sweeper.stop()
        assert not sweeper.running

    def test_restart_after_stop(self, cache, sweepers):
        sweeper = CleanupScheduler(cache, interval_seconds=60)
        sweepers.append(sweeper)

        sweeper.start()
        sweeper.stop()
        sweeper.start()
        assert sweeper.running

    def test_context_manager(self, cache):
        with CleanupScheduler(cache, interval_seconds=60) as sweeper:
            assert sweeper.running
        assert not sweeper.running

    def test_rejects_non_positive_interval(self, cache):
        with pytest.raises(ValueError):
            CleanupScheduler(cache, interval_seconds=0)


class TestSweeping:
    def test_run_once(self, cache, clock):
        """Test a synchronous sweep removes only expired entries."""
        cache.set("old", 1, ttl=1)
        cache.set("new", 2, ttl=100)
        clock.advance(5)

        assert CleanupScheduler(cache).run_once() == 1
        assert cache.keys() == ["new"]

    def test_run_once_with_nothing_expired(self, cache, caplog):
        cache.set("k", 1, ttl=100)

        with caplog.at_level(logging.INFO, logger="dashboard_cache"):
            assert CleanupScheduler(cache).run_once() == 0

        assert "Cleaned up" not in caplog.text

    def test_periodic_sweep(self, sweepers):
        """Test that the background job removes expired entries on its own."""
        cache = DataCache()
        cache.set("short", 1, ttl=0.05)
        cache.set("long", 2, ttl=60)

        sweeper = CleanupScheduler(cache, interval_seconds=0.1)
        sweepers.append(sweeper)
        sweeper.start()

        time.sleep(0.5)

        assert cache.keys() == ["long"]

    def test_sweep_failure_is_logged(self, cache, monkeypatch, caplog):
        def broken():
            raise RuntimeError("sweep exploded")

        monkeypatch.setattr(cache, "cleanup_expired", broken)

        with caplog.at_level(logging.ERROR, logger="dashboard_cache"):
            CleanupScheduler(cache)._sweep_job()

        assert "Cache cleanup failed: sweep exploded" in caplog.text


class TestStatsReport:
    def test_stats_job_logs(self, cache, caplog):
        cache.set("a", "x" * 100)

        with caplog.at_level(logging.INFO, logger="dashboard_cache"):
            CleanupScheduler(cache, stats_interval=300)._stats_job()

        assert "Cache stats: 1 entries (1 active" in caplog.text

    def test_stats_job_registered(self, cache, sweepers):
        sweeper = CleanupScheduler(cache, interval_seconds=60, stats_interval=300)
        sweepers.append(sweeper)
        sweeper.start()

        job_ids = {job.id for job in sweeper._scheduler.get_jobs()}
        assert job_ids == {"cache_cleanup", "cache_stats"}


class TestBackgroundRefresh:
    """Critical keys kept warm by the cache_refresh job."""

    def test_refresh_job_registered(self, cache, sweepers):
        sweeper = CleanupScheduler(
            cache, interval_seconds=60, refresh_loaders={"dashboard-data": lambda: 1}
        )
        sweepers.append(sweeper)
        sweeper.start()

        job_ids = {job.id for job in sweeper._scheduler.get_jobs()}
        assert job_ids == {"cache_cleanup", "cache_refresh"}

    def test_no_refresh_job_without_loaders(self, cache, sweepers):
        sweeper = CleanupScheduler(cache, interval_seconds=60)
        sweepers.append(sweeper)
        sweeper.start()

        job_ids = {job.id for job in sweeper._scheduler.get_jobs()}
        assert job_ids == {"cache_cleanup"}

    def test_refresh_once_reloads_only_stale_keys(self, cache, clock):
        """Test that entries older than the threshold are reloaded, fresh ones kept."""
        calls = []

        def loader(key, value):
            def load():
                calls.append(key)
                return value

            return load

        cache.set("dashboard-old", "v1", ttl=3600)
        clock.advance(500)
        cache.set("dashboard-new", "v1", ttl=3600)

        sweeper = CleanupScheduler(
            cache,
            refresh_loaders={
                "dashboard-old": loader("dashboard-old", "v2"),
                "dashboard-new": loader("dashboard-new", "v2"),
                "dashboard-missing": loader("dashboard-missing", "v2"),
            },
            staleness_threshold=480,
        )
        results = sweeper.refresh_once()

        assert [(r.key, r.refreshed) for r in results] == [
            ("dashboard-old", True),
            ("dashboard-new", False),
            ("dashboard-missing", True),
        ]
        assert sorted(calls) == ["dashboard-missing", "dashboard-old"]
        assert cache.get("dashboard-old").data == "v2"
        assert cache.get("dashboard-new").data == "v1"

    def test_periodic_refresh(self, sweepers):
        """Test that the background job loads missing keys on its own."""
        calls = {"count": 0}

        async def load_dashboard():
            calls["count"] += 1
            return {"widgets": 3}

        cache = DataCache()
        sweeper = CleanupScheduler(
            cache,
            interval_seconds=60,
            refresh_loaders={"dashboard-data": load_dashboard},
            refresh_interval=0.1,
        )
        sweepers.append(sweeper)
        sweeper.start()

        time.sleep(0.5)

        assert calls["count"] >= 1
        assert cache.get("dashboard-data").data == {"widgets": 3}

    def test_loader_failure_is_reported(self, cache, caplog):
        def broken():
            raise RuntimeError("api down")

        sweeper = CleanupScheduler(cache, refresh_loaders={"dashboard-data": broken})

        with caplog.at_level(logging.INFO, logger="dashboard_cache"):
            sweeper._refresh_job()

        assert "Background refresh: 0 refreshed, 1 failed" in caplog.text
        assert cache.get("dashboard-data") is None

    def test_refresh_failure_is_logged(self, cache, monkeypatch, caplog):
        def broken(*args, **kwargs):
            raise RuntimeError("refresh exploded")

        sweeper = CleanupScheduler(cache, refresh_loaders={"dashboard-data": lambda: 1})
        monkeypatch.setattr(sweeper, "refresh_once", broken)

        with caplog.at_level(logging.ERROR, logger="dashboard_cache"):
            sweeper._refresh_job()

        assert "Background refresh failed: refresh exploded" in caplog.text

    def test_quiet_when_everything_fresh(self, cache, caplog):
        cache.set("dashboard-data", 1)
        sweeper = CleanupScheduler(cache, refresh_loaders={"dashboard-data": lambda: 2})

        with caplog.at_level(logging.INFO, logger="dashboard_cache"):
            sweeper._refresh_job()

        assert "Background refresh" not in caplog.text
        assert cache.get("dashboard-data").data == 1

    def test_rejects_non_positive_refresh_interval(self, cache):
        with pytest.raises(ValueError):
            CleanupScheduler(
                cache, refresh_loaders={"dashboard-data": lambda: 1}, refresh_interval=0
            )


if __name__ == "__main__":
    pytest.main([__file__, "-v"])

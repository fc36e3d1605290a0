"""
Unit tests for reference cache warm-up and background refresh.
"""

import asyncio
import pytest
from unittest.mock import AsyncMock, MagicMock

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_cloaking.app.caching.cache_store import CacheStore
from service_cloaking.app.caching.reference_data import DAY, ReferenceDataset
from service_cloaking.app.caching.refresh_scheduler import RefreshScheduler
from service_cloaking.app.models import CacheState, UpstreamResponse
from shared.errors import UpstreamHTTPError


DATASETS = [
    ReferenceDataset("countries", "/countries", 1 * DAY),
    ReferenceDataset("devices", "/devices", 7 * DAY),
    ReferenceDataset("languages", "/languages", 30 * DAY),
]


class GatedSleep:
    """Sleep stand-in: lets ``passes`` calls through, then blocks until released."""

    def __init__(self, passes: int = 0):
        self.passes = passes
        self.delays = []
        self.release = asyncio.Event()

    async def __call__(self, delay: float):
        self.delays.append(delay)
        if len(self.delays) > self.passes:
            await self.release.wait()


def success(data):
    return UpstreamResponse(status="success", data=data, message="ok")


async def settle(turns: int = 20):
    for _ in range(turns):
        await asyncio.sleep(0)


class TestRefreshScheduler:
    """Test cases for RefreshScheduler."""

    @pytest.fixture
    def store(self):
        return CacheStore()

    @pytest.fixture
    def client(self):
        client = MagicMock()

        async def call(endpoint, fields=None):
            await asyncio.sleep(0)
            return success([{"id": endpoint}])

        client.call = AsyncMock(side_effect=call)
        return client

    @pytest.fixture
    def sleep(self):
        return GatedSleep()

    @pytest.fixture
    def scheduler(self, store, client, sleep):
        return RefreshScheduler(store, client, datasets=DATASETS, sleep=sleep)

    @pytest.mark.asyncio
    async def test_warmup_populates_every_key(self, scheduler, store, client):
        summary = await scheduler.warmup()

        assert summary["planned"] == 3
        assert sorted(summary["refreshed"]) == ["countries", "devices", "languages"]
        assert summary["errors"] == {}
        assert store.get("devices") == [{"id": "/devices"}]
        assert store.peek("countries").ttl_seconds == 1 * DAY
        assert store.peek("languages").ttl_seconds == 30 * DAY
        assert client.call.await_count == 3

    @pytest.mark.asyncio
    async def test_warmup_skips_fresh_keys(self, scheduler, store, client):
        """Only missing or stale keys are fetched unless forced."""
        store.set("countries", ["cached"], DAY)

        summary = await scheduler.warmup()

        assert summary["skipped"] == ["countries"]
        assert store.get("countries") == ["cached"]
        assert client.call.await_count == 2

        forced = await scheduler.refresh_all()
        assert len(forced["refreshed"]) == 3
        assert store.get("countries") == [{"id": "/countries"}]

    @pytest.mark.asyncio
    async def test_warmup_continues_past_failures(self, scheduler, store, client):
        """One failing key is logged and skipped; the rest are cached."""
        async def call(endpoint, fields=None):
            if endpoint == "/devices":
                raise UpstreamHTTPError(endpoint, 503, "down", attempts=5)
            return success([endpoint])

        client.call.side_effect = call

        summary = await scheduler.warmup()

        assert "devices" in summary["errors"]
        assert "503" in summary["errors"]["devices"]
        assert sorted(summary["refreshed"]) == ["countries", "languages"]
        assert store.get("devices") is None
        assert store.get("countries") == ["/countries"]

    @pytest.mark.asyncio
    async def test_empty_results_are_not_cached(self, scheduler, store, client):
        client.call.side_effect = None
        client.call.return_value = success([])

        summary = await scheduler.warmup()

        assert sorted(summary["empty"]) == ["countries", "devices", "languages"]
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_failed_refresh_keeps_previous_entry(self, scheduler, store, client):
        """A failed or rejected refresh never clears what is cached."""
        store.set("countries", ["US"], DAY)
        job = scheduler.jobs["countries"]

        client.call.side_effect = UpstreamHTTPError("/countries", 500, "boom")
        assert await scheduler.refresh_job(job) == "error"
        assert store.get("countries") == ["US"]
        assert job.last_result == "error"
        assert "500" in job.last_error

        client.call.side_effect = None
        client.call.return_value = UpstreamResponse(status="error", data=None, message="quota")
        assert await scheduler.refresh_job(job) == "empty"
        assert store.get("countries") == ["US"]

    @pytest.mark.asyncio
    async def test_ensure_initialized_is_single_flight(self, scheduler, client):
        """Concurrent first callers share one warm-up."""
        assert scheduler.state is CacheState.UNINITIALIZED

        await asyncio.gather(*(scheduler.ensure_initialized() for _ in range(5)))

        assert scheduler.state is CacheState.READY
        assert scheduler.is_ready
        assert client.call.await_count == 3

        await scheduler.ensure_initialized()
        assert client.call.await_count == 3

        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_failed_initialization_can_be_retried(self, scheduler):
        scheduler.warmup = AsyncMock(side_effect=RuntimeError("boom"))

        with pytest.raises(RuntimeError):
            await scheduler.ensure_initialized()
        assert scheduler.state is CacheState.UNINITIALIZED

        scheduler.warmup = AsyncMock(return_value={})
        await scheduler.ensure_initialized()
        assert scheduler.state is CacheState.READY

        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_auto_refresh_runs_each_job_on_its_interval(self, store, client):
        """Each key refreshes on min(ttl / 2, max interval)."""
        sleep = GatedSleep(passes=3)
        scheduler = RefreshScheduler(
            store, client, datasets=DATASETS, max_refresh_interval=3600, sleep=sleep
        )

        scheduler.start_auto_refresh()
        await settle()

        assert sorted(sleep.delays) == [3600.0] * 6
        assert client.call.await_count == 3
        assert len(store) == 3

        await scheduler.stop()

    def test_refresh_interval_is_capped_by_ttl(self, store, client):
        short = ReferenceDataset("countries", "/countries", 600)
        scheduler = RefreshScheduler(store, client, datasets=[short], max_refresh_interval=3600)

        assert scheduler.jobs["countries"].interval_seconds == 300.0

    @pytest.mark.asyncio
    async def test_stop_cancels_refresh_tasks(self, scheduler, sleep):
        await scheduler.ensure_initialized()
        tasks = list(scheduler._tasks.values())
        assert len(tasks) == 3
        assert all(job["running"] for job in scheduler.describe()["jobs"])

        await scheduler.stop()

        assert all(task.cancelled() for task in tasks)
        assert scheduler.state is CacheState.STOPPED
        assert not any(job["running"] for job in scheduler.describe()["jobs"])

    @pytest.mark.asyncio
    async def test_no_warmup_after_stop(self, scheduler, client):
        await scheduler.stop()
        await scheduler.ensure_initialized()

        assert scheduler.state is CacheState.STOPPED
        client.call.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_clear_all(self, scheduler, store):
        await scheduler.warmup()
        assert scheduler.clear_all() == 3
        assert len(store) == 0

    def test_built_outside_event_loop(self, store, client):
        """A scheduler created before the server loop starts initializes inside it."""
        scheduler = RefreshScheduler(store, client, datasets=DATASETS, sleep=lambda delay: asyncio.sleep(3600))
        assert scheduler._init_lock is None

        async def run():
            await asyncio.gather(scheduler.ensure_initialized(), scheduler.ensure_initialized())
            state = scheduler.state
            await scheduler.stop()
            return state

        assert asyncio.run(run()) is CacheState.READY
        assert client.call.await_count == 3

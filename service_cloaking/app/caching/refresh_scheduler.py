"""
Warm-up and background refresh of the reference-data cache.
"""

import asyncio
from typing import Any, Dict, Iterable, List, Optional, TYPE_CHECKING

from shared.logging import get_logger
from shared.retry import SleepFunc

from .cache_store import CacheStore
from .reference_data import REFERENCE_DATASETS, ReferenceDataset
from ..models import CacheState, RefreshJob, UpstreamResponse

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from ..adapters.cloaking_client import CloakingApiClient
    from shared.metrics import MetricsCollector


def has_items(data: Any) -> bool:
    """True for a non-empty list or mapping; empty payloads are never cached."""
    return isinstance(data, (list, dict)) and len(data) > 0


def is_cacheable(response: UpstreamResponse) -> bool:
    return response.ok and has_items(response.data)


class RefreshScheduler:
    """Keeps the reference-data keys populated in the background.

    Lifecycle is ``UNINITIALIZED -> WARMING -> READY``; ``ensure_initialized``
    is single-flight, so concurrent first requests share one warm-up. Each key
    has one ``asyncio.Lock`` that serializes its refreshes and cache-miss
    fetches, which keeps writes for a key in start order.
    """

    def __init__(
        self,
        store: CacheStore,
        client: "CloakingApiClient",
        *,
        datasets: Iterable[ReferenceDataset] = REFERENCE_DATASETS,
        max_refresh_interval: float = 3600,
        warm_concurrency: int = 3,
        metrics: Optional["MetricsCollector"] = None,
        sleep: Optional[SleepFunc] = None,
    ):
        self.store = store
        self.client = client
        self.metrics = metrics
        self.logger = get_logger("cloaking.refresh_scheduler")

        self.jobs: Dict[str, RefreshJob] = {
            dataset.key: RefreshJob(
                cache_key=dataset.key,
                endpoint=dataset.endpoint,
                interval_seconds=dataset.refresh_interval(max_refresh_interval),
                ttl_seconds=dataset.ttl_seconds,
            )
            for dataset in datasets
        }

        self._state = CacheState.UNINITIALIZED
        self._init_lock: Optional[asyncio.Lock] = None
        self._key_locks: Dict[str, asyncio.Lock] = {}
        self._warm_concurrency = max(1, warm_concurrency)
        self._tasks: Dict[str, asyncio.Task] = {}
        self._sleep = sleep or asyncio.sleep

    @property
    def state(self) -> CacheState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is CacheState.READY

    def key_lock(self, key: str) -> asyncio.Lock:
        """Lock guarding every upstream fetch for ``key``."""
        lock = self._key_locks.get(key)
        if lock is None:
            lock = self._key_locks[key] = asyncio.Lock()
        return lock

    async def ensure_initialized(self) -> None:
        """Warm the cache and start auto-refresh exactly once."""
        if self._state in (CacheState.READY, CacheState.STOPPED):
            return

        if self._init_lock is None:
            self._init_lock = asyncio.Lock()

        async with self._init_lock:
            if self._state in (CacheState.READY, CacheState.STOPPED):
                return

            self.logger.info("Initializing cache system")
            self._state = CacheState.WARMING
            try:
                await self.warmup()
                self.start_auto_refresh()
            except BaseException:
                self._state = CacheState.UNINITIALIZED
                raise

            self._state = CacheState.READY
            self.logger.info("Cache system initialized")

    async def warmup(self, force: bool = False) -> Dict[str, Any]:
        """Fetch every reference list once.

        Fresh keys are skipped unless ``force`` is set. Per-key failures are
        logged and reported in the summary; they never abort the warm-up.
        """
        self.logger.info("Starting cache warmup", force=force, keys=len(self.jobs))
        semaphore = asyncio.Semaphore(self._warm_concurrency)

        async def _warm(job: RefreshJob) -> str:
            async with semaphore:
                if not force and self.store.is_fresh(job.cache_key):
                    self.logger.debug("Cache already valid", key=job.cache_key)
                    return "skipped"
                return await self.refresh_job(job)

        jobs = list(self.jobs.values())
        results = await asyncio.gather(*(_warm(job) for job in jobs), return_exceptions=True)

        summary: Dict[str, Any] = {
            "planned": len(jobs),
            "refreshed": [],
            "skipped": [],
            "empty": [],
            "errors": {},
        }
        for job, outcome in zip(jobs, results):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                summary["errors"][job.cache_key] = str(outcome)
            elif outcome == "error":
                summary["errors"][job.cache_key] = job.last_error or "unknown error"
            else:
                summary[outcome].append(job.cache_key)

        self.logger.info(
            "Cache warmup completed",
            refreshed=len(summary["refreshed"]),
            skipped=len(summary["skipped"]),
            empty=len(summary["empty"]),
            errors=len(summary["errors"]),
        )
        return summary

    async def refresh_job(self, job: RefreshJob) -> str:
        """Re-fetch one key. Returns ``refreshed``, ``empty`` or ``error``.

        A failed or empty fetch leaves the previous entry untouched.
        """
        async with self.key_lock(job.cache_key):
            job.last_run_at = self.store.now()
            try:
                response = await self.client.call(job.endpoint, {})
            except Exception as exc:
                job.last_result = "error"
                job.last_error = str(exc)
                self.logger.error(
                    "Error refreshing cache",
                    key=job.cache_key,
                    endpoint=job.endpoint,
                    error=str(exc),
                )
                self._record_refresh(job.cache_key, "error")
                return "error"

            if not is_cacheable(response):
                job.last_result = "empty"
                job.last_error = None
                self.logger.warning(
                    "Upstream returned no reference data; keeping previous entry",
                    key=job.cache_key,
                    status=response.status,
                    message=response.message,
                )
                self._record_refresh(job.cache_key, "empty")
                return "empty"

            self.store.set(job.cache_key, response.data, job.ttl_seconds)
            job.last_result = "refreshed"
            job.last_error = None
            self._record_refresh(job.cache_key, "refreshed")
            return "refreshed"

    def start_auto_refresh(self) -> None:
        """Start one background task per job; running tasks are left alone."""
        for key, job in self.jobs.items():
            task = self._tasks.get(key)
            if task is not None and not task.done():
                continue
            self._tasks[key] = asyncio.create_task(self._refresh_loop(job), name=f"cache-refresh:{key}")
        self.logger.info("Auto refresh started", jobs=len(self._tasks))

    async def _refresh_loop(self, job: RefreshJob) -> None:
        while True:
            await self._sleep(job.interval_seconds)
            self.logger.debug("Auto refreshing cache", key=job.cache_key)
            await self.refresh_job(job)

    async def stop(self) -> None:
        """Cancel background refresh tasks."""
        tasks: List[asyncio.Task] = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._state = CacheState.STOPPED
        self.logger.info("Auto refresh stopped", cancelled=len(tasks))

    async def refresh_all(self) -> Dict[str, Any]:
        """Operator action: re-fetch every key, ignoring freshness."""
        return await self.warmup(force=True)

    def clear_all(self) -> int:
        """Operator action: drop every cached entry."""
        return self.store.clear_all()

    def describe(self) -> Dict[str, Any]:
        return {
            "state": self._state.value,
            "jobs": [
                {
                    "key": job.cache_key,
                    "endpoint": job.endpoint,
                    "interval_seconds": job.interval_seconds,
                    "ttl_seconds": job.ttl_seconds,
                    "last_run_at": job.last_run_at,
                    "last_result": job.last_result,
                    "running": key in self._tasks and not self._tasks[key].done(),
                }
                for key, job in self.jobs.items()
            ],
        }

    def _record_refresh(self, key: str, result: str) -> None:
        if not self.metrics:
            return
        self.metrics.increment_counter("cache_refresh_total", cache_key=key, result=result)
        self.metrics.set_gauge("cache_entries", len(self.store))

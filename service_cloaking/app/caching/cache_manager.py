"""
Cache-aware access to reference data, plus the operator cache controls.
"""

from typing import Any, Dict, Optional, TYPE_CHECKING

from shared.logging import get_logger

from .cache_store import CacheStore
from .reference_data import get_dataset, ttl_for
from .refresh_scheduler import RefreshScheduler, is_cacheable
from ..models import UpstreamResponse

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from ..adapters.cloaking_client import CloakingApiClient
    from shared.metrics import MetricsCollector


class CacheManager:
    """Serves reference-data reads from the cache, falling back to the upstream."""

    def __init__(
        self,
        store: CacheStore,
        client: "CloakingApiClient",
        scheduler: RefreshScheduler,
        *,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.store = store
        self.client = client
        self.scheduler = scheduler
        self.metrics = metrics
        self.logger = get_logger("cloaking.cache_manager")

    async def get_cached_data(self, key: str, endpoint: Optional[str] = None) -> UpstreamResponse:
        """
        Return reference data for ``key``.

        A hit never touches the network. A miss triggers exactly one upstream
        call per key at a time; concurrent callers for the same key wait and
        then read what the first caller stored. Failures and empty lists are
        not cached and come back as a soft ``error`` result with no data, so
        callers can tell "try again later" apart from "no items".
        """
        endpoint = endpoint or self._endpoint_for(key)
        await self.scheduler.ensure_initialized()

        cached = self.store.get(key)
        if cached is not None:
            self._record(key, hit=True)
            return self._cached_response(key, cached)

        self._record(key, hit=False)
        async with self.scheduler.key_lock(key):
            # Another caller may have filled the key while we waited.
            entry = self.store.peek(key)
            if entry is not None and entry.is_fresh(self.store.now()):
                return self._cached_response(key, entry.value)

            self.logger.info("Cache miss, fetching from API", key=key, endpoint=endpoint)
            try:
                response = await self.client.call(endpoint, {})
            except Exception as exc:
                self.logger.error("API request failed", key=key, endpoint=endpoint, error=str(exc))
                return self._failure(key)

            if is_cacheable(response):
                self.store.set(key, response.data, ttl_for(key))
                return response

        self.logger.warning("API returned no data", key=key, status=response.status)
        return self._failure(key)

    async def warmup_cache(self) -> Dict[str, Any]:
        """Force a full re-warm of every reference key."""
        return await self.scheduler.refresh_all()

    def clear_all_cache(self) -> int:
        """Drop every cached entry."""
        return self.scheduler.clear_all()

    def get_cache_stats(self) -> Dict[str, Any]:
        """Get comprehensive cache statistics."""
        stats = self.store.stats()
        stats["scheduler"] = self.scheduler.describe()
        return stats

    @staticmethod
    def _cached_response(key: str, data: Any) -> UpstreamResponse:
        return UpstreamResponse(status="success", data=data, message=f"Cached {key} data")

    @staticmethod
    def _failure(key: str) -> UpstreamResponse:
        return UpstreamResponse(status="error", data=[], message=f"Failed to fetch {key} data")

    @staticmethod
    def _endpoint_for(key: str) -> str:
        dataset = get_dataset(key)
        return dataset.endpoint if dataset else f"/{key}"

    def _record(self, key: str, hit: bool) -> None:
        if not self.metrics:
            return
        self.metrics.increment_counter("cache_hits_total" if hit else "cache_misses_total", cache_key=key)

"""
Cloaking Gateway service.
"""

import asyncio
from typing import Any, Dict, Optional

from fastapi import Body, Depends, Query, Request

from shared.base_service import BaseService
from shared.config import DEFAULT_JWT_SECRET, ServiceConfig
from shared.errors import ConfigurationError, GatewayException, UpstreamError, UpstreamTransportError
from shared.retry import SleepFunc

from .adapters.cloaking_client import CloakingApiClient
from .caching.cache_manager import CacheManager
from .caching.cache_store import CacheStore
from .caching.reference_data import REFERENCE_DATASETS, ReferenceDataset
from .caching.refresh_scheduler import RefreshScheduler
from .domain import payloads
from .domain.auth_middleware import AuthContext, AuthMiddleware
from .domain.upstream_gateway import UpstreamGateway, relay
from .models import UpstreamResponse


class CloakingGatewayService(BaseService):
    """Admin API in front of the cloaking provider."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        *,
        client: Optional[CloakingApiClient] = None,
        store: Optional[CacheStore] = None,
        sleep: Optional[SleepFunc] = None,
    ):
        super().__init__("cloaking", 3001, config)

        if not self.config.cloaking_api_key:
            self.logger.warning(
                "CLOAKING_API_KEY not set; upstream endpoints will fail until it is configured"
            )
        if self.config.jwt_secret == DEFAULT_JWT_SECRET:
            self.logger.warning("Using default JWT_SECRET")

        self.client = client or CloakingApiClient(
            self.config.cloaking_api_base_url,
            self.config.cloaking_api_key,
            timeout=self.config.request_timeout,
            max_attempts=self.config.max_attempts,
            backoff_seconds=self.config.backoff_seconds,
            metrics=self.metrics,
            sleep=sleep,
        )
        self.store = store or CacheStore()
        self.scheduler = RefreshScheduler(
            self.store,
            self.client,
            max_refresh_interval=self.config.cache_refresh_interval,
            warm_concurrency=self.config.cache_warm_concurrency,
            metrics=self.metrics,
            sleep=sleep,
        )
        self.cache_manager = CacheManager(self.store, self.client, self.scheduler, metrics=self.metrics)
        self.gateway = UpstreamGateway(self.client)
        self.auth_middleware = AuthMiddleware(self.config.jwt_secret, self.config.jwt_algorithm)
        self._warm_task: Optional[asyncio.Task] = None

        self._setup_flow_routes()
        self._setup_filter_routes()
        self._setup_report_routes()
        self._setup_reference_routes()
        self._setup_cache_routes()

        self.app.state.cloaking_service = self

    async def on_startup(self) -> None:
        # Warm-up runs in the background; reference reads wait on the
        # scheduler until it finishes.
        if self.config.warm_on_startup:
            self._warm_task = asyncio.create_task(
                self.scheduler.ensure_initialized(), name="cache-warmup"
            )

    async def on_shutdown(self) -> None:
        if self._warm_task is not None and not self._warm_task.done():
            self._warm_task.cancel()
            await asyncio.gather(self._warm_task, return_exceptions=True)
        self._warm_task = None
        await self.scheduler.stop()
        await self.client.close()

    async def _forward(
        self,
        request: Request,
        endpoint: str,
        fields: Dict[str, Any],
        failure_message: str,
    ) -> UpstreamResponse:
        """Write-through call; upstream errors propagate to the exception handler."""
        request.state.failure_message = failure_message
        return await self.gateway.forward(endpoint, fields)

    def _status_for(self, exc: GatewayException) -> int:
        if isinstance(exc, UpstreamTransportError) and exc.timed_out:
            return 504
        return exc.status_code

    def _message_for(self, request: Request, exc: GatewayException) -> Optional[str]:
        if isinstance(exc, (UpstreamError, ConfigurationError)):
            return getattr(request.state, "failure_message", None)
        return None

    async def _check_dependencies(self) -> Dict[str, str]:
        return {
            "upstream_api_key": "configured" if self.config.cloaking_api_key else "missing",
            "reference_cache": self.scheduler.state.value,
        }

    def _setup_flow_routes(self):
        """Flow CRUD, forwarded to the upstream."""
        authorize = Depends(self.auth_middleware)

        @self.app.get("/api/flows")
        async def list_flows(
            request: Request,
            page: int = Query(1, ge=1),
            per_page: int = Query(10, ge=1),
            status: str = Query(""),
            search: str = Query(""),
            auth: AuthContext = authorize,
        ):
            fields = payloads.listing_fields(page, per_page, status=status, search=search)
            data = await self._forward(request, "/flows", fields, "Failed to fetch flows")
            return relay(data, [], include_total=True)

        @self.app.get("/api/flows/{flow_id}")
        async def get_flow(flow_id: int, request: Request, auth: AuthContext = authorize):
            data = await self._forward(
                request, "/flows/details", {"flow_id": flow_id}, "Failed to fetch flow details"
            )
            return relay(data, {})

        @self.app.post("/api/flows")
        async def create_flow(
            request: Request,
            form: Dict[str, Any] = Body(...),
            auth: AuthContext = authorize,
        ):
            fields = payloads.flow_fields(form)
            data = await self._forward(request, "/flows/create", fields, "Failed to create flow")
            return relay(data, [])

        @self.app.put("/api/flows/{flow_id}")
        async def update_flow(
            flow_id: int,
            request: Request,
            form: Dict[str, Any] = Body(...),
            auth: AuthContext = authorize,
        ):
            fields = payloads.flow_fields(form, flow_id=flow_id)
            data = await self._forward(request, "/flows/update", fields, "Failed to update flow")
            return relay(data, [])

        @self.app.delete("/api/flows/{flow_id}")
        async def delete_flow(flow_id: int, request: Request, auth: AuthContext = authorize):
            data = await self._forward(request, "/flows/delete", {"flow_id": flow_id}, "Failed to delete flow")
            return relay(data, {})

        for action, failure in (
            ("restore", "Failed to restore flow"),
            ("activate", "Failed to activate flow"),
            ("pause", "Failed to pause flow"),
            ("download", "Failed to download flow integration"),
        ):
            self._add_flow_action(action, failure)

    def _add_flow_action(self, action: str, failure_message: str) -> None:
        endpoint = f"/flows/{action}"

        async def flow_action(
            flow_id: int,
            request: Request,
            auth: AuthContext = Depends(self.auth_middleware),
        ):
            data = await self._forward(request, endpoint, {"flow_id": flow_id}, failure_message)
            return relay(data, {})

        self.app.add_api_route(
            f"/api/flows/{{flow_id}}/{action}",
            flow_action,
            methods=["POST"],
            name=f"{action}_flow",
        )

    def _setup_filter_routes(self):
        """Filter CRUD, forwarded to the upstream."""
        authorize = Depends(self.auth_middleware)

        @self.app.get("/api/filters")
        async def list_filters(
            request: Request,
            page: int = Query(1, ge=1),
            per_page: int = Query(10, ge=1),
            status: str = Query(""),
            list_type: str = Query(""),
            search: str = Query(""),
            date_ranges: str = Query(""),
            auth: AuthContext = authorize,
        ):
            fields = payloads.listing_fields(
                page,
                per_page,
                status=status,
                list_type=list_type,
                search=search,
                date_ranges=date_ranges,
            )
            data = await self._forward(request, "/filters", fields, "Failed to fetch filters")
            return relay(data, [], include_total=True)

        @self.app.get("/api/filters/{filter_id}")
        async def get_filter(filter_id: int, request: Request, auth: AuthContext = authorize):
            data = await self._forward(
                request, "/filters/details", {"filter_id": filter_id}, "Failed to fetch filter details"
            )
            return relay(data, {})

        @self.app.post("/api/filters")
        async def create_filter(
            request: Request,
            form: Dict[str, Any] = Body(...),
            auth: AuthContext = authorize,
        ):
            fields = payloads.filter_fields(form)
            data = await self._forward(request, "/filters/create", fields, "Failed to create filter")
            return relay(data, [])

        @self.app.put("/api/filters/{filter_id}")
        async def update_filter(
            filter_id: int,
            request: Request,
            form: Dict[str, Any] = Body(...),
            auth: AuthContext = authorize,
        ):
            fields = payloads.filter_fields(form, filter_id=filter_id)
            data = await self._forward(request, "/filters/update", fields, "Failed to update filter")
            return relay(data, [])

        @self.app.delete("/api/filters/{filter_id}")
        async def delete_filter(filter_id: int, request: Request, auth: AuthContext = authorize):
            data = await self._forward(
                request, "/filters/delete", {"filter_id": filter_id}, "Failed to delete filter"
            )
            return relay(data, {})

        @self.app.post("/api/filters/{filter_id}/restore")
        async def restore_filter(filter_id: int, request: Request, auth: AuthContext = authorize):
            data = await self._forward(
                request, "/filters/restore", {"filter_id": filter_id}, "Failed to restore filter"
            )
            return relay(data, {})

    def _setup_report_routes(self):
        """Statistics and click log, forwarded to the upstream."""
        authorize = Depends(self.auth_middleware)

        @self.app.post("/api/statistics")
        async def get_statistics(
            request: Request,
            body: Dict[str, Any] = Body(...),
            auth: AuthContext = authorize,
        ):
            fields = payloads.statistics_fields(body)
            data = await self._forward(request, "/statistics", fields, "Failed to fetch statistics")
            return relay(data, [])

        @self.app.post("/api/clicks")
        async def get_clicks(
            request: Request,
            body: Optional[Dict[str, Any]] = Body(None),
            auth: AuthContext = authorize,
        ):
            fields = payloads.clicks_fields(body or {})
            data = await self._forward(request, "/clicks", fields, "Failed to fetch clicks")
            return relay(data, [], include_total=True)

    def _setup_reference_routes(self):
        """Cached lookup lists: countries, devices and the rest."""
        for dataset in REFERENCE_DATASETS:
            self._add_reference_route(dataset)

    def _add_reference_route(self, dataset: ReferenceDataset) -> None:
        async def get_reference_data(auth: AuthContext = Depends(self.auth_middleware)):
            result = await self.cache_manager.get_cached_data(dataset.key, dataset.endpoint)
            return relay(result, [])

        self.app.add_api_route(
            f"/api/{dataset.key}",
            get_reference_data,
            methods=["GET"],
            name=f"get_{dataset.key}",
        )

    def _setup_cache_routes(self):
        """Operator cache controls."""
        authorize = Depends(self.auth_middleware)

        @self.app.get("/api/cache/stats")
        async def get_cache_stats(auth: AuthContext = authorize):
            return {
                "success": True,
                "data": self.cache_manager.get_cache_stats(),
                "message": "Cache statistics",
            }

        @self.app.post("/api/cache/clear")
        async def clear_cache(auth: AuthContext = authorize):
            cleared = self.cache_manager.clear_all_cache()
            self.logger.info("Cache cleared by operator", user_id=auth.user_id, cleared=cleared)
            return {
                "success": True,
                "data": {"cleared": cleared},
                "message": "All cache cleared successfully",
            }

        @self.app.post("/api/cache/refresh")
        async def refresh_cache(auth: AuthContext = authorize):
            summary = await self.cache_manager.warmup_cache()
            self.logger.info("Cache refreshed by operator", user_id=auth.user_id, errors=len(summary["errors"]))
            return {
                "success": True,
                "data": summary,
                "message": "Cache refreshed successfully",
            }


def create_app():
    """Create FastAPI application."""
    service = CloakingGatewayService()
    return service.app


if __name__ == "__main__":
    service = CloakingGatewayService()
    service.run()

"""
Write-through access to the cloaking API for mutations and detail reads.
"""

from typing import Any, Dict, Mapping, Optional, TYPE_CHECKING

from shared.logging import get_logger

from ..models import UpstreamResponse

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from ..adapters.cloaking_client import CloakingApiClient


class UpstreamGateway:
    """Forwards calls straight to the upstream; nothing here is cached.

    Errors raised by the client propagate unchanged so the HTTP layer can map
    them to a 5xx response.
    """

    def __init__(self, client: "CloakingApiClient"):
        self.client = client
        self.logger = get_logger("cloaking.upstream_gateway")

    async def forward(self, endpoint: str, fields: Optional[Mapping[str, Any]] = None) -> UpstreamResponse:
        response = await self.client.call(endpoint, fields or {})
        if not response.ok:
            self.logger.info(
                "Upstream rejected request",
                endpoint=endpoint,
                status=response.status,
                code=response.code,
                message=response.message,
            )
        return response


def relay(response: UpstreamResponse, default_data: Any = None, *, include_total: bool = False) -> Dict[str, Any]:
    """Shape an upstream reply into the JSON returned to our own callers.

    ``status``, ``message`` and ``code`` are passed through verbatim.
    """
    body: Dict[str, Any] = {
        "success": response.ok,
        "data": response.data if response.data is not None else default_data,
        "message": response.message or "Success",
        "status": response.status,
        "code": response.code,
    }
    if include_total:
        body["total"] = response.total or 0
    return body

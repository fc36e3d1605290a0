"""
Upstream cloaking API client.
"""

import asyncio
import json
import time
from typing import Any, Mapping, Optional, TYPE_CHECKING

import httpx

from shared.errors import (
    ConfigurationError,
    UpstreamDecodeError,
    UpstreamHTTPError,
    UpstreamTransportError,
)
from shared.logging import get_logger
from shared.retry import RetryConfig, SleepFunc, retry_async

from .form_encoding import encode_form
from ..models import UpstreamResponse

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


RETRYABLE_STATUS = 408

# Transport faults worth another attempt: resets, DNS failures, timeouts,
# servers hanging up mid-response and attempts that overran their deadline.
TRANSIENT_TRANSPORT_ERRORS = (
    asyncio.TimeoutError,
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
)


def is_retryable(exc: BaseException) -> bool:
    """Decide whether a failed attempt should be retried."""
    if isinstance(exc, UpstreamHTTPError):
        return exc.status >= 500 or exc.status == RETRYABLE_STATUS
    if isinstance(exc, UpstreamTransportError):
        return isinstance(exc.cause, TRANSIENT_TRANSPORT_ERRORS)
    return False


class CloakingApiClient:
    """Client for the third-party cloaking API.

    Every call is a form-encoded POST carrying the API key. Failed attempts
    are retried with linear backoff when the failure looks transient.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str],
        *,
        timeout: float = 30.0,
        max_attempts: int = 5,
        backoff_seconds: float = 2.0,
        metrics: Optional["MetricsCollector"] = None,
        sleep: Optional[SleepFunc] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.timeout = timeout
        self.metrics = metrics
        self.logger = get_logger("cloaking.upstream_client")

        self.retry_config = RetryConfig(
            max_attempts=max_attempts,
            base_delay=backoff_seconds,
            max_delay=backoff_seconds * max_attempts,
            jitter=False,
            backoff_strategy="linear",
        )
        self._sleep = sleep
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get the shared HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._transport,
                follow_redirects=True,
            )
        return self._client

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def call(self, endpoint: str, fields: Optional[Mapping[str, Any]] = None) -> UpstreamResponse:
        """Perform one logical call to the cloaking API.

        Raises ``ConfigurationError`` when no API key is set, and the
        ``Upstream*Error`` family once the retry policy gives up.
        """
        if not self.api_key:
            self.logger.error("Cloaking API key is not configured", endpoint=endpoint)
            raise ConfigurationError(
                "API key not configured",
                details={"setting": "CLOAKING_API_KEY"},
            )

        url = f"{self.base_url}{endpoint}"
        body = encode_form(self.api_key, fields or {})
        attempts = 0

        self.logger.debug(
            "Upstream request prepared",
            endpoint=endpoint,
            api_key_prefix=f"{self.api_key[:8]}...",
            body=encode_form("***", fields or {}),
        )

        async def _attempt() -> UpstreamResponse:
            nonlocal attempts
            attempts += 1
            return await self._send_once(endpoint, url, body)

        start = time.perf_counter()
        try:
            return await retry_async(
                _attempt,
                self.retry_config,
                should_retry=is_retryable,
                sleep=self._sleep,
                name=f"cloaking{endpoint.replace('/', '.')}",
            )
        except (UpstreamHTTPError, UpstreamTransportError) as exc:
            exc.attempts = attempts
            exc.details["attempts"] = attempts
            self.logger.error(
                "Upstream call failed",
                endpoint=endpoint,
                attempts=attempts,
                error=exc.message,
            )
            raise
        finally:
            if self.metrics:
                self.metrics.observe_histogram(
                    "upstream_request_duration_seconds",
                    time.perf_counter() - start,
                    endpoint=endpoint,
                )

    async def _send_once(self, endpoint: str, url: str, body: str) -> UpstreamResponse:
        """Execute a single attempt and classify its outcome.

        httpx applies ``timeout`` to each phase separately; the whole attempt
        is additionally capped at ``timeout`` so a trickling body cannot
        outlive it.
        """
        try:
            response = await asyncio.wait_for(
                self._get_client().post(
                    url,
                    content=body,
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                ),
                self.timeout,
            )
        except asyncio.TimeoutError as exc:
            self._record_attempt(endpoint, "timeout")
            self.logger.warning(
                "Upstream attempt exceeded deadline",
                endpoint=endpoint,
                timeout_seconds=self.timeout,
            )
            raise UpstreamTransportError(endpoint, exc, timed_out=True) from exc
        except httpx.TransportError as exc:
            self._record_attempt(endpoint, "transport_error")
            self.logger.warning(
                "Upstream transport error",
                endpoint=endpoint,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise UpstreamTransportError(
                endpoint,
                exc,
                timed_out=isinstance(exc, httpx.TimeoutException),
            ) from exc

        text = response.text
        if not response.is_success:
            self._record_attempt(endpoint, f"http_{response.status_code}")
            self.logger.warning(
                "Upstream responded with error status",
                endpoint=endpoint,
                status_code=response.status_code,
                response=text[:500],
            )
            raise UpstreamHTTPError(endpoint, response.status_code, text)

        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            self._record_attempt(endpoint, "decode_error")
            self.logger.error(
                "Failed to parse upstream response as JSON",
                endpoint=endpoint,
                response=text[:500],
            )
            raise UpstreamDecodeError(endpoint, text, str(exc)) from exc

        if not isinstance(payload, dict):
            self._record_attempt(endpoint, "decode_error")
            raise UpstreamDecodeError(endpoint, text, "expected a JSON object")

        self._record_attempt(endpoint, "success")
        result = UpstreamResponse.from_payload(payload)
        self.logger.debug(
            "Upstream response received",
            endpoint=endpoint,
            status=result.status,
            code=result.code,
        )
        return result

    def _record_attempt(self, endpoint: str, outcome: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("upstream_requests_total", endpoint=endpoint, outcome=outcome)

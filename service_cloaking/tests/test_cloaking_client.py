"""
Unit tests for the upstream cloaking API client.
"""

import asyncio
import pytest
import httpx
import json
from typing import List
from urllib.parse import parse_qsl

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_cloaking.app.adapters.cloaking_client import CloakingApiClient, is_retryable
from shared.errors import (
    ConfigurationError,
    UpstreamDecodeError,
    UpstreamHTTPError,
    UpstreamTransportError,
)
from shared.metrics import MetricsCollector


class RecordingSleep:
    """Async sleep stand-in that records requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


def make_client(handler, api_key="test-api-key-123", **kwargs):
    sleep = RecordingSleep()
    client = CloakingApiClient(
        "https://cloaking.example/api",
        api_key,
        transport=httpx.MockTransport(handler),
        sleep=sleep,
        **kwargs,
    )
    return client, sleep


def json_response(payload, status_code=200):
    return httpx.Response(status_code, content=json.dumps(payload))


class TestCloakingApiClient:
    """Test cases for CloakingApiClient."""

    @pytest.mark.asyncio
    async def test_success_returns_decoded_payload(self):
        """A 200 with JSON body is decoded once, no retries."""
        requests = []

        def handler(request: httpx.Request):
            requests.append(request)
            return json_response({"status": "success", "data": [{"id": 1}], "msg": "ok", "total": "3"})

        client, sleep = make_client(handler)
        result = await client.call("/flows", {"page": 1, "filter_countries": ["US"]})

        assert result.ok
        assert result.data == [{"id": 1}]
        assert result.message == "ok"
        assert result.total == 3
        assert len(requests) == 1
        assert sleep.delays == []

        request = requests[0]
        assert request.method == "POST"
        assert str(request.url) == "https://cloaking.example/api/flows"
        assert request.headers["content-type"] == "application/x-www-form-urlencoded"
        body = request.content.decode()
        assert body.startswith("api_key=test-api-key-123&")
        assert parse_qsl(body) == [
            ("api_key", "test-api-key-123"),
            ("page", "1"),
            ("filter_countries[0]", "US"),
        ]

    @pytest.mark.asyncio
    async def test_upstream_error_status_is_not_an_exception(self):
        """Application-level errors in a 200 body are returned, not raised."""
        client, _ = make_client(lambda request: json_response({"status": "error", "msg": "Flow not found", "code": 404}))

        result = await client.call("/flows/details", {"flow_id": 9})

        assert not result.ok
        assert result.message == "Flow not found"
        assert result.code == 404

    @pytest.mark.asyncio
    async def test_server_errors_retry_until_exhausted(self):
        """Five 503s mean five attempts with linear backoff, then an error."""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503, content=b"maintenance")

        client, sleep = make_client(handler)

        with pytest.raises(UpstreamHTTPError) as exc_info:
            await client.call("/countries")

        assert len(calls) == 5
        assert sleep.delays == [2.0, 4.0, 6.0, 8.0]
        assert exc_info.value.status == 503
        assert exc_info.value.attempts == 5
        assert exc_info.value.message == "API request failed: 503 maintenance"
        assert exc_info.value.details["attempts"] == 5

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failure(self):
        """A retry that succeeds returns the later response."""
        responses = [
            httpx.Response(502, content=b"bad gateway"),
            json_response({"status": "success", "data": ["US"]}),
        ]

        client, sleep = make_client(lambda request: responses.pop(0))
        result = await client.call("/countries")

        assert result.data == ["US"]
        assert sleep.delays == [2.0]

    @pytest.mark.asyncio
    async def test_request_timeout_status_is_retried(self):
        """408 is treated as transient."""
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(408, content=b"timeout")
            return json_response({"status": "success", "data": []})

        client, sleep = make_client(handler)
        result = await client.call("/browsers")

        assert result.ok
        assert len(calls) == 3
        assert sleep.delays == [2.0, 4.0]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [400, 401, 404])
    async def test_client_errors_fail_fast(self, status_code):
        """4xx other than 408 is never retried."""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(status_code, content=b"nope")

        client, sleep = make_client(handler)

        with pytest.raises(UpstreamHTTPError) as exc_info:
            await client.call("/flows/create", {"name": "x"})

        assert len(calls) == 1
        assert sleep.delays == []
        assert exc_info.value.status == status_code
        assert exc_info.value.attempts == 1

    @pytest.mark.asyncio
    async def test_connection_errors_retry_then_raise(self):
        """Connection failures are retried and surface as transport errors."""
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        client, sleep = make_client(handler, max_attempts=3)

        with pytest.raises(UpstreamTransportError) as exc_info:
            await client.call("/devices")

        assert len(calls) == 3
        assert sleep.delays == [2.0, 4.0]
        assert exc_info.value.attempts == 3
        assert not exc_info.value.timed_out
        assert isinstance(exc_info.value.cause, httpx.ConnectError)

    @pytest.mark.asyncio
    async def test_timeouts_are_flagged(self):
        """Read timeouts are retried and marked as timed out."""
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        client, sleep = make_client(handler, max_attempts=2)

        with pytest.raises(UpstreamTransportError) as exc_info:
            await client.call("/languages")

        assert exc_info.value.timed_out
        assert exc_info.value.attempts == 2

    @pytest.mark.asyncio
    async def test_attempt_is_capped_by_overall_deadline(self):
        """A response slower than the timeout ends the attempt and is retried."""
        calls = []

        async def handler(request):
            calls.append(request)
            await asyncio.sleep(5)
            return json_response({"status": "success", "data": []})

        client, sleep = make_client(handler, timeout=0.05, max_attempts=2)

        with pytest.raises(UpstreamTransportError) as exc_info:
            await client.call("/time_zones")

        assert len(calls) == 2
        assert sleep.delays == [2.0]
        assert exc_info.value.timed_out
        assert exc_info.value.attempts == 2
        assert isinstance(exc_info.value.cause, asyncio.TimeoutError)

    @pytest.mark.asyncio
    async def test_invalid_json_is_not_retried(self):
        """A 200 with a non-JSON body fails on the first attempt."""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, content=b"<html>oops</html>")

        client, sleep = make_client(handler)

        with pytest.raises(UpstreamDecodeError) as exc_info:
            await client.call("/countries")

        assert len(calls) == 1
        assert exc_info.value.message.startswith("JSON parse failed")
        assert exc_info.value.details["body_preview"] == "<html>oops</html>"

    @pytest.mark.asyncio
    async def test_non_object_json_is_a_decode_error(self):
        client, _ = make_client(lambda request: json_response(["not", "an", "object"]))

        with pytest.raises(UpstreamDecodeError):
            await client.call("/countries")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("api_key", [None, ""])
    async def test_missing_api_key_never_hits_network(self, api_key):
        """No API key means a configuration error and zero requests."""
        calls = []

        def handler(request):
            calls.append(request)
            return json_response({"status": "success", "data": []})

        client, sleep = make_client(handler, api_key=api_key)

        with pytest.raises(ConfigurationError) as exc_info:
            await client.call("/countries")

        assert exc_info.value.message == "API key not configured"
        assert calls == []
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_records_upstream_metrics(self):
        """Each attempt outcome is counted per endpoint."""
        metrics = MetricsCollector("cloaking")
        responses = [
            httpx.Response(500, content=b"boom"),
            json_response({"status": "success", "data": ["US"]}),
        ]

        client, _ = make_client(lambda request: responses.pop(0), metrics=metrics)
        await client.call("/countries")

        registry = metrics.registry
        assert registry.get_sample_value(
            "upstream_requests_total", {"endpoint": "/countries", "outcome": "http_500"}
        ) == 1.0
        assert registry.get_sample_value(
            "upstream_requests_total", {"endpoint": "/countries", "outcome": "success"}
        ) == 1.0
        assert registry.get_sample_value(
            "upstream_request_duration_seconds_count", {"endpoint": "/countries"}
        ) == 1.0

    @pytest.mark.asyncio
    async def test_close_releases_http_client(self):
        client, _ = make_client(lambda request: json_response({"status": "success", "data": []}))
        await client.call("/countries")
        assert client._client is not None

        await client.close()
        assert client._client is None


class TestRetryClassification:
    """Test cases for is_retryable."""

    def test_http_statuses(self):
        assert is_retryable(UpstreamHTTPError("/x", 500, ""))
        assert is_retryable(UpstreamHTTPError("/x", 599, ""))
        assert is_retryable(UpstreamHTTPError("/x", 408, ""))
        assert not is_retryable(UpstreamHTTPError("/x", 429, ""))
        assert not is_retryable(UpstreamHTTPError("/x", 400, ""))

    def test_transport_errors(self):
        request = httpx.Request("POST", "https://cloaking.example/api/x")
        assert is_retryable(UpstreamTransportError("/x", httpx.ConnectError("refused", request=request)))
        assert is_retryable(UpstreamTransportError("/x", httpx.RemoteProtocolError("eof", request=request)))
        assert is_retryable(UpstreamTransportError("/x", asyncio.TimeoutError()))
        assert not is_retryable(UpstreamTransportError("/x", httpx.UnsupportedProtocol("ftp", request=request)))

    def test_other_errors(self):
        assert not is_retryable(ConfigurationError("API key not configured"))
        assert not is_retryable(UpstreamDecodeError("/x", "<html>", "bad"))
        assert not is_retryable(ValueError("boom"))

import json

import httpx
import pytest

from iris.config import Settings
from iris.exceptions import ErrorKind, FallbackStrategy, RemoteCallError
from iris.services.vision_client import VisionClient


def _settings() -> Settings:
    return Settings(
        vision_endpoint="https://vision.test/",
        vision_api_key="secret",
        vision_deployment="gpt-4o",
        vision_api_version="2024-10-21",
    )


def _client(handler) -> VisionClient:
    return VisionClient(_settings(), transport=httpx.MockTransport(handler))


def _completion(content: str, finish_reason: str = "stop") -> dict:
    return {
        "model": "gpt-4o-2024-08-06",
        "choices": [{"message": {"content": content}, "finish_reason": finish_reason}],
    }


MESSAGES = [{"role": "user", "content": "describe"}]


async def _call(client: VisionClient, **kwargs):
    return await client.complete(MESSAGES, client.default_parameters(), **kwargs)


class TestComplete:
    @pytest.mark.asyncio
    async def test_success(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=_completion('{"ok": true}'))

        client = _client(handler)
        response = await _call(client, schema={"type": "object"})

        assert response.content == '{"ok": true}'
        assert response.model == "gpt-4o-2024-08-06"
        request = seen[0]
        assert request.url.path == "/openai/deployments/gpt-4o/chat/completions"
        assert request.url.params["api-version"] == "2024-10-21"
        assert request.headers["api-key"] == "secret"
        body = json.loads(request.content)
        assert body["max_tokens"] == 1500
        assert body["response_format"]["type"] == "json_schema"
        assert body["response_format"]["json_schema"]["schema"] == {"type": "object"}
        await client.close()

    @pytest.mark.asyncio
    async def test_without_schema_requests_json_object(self):
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json=_completion("{}"))

        await _call(_client(handler))
        assert bodies[0]["response_format"] == {"type": "json_object"}

    def test_default_parameter_overrides(self):
        client = VisionClient(_settings())
        params = client.default_parameters(max_tokens=800, seed=None)
        assert params.max_tokens == 800
        assert params.temperature == 0.1
        assert params.timeout == 30.0


class TestErrorClassification:
    @pytest.mark.parametrize(
        "status,body,kind,retryable",
        [
            (500, "internal error", ErrorKind.NETWORK, True),
            (503, "unavailable", ErrorKind.NETWORK, True),
            (504, "gateway timeout", ErrorKind.TIMEOUT, True),
            (400, '{"error": {"code": "content_filter"}}', ErrorKind.CONTENT_FILTERED, False),
            (400, "This model's maximum context length is 128000 tokens", ErrorKind.TOKEN_LIMIT, False),
            (401, "unauthorized", ErrorKind.VALIDATION, False),
        ],
    )
    @pytest.mark.asyncio
    async def test_http_status(self, status, body, kind, retryable):
        client = _client(lambda request: httpx.Response(status, text=body))
        with pytest.raises(RemoteCallError) as exc_info:
            await _call(client)
        assert exc_info.value.kind == kind
        assert exc_info.value.retryable is retryable
        assert exc_info.value.status_code == status

    @pytest.mark.asyncio
    async def test_rate_limit_carries_retry_after(self):
        client = _client(
            lambda request: httpx.Response(429, headers={"retry-after": "12"}, text="slow down")
        )
        with pytest.raises(RemoteCallError) as exc_info:
            await _call(client)
        assert exc_info.value.kind == ErrorKind.RATE_LIMIT
        assert exc_info.value.retry_after == 12.0

    @pytest.mark.asyncio
    async def test_timeout_is_retryable_with_reduce_detail(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(RemoteCallError) as exc_info:
            await _call(_client(handler))
        assert exc_info.value.kind == ErrorKind.TIMEOUT
        assert exc_info.value.retryable is True
        assert exc_info.value.fallback == FallbackStrategy.REDUCE_DETAIL

    @pytest.mark.asyncio
    async def test_connection_error_is_network(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(RemoteCallError) as exc_info:
            await _call(_client(handler))
        assert exc_info.value.kind == ErrorKind.NETWORK
        assert exc_info.value.fallback == FallbackStrategy.GENERIC_DESCRIPTION

    @pytest.mark.parametrize(
        "finish_reason,kind",
        [("length", ErrorKind.TOKEN_LIMIT), ("content_filter", ErrorKind.CONTENT_FILTERED)],
    )
    @pytest.mark.asyncio
    async def test_finish_reason(self, finish_reason, kind):
        client = _client(
            lambda request: httpx.Response(200, json=_completion('{"partial":', finish_reason))
        )
        with pytest.raises(RemoteCallError) as exc_info:
            await _call(client)
        assert exc_info.value.kind == kind

    @pytest.mark.asyncio
    async def test_empty_content_is_retryable(self):
        client = _client(lambda request: httpx.Response(200, json=_completion("")))
        with pytest.raises(RemoteCallError) as exc_info:
            await _call(client)
        assert exc_info.value.kind == ErrorKind.NETWORK
        assert exc_info.value.retryable is True


class TestProbe:
    @pytest.mark.asyncio
    async def test_client_error_still_counts_as_reachable(self):
        client = _client(lambda request: httpx.Response(400, text="bad request"))
        probe = await client.probe()
        assert probe["healthy"] is True
        assert probe["error"] is None
        assert await client.is_reachable()

    @pytest.mark.asyncio
    async def test_server_error_is_unhealthy(self):
        client = _client(lambda request: httpx.Response(502))
        probe = await client.probe()
        assert probe["healthy"] is False
        assert probe["error"] == "HTTP 502"

    @pytest.mark.asyncio
    async def test_connection_failure_is_unhealthy(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        assert await _client(handler).is_reachable() is False

"""Azure OpenAI style chat-completions client for structured vision output.

One call, no retry logic: failures are classified into ``RemoteCallError``
kinds so the retry policy and circuit breaker can decide what to do with them.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import httpx

from iris.config import Settings
from iris.exceptions import ErrorKind, FallbackStrategy, RemoteCallError

logger = logging.getLogger(__name__)

_CONTENT_FILTER_MARKERS = ("content_filter", "responsibleaipolicyviolation", "safety")
_TOKEN_LIMIT_MARKERS = ("maximum context length", "max_tokens", "token limit", "too many tokens")


@dataclass(frozen=True)
class CallParameters:
    max_tokens: int
    temperature: float
    timeout: float
    seed: int | None = None


@dataclass(frozen=True)
class VisionResponse:
    content: str
    model: str
    finish_reason: str | None = None


class VisionClient:
    """Async client for a single chat-completions deployment."""

    def __init__(
        self,
        settings: Settings,
        *,
        deployment: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._endpoint = settings.vision_endpoint.rstrip("/")
        self._deployment = deployment or settings.vision_deployment
        self._api_version = settings.vision_api_version
        self._strict_schema = settings.vision_strict_schema
        self._defaults = CallParameters(
            max_tokens=settings.vision_max_tokens,
            temperature=settings.vision_temperature,
            timeout=settings.vision_timeout,
            seed=settings.vision_seed,
        )
        headers = {"Content-Type": "application/json"}
        if settings.vision_api_key:
            headers["api-key"] = settings.vision_api_key
        self._client = httpx.AsyncClient(
            headers=headers,
            timeout=httpx.Timeout(
                connect=10.0,
                read=settings.vision_timeout,
                write=30.0,
                pool=30.0,
            ),
            transport=transport,
        )

    @property
    def deployment(self) -> str:
        return self._deployment

    @property
    def api_version(self) -> str:
        return self._api_version

    @property
    def url(self) -> str:
        return (
            f"{self._endpoint}/openai/deployments/{quote(self._deployment, safe='')}"
            f"/chat/completions?api-version={self._api_version}"
        )

    def default_parameters(self, **overrides: Any) -> CallParameters:
        values = {
            "max_tokens": self._defaults.max_tokens,
            "temperature": self._defaults.temperature,
            "timeout": self._defaults.timeout,
            "seed": self._defaults.seed,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return CallParameters(**values)

    async def complete(
        self,
        messages: list[dict[str, Any]],
        params: CallParameters,
        *,
        schema: dict[str, Any] | None = None,
        schema_name: str = "vision_analysis",
    ) -> VisionResponse:
        """Send one structured-output chat completion request.

        The whole request is bounded by ``params.timeout`` wall-clock seconds;
        exceeding it raises a retryable ``timeout`` error.
        """
        payload: dict[str, Any] = {
            "messages": messages,
            "max_tokens": params.max_tokens,
            "temperature": params.temperature,
            "top_p": 1.0,
        }
        if schema is not None:
            payload["response_format"] = {
                "type": "json_schema",
                "json_schema": {
                    "name": schema_name,
                    "schema": schema,
                    "strict": self._strict_schema,
                },
            }
        else:
            payload["response_format"] = {"type": "json_object"}
        if params.seed is not None:
            payload["seed"] = params.seed

        try:
            response = await asyncio.wait_for(
                self._client.post(self.url, json=payload, timeout=params.timeout),
                timeout=params.timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise RemoteCallError(
                f"Vision API call timed out after {params.timeout:.0f}s",
                ErrorKind.TIMEOUT,
                retryable=True,
                fallback=FallbackStrategy.REDUCE_DETAIL,
            ) from e
        except httpx.TransportError as e:
            raise RemoteCallError(
                f"Vision API network error: {e}",
                ErrorKind.NETWORK,
                retryable=True,
                fallback=FallbackStrategy.GENERIC_DESCRIPTION,
            ) from e

        if response.status_code >= 400:
            raise classify_http_error(response)

        try:
            data = response.json()
        except ValueError as e:
            raise RemoteCallError(
                "Vision API returned a non-JSON envelope",
                ErrorKind.NETWORK,
                retryable=True,
                fallback=FallbackStrategy.GENERIC_DESCRIPTION,
            ) from e

        choice = (data.get("choices") or [{}])[0]
        content = (choice.get("message") or {}).get("content") or ""
        finish_reason = choice.get("finish_reason")

        if finish_reason == "length":
            raise RemoteCallError(
                f"Vision API output truncated at max_tokens={params.max_tokens}",
                ErrorKind.TOKEN_LIMIT,
                retryable=False,
            )
        if finish_reason == "content_filter":
            raise RemoteCallError(
                "Content filtered by safety system",
                ErrorKind.CONTENT_FILTERED,
                retryable=False,
                fallback=FallbackStrategy.GENERIC_DESCRIPTION,
            )
        if not content.strip():
            raise RemoteCallError(
                "Empty response from vision API",
                ErrorKind.NETWORK,
                retryable=True,
                fallback=FallbackStrategy.GENERIC_DESCRIPTION,
            )

        logger.debug("Vision response (first 200 chars): %s", content[:200])
        return VisionResponse(
            content=content,
            model=data.get("model", self._deployment),
            finish_reason=finish_reason,
        )

    async def probe(self) -> dict[str, Any]:
        """Lightweight reachability probe: any answer below 500 counts as healthy."""
        start = time.perf_counter()
        try:
            response = await self._client.post(
                self.url,
                json={
                    "messages": [{"role": "user", "content": "Health check"}],
                    "max_tokens": 1,
                },
                timeout=httpx.Timeout(5.0),
            )
        except Exception as e:
            return {
                "healthy": False,
                "latency_ms": round((time.perf_counter() - start) * 1000, 1),
                "error": str(e) or type(e).__name__,
            }
        latency = round((time.perf_counter() - start) * 1000, 1)
        healthy = response.status_code < 500
        return {
            "healthy": healthy,
            "latency_ms": latency,
            "error": None if healthy else f"HTTP {response.status_code}",
        }

    async def is_reachable(self) -> bool:
        return (await self.probe())["healthy"]

    async def close(self) -> None:
        await self._client.aclose()


def classify_http_error(response: httpx.Response) -> RemoteCallError:
    """Map an HTTP error response onto the error taxonomy."""
    status = response.status_code
    body = response.text[:500]
    lowered = body.lower()
    message = f"Vision API failed: {status} {body}"

    if status == 429:
        return RemoteCallError(
            message,
            ErrorKind.RATE_LIMIT,
            retryable=True,
            fallback=FallbackStrategy.GENERIC_DESCRIPTION,
            status_code=status,
            retry_after=_parse_retry_after(response.headers.get("retry-after")),
        )
    if status == 408 or status == 504:
        return RemoteCallError(
            message,
            ErrorKind.TIMEOUT,
            retryable=True,
            fallback=FallbackStrategy.REDUCE_DETAIL,
            status_code=status,
        )
    if status >= 500:
        return RemoteCallError(
            message,
            ErrorKind.NETWORK,
            retryable=True,
            fallback=FallbackStrategy.GENERIC_DESCRIPTION,
            status_code=status,
        )
    if status == 400 and any(m in lowered for m in _CONTENT_FILTER_MARKERS):
        return RemoteCallError(
            "Content filtered by safety system",
            ErrorKind.CONTENT_FILTERED,
            retryable=False,
            fallback=FallbackStrategy.GENERIC_DESCRIPTION,
            status_code=status,
        )
    if any(m in lowered for m in _TOKEN_LIMIT_MARKERS):
        return RemoteCallError(
            message, ErrorKind.TOKEN_LIMIT, retryable=False, status_code=status
        )
    return RemoteCallError(
        message, ErrorKind.VALIDATION, retryable=False, status_code=status
    )


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None

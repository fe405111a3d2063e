"""Shared httpx plumbing and error mapping for provider clients."""

from __future__ import annotations

import json
import math
import time
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from decimal import ROUND_CEILING, Decimal
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from byokrouter.domain.interfaces.provider_client import ProviderClient
from byokrouter.domain.models.system_error import ErrorKind, ProviderError
from byokrouter.domain.models.system_response import TokenUsage
from byokrouter.domain.models.task import InferenceTask

# Statuses retried on the same credential
TRANSIENT_STATUSES = frozenset({408, 409, 425, 429})


class HttpProviderClient(ProviderClient):
    """Base class for providers spoken to over HTTP with httpx.

    Subclasses set provider, BASE_URL and PRICING and implement the
    request/response mapping. One AsyncClient is created lazily and reused;
    tests pass an httpx.MockTransport via `transport`.
    """

    BASE_URL: str = ""
    TIMEOUT = 30.0
    """Request timeout in seconds."""

    PRICING: dict[str, dict[str, Decimal]] = {}
    """Model pricing per 1K tokens (USD), longest matching prefix wins."""

    DEFAULT_PRICING: dict[str, Decimal] = {"input": Decimal("0.01"), "output": Decimal("0.03")}

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Optional base URL override.
            timeout: Optional timeout override in seconds.
            transport: Optional httpx transport (for testing).
        """
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.timeout = timeout or self.TIMEOUT
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _send(
        self,
        method: str,
        path: str,
        headers: dict[str, str],
        **kwargs: Any,
    ) -> tuple[dict[str, Any], int]:
        """Send a request and return (json body, latency ms).

        Raises:
            ProviderError: For any HTTP, timeout or network failure.
        """
        started = time.perf_counter()
        try:
            response = await self._get_client().request(method, path, headers=headers, **kwargs)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as e:
            raise self.map_error(e) from e
        except (httpx.TimeoutException, httpx.NetworkError) as e:
            raise self._transport_error(e) from e
        except ValueError as e:
            raise ProviderError(
                kind=ErrorKind.Other,
                message=f"Invalid JSON from {self.provider.value}: {e}",
                provider=self.provider,
                provider_code="invalid_response",
            ) from e
        latency_ms = int((time.perf_counter() - started) * 1000)
        if not isinstance(body, dict):
            raise ProviderError(
                kind=ErrorKind.Other,
                message=f"Unexpected response shape from {self.provider.value}",
                provider=self.provider,
                provider_code="invalid_response",
            )
        return body, latency_ms

    def _transport_error(self, error: httpx.TransportError) -> ProviderError:
        if isinstance(error, httpx.TimeoutException):
            return ProviderError(
                kind=ErrorKind.Transient,
                message=f"Request to {self.provider.value} timed out after {self.timeout}s",
                provider=self.provider,
                provider_code="timeout",
            )
        return ProviderError(
            kind=ErrorKind.Transient,
            message=f"Network error connecting to {self.provider.value}: {error}",
            provider=self.provider,
            provider_code="network_error",
        )

    async def _stream_events(
        self,
        path: str,
        headers: dict[str, str],
        payload: dict[str, Any],
    ) -> AsyncIterator[dict[str, Any]]:
        """POST a streaming request and yield the JSON of each server-sent event.

        Stops at the "[DONE]" sentinel or when the provider closes the stream.

        Raises:
            ProviderError: For any HTTP, timeout or network failure, including
                one that happens midway through the stream.
        """
        client = self._get_client()
        try:
            async with client.stream("POST", path, headers=headers, json=payload) as response:
                if response.is_error:
                    await response.aread()
                    response.raise_for_status()
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:") :].strip()
                    if data == "[DONE]":
                        return
                    try:
                        event = json.loads(data)
                    except ValueError as e:
                        raise ProviderError(
                            kind=ErrorKind.Other,
                            message=f"Invalid stream event from {self.provider.value}: {e}",
                            provider=self.provider,
                            provider_code="invalid_response",
                        ) from e
                    if isinstance(event, dict):
                        yield event
        except httpx.HTTPStatusError as e:
            raise self.map_error(e) from e
        except (httpx.TimeoutException, httpx.NetworkError) as e:
            raise self._transport_error(e) from e

    def map_error(self, error: httpx.HTTPStatusError) -> ProviderError:
        """Map an HTTP status error to a ProviderError kind.

        401/403 reject the credential itself; 408/409/425/429 and 5xx are
        transient; everything else is surfaced as is.
        """
        response = error.response
        status_code = response.status_code
        details = self._extract_error_details(response)
        message = details.get("message") or response.text or ""

        if status_code in (401, 403):
            kind = ErrorKind.Auth
            message = message or "Invalid API key"
        elif status_code in TRANSIENT_STATUSES or 500 <= status_code < 600:
            kind = ErrorKind.Transient
            message = message or f"{self.provider.value} returned {status_code}"
        else:
            kind = ErrorKind.Other
            message = message or f"{self.provider.value} error ({status_code})"

        return ProviderError(
            kind=kind,
            message=message,
            provider=self.provider,
            status_code=status_code,
            provider_code=details.get("code") or details.get("type"),
            retry_after=self._extract_retry_after(response),
            details=details,
        )

    def _extract_retry_after(self, response: httpx.Response) -> float | None:
        """Extract Retry-After (seconds or HTTP date) from response headers."""
        header = response.headers.get("retry-after")
        if not header:
            return None
        try:
            return float(header)
        except ValueError:
            pass
        try:
            retry_date = parsedate_to_datetime(header)
        except (ValueError, TypeError):
            return None
        delta = (retry_date - datetime.now(UTC)).total_seconds()
        return delta if delta > 0 else None

    def _extract_error_details(self, response: httpx.Response) -> dict[str, Any]:
        """Extract message/type/code from an error body."""
        details: dict[str, Any] = {}
        try:
            error_data = response.json()
        except (ValueError, TypeError):
            if response.text:
                details["message"] = response.text
            return details

        if isinstance(error_data, dict):
            error_obj = error_data.get("error")
            if isinstance(error_obj, dict):
                details["message"] = error_obj.get("message")
                details["type"] = error_obj.get("type")
                details["code"] = error_obj.get("code")
            else:
                details["message"] = error_data.get("message")
                details["type"] = error_data.get("type")
                details["code"] = error_data.get("code")
        return details

    @staticmethod
    def _approximate_prompt_tokens(task: InferenceTask) -> int:
        """Rough prompt size (four characters per token) until the provider counts it."""
        characters = sum(len(m.content) for m in task.messages)
        return max(1, math.ceil(characters / 4))

    def _pricing_for(self, model: str) -> dict[str, Decimal]:
        matches = [name for name in self.PRICING if model.startswith(name)]
        if not matches:
            return self.DEFAULT_PRICING
        return self.PRICING[max(matches, key=len)]

    def estimate_cost_cents(self, model: str, usage: TokenUsage) -> int:
        """Provider cost of a call in US cents, rounded up."""
        pricing = self._pricing_for(model)
        dollars = (
            Decimal(usage.prompt_tokens) / 1000 * pricing["input"]
            + Decimal(usage.completion_tokens) / 1000 * pricing["output"]
        )
        return int((dollars * 100).to_integral_value(rounding=ROUND_CEILING))

    def _unsupported(self, what: str) -> ProviderError:
        return ProviderError(
            kind=ErrorKind.Other,
            message=f"{self.provider.value} does not support {what}",
            provider=self.provider,
            provider_code="unsupported_task",
        )

"""Anthropic provider client."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from decimal import Decimal
from typing import Any

from byokrouter.domain.models.api_key import KeyValidationResult
from byokrouter.domain.models.provider import Provider
from byokrouter.domain.models.system_error import ErrorKind, ProviderError
from byokrouter.domain.models.system_response import (
    ProviderResponse,
    TokenUsage,
    UsageMeter,
)
from byokrouter.domain.models.task import InferenceTask, TaskKind
from byokrouter.infrastructure.adapters.base import HttpProviderClient


class AnthropicClient(HttpProviderClient):
    """Client for the Anthropic Messages API (chat and agent tasks only)."""

    provider = Provider.Anthropic
    BASE_URL = "https://api.anthropic.com/v1"
    API_VERSION = "2023-06-01"
    VALIDATION_MODEL = "claude-3-haiku-20240307"
    DEFAULT_MAX_TOKENS = 1024

    PRICING: dict[str, dict[str, Decimal]] = {
        "claude-3-opus": {"input": Decimal("0.015"), "output": Decimal("0.075")},
        "claude-3-sonnet": {"input": Decimal("0.003"), "output": Decimal("0.015")},
        "claude-3-5-sonnet": {"input": Decimal("0.003"), "output": Decimal("0.015")},
        "claude-3-haiku": {"input": Decimal("0.00025"), "output": Decimal("0.00125")},
    }
    """Anthropic model pricing per 1K tokens (USD)."""

    def supports(self, kind: TaskKind) -> bool:
        return kind in (TaskKind.Chat, TaskKind.Agent)

    def _headers(self, credential: str) -> dict[str, str]:
        return {
            "x-api-key": credential,
            "anthropic-version": self.API_VERSION,
        }

    async def call(
        self,
        credential: str,
        task: InferenceTask,
        meter: UsageMeter | None = None,
    ) -> ProviderResponse:
        if not self.supports(task.kind):
            raise self._unsupported(f"{task.kind.value} tasks")

        body, latency_ms = await self._send(
            "POST",
            "/messages",
            headers=self._headers(credential),
            json=self._messages_payload(task),
        )

        blocks = body.get("content") or []
        text = "".join(b.get("text", "") for b in blocks if b.get("type") == "text")
        usage_data = body.get("usage") or {}
        usage = TokenUsage(
            prompt_tokens=usage_data.get("input_tokens", 0),
            completion_tokens=usage_data.get("output_tokens", 0),
        )
        if meter is not None and usage_data:
            meter.report(usage.prompt_tokens, usage.completion_tokens)

        return ProviderResponse(
            content=text,
            model=body.get("model", task.model),
            provider=self.provider,
            usage=usage,
            estimated_cost_cents=self.estimate_cost_cents(task.model, usage),
            latency_ms=latency_ms,
            raw=body,
        )

    def _messages_payload(self, task: InferenceTask) -> dict[str, Any]:
        # System prompts are a top-level field in the Messages API
        system = "\n\n".join(m.content for m in task.messages if m.role == "system")
        parameters = {k: v for k, v in task.parameters.items() if k != "stream"}
        payload: dict[str, Any] = {
            "model": task.model,
            "max_tokens": parameters.pop("max_tokens", self.DEFAULT_MAX_TOKENS),
            "messages": [
                {"role": m.role, "content": m.content}
                for m in task.messages
                if m.role != "system"
            ],
            **parameters,
        }
        if system:
            payload["system"] = system
        return payload

    async def stream(
        self,
        credential: str,
        task: InferenceTask,
        meter: UsageMeter,
    ) -> AsyncGenerator[str, None]:
        """Stream Messages API text deltas.

        message_start carries the input token count and message_delta the
        cumulative output count; deltas in between count one token each.
        """
        if not self.supports(task.kind):
            raise self._unsupported(f"streaming {task.kind.value} tasks")

        payload = {**self._messages_payload(task), "stream": True}
        prompt_tokens = self._approximate_prompt_tokens(task)
        completion_tokens = 0
        async for event in self._stream_events("/messages", self._headers(credential), payload):
            event_type = event.get("type")
            if event_type == "message_start":
                usage_data = (event.get("message") or {}).get("usage") or {}
                prompt_tokens = usage_data.get("input_tokens", prompt_tokens)
                completion_tokens = usage_data.get("output_tokens", completion_tokens)
                meter.update_totals(prompt_tokens, completion_tokens)
            elif event_type == "content_block_delta":
                text = (event.get("delta") or {}).get("text")
                if text:
                    completion_tokens += 1
                    meter.update_totals(prompt_tokens, completion_tokens)
                    yield text
            elif event_type == "message_delta":
                usage_data = event.get("usage") or {}
                completion_tokens = usage_data.get("output_tokens", completion_tokens)
                meter.update_totals(prompt_tokens, completion_tokens)
            elif event_type == "error":
                raise self._stream_error(event.get("error") or {})

    def _stream_error(self, error: dict[str, Any]) -> ProviderError:
        # Errors after the 200 arrive as events; overloaded_error is Anthropic's 529
        error_type = error.get("type")
        transient = error_type in ("overloaded_error", "api_error")
        return ProviderError(
            kind=ErrorKind.Transient if transient else ErrorKind.Other,
            message=error.get("message") or f"anthropic stream error ({error_type})",
            provider=self.provider,
            provider_code=error_type,
        )

    async def validate_key(self, secret: str) -> KeyValidationResult:
        """Send a one-token message; Anthropic has no free auth-check endpoint.

        A 429 still proves the key authenticates.
        """
        try:
            await self._send(
                "POST",
                "/messages",
                headers=self._headers(secret),
                json={
                    "model": self.VALIDATION_MODEL,
                    "max_tokens": 1,
                    "messages": [{"role": "user", "content": "Hi"}],
                },
            )
        except ProviderError as e:
            if e.status_code == 429:
                return KeyValidationResult(provider=self.provider, valid=True)
            if e.kind == ErrorKind.Auth:
                return KeyValidationResult(
                    provider=self.provider,
                    valid=False,
                    error=e.message or "Invalid API key",
                )
            if e.kind == ErrorKind.Other:
                return KeyValidationResult(provider=self.provider, valid=False, error=e.message)
            raise
        return KeyValidationResult(provider=self.provider, valid=True)

"""OpenAI provider client."""

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


class OpenAIClient(HttpProviderClient):
    """Client for OpenAI chat, embeddings and audio transcription.

    Example:
        ```python
        client = OpenAIClient()
        task = InferenceTask(
            kind=TaskKind.Chat,
            model="gpt-4o-mini",
            messages=[Message(role="user", content="Hello!")],
        )
        response = await client.call("sk-...", task)
        ```
    """

    provider = Provider.OpenAI
    BASE_URL = "https://api.openai.com/v1"

    # Format: {model_prefix: {"input": price_per_1k, "output": price_per_1k}}
    PRICING: dict[str, dict[str, Decimal]] = {
        "gpt-4": {"input": Decimal("0.03"), "output": Decimal("0.06")},
        "gpt-4-turbo": {"input": Decimal("0.01"), "output": Decimal("0.03")},
        "gpt-4o": {"input": Decimal("0.005"), "output": Decimal("0.015")},
        "gpt-4o-mini": {"input": Decimal("0.00015"), "output": Decimal("0.0006")},
        "gpt-3.5-turbo": {"input": Decimal("0.0005"), "output": Decimal("0.0015")},
        "text-embedding-3-small": {"input": Decimal("0.00002"), "output": Decimal("0")},
        "text-embedding-3-large": {"input": Decimal("0.00013"), "output": Decimal("0")},
        "text-embedding-ada-002": {"input": Decimal("0.0001"), "output": Decimal("0")},
    }
    """OpenAI model pricing per 1K tokens (USD)."""

    TRANSCRIPTION_CENTS = 1
    """Flat provider cost per transcription request (Whisper bills per minute)."""

    def supports(self, kind: TaskKind) -> bool:
        return True

    @staticmethod
    def _headers(credential: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {credential}"}

    async def call(
        self,
        credential: str,
        task: InferenceTask,
        meter: UsageMeter | None = None,
    ) -> ProviderResponse:
        if task.kind == TaskKind.Embedding:
            body, latency_ms = await self._send(
                "POST",
                "/embeddings",
                headers=self._headers(credential),
                json={"model": task.model, "input": task.input, **task.parameters},
            )
            content: Any = [item.get("embedding", []) for item in body.get("data", [])]
        elif task.kind == TaskKind.Transcription:
            body, latency_ms = await self._send(
                "POST",
                "/audio/transcriptions",
                headers=self._headers(credential),
                data={"model": task.model, **{k: str(v) for k, v in task.parameters.items()}},
                files={"file": (task.filename, task.audio or b"")},
            )
            content = body.get("text", "")
        else:
            body, latency_ms = await self._send(
                "POST",
                "/chat/completions",
                headers=self._headers(credential),
                json=self._chat_payload(task),
            )
            choices = body.get("choices") or []
            if not choices:
                raise ProviderError(
                    kind=ErrorKind.Other,
                    message="OpenAI response has no choices",
                    provider=self.provider,
                    provider_code="no_choices",
                )
            content = (choices[0].get("message") or {}).get("content", "")

        usage_data = body.get("usage") or {}
        usage = TokenUsage(
            prompt_tokens=usage_data.get("prompt_tokens", 0),
            completion_tokens=usage_data.get("completion_tokens", 0),
        )
        if meter is not None and usage_data:
            meter.report(usage.prompt_tokens, usage.completion_tokens)

        if task.kind == TaskKind.Transcription:
            cost_cents = self.TRANSCRIPTION_CENTS
        else:
            cost_cents = self.estimate_cost_cents(task.model, usage)

        return ProviderResponse(
            content=content,
            model=body.get("model", task.model),
            provider=self.provider,
            usage=usage,
            estimated_cost_cents=cost_cents,
            latency_ms=latency_ms,
            raw=body,
        )

    def _chat_payload(self, task: InferenceTask) -> dict[str, Any]:
        # Whether to stream is decided by which method runs the task
        parameters = {
            k: v for k, v in task.parameters.items() if k not in ("stream", "stream_options")
        }
        return {
            "model": task.model,
            "messages": [m.model_dump() for m in task.messages],
            **parameters,
        }

    async def stream(
        self,
        credential: str,
        task: InferenceTask,
        meter: UsageMeter,
    ) -> AsyncGenerator[str, None]:
        """Stream chat deltas.

        Each delta counts as one completion token against an approximate
        prompt size until the final usage chunk replaces both with the
        provider's own counts.
        """
        if task.kind not in (TaskKind.Chat, TaskKind.Agent):
            raise self._unsupported(f"streaming {task.kind.value} tasks")

        payload = {
            **self._chat_payload(task),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        prompt_tokens = self._approximate_prompt_tokens(task)
        completion_tokens = 0
        async for event in self._stream_events(
            "/chat/completions", self._headers(credential), payload
        ):
            usage_data = event.get("usage")
            if usage_data:
                meter.update_totals(
                    usage_data.get("prompt_tokens", 0),
                    usage_data.get("completion_tokens", 0),
                )
            choices = event.get("choices") or []
            delta = (choices[0].get("delta") or {}).get("content") if choices else None
            if delta:
                completion_tokens += 1
                meter.update_totals(prompt_tokens, completion_tokens)
                yield delta

    async def validate_key(self, secret: str) -> KeyValidationResult:
        """List models, the cheapest authenticated call OpenAI offers."""
        try:
            await self._send("GET", "/models", headers=self._headers(secret))
        except ProviderError as e:
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

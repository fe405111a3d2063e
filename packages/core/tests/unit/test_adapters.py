"""Tests for the httpx provider clients."""

import json

import httpx
import pytest

from byokrouter.domain.models.provider import Provider
from byokrouter.domain.models.system_error import ErrorKind, ProviderError
from byokrouter.domain.models.system_response import TokenUsage, UsageMeter
from byokrouter.domain.models.task import InferenceTask, Message, TaskKind
from byokrouter.infrastructure.adapters import AnthropicClient, OpenAIClient

SECRET = "sk-test-openai-abcdef123456"


def chat_task(model: str = "gpt-4o-mini", **parameters) -> InferenceTask:
    return InferenceTask(
        kind=TaskKind.Chat,
        model=model,
        messages=[
            Message(role="system", content="Be brief."),
            Message(role="user", content="Hello"),
        ],
        parameters=parameters,
    )



def sse_body(*events: dict, done: bool = True) -> str:
    body = "".join(f"data: {json.dumps(event)}\n\n" for event in events)
    return body + ("data: [DONE]\n\n" if done else "")


def sse_response(body: str) -> httpx.Response:
    return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body)

class TestOpenAIClient:
    """Tests for OpenAIClient."""

    @pytest.mark.asyncio
    async def test_chat_completion(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={
                    "model": "gpt-4o-mini",
                    "choices": [{"message": {"role": "assistant", "content": "Hi there"}}],
                    "usage": {"prompt_tokens": 12, "completion_tokens": 3},
                },
            )

        client = OpenAIClient(transport=httpx.MockTransport(handler))
        meter = UsageMeter()
        response = await client.call(SECRET, chat_task(temperature=0.2), meter=meter)
        await client.close()

        assert response.content == "Hi there"
        assert response.provider == Provider.OpenAI
        assert response.usage.total_tokens == 15
        assert meter.usage == TokenUsage(prompt_tokens=12, completion_tokens=3)

        request = seen[0]
        assert request.url.path == "/v1/chat/completions"
        assert request.headers["authorization"] == f"Bearer {SECRET}"
        body = json.loads(request.content)
        assert body["temperature"] == 0.2
        assert body["messages"][0] == {"role": "system", "content": "Be brief."}

    @pytest.mark.asyncio
    async def test_embeddings(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1/embeddings"
            assert json.loads(request.content)["input"] == ["a", "b"]
            return httpx.Response(
                200,
                json={
                    "data": [{"embedding": [0.1, 0.2]}, {"embedding": [0.3, 0.4]}],
                    "usage": {"prompt_tokens": 4},
                },
            )

        client = OpenAIClient(transport=httpx.MockTransport(handler))
        task = InferenceTask(kind=TaskKind.Embedding, model="text-embedding-3-small", input=["a", "b"])
        response = await client.call(SECRET, task)

        assert response.content == [[0.1, 0.2], [0.3, 0.4]]
        assert response.usage.prompt_tokens == 4

    @pytest.mark.asyncio
    async def test_transcription_uses_multipart(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1/audio/transcriptions"
            assert request.headers["content-type"].startswith("multipart/form-data")
            assert b"whisper-1" in request.content
            return httpx.Response(200, json={"text": "hello world"})

        client = OpenAIClient(transport=httpx.MockTransport(handler))
        task = InferenceTask(
            kind=TaskKind.Transcription, model="whisper-1", audio=b"RIFF....", filename="a.wav"
        )
        response = await client.call(SECRET, task)

        assert response.content == "hello world"
        assert response.estimated_cost_cents == OpenAIClient.TRANSCRIPTION_CENTS

    @pytest.mark.asyncio
    async def test_no_choices_is_an_error(self) -> None:
        client = OpenAIClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"choices": []}))
        )
        with pytest.raises(ProviderError) as exc_info:
            await client.call(SECRET, chat_task())
        assert exc_info.value.kind == ErrorKind.Other

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        client = OpenAIClient(transport=httpx.MockTransport(handler))
        with pytest.raises(ProviderError) as exc_info:
            await client.call(SECRET, chat_task())
        assert exc_info.value.kind == ErrorKind.Transient
        assert exc_info.value.provider_code == "timeout"

    @pytest.mark.asyncio
    async def test_validate_key(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "GET"
            assert request.url.path == "/v1/models"
            if request.headers["authorization"] == f"Bearer {SECRET}":
                return httpx.Response(200, json={"data": []})
            return httpx.Response(
                401, json={"error": {"message": "Incorrect API key provided", "code": "invalid_api_key"}}
            )

        client = OpenAIClient(transport=httpx.MockTransport(handler))

        assert (await client.validate_key(SECRET)).valid
        result = await client.validate_key("sk-wrong-key-000000")
        assert not result.valid
        assert result.error == "Incorrect API key provided"

    @pytest.mark.asyncio
    async def test_validate_key_unreachable_raises(self) -> None:
        client = OpenAIClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(503, text="down"))
        )
        with pytest.raises(ProviderError) as exc_info:
            await client.validate_key(SECRET)
        assert exc_info.value.kind == ErrorKind.Transient


    @pytest.mark.asyncio
    async def test_stream_chat_meters_each_delta(self) -> None:
        seen: list[dict] = []
        meter = UsageMeter()
        metered: list[TokenUsage | None] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return sse_response(
                sse_body(
                    {"choices": [{"delta": {"role": "assistant", "content": "Hi"}}]},
                    {"choices": [{"delta": {"content": " there"}}]},
                    {"choices": [{"delta": {}, "finish_reason": "stop"}]},
                    {"choices": [], "usage": {"prompt_tokens": 12, "completion_tokens": 2}},
                )
            )

        client = OpenAIClient(transport=httpx.MockTransport(handler))
        deltas = []
        async for delta in client.stream(SECRET, chat_task(stream=False), meter):
            deltas.append(delta)
            metered.append(meter.usage)
        await client.close()

        assert deltas == ["Hi", " there"]
        # Counted per delta until the provider's own totals arrive
        assert [u.completion_tokens for u in metered] == [1, 2]
        assert meter.usage == TokenUsage(prompt_tokens=12, completion_tokens=2)
        assert seen[0]["stream"] is True
        assert seen[0]["stream_options"] == {"include_usage": True}

    @pytest.mark.asyncio
    async def test_stream_rejected_key_is_auth_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"error": {"message": "Incorrect API key provided"}})

        client = OpenAIClient(transport=httpx.MockTransport(handler))
        meter = UsageMeter()
        with pytest.raises(ProviderError) as exc_info:
            async for _ in client.stream(SECRET, chat_task(), meter):
                pass
        await client.close()

        assert exc_info.value.kind == ErrorKind.Auth
        assert exc_info.value.message == "Incorrect API key provided"
        assert meter.usage is None

    @pytest.mark.asyncio
    async def test_call_never_asks_for_a_stream(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            assert "stream" not in body
            assert "stream_options" not in body
            return httpx.Response(
                200, json={"choices": [{"message": {"content": "ok"}}], "usage": {}}
            )

        client = OpenAIClient(transport=httpx.MockTransport(handler))
        response = await client.call(SECRET, chat_task(stream=True))
        await client.close()

        assert response.content == "ok"
    def test_cost_estimate_uses_longest_prefix(self) -> None:
        client = OpenAIClient()
        usage = TokenUsage(prompt_tokens=1000, completion_tokens=1000)
        # gpt-4o-mini: 0.00015 + 0.0006 dollars, rounded up to one cent
        assert client.estimate_cost_cents("gpt-4o-mini", usage) == 1
        # gpt-4: 0.03 + 0.06 dollars
        assert client.estimate_cost_cents("gpt-4-0613", usage) == 9


class TestAnthropicClient:
    """Tests for AnthropicClient."""

    @pytest.mark.asyncio
    async def test_messages_call(self) -> None:
        seen: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1/messages"
            assert request.headers["x-api-key"] == "sk-ant-test-key-1234567"
            assert request.headers["anthropic-version"] == AnthropicClient.API_VERSION
            seen.append(json.loads(request.content))
            return httpx.Response(
                200,
                json={
                    "model": "claude-3-haiku-20240307",
                    "content": [{"type": "text", "text": "Hello"}, {"type": "text", "text": "!"}],
                    "usage": {"input_tokens": 10, "output_tokens": 2},
                },
            )

        client = AnthropicClient(transport=httpx.MockTransport(handler))
        response = await client.call(
            "sk-ant-test-key-1234567", chat_task("claude-3-haiku-20240307", max_tokens=64)
        )

        assert response.content == "Hello!"
        assert response.usage.total_tokens == 12
        payload = seen[0]
        assert payload["system"] == "Be brief."
        assert payload["messages"] == [{"role": "user", "content": "Hello"}]
        assert payload["max_tokens"] == 64

    @pytest.mark.asyncio
    async def test_rejects_embedding_tasks(self) -> None:
        client = AnthropicClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(500))
        )
        task = InferenceTask(kind=TaskKind.Embedding, model="text-embedding-3-small", input="x")
        assert not client.supports(TaskKind.Embedding)
        with pytest.raises(ProviderError) as exc_info:
            await client.call("sk-ant-test-key-1234567", task)
        assert exc_info.value.provider_code == "unsupported_task"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,valid",
        [(200, True), (429, True), (401, False), (400, False)],
    )
    async def test_validate_key(self, status: int, valid: bool) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if status == 200:
                return httpx.Response(200, json={"content": [], "usage": {}})
            return httpx.Response(status, json={"error": {"type": "error", "message": "nope"}})

        client = AnthropicClient(transport=httpx.MockTransport(handler))
        result = await client.validate_key("sk-ant-test-key-1234567")
        assert result.valid is valid


    @pytest.mark.asyncio
    async def test_stream_messages(self) -> None:
        seen: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return sse_response(
                sse_body(
                    {"type": "message_start", "message": {"usage": {"input_tokens": 25, "output_tokens": 1}}},
                    {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
                    {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Bon"}},
                    {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "jour"}},
                    {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": 4}},
                    {"type": "message_stop"},
                    done=False,
                )
            )

        client = AnthropicClient(transport=httpx.MockTransport(handler))
        meter = UsageMeter()
        deltas = [d async for d in client.stream("sk-ant-key-123456", chat_task("claude-3-haiku-20240307"), meter)]
        await client.close()

        assert deltas == ["Bon", "jour"]
        assert meter.usage == TokenUsage(prompt_tokens=25, completion_tokens=4)
        assert seen[0]["stream"] is True
        assert seen[0]["system"] == "Be brief."

    @pytest.mark.asyncio
    async def test_stream_error_event_after_start(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return sse_response(
                sse_body(
                    {"type": "message_start", "message": {"usage": {"input_tokens": 25}}},
                    {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Par"}},
                    {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}},
                    done=False,
                )
            )

        client = AnthropicClient(transport=httpx.MockTransport(handler))
        meter = UsageMeter()
        deltas = []
        with pytest.raises(ProviderError) as exc_info:
            async for delta in client.stream("sk-ant-key-123456", chat_task("claude-3-haiku-20240307"), meter):
                deltas.append(delta)
        await client.close()

        assert deltas == ["Par"]
        assert exc_info.value.kind == ErrorKind.Transient
        # Tokens consumed before the failure stay on the meter
        assert meter.usage == TokenUsage(prompt_tokens=25, completion_tokens=1)

class TestErrorMapping:
    """Tests for HttpProviderClient.map_error."""

    def _status_error(self, status: int, headers: dict | None = None, **kwargs) -> httpx.HTTPStatusError:
        request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        response = httpx.Response(status, headers=headers, request=request, **kwargs)
        return httpx.HTTPStatusError("error", request=request, response=response)

    @pytest.mark.parametrize(
        "status,kind",
        [
            (401, ErrorKind.Auth),
            (403, ErrorKind.Auth),
            (408, ErrorKind.Transient),
            (429, ErrorKind.Transient),
            (500, ErrorKind.Transient),
            (503, ErrorKind.Transient),
            (400, ErrorKind.Other),
            (404, ErrorKind.Other),
        ],
    )
    def test_status_to_kind(self, status: int, kind: ErrorKind) -> None:
        error = OpenAIClient().map_error(self._status_error(status, json={}))
        assert error.kind == kind
        assert error.status_code == status
        assert error.message

    def test_error_body_details(self) -> None:
        error = OpenAIClient().map_error(
            self._status_error(
                429,
                headers={"retry-after": "7"},
                json={"error": {"message": "Rate limit reached", "type": "requests", "code": "rate_limit_exceeded"}},
            )
        )
        assert error.message == "Rate limit reached"
        assert error.provider_code == "rate_limit_exceeded"
        assert error.retry_after == 7.0

    def test_plain_text_body(self) -> None:
        error = OpenAIClient().map_error(self._status_error(502, text="Bad gateway"))
        assert error.message == "Bad gateway"
        assert error.retry_after is None

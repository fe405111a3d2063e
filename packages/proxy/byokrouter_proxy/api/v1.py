"""API v1 inference routes for the BYOK Router Proxy.

Every route builds an InferenceTask and hands it to the dispatcher, which
picks the key source. The chosen source is echoed in the body as keySource
and in the x-key-source response header. Chat completions can also be
streamed as server-sent events.
"""

import json
from collections.abc import AsyncGenerator
from typing import Annotated, Any

import structlog
from fastapi import APIRouter, Depends, File, Form, Response, UploadFile
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.background import BackgroundTask

from byokrouter.domain.models.attempt import DispatchResult, StreamingDispatch
from byokrouter.domain.models.provider import Provider
from byokrouter.domain.models.system_error import ProviderError
from byokrouter.domain.models.task import InferenceTask, Message, TaskKind
from byokrouter.infrastructure.utils.validation import validate_provider
from byokrouter.router import ByokRouter
from byokrouter_proxy.dependencies import get_router
from byokrouter_proxy.middleware.auth import get_user_id

logger = structlog.get_logger(__name__)

router = APIRouter()

RouterDep = Annotated[ByokRouter, Depends(get_router)]
UserId = Annotated[str, Depends(get_user_id)]

KEY_SOURCE_HEADER = "x-key-source"


class ChatCompletionRequest(BaseModel):
    """OpenAI-style chat request; unknown fields are passed to the provider."""

    model: str = Field(..., min_length=1)
    messages: list[Message] = Field(..., min_length=1)
    provider: str | None = Field(default=None, description="Preferred provider hint")

    model_config = ConfigDict(extra="allow")


class EmbeddingRequest(BaseModel):
    model: str = Field(default="text-embedding-3-small", min_length=1)
    input: str | list[str]

    model_config = ConfigDict(extra="allow")


class AgentRunRequest(ChatCompletionRequest):
    """A single agent turn; runs like a chat request."""

    pass


def _provider_hint(value: str | None) -> Provider | None:
    return validate_provider(value) if value else None


def _chat_task(request: ChatCompletionRequest) -> tuple[InferenceTask, bool]:
    """Build the chat task; the stream flag selects the route's mode, not a provider option."""
    parameters = dict(request.model_extra or {})
    streaming = bool(parameters.pop("stream", False))
    parameters.pop("stream_options", None)
    task = InferenceTask(
        kind=TaskKind.Chat,
        model=request.model,
        messages=request.messages,
        parameters=parameters,
        preferred_provider=_provider_hint(request.provider),
    )
    return task, streaming


def _routing_fields(result: DispatchResult, response: Response) -> dict[str, Any]:
    response.headers[KEY_SOURCE_HEADER] = result.source.value
    return {
        "provider": result.provider.value,
        "keySource": result.source.value,
        "keySourceReason": result.explanation,
        "fellBack": result.fell_back,
    }


def _sse_frame(data: dict[str, Any]) -> str:
    return f"data: {json.dumps(data, ensure_ascii=False)}\n\n"


def _chunk(
    task: InferenceTask,
    stream: StreamingDispatch,
    delta: dict[str, str],
    finish_reason: str | None,
) -> dict[str, Any]:
    return {
        "id": task.request_id,
        "object": "chat.completion.chunk",
        "model": task.model,
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
        "provider": stream.provider.value,
        "keySource": stream.source.value,
    }


async def _sse_events(task: InferenceTask, stream: StreamingDispatch) -> AsyncGenerator[str, None]:
    """OpenAI-style chat.completion.chunk events, ending with [DONE].

    A provider failure after the first delta ends the stream with an error
    event; the status line has already been sent.
    """
    try:
        async for delta in stream:
            yield _sse_frame(_chunk(task, stream, {"content": delta}, None))
    except ProviderError as e:
        logger.warning(
            "provider_stream_failed",
            kind=e.kind.value,
            provider=e.provider.value if e.provider else None,
            request_id=task.request_id,
        )
        yield _sse_frame({"error": {"message": e.message, "kind": e.kind.value}})
    else:
        yield _sse_frame(_chunk(task, stream, {}, "stop"))
    finally:
        await stream.aclose()
    yield "data: [DONE]\n\n"


def _event_stream(task: InferenceTask, stream: StreamingDispatch) -> StreamingResponse:
    return StreamingResponse(
        _sse_events(task, stream),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
            KEY_SOURCE_HEADER: stream.source.value,
            "x-key-source-reason": stream.explanation,
        },
        # Closes a stream whose body was never sent
        background=BackgroundTask(stream.aclose),
    )


def _usage(result: DispatchResult) -> dict[str, int]:
    usage = result.response.usage
    return {
        "prompt_tokens": usage.prompt_tokens,
        "completion_tokens": usage.completion_tokens,
        "total_tokens": usage.total_tokens,
    }


@router.post("/chat/completions", response_model=None)
async def chat_completions(
    request: ChatCompletionRequest,
    response: Response,
    user_id: UserId,
    byok_router: RouterDep,
) -> dict[str, Any] | StreamingResponse:
    task, streaming = _chat_task(request)
    if streaming:
        return _event_stream(task, await byok_router.stream(user_id, task))
    result = await byok_router.execute(user_id, task)
    return {
        "id": task.request_id,
        "object": "chat.completion",
        "model": result.response.model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": result.response.content},
                "finish_reason": "stop",
            }
        ],
        "usage": _usage(result),
        **_routing_fields(result, response),
    }


@router.post("/chat/completions/stream")
async def chat_completions_stream(
    request: ChatCompletionRequest,
    user_id: UserId,
    byok_router: RouterDep,
) -> StreamingResponse:
    """Stream a chat completion as server-sent events.

    Routing errors (402, 502, 503) are returned as plain JSON because they
    happen before the first event.
    """
    task, _ = _chat_task(request)
    return _event_stream(task, await byok_router.stream(user_id, task))


@router.post("/embeddings")
async def embeddings(
    request: EmbeddingRequest,
    response: Response,
    user_id: UserId,
    byok_router: RouterDep,
) -> dict[str, Any]:
    task = InferenceTask(
        kind=TaskKind.Embedding,
        model=request.model,
        input=request.input,
        parameters=dict(request.model_extra or {}),
    )
    result = await byok_router.execute(user_id, task)
    return {
        "object": "list",
        "model": result.response.model,
        "data": [
            {"object": "embedding", "index": i, "embedding": vector}
            for i, vector in enumerate(result.response.content)
        ],
        "usage": _usage(result),
        **_routing_fields(result, response),
    }


@router.post("/audio/transcriptions")
async def audio_transcriptions(
    file: Annotated[UploadFile, File(...)],
    response: Response,
    user_id: UserId,
    byok_router: RouterDep,
    model: Annotated[str, Form()] = "whisper-1",
    language: Annotated[str | None, Form()] = None,
) -> dict[str, Any]:
    parameters = {"language": language} if language else {}
    task = InferenceTask(
        kind=TaskKind.Transcription,
        model=model,
        audio=await file.read(),
        filename=file.filename or "audio.mp3",
        parameters=parameters,
    )
    result = await byok_router.execute(user_id, task)
    return {
        "text": result.response.content,
        "model": result.response.model,
        **_routing_fields(result, response),
    }


@router.post("/agents/run")
async def run_agent(
    request: AgentRunRequest,
    response: Response,
    user_id: UserId,
    byok_router: RouterDep,
) -> dict[str, Any]:
    task = InferenceTask(
        kind=TaskKind.Agent,
        model=request.model,
        messages=request.messages,
        parameters=dict(request.model_extra or {}),
        preferred_provider=_provider_hint(request.provider),
    )
    result = await byok_router.execute(user_id, task)
    return {
        "id": task.request_id,
        "model": result.response.model,
        "output": result.response.content,
        "usage": _usage(result),
        **_routing_fields(result, response),
    }

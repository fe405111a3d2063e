"""InferenceTask model describing one inference-consuming request."""

import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from byokrouter.domain.models.provider import Provider, infer_provider


class TaskKind(str, Enum):
    """Kinds of inference work the router can dispatch."""

    Chat = "chat"
    Embedding = "embedding"
    Transcription = "transcription"
    Agent = "agent"


# Task kinds only OpenAI serves
_OPENAI_ONLY: frozenset[TaskKind] = frozenset({TaskKind.Embedding, TaskKind.Transcription})


class Message(BaseModel):
    """A chat message."""

    role: str = Field(..., description="system, user or assistant")
    content: str

    @field_validator("role")
    @classmethod
    def validate_role(cls, v: str) -> str:
        """Validate message role."""
        if v not in ("system", "user", "assistant"):
            raise ValueError(f"Invalid message role: {v}")
        return v


class InferenceTask(BaseModel):
    """Provider-neutral description of the work a request wants done."""

    kind: TaskKind
    model: str = Field(..., min_length=1)
    messages: list[Message] = Field(default_factory=list)
    input: str | list[str] | None = Field(
        default=None,
        description="Text to embed (embedding tasks)",
    )
    audio: bytes | None = Field(default=None, description="Audio payload (transcription)")
    filename: str = Field(default="audio.mp3")
    parameters: dict[str, Any] = Field(default_factory=dict)
    preferred_provider: Provider | None = None
    pinned_provider: Provider | None = None
    timeout_seconds: float | None = Field(default=None, gt=0)
    request_id: str = Field(default_factory=lambda: str(uuid.uuid4()))

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def validate_payload(self) -> "InferenceTask":
        """Each kind carries the payload its provider call needs."""
        if self.kind in (TaskKind.Chat, TaskKind.Agent) and not self.messages:
            raise ValueError(f"{self.kind.value} task requires at least one message")
        if self.kind == TaskKind.Embedding and not self.input:
            raise ValueError("embedding task requires input")
        if self.kind == TaskKind.Transcription and not self.audio:
            raise ValueError("transcription task requires audio")
        return self

    def resolved_pinned_provider(self) -> Provider | None:
        """The only provider this task can run on, if any.

        An explicit pin wins, then the OpenAI-only task kinds, then the
        provider family of the model name. A "claude-*" model never runs on
        an OpenAI key.
        """
        if self.pinned_provider is not None:
            return self.pinned_provider
        if self.kind in _OPENAI_ONLY:
            return Provider.OpenAI
        return infer_provider(self.model)

    def resolved_preferred_provider(self) -> Provider | None:
        """The provider the task leans towards when its model names no family."""
        return self.preferred_provider or infer_provider(self.model)

    @property
    def max_output_tokens(self) -> int | None:
        """Caller-requested output ceiling, when given."""
        value = self.parameters.get("max_tokens")
        return int(value) if value is not None else None

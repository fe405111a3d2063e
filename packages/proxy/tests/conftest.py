"""Shared fixtures for the proxy tests.

The app's router dependency is replaced with a ByokRouter on in-memory
storage whose provider clients talk to httpx mock transports.
"""

import json

import httpx
import pytest
from cryptography.fernet import Fernet
from fastapi.testclient import TestClient

from byokrouter.domain.models.policy import RoutingPolicy
from byokrouter.domain.models.provider import Provider
from byokrouter.infrastructure.adapters import AnthropicClient, OpenAIClient
from byokrouter.infrastructure.config.policy_sources import StaticPolicySource
from byokrouter.infrastructure.utils.encryption import EncryptionService
from byokrouter.router import ByokRouter
from byokrouter_proxy.dependencies import get_router
from byokrouter_proxy.main import app

USER_SECRET = "sk-user-openai-abcdef12345"
PLATFORM_SECRET = "sk-platform-openai-99999"

STREAM_EVENTS = [
    {"choices": [{"index": 0, "delta": {"role": "assistant", "content": "Hello"}}]},
    {"choices": [{"index": 0, "delta": {"content": " there"}}]},
    {"choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}]},
    {"choices": [], "usage": {"prompt_tokens": 10, "completion_tokens": 2}},
]


class FakeOpenAI:
    """Answers OpenAI API requests; secrets not in `valid` get a 401."""

    def __init__(self) -> None:
        self.valid = {USER_SECRET, PLATFORM_SECRET}
        self.status_override: int | None = None
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        secret = request.headers["authorization"].removeprefix("Bearer ")
        if secret not in self.valid:
            return httpx.Response(401, json={"error": {"message": "Incorrect API key provided"}})
        if self.status_override is not None:
            return httpx.Response(
                self.status_override,
                headers={"retry-after": "3"},
                json={"error": {"message": "Provider overloaded"}},
            )
        path = request.url.path
        if path.endswith("/models"):
            return httpx.Response(200, json={"data": []})
        if path.endswith("/embeddings"):
            return httpx.Response(
                200,
                json={"data": [{"embedding": [0.1, 0.2, 0.3]}], "usage": {"prompt_tokens": 3}},
            )
        if path.endswith("/audio/transcriptions"):
            return httpx.Response(200, json={"text": "transcribed text"})
        body = json.loads(request.content)
        if body.get("stream"):
            return httpx.Response(
                200,
                headers={"content-type": "text/event-stream"},
                content="".join(f"data: {json.dumps(event)}\n\n" for event in STREAM_EVENTS)
                + "data: [DONE]\n\n",
            )
        return httpx.Response(
            200,
            json={
                "model": body["model"],
                "choices": [{"message": {"role": "assistant", "content": "Hello from OpenAI"}}],
                "usage": {"prompt_tokens": 10, "completion_tokens": 5},
            },
        )


@pytest.fixture(autouse=True)
def isolate_policy_env(monkeypatch):
    """Keep routing flags from the developer's shell out of the tests."""
    for flag in ("BYOK_ENABLED", "BYOK_USES_INTERNAL_CREDITS", "BYOK_ONLY_MODE", "POLICY_FILE"):
        monkeypatch.delenv(f"BYOKROUTER_{flag}", raising=False)


@pytest.fixture
def fake_openai() -> FakeOpenAI:
    return FakeOpenAI()


@pytest.fixture
def policy_source() -> StaticPolicySource:
    return StaticPolicySource(RoutingPolicy(byok_enabled=True))


@pytest.fixture
def byok_router(fake_openai: FakeOpenAI, policy_source: StaticPolicySource) -> ByokRouter:
    return ByokRouter(
        config={
            "openai_api_key": PLATFORM_SECRET,
            "retry_max_attempts": 1,
            "log_json": False,
        },
        policy_source=policy_source,
        provider_clients={
            Provider.OpenAI: OpenAIClient(transport=httpx.MockTransport(fake_openai)),
            Provider.Anthropic: AnthropicClient(
                transport=httpx.MockTransport(lambda request: httpx.Response(401))
            ),
        },
        encryption_service=EncryptionService(Fernet.generate_key().decode()),
    )


@pytest.fixture
def client(byok_router: ByokRouter):
    app.dependency_overrides[get_router] = lambda: byok_router
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def user_headers() -> dict[str, str]:
    return {"X-User-Id": "user-1"}

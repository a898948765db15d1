"""Shared helpers: mock HTTP backends and a recording backoff sleep."""

from __future__ import annotations

import json
from typing import Any, Callable

import httpx
import pytest

from ide_assist.cancellation import CancellationToken
from ide_assist.config import BackendSpec, EngineConfig
from ide_assist.events.bus import EventBus
from ide_assist.llm.client import AsyncLLMClient
from ide_assist.llm.retry import RetryCoordinator
from ide_assist.llm.transport import Transport

Handler = Callable[[httpx.Request], Any]


class FakeSleep:
    """Backoff sleep that records delays instead of waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float, token: CancellationToken) -> None:
        token.raise_if_cancelled()
        self.delays.append(delay)


class RecordingBackend:
    """``httpx.MockTransport`` handler replaying canned responses in order.

    Each entry is an ``httpx.Response``, an exception to raise, or a
    callable taking the request.  The last entry repeats once the list is
    exhausted.
    """

    def __init__(self, *responses: Any) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    @property
    def bodies(self) -> list[dict[str, Any]]:
        return [json.loads(r.content) if r.content else {} for r in self.requests]

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        index = min(len(self.requests) - 1, len(self.responses) - 1)
        entry = self.responses[index]
        if isinstance(entry, BaseException):
            raise entry
        if callable(entry):
            result = entry(request)
            if hasattr(result, "__await__"):
                result = await result
            return result
        # Fresh copy so a repeated entry is never read twice
        return httpx.Response(entry.status_code, headers=entry.headers, content=entry.content)


def ollama_reply(content: str = "Hello!", tool_calls: list | None = None) -> httpx.Response:
    message: dict[str, Any] = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    return httpx.Response(200, json={
        "model": "qwen3-8b",
        "message": message,
        "done": True,
        "done_reason": "stop",
        "prompt_eval_count": 15,
        "eval_count": 25,
    })


def openai_reply(content: str = "Hello!", tool_calls: list | None = None) -> httpx.Response:
    message: dict[str, Any] = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    return httpx.Response(200, json={
        "model": "small-model",
        "choices": [{"message": message, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": 10, "completion_tokens": 20, "total_tokens": 30},
    })


def make_client(
    handler: Handler,
    event_bus: EventBus | None = None,
    sleep: FakeSleep | None = None,
) -> AsyncLLMClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AsyncLLMClient(
        transport=Transport(http),
        event_bus=event_bus,
        retry=RetryCoordinator(event_bus, sleep=sleep or FakeSleep()),
    )


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def ollama_config() -> EngineConfig:
    return EngineConfig(backend=BackendSpec(provider="ollama", model="qwen3-8b"))


@pytest.fixture
def openai_config() -> EngineConfig:
    return EngineConfig(backend=BackendSpec(
        provider="openai", url="http://localhost:1234/v1", model="small-model",
    ))

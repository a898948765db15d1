"""Tests for AsyncLLMClient with mocked httpx backends."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from conftest import FakeSleep, RecordingBackend, make_client, ollama_reply, openai_reply
from ide_assist.cancellation import CancellationToken
from ide_assist.config import BackendSpec
from ide_assist.errors import Cancelled, DecodeError, HttpError, PreconditionFailed
from ide_assist.llm.retry import RetryPolicy
from ide_assist.types import ChatMessage, ChatRequest, EventType

FAST = RetryPolicy(max_retries=2, base_delay=0.5, timeout=5)
TOOLS = [{"type": "function", "function": {"name": "read_file", "parameters": {}}}]


def _request(model: str = "qwen3-8b", **kw) -> ChatRequest:
    return ChatRequest(messages=[ChatMessage.user("hi")], model=model, **kw)


@pytest.fixture
def ollama():
    return BackendSpec(provider="ollama", model="qwen3-8b").endpoint()


@pytest.fixture
def openai():
    return BackendSpec(provider="openai", url="http://localhost:1234/v1").endpoint()


class TestChat:
    async def test_ollama_chat(self, ollama):
        backend = RecordingBackend(ollama_reply("Hello!"))
        client = make_client(backend)

        resp = await client.chat(ollama, _request(), FAST, CancellationToken())

        assert resp.content == "Hello!"
        assert resp.usage["total_tokens"] == 40
        assert resp.latency_ms >= 0
        assert str(backend.requests[0].url) == "http://localhost:11434/api/chat"
        assert backend.bodies[0]["stream"] is False

    async def test_openai_chat_url(self, openai):
        backend = RecordingBackend(openai_reply("Hi"))
        resp = await make_client(backend).chat(
            openai, _request("small-model"), FAST, CancellationToken(),
        )
        assert resp.content == "Hi"
        assert str(backend.requests[0].url) == "http://localhost:1234/v1/chat/completions"

    async def test_retries_then_succeeds(self, ollama):
        sleep = FakeSleep()
        backend = RecordingBackend(
            httpx.Response(503, text="loading"),
            httpx.ConnectError("refused"),
            ollama_reply("done"),
        )
        resp = await make_client(backend, sleep=sleep).chat(
            ollama, _request(), FAST, CancellationToken(),
        )
        assert resp.content == "done"
        assert len(backend.requests) == 3
        assert sleep.delays == [0.5, 1.0]

    async def test_exhausted_retries_raise_last_error(self, ollama):
        backend = RecordingBackend(httpx.Response(500, text="boom"))
        with pytest.raises(HttpError):
            await make_client(backend).chat(ollama, _request(), FAST, CancellationToken())
        assert len(backend.requests) == FAST.max_retries + 1

    async def test_no_model_makes_no_request(self, ollama):
        backend = RecordingBackend(ollama_reply())
        with pytest.raises(PreconditionFailed):
            await make_client(backend).chat(ollama, _request(model=""), FAST, CancellationToken())
        assert backend.requests == []

    async def test_cancelled_before_dispatch(self, ollama):
        backend = RecordingBackend(ollama_reply())
        token = CancellationToken()
        token.cancel()
        with pytest.raises(Cancelled):
            await make_client(backend).chat(ollama, _request(), FAST, token)
        assert backend.requests == []

    async def test_invalid_json_body(self, ollama):
        backend = RecordingBackend(httpx.Response(200, text="<html>"))
        with pytest.raises(DecodeError):
            await make_client(backend).chat(
                ollama, _request(), RetryPolicy(max_retries=0), CancellationToken(),
            )

    async def test_fallback_only_with_tools(self, ollama, event_bus):
        text = '<tool_call>{"name": "read_file", "arguments": {"file_path": "a"}}</tool_call>'
        backend = RecordingBackend(ollama_reply(text))
        client = make_client(backend, event_bus=event_bus)

        plain = await client.chat(ollama, _request(), FAST, CancellationToken())
        assert plain.tool_calls == []

        with_tools = await client.chat(ollama, _request(tools=TOOLS), FAST, CancellationToken())
        assert with_tools.used_text_fallback is True
        assert [tc.name for tc in with_tools.tool_calls] == ["read_file"]
        fallback = event_bus.of_type(EventType.LLM_FALLBACK_TOOL_CALLS)
        assert len(fallback) == 1
        assert fallback[0].data["tools"] == ["read_file"]

    async def test_events(self, ollama, event_bus):
        client = make_client(RecordingBackend(ollama_reply()), event_bus=event_bus)
        await client.chat(ollama, _request(), FAST, CancellationToken())
        types = [e.type for e in event_bus.history]
        assert types == [EventType.LLM_REQUEST, EventType.LLM_RESPONSE]


class TestChatStream:
    async def test_ndjson_stream(self, ollama):
        body = (
            b'{"message":{"content":"Hel"},"done":false}\n'
            b'{"message":{"content":"lo"},"done":true}\n'
        )
        backend = RecordingBackend(httpx.Response(200, content=body))
        deltas: list[str] = []

        resp = await make_client(backend).chat_stream(
            ollama, _request(), FAST, CancellationToken(), on_delta=deltas.append,
        )

        assert deltas == ["Hel", "lo"]
        assert resp.content == "Hello"
        assert resp.finish_reason == "stop"
        assert backend.bodies[0]["stream"] is True

    async def test_sse_stream_with_async_sink(self, openai):
        body = b'data: {"choices":[{"delta":{"content":"Hi"}}]}\n\ndata: [DONE]\n\n'
        backend = RecordingBackend(httpx.Response(200, content=body))
        received: list[str] = []

        async def sink(delta: str) -> None:
            received.append(delta)

        resp = await make_client(backend).chat_stream(
            openai, _request("small-model"), FAST, CancellationToken(), on_delta=sink,
        )
        await asyncio.sleep(0)
        assert resp.content == "Hi"
        assert received == ["Hi"]

    async def test_failing_sink_does_not_abort(self, ollama):
        body = b'{"message":{"content":"a"},"done":false}\n{"message":{"content":"b"},"done":true}\n'
        backend = RecordingBackend(httpx.Response(200, content=body))

        def sink(delta: str) -> None:
            raise RuntimeError("ui gone")

        resp = await make_client(backend).chat_stream(
            ollama, _request(), FAST, CancellationToken(), on_delta=sink,
        )
        assert resp.content == "ab"

    async def test_open_is_retried(self, ollama):
        sleep = FakeSleep()
        ok = httpx.Response(200, content=b'{"message":{"content":"x"},"done":true}\n')
        backend = RecordingBackend(httpx.Response(503), ok)
        resp = await make_client(backend, sleep=sleep).chat_stream(
            ollama, _request(), FAST, CancellationToken(),
        )
        assert resp.content == "x"
        assert len(backend.requests) == 2
        assert sleep.delays == [0.5]

    async def test_eof_without_done(self, ollama):
        backend = RecordingBackend(
            httpx.Response(200, content=b'{"message":{"content":"cut"},"done":false}\n'),
        )
        resp = await make_client(backend).chat_stream(
            ollama, _request(), FAST, CancellationToken(),
        )
        assert resp.content == "cut"
        assert resp.finish_reason == "eof"

    async def test_streamed_fallback_calls(self, ollama, event_bus):
        line = (
            b'{"message":{"content":"<tool_call>{\\"name\\": \\"read_file\\", '
            b'\\"arguments\\": {\\"file_path\\": \\"a\\"}}</tool_call>"},"done":true}\n'
        )
        backend = RecordingBackend(httpx.Response(200, content=line))
        resp = await make_client(backend, event_bus=event_bus).chat_stream(
            ollama, _request(tools=TOOLS), FAST, CancellationToken(),
        )
        assert resp.used_text_fallback is True
        assert resp.tool_calls[0].name == "read_file"
        assert event_bus.of_type(EventType.LLM_STREAMING)


class TestModels:
    async def test_list_ollama_models(self, ollama):
        backend = RecordingBackend(httpx.Response(200, json={"models": [{"name": "qwen3-8b"}]}))
        assert await make_client(backend).list_models(ollama) == ["qwen3-8b"]
        assert str(backend.requests[0].url) == "http://localhost:11434/api/tags"

    async def test_list_openai_models(self, openai):
        backend = RecordingBackend(httpx.Response(200, json={"data": [{"id": "a"}, {"id": "b"}]}))
        assert await make_client(backend).list_models(openai) == ["a", "b"]
        assert str(backend.requests[0].url) == "http://localhost:1234/v1/models"

    async def test_connection_ok(self, ollama):
        backend = RecordingBackend(httpx.Response(200, json={"models": []}))
        status = await make_client(backend).test_connection(ollama)
        assert status.success is True

    async def test_connection_failure_is_not_retried(self, ollama):
        backend = RecordingBackend(httpx.ConnectError("refused"))
        status = await make_client(backend).test_connection(ollama)
        assert status.success is False
        assert "Ollama" in status.hint
        assert len(backend.requests) == 1

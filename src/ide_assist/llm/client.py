"""Async chat client for local inference backends (Ollama, LM Studio, ...).

Composes the pieces of one round-trip: the ``WireAdapter`` shapes the
request, the ``RetryCoordinator`` repeats the ``Transport`` call under a
``RetryPolicy``, and streaming bodies go through a ``StreamDecoder``.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from contextlib import AsyncExitStack
from dataclasses import dataclass, replace
from typing import Any, Callable

import httpx

from ide_assist.cancellation import CancellationToken
from ide_assist.errors import DecodeError, EngineError
from ide_assist.events.bus import EventBus
from ide_assist.types import AgentEvent, ChatRequest, EventType, LLMResponse

from .adapters import Endpoint
from .response_parser import declared_tool_names
from .retry import CONNECTION_TEST, MODEL_LISTING, RetryCoordinator, RetryPolicy
from .stream import StreamDecoder
from .transport import Transport, translate_errors

_logger = logging.getLogger(__name__)

# Receives each streamed delta; may be sync or async
ProgressSink = Callable[[str], Any]

_CONNECTION_HINTS = {
    "ollama": "Make sure Ollama is running. Install it from https://ollama.com and start it.",
    "openai": "Make sure LM Studio is running and its local server is enabled.",
}


@dataclass
class ConnectionStatus:
    success: bool
    error: str = ""
    hint: str = ""


class AsyncLLMClient:
    """Chat client shared by every turn.

    Holds no per-conversation state: endpoint, request and policy are
    passed into each call.

    Parameters
    ----------
    transport:
        Optional pre-built ``Transport``.
    event_bus:
        Optional bus for request/response/retry/fallback events.
    retry:
        Optional ``RetryCoordinator`` (tests inject one with a fake sleep).
    """

    def __init__(
        self,
        transport: Transport | None = None,
        event_bus: EventBus | None = None,
        retry: RetryCoordinator | None = None,
    ) -> None:
        self._transport = transport or Transport()
        self._event_bus = event_bus
        self._retry = retry or RetryCoordinator(event_bus)
        self._sink_tasks: set[asyncio.Future[Any]] = set()

    # ------------------------------------------------------------------
    # Non-streaming chat
    # ------------------------------------------------------------------

    async def chat(
        self,
        endpoint: Endpoint,
        request: ChatRequest,
        policy: RetryPolicy,
        token: CancellationToken,
    ) -> LLMResponse:
        """Send a non-streaming chat request and decode the reply."""
        adapter = endpoint.adapter
        request = replace(request, stream=False)
        body = adapter.build_body(request)
        await self._announce(endpoint, request, policy)

        start = time.monotonic()

        async def _attempt() -> LLMResponse:
            resp = await self._transport.send(
                "POST", endpoint.chat_url, body=body,
                timeout=policy.timeout, token=token,
            )
            try:
                data = resp.json()
            except ValueError as e:
                raise DecodeError(
                    f"Failed to parse response: {e}. Response: {resp.text[:200]}"
                ) from e
            return adapter.parse_response(data, declared_tool_names(request.tools))

        response = await self._retry.run(
            _attempt, policy, token, label=f"{endpoint.provider.value} chat",
        )
        response.latency_ms = (time.monotonic() - start) * 1000
        response.model = response.model or request.model
        await self._finish(endpoint, response)
        return response

    # ------------------------------------------------------------------
    # Streaming chat
    # ------------------------------------------------------------------

    async def chat_stream(
        self,
        endpoint: Endpoint,
        request: ChatRequest,
        policy: RetryPolicy,
        token: CancellationToken,
        on_delta: ProgressSink | None = None,
    ) -> LLMResponse:
        """Stream a chat reply, forwarding each delta to *on_delta*.

        Retries cover opening the stream; once the body is being read a
        failure ends the call.
        """
        adapter = endpoint.adapter
        request = replace(request, stream=True)
        body = adapter.build_body(request)
        await self._announce(endpoint, request, policy)

        start = time.monotonic()
        decoder = StreamDecoder(adapter)
        parts: list[str] = []

        async with AsyncExitStack() as stack:

            async def _open() -> httpx.Response:
                return await stack.enter_async_context(self._transport.open_stream(
                    "POST", endpoint.chat_url, body=body,
                    timeout=policy.timeout, token=token,
                ))

            response = await self._retry.run(
                _open, policy, token, label=f"{endpoint.provider.value} stream",
            )
            await self._emit(EventType.LLM_STREAMING, {"model": request.model})
            with translate_errors(policy.timeout):
                async for delta in decoder.deltas(response.aiter_bytes(), token):
                    parts.append(delta)
                    self._forward(on_delta, delta)

        content = "".join(parts)
        tool_calls = decoder.tool_calls
        used_fallback = False
        tool_names = declared_tool_names(request.tools)
        if not tool_calls and content and tool_names:
            tool_calls = adapter.extractor.extract(content, tool_names)
            used_fallback = bool(tool_calls)

        result = LLMResponse(
            content=content,
            tool_calls=tool_calls,
            model=request.model,
            finish_reason="stop" if decoder.finished else "eof",
            latency_ms=(time.monotonic() - start) * 1000,
            used_text_fallback=used_fallback,
        )
        await self._finish(endpoint, result)
        return result

    # ------------------------------------------------------------------
    # Models / connectivity
    # ------------------------------------------------------------------

    async def list_models(
        self,
        endpoint: Endpoint,
        token: CancellationToken | None = None,
        policy: RetryPolicy = MODEL_LISTING,
    ) -> list[str]:
        """Return model names served by the backend."""
        token = token or CancellationToken()
        _logger.debug("Fetching available models from %s", endpoint.models_url)

        async def _attempt() -> list[str]:
            resp = await self._transport.send(
                "GET", endpoint.models_url, timeout=policy.timeout, token=token,
            )
            try:
                return endpoint.adapter.parse_models(resp.json())
            except ValueError as e:
                raise DecodeError(f"Invalid model list: {e}") from e

        models = await self._retry.run(
            _attempt, policy, token, label=f"{endpoint.provider.value} models",
        )
        _logger.debug("Fetched %d model(s) from %s", len(models), endpoint.provider.value)
        return models

    async def test_connection(self, endpoint: Endpoint) -> ConnectionStatus:
        """Probe the model-listing endpoint once with a short timeout."""
        hint = _CONNECTION_HINTS[endpoint.provider.value]
        try:
            await self._transport.send(
                "GET", endpoint.models_url,
                timeout=CONNECTION_TEST.timeout, token=CancellationToken(),
            )
        except EngineError as e:
            _logger.warning("Connection test failed for %s: %s", endpoint.provider.value, e)
            return ConnectionStatus(success=False, error=str(e), hint=hint)
        return ConnectionStatus(success=True)

    async def close(self) -> None:
        await self._transport.close()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _forward(self, sink: ProgressSink | None, delta: str) -> None:
        """Hand *delta* to the sink without waiting on it."""
        if sink is None:
            return
        try:
            result = sink(delta)
        except Exception:
            _logger.exception("Progress sink raised; continuing")
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._sink_tasks.add(task)
            task.add_done_callback(self._sink_done)

    def _sink_done(self, task: asyncio.Future[Any]) -> None:
        self._sink_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            _logger.error("Progress sink failed: %s", task.exception())

    async def _announce(
        self, endpoint: Endpoint, request: ChatRequest, policy: RetryPolicy,
    ) -> None:
        _logger.debug(
            "Sending %s request: provider=%s model=%s messages=%d tools=%s timeout=%gs",
            "streaming" if request.stream else "chat",
            endpoint.provider.value, request.model, len(request.messages),
            bool(request.tools), policy.timeout,
        )
        await self._emit(EventType.LLM_REQUEST, {
            "provider": endpoint.provider.value,
            "model": request.model,
            "messages": len(request.messages),
            "stream": request.stream,
            "tools": bool(request.tools),
        })

    async def _finish(self, endpoint: Endpoint, response: LLMResponse) -> None:
        if response.used_text_fallback:
            names = [tc.name for tc in response.tool_calls]
            _logger.info(
                "Tool calls extracted from text (fallback parsing): %s", names,
            )
            await self._emit(EventType.LLM_FALLBACK_TOOL_CALLS, {
                "provider": endpoint.provider.value,
                "tools": names,
            })
        _logger.debug(
            "Chat completion finished: provider=%s length=%d tool_calls=%d latency=%.0fms",
            endpoint.provider.value, len(response.content),
            len(response.tool_calls), response.latency_ms,
        )
        await self._emit(EventType.LLM_RESPONSE, {
            "model": response.model,
            "content_length": len(response.content),
            "tool_calls": len(response.tool_calls),
            "fallback": response.used_text_fallback,
            "latency_ms": response.latency_ms,
        })

    async def _emit(self, event_type: EventType, data: dict[str, Any]) -> None:
        if self._event_bus:
            await self._event_bus.emit(AgentEvent(type=event_type, data=data))

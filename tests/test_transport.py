"""Tests for Transport: timeouts, cancellation and error mapping."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from ide_assist.cancellation import CancellationToken
from ide_assist.errors import Cancelled, HttpError, NetworkError, RequestTimeout
from ide_assist.llm.transport import Transport


def _transport(handler) -> Transport:
    return Transport(httpx.AsyncClient(transport=httpx.MockTransport(handler)))


class TestSend:
    async def test_success(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"ok": True})

        token = CancellationToken()
        resp = await _transport(handler).send(
            "POST", "http://backend/api/chat", body={"a": 1}, timeout=5, token=token,
        )
        assert resp.json() == {"ok": True}
        assert seen[0].method == "POST"
        assert json.loads(seen[0].content) == {"a": 1}
        assert token.listener_count == 0

    async def test_http_error_carries_status_and_body(self):
        transport = _transport(lambda r: httpx.Response(404, text="model not found"))
        with pytest.raises(HttpError) as exc_info:
            await transport.send("GET", "http://backend/x", timeout=5, token=CancellationToken())
        assert exc_info.value.status == 404
        assert exc_info.value.body == "model not found"
        assert "status: 404" in str(exc_info.value)

    async def test_connection_error_maps_to_network_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(NetworkError, match="ConnectError"):
            await _transport(handler).send(
                "GET", "http://backend/x", timeout=5, token=CancellationToken(),
            )

    async def test_httpx_timeout_maps_to_request_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(RequestTimeout, match="2s"):
            await _transport(handler).send(
                "GET", "http://backend/x", timeout=2, token=CancellationToken(),
            )

    async def test_internal_timer(self):
        async def handler(request):
            await asyncio.sleep(10)
            return httpx.Response(200)

        token = CancellationToken()
        with pytest.raises(RequestTimeout):
            await _transport(handler).send(
                "GET", "http://backend/x", timeout=0.05, token=token,
            )
        assert token.listener_count == 0

    async def test_cancel_in_flight(self):
        started = asyncio.Event()

        async def handler(request):
            started.set()
            await asyncio.sleep(10)
            return httpx.Response(200)

        token = CancellationToken()
        call = asyncio.create_task(_transport(handler).send(
            "GET", "http://backend/x", timeout=30, token=token,
        ))
        await started.wait()
        token.cancel()

        with pytest.raises(Cancelled):
            await call
        assert token.listener_count == 0

    async def test_outer_cancellation_settles_request(self):
        started = asyncio.Event()
        request_cancelled = asyncio.Event()

        async def handler(request):
            started.set()
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                request_cancelled.set()
                raise
            return httpx.Response(200)

        token = CancellationToken()
        call = asyncio.create_task(_transport(handler).send(
            "GET", "http://backend/x", timeout=30, token=token,
        ))
        await started.wait()
        call.cancel()

        with pytest.raises(asyncio.CancelledError):
            await call
        assert request_cancelled.is_set()
        assert token.listener_count == 0

    async def test_cancelled_before_send_makes_no_request(self):
        calls = []
        token = CancellationToken()
        token.cancel()
        with pytest.raises(Cancelled):
            await _transport(lambda r: calls.append(r) or httpx.Response(200)).send(
                "GET", "http://backend/x", timeout=5, token=token,
            )
        assert calls == []


class TestOpenStream:
    async def test_streams_body(self):
        transport = _transport(lambda r: httpx.Response(200, content=b"line1\nline2\n"))
        async with transport.open_stream(
            "POST", "http://backend/s", body={}, timeout=5, token=CancellationToken(),
        ) as resp:
            data = b"".join([chunk async for chunk in resp.aiter_bytes()])
        assert data == b"line1\nline2\n"

    async def test_error_status_reads_body(self):
        transport = _transport(lambda r: httpx.Response(500, content=b"boom"))
        with pytest.raises(HttpError) as exc_info:
            async with transport.open_stream(
                "POST", "http://backend/s", body={}, timeout=5, token=CancellationToken(),
            ):
                pass
        assert exc_info.value.status == 500
        assert exc_info.value.body == "boom"

"""Tests for StreamDecoder over NDJSON and SSE bodies."""

from __future__ import annotations

import asyncio

import pytest

from ide_assist.cancellation import CancellationToken
from ide_assist.errors import Cancelled
from ide_assist.llm.adapters import NdjsonAdapter, SseAdapter
from ide_assist.llm.stream import StreamDecoder


async def _chunks(*parts: bytes | str):
    for part in parts:
        yield part


async def _collect(decoder: StreamDecoder, source, token=None) -> list[str]:
    return [d async for d in decoder.deltas(source, token or CancellationToken())]


class TestNdjson:
    async def test_example_hello(self):
        body = (
            b'{"message":{"content":"Hel"},"done":false}\n'
            b'{"message":{"content":"lo"},"done":true}'
        )
        decoder = StreamDecoder(NdjsonAdapter())
        deltas = await _collect(decoder, _chunks(body))

        assert deltas == ["Hel", "lo"]
        assert "".join(deltas) == "Hello"
        assert decoder.finished is True

    async def test_lines_split_across_chunks(self):
        decoder = StreamDecoder(NdjsonAdapter())
        deltas = await _collect(decoder, _chunks(
            b'{"message":{"con', b'tent":"a"},"done":false}\n{"mess',
            b'age":{"content":"b"},"done":false}\n',
            b'{"message":{"content":""},"done":true}\n',
        ))
        assert deltas == ["a", "b"]

    async def test_malformed_lines_skipped(self):
        decoder = StreamDecoder(NdjsonAdapter())
        deltas = await _collect(decoder, _chunks(
            b'{"message":{"content":"one"},"done":false}\n',
            b'not json at all\n',
            b'{"message":{"content":"two"},"done":false}\n',
            b'[1, 2, 3]\n',
            b'{"message":{"content":"three"},"done":true}\n',
        ))
        assert deltas == ["one", "two", "three"]
        assert decoder.skipped_lines == 2

    async def test_nothing_after_done_line(self):
        decoder = StreamDecoder(NdjsonAdapter())
        deltas = await _collect(decoder, _chunks(
            b'{"message":{"content":"end"},"done":true}\n'
            b'{"message":{"content":"ignored"},"done":false}\n',
        ))
        assert deltas == ["end"]

    async def test_eof_without_done(self):
        decoder = StreamDecoder(NdjsonAdapter())
        deltas = await _collect(decoder, _chunks(
            b'{"message":{"content":"partial"},"done":false}\n',
        ))
        assert deltas == ["partial"]
        assert decoder.finished is False

    async def test_multibyte_character_split(self):
        encoded = '{"message":{"content":"héllo"},"done":true}\n'.encode()
        cut = encoded.index("é".encode()) + 1
        decoder = StreamDecoder(NdjsonAdapter())
        deltas = await _collect(decoder, _chunks(encoded[:cut], encoded[cut:]))
        assert deltas == ["héllo"]

    async def test_native_tool_calls_collected(self):
        decoder = StreamDecoder(NdjsonAdapter())
        await _collect(decoder, _chunks(
            b'{"message":{"content":"","tool_calls":[{"function":'
            b'{"name":"read_file","arguments":{"file_path":"a.py"}}}]},"done":false}\n',
            b'{"message":{"content":""},"done":true}\n',
        ))
        calls = decoder.tool_calls
        assert len(calls) == 1
        assert calls[0].name == "read_file"
        assert calls[0].parsed_arguments() == {"file_path": "a.py"}


class TestSse:
    async def test_example_hi(self):
        decoder = StreamDecoder(SseAdapter())
        deltas = await _collect(decoder, _chunks(
            b'data: {"choices":[{"delta":{"content":"Hi"}}]}\n'
            b'data: [DONE]\n',
        ))
        assert deltas == ["Hi"]
        assert decoder.finished is True

    async def test_stops_at_done_sentinel(self):
        decoder = StreamDecoder(SseAdapter())
        deltas = await _collect(decoder, _chunks(
            b'data: {"choices":[{"delta":{"content":"A"}}]}\n\n',
            b'data: [DONE]\n\n',
            b'data: {"choices":[{"delta":{"content":"B"}}]}\n\n',
        ))
        assert deltas == ["A"]

    async def test_non_data_lines_ignored(self):
        decoder = StreamDecoder(SseAdapter())
        deltas = await _collect(decoder, _chunks(
            b': keep-alive\n',
            b'event: message\n',
            b'data: {"choices":[{"delta":{"content":"ok"}}]}\r\n',
            b'data: {broken\n',
            b'data: [DONE]\n',
        ))
        assert deltas == ["ok"]

    async def test_tool_call_fragments_accumulated(self):
        decoder = StreamDecoder(SseAdapter())
        await _collect(decoder, _chunks(
            b'data: {"choices":[{"delta":{"tool_calls":[{"index":0,"id":"call_1",'
            b'"function":{"name":"create_file","arguments":"{\\"file_path\\":"}}]}}]}\n',
            b'data: {"choices":[{"delta":{"tool_calls":[{"index":0,'
            b'"function":{"arguments":"\\"a.js\\",\\"content\\":\\"x\\"}"}}]}}]}\n',
            b'data: [DONE]\n',
        ))
        calls = decoder.tool_calls
        assert [c.id for c in calls] == ["call_1"]
        assert calls[0].parsed_arguments() == {"file_path": "a.js", "content": "x"}

    async def test_text_chunks_accepted(self):
        decoder = StreamDecoder(SseAdapter())
        deltas = await _collect(decoder, _chunks(
            'data: {"choices":[{"delta":{"content":"str"}}]}\n', "data: [DONE]\n",
        ))
        assert deltas == ["str"]


class TestLifecycle:
    async def test_single_use(self):
        decoder = StreamDecoder(NdjsonAdapter())
        await _collect(decoder, _chunks(b'{"message":{"content":"x"},"done":true}\n'))
        with pytest.raises(RuntimeError):
            await _collect(decoder, _chunks(b""))

    async def test_cancel_mid_stream(self):
        token = CancellationToken()
        gate = asyncio.Event()
        closed = []

        async def source():
            try:
                yield b'{"message":{"content":"before"},"done":false}\n'
                await gate.wait()
                yield b'{"message":{"content":"after"},"done":true}\n'
            finally:
                closed.append(True)

        decoder = StreamDecoder(NdjsonAdapter())
        received: list[str] = []

        async def consume():
            async for delta in decoder.deltas(source(), token):
                received.append(delta)

        task = asyncio.create_task(consume())
        while not received:
            await asyncio.sleep(0)
        token.cancel()

        with pytest.raises(Cancelled):
            await task
        assert received == ["before"]
        assert closed == [True]
        assert token.listener_count == 0

    async def test_already_cancelled(self):
        token = CancellationToken()
        token.cancel()
        decoder = StreamDecoder(NdjsonAdapter())
        with pytest.raises(Cancelled):
            await _collect(decoder, _chunks(b'{"message":{"content":"x"},"done":true}\n'), token)

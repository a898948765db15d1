"""Incremental decoding of streaming chat responses.

``StreamDecoder`` consumes a byte (or text) stream pulled in arbitrary
chunks, keeps any trailing partial line buffered between pulls and
decodes only complete lines through the provider's ``WireAdapter``.
Malformed lines are skipped; streaming is best effort.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
from typing import AsyncIterable, AsyncIterator

from ide_assist.cancellation import CancellationToken
from ide_assist.errors import Cancelled
from ide_assist.types import ToolCall

from .adapters import WireAdapter
from .response_parser import ToolCallAccumulator

_logger = logging.getLogger(__name__)


class StreamDecoder:
    """Single-use decoder for one streaming response.

    Usage::

        decoder = StreamDecoder(adapter)
        async for delta in decoder.deltas(response.aiter_bytes(), token):
            ...
        calls = decoder.tool_calls
    """

    def __init__(self, adapter: WireAdapter) -> None:
        self._adapter = adapter
        self._buffer = ""
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._tool_calls = ToolCallAccumulator()
        self._used = False
        self.finished = False
        self.skipped_lines = 0

    @property
    def tool_calls(self) -> list[ToolCall]:
        """Tool calls seen in the stream (valid once iteration ends)."""
        return self._tool_calls.finalize()

    async def deltas(
        self,
        source: AsyncIterable[bytes | str],
        token: CancellationToken,
    ) -> AsyncIterator[str]:
        """Yield every non-empty content delta in arrival order.

        Stops at the provider's completion marker or at end of stream.
        Raises ``Cancelled`` when *token* fires; the upstream is closed.
        """
        if self._used:
            raise RuntimeError("StreamDecoder instances are single-use")
        self._used = True

        upstream = source.__aiter__()
        try:
            while not self.finished:
                raw = await self._pull(upstream, token)
                if raw is None:
                    break
                self._buffer += self._text(raw)
                *lines, self._buffer = self._buffer.split("\n")
                for line in lines:
                    delta = self._decode(line)
                    if delta:
                        yield delta
                    if self.finished:
                        break

            if not self.finished:
                # End of stream: flush what is left through the same rule
                self._buffer += self._utf8.decode(b"", final=True)
                rest, self._buffer = self._buffer, ""
                for line in rest.split("\n"):
                    delta = self._decode(line)
                    if delta:
                        yield delta
                    if self.finished:
                        break
        finally:
            aclose = getattr(upstream, "aclose", None)
            if aclose is not None:
                await aclose()

        if self.skipped_lines:
            _logger.debug("Skipped %d undecodable stream line(s)", self.skipped_lines)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _pull(
        self,
        upstream: AsyncIterator[bytes | str],
        token: CancellationToken,
    ) -> bytes | str | None:
        """Read the next chunk; ``None`` at end of stream."""
        token.raise_if_cancelled()
        read = asyncio.ensure_future(upstream.__anext__())
        try:
            with token.subscription(read.cancel):
                chunk = await read
        except StopAsyncIteration:
            return None
        except asyncio.CancelledError:
            if token.cancelled:
                raise Cancelled() from None
            raise
        token.raise_if_cancelled()
        return chunk

    def _text(self, raw: bytes | str) -> str:
        if isinstance(raw, bytes):
            return self._utf8.decode(raw)
        return raw

    def _decode(self, line: str) -> str:
        line = line.rstrip("\r")
        if not line.strip():
            return ""
        chunk = self._adapter.decode_line(line)
        if chunk is None:
            self.skipped_lines += 1
            return ""
        if chunk.tool_calls:
            self._tool_calls.feed_calls(chunk.tool_calls)
        if chunk.tool_call_fragments:
            self._tool_calls.feed_fragments(chunk.tool_call_fragments)
        if chunk.done:
            self.finished = True
        return chunk.content

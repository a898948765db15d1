"""Single HTTP call with an enforced timeout and cooperative cancellation.

The transport never retries; see ``ide_assist.llm.retry`` for that.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, contextmanager, suppress
from typing import Any, AsyncIterator, Awaitable, Callable, Iterator, TypeVar

import httpx

from ide_assist.cancellation import CancellationToken
from ide_assist.errors import Cancelled, HttpError, NetworkError, RequestTimeout

_logger = logging.getLogger(__name__)

T = TypeVar("T")

# Guards against stalled connections underneath the per-call timer
_HTTPX_TIMEOUT = httpx.Timeout(30.0, read=300.0)


@contextmanager
def translate_errors(timeout: float) -> Iterator[None]:
    """Map httpx failures inside the block onto engine error kinds."""
    try:
        yield
    except httpx.TimeoutException as e:
        raise RequestTimeout(timeout) from e
    except httpx.TransportError as e:
        raise NetworkError(f"{type(e).__name__}: {e}") from e


class Transport:
    """Performs exactly one network call per ``send()``/``open_stream()``.

    Parameters
    ----------
    client:
        Optional pre-built ``httpx.AsyncClient`` (tests pass one with a
        ``MockTransport``).  If ``None``, one is created.
    """

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._client = client or httpx.AsyncClient(
            headers={"Content-Type": "application/json"},
            timeout=_HTTPX_TIMEOUT,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def send(
        self,
        method: str,
        url: str,
        *,
        body: dict[str, Any] | None = None,
        timeout: float,
        token: CancellationToken,
    ) -> httpx.Response:
        """Send a request and return the fully-read, successful response."""

        async def _call() -> httpx.Response:
            return await self._client.request(method, url, json=body)

        response = await self._guarded(_call, timeout, token)
        if not response.is_success:
            raise HttpError(response.status_code, response.text)
        return response

    @asynccontextmanager
    async def open_stream(
        self,
        method: str,
        url: str,
        *,
        body: dict[str, Any] | None = None,
        timeout: float,
        token: CancellationToken,
    ) -> AsyncIterator[httpx.Response]:
        """Open a streaming request.

        The timer covers the time until response headers arrive; reading
        the body is left to the caller, which observes *token* itself.
        """
        request = self._client.build_request(method, url, json=body)

        async def _call() -> httpx.Response:
            return await self._client.send(request, stream=True)

        response = await self._guarded(_call, timeout, token)
        try:
            if not response.is_success:
                try:
                    text = (await response.aread()).decode(errors="replace")
                except httpx.HTTPError:
                    text = ""
                raise HttpError(response.status_code, text)
            yield response
        finally:
            await response.aclose()

    async def close(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _guarded(
        self,
        call: Callable[[], Awaitable[T]],
        timeout: float,
        token: CancellationToken,
    ) -> T:
        """Run *call* under a timer and the cancellation token.

        Both the timer and the token subscription are released on every
        exit path.
        """
        token.raise_if_cancelled()

        loop = asyncio.get_running_loop()
        task = asyncio.ensure_future(call())
        timed_out = False

        def _on_timeout() -> None:
            nonlocal timed_out
            timed_out = True
            task.cancel()

        timer = loop.call_later(timeout, _on_timeout)
        try:
            with translate_errors(timeout), token.subscription(task.cancel):
                return await task
        except asyncio.CancelledError:
            if token.cancelled:
                _logger.debug("Request cancelled by caller")
                raise Cancelled() from None
            if timed_out:
                raise RequestTimeout(timeout) from None
            raise
        finally:
            timer.cancel()
            if not task.done():
                task.cancel()
                with suppress(asyncio.CancelledError, httpx.HTTPError):
                    await task

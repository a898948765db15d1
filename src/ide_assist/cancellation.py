"""Cooperative, one-way cancellation for a single turn."""

from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from typing import Callable, Iterator

from ide_assist.errors import Cancelled

_logger = logging.getLogger(__name__)

Listener = Callable[[], None]


class CancellationToken:
    """A flag that can be polled, awaited and subscribed to.

    Once ``cancel()`` is called the token stays cancelled; there is no
    reset.  Listeners registered through ``subscription()`` are invoked
    synchronously from ``cancel()``.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._listeners: list[Listener] = []
        self._waiters: list[asyncio.Future[None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                _logger.exception("Cancellation listener %r raised", listener)
        for waiter in self._waiters:
            if not waiter.done():
                waiter.set_result(None)

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise Cancelled()

    @contextmanager
    def subscription(self, listener: Listener) -> Iterator[None]:
        """Register *listener* for the duration of the ``with`` block."""
        self._listeners.append(listener)
        try:
            yield
        finally:
            self._listeners.remove(listener)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    async def wait(self) -> None:
        """Block until the token is cancelled."""
        if self._cancelled:
            return
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        finally:
            self._waiters.remove(waiter)

    async def sleep(self, delay: float) -> None:
        """Sleep for *delay* seconds, raising ``Cancelled`` if triggered."""
        self.raise_if_cancelled()
        try:
            await asyncio.wait_for(self.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise Cancelled()

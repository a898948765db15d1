"""Bounded exponential-backoff retry around a transport call."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, TypeVar

from ide_assist.cancellation import CancellationToken
from ide_assist.errors import EngineError
from ide_assist.events.bus import EventBus
from ide_assist.types import AgentEvent, EventType

_logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float, CancellationToken], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to retry, how long to wait, and the per-call timeout.

    Delay before retry *n* (0-based) is ``base_delay * factor ** n`` seconds.
    """

    max_retries: int = 3
    base_delay: float = 1.0
    factor: float = 2.0
    timeout: float = 30.0

    def delay_for(self, attempt: int) -> float:
        return self.base_delay * (self.factor ** attempt)

    def with_overrides(self, **changes: float) -> RetryPolicy:
        return replace(self, **changes)


# Per call-site presets: interactive work gets shorter timeouts
CODE_GENERATION = RetryPolicy(max_retries=2, timeout=60.0)
CHAT = RetryPolicy(max_retries=2, timeout=45.0)
STREAMING_CHAT = RetryPolicy(max_retries=1, timeout=60.0)
PROJECT_ANALYSIS = RetryPolicy(max_retries=2, timeout=90.0)
REFACTOR = RetryPolicy(max_retries=2, timeout=60.0)
EXPLAIN = RetryPolicy(max_retries=2, timeout=45.0)
COMPLETION = RetryPolicy(max_retries=2, timeout=30.0)
MODEL_LISTING = RetryPolicy(max_retries=3, timeout=30.0)
CONNECTION_TEST = RetryPolicy(max_retries=0, timeout=5.0)

PRESETS: dict[str, RetryPolicy] = {
    "code_generation": CODE_GENERATION,
    "chat": CHAT,
    "streaming_chat": STREAMING_CHAT,
    "project_analysis": PROJECT_ANALYSIS,
    "refactor": REFACTOR,
    "explain": EXPLAIN,
    "completion": COMPLETION,
    "model_listing": MODEL_LISTING,
    "connection_test": CONNECTION_TEST,
}


async def _token_sleep(delay: float, token: CancellationToken) -> None:
    await token.sleep(delay)


class RetryCoordinator:
    """Repeat an operation under a ``RetryPolicy``.

    Parameters
    ----------
    event_bus:
        Optional bus; each retry is emitted as ``EventType.LLM_RETRY``.
    sleep:
        Backoff sleep ``(delay, token) -> None``.  The default wakes up
        early and raises ``Cancelled`` when the token fires.
    """

    def __init__(
        self,
        event_bus: EventBus | None = None,
        sleep: SleepFn | None = None,
    ) -> None:
        self._event_bus = event_bus
        self._sleep = sleep or _token_sleep

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        policy: RetryPolicy,
        token: CancellationToken,
        label: str = "request",
    ) -> T:
        """Call *operation* up to ``policy.max_retries + 1`` times.

        Non-retryable errors (``Cancelled``, ``PreconditionFailed``) are
        raised immediately.  Once attempts are exhausted the last failure
        is raised.
        """
        total = policy.max_retries + 1
        for attempt in range(total):
            token.raise_if_cancelled()
            try:
                return await operation()
            except EngineError as e:
                if not e.retryable:
                    raise
                if attempt >= policy.max_retries:
                    _logger.error(
                        "%s failed after %d attempt(s): %s", label, total, e,
                    )
                    raise
                delay = policy.delay_for(attempt)
                _logger.warning(
                    "%s failed (%s), retrying in %.2fs (attempt %d/%d)",
                    label, e.kind, delay, attempt + 1, total,
                )
                if self._event_bus:
                    await self._event_bus.emit(AgentEvent(
                        type=EventType.LLM_RETRY,
                        data={
                            "label": label,
                            "attempt": attempt + 1,
                            "max_attempts": total,
                            "delay": delay,
                            "error": str(e),
                            "kind": e.kind,
                        },
                    ))
                await self._sleep(delay, token)
        raise AssertionError("unreachable")  # pragma: no cover

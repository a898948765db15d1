"""ide-assist exception hierarchy.

Every failure a turn can end with is an ``EngineError``.  ``retryable``
tells the retry coordinator whether another attempt makes sense.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ide_assist.llm.adapters import Provider
    from ide_assist.types import AssistantReply


class EngineError(Exception):
    """Base exception for all engine errors."""

    kind = "engine_error"

    def __init__(self, message: str = "", *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class PreconditionFailed(EngineError):
    """The request cannot be sent at all (e.g. no model selected)."""

    kind = "precondition_failed"

    def __init__(self, message: str = "") -> None:
        super().__init__(message, retryable=False)


class Cancelled(EngineError):
    """The caller triggered the turn's cancellation token."""

    kind = "cancelled"

    def __init__(self, message: str = "Request was cancelled by user") -> None:
        super().__init__(message, retryable=False)


class RequestTimeout(EngineError):
    kind = "timeout"

    def __init__(self, timeout: float) -> None:
        super().__init__(f"Request timeout after {timeout:g}s")
        self.timeout = timeout


class NetworkError(EngineError):
    """Connection-level failure (refused, reset, DNS, ...)."""

    kind = "network_error"


class HttpError(EngineError):
    kind = "http_error"

    def __init__(self, status: int, body: str = "") -> None:
        super().__init__(f"HTTP error! status: {status}, message: {body[:200]}")
        self.status = status
        self.body = body


class DecodeError(EngineError):
    """A non-streaming response body could not be interpreted."""

    kind = "decode_error"


class ToolExecutionError(EngineError):
    """A tool executor failed.  Captured into the conversation, never raised
    to the turn's caller."""

    kind = "tool_execution_error"

    def __init__(self, call_id: str, message: str) -> None:
        super().__init__(message, retryable=False)
        self.call_id = call_id
        self.message = message


# ---------------------------------------------------------------------------
# User-facing rendering
# ---------------------------------------------------------------------------

_BACKEND_HINTS = {
    "ollama": "Make sure Ollama is running (https://ollama.com) and reachable",
    "openai": "Make sure LM Studio is running and its local server is enabled",
}


def error_reply(exc: EngineError, provider: Provider | str) -> AssistantReply | None:
    """Render a turn failure as an inline assistant message.

    Returns ``None`` for ``Cancelled``: a deliberate stop shows no banner.
    """
    from ide_assist.types import AssistantReply

    if isinstance(exc, Cancelled):
        return None

    name = getattr(provider, "value", provider)
    hint = _BACKEND_HINTS.get(name, "Make sure the inference backend is running")
    if isinstance(exc, PreconditionFailed):
        text = f"{exc}\n\nSelect a model in the settings and try again."
    elif isinstance(exc, RequestTimeout):
        text = (
            f"The model did not answer in time ({exc}).\n\n"
            f"{hint}, or try a smaller model."
        )
    elif isinstance(exc, NetworkError):
        text = f"Could not reach the inference backend: {exc}\n\n{hint}."
    elif isinstance(exc, HttpError):
        text = f"The inference backend returned HTTP {exc.status}.\n\n{hint}."
        if exc.status == 404:
            text += " Check that the selected model is installed."
    else:
        text = f"Error: {exc}"
    return AssistantReply(content=text, is_error=True)

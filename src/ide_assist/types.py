"""Shared data types for ide-assist."""

from __future__ import annotations

import enum
import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


def new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


def new_message_id() -> str:
    return f"msg_{uuid.uuid4().hex}"


# ---------------------------------------------------------------------------
# Conversation types
# ---------------------------------------------------------------------------

class Role(str, enum.Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(frozen=True)
class ToolCall:
    """A model-issued request to invoke a named function.

    ``arguments`` stays a JSON string; only executors interpret it.
    ``source`` is ``"native"`` for calls read from the structured response
    field and ``"text"`` for calls recovered from free-form content.
    """

    id: str
    name: str
    arguments: str = "{}"
    source: str = "native"

    @property
    def from_text(self) -> bool:
        return self.source == "text"

    def parsed_arguments(self) -> dict[str, Any]:
        """Decode ``arguments``; returns ``{}`` when it is not a JSON object."""
        try:
            data = json.loads(self.arguments) if self.arguments else {}
        except (json.JSONDecodeError, TypeError):
            return {}
        return data if isinstance(data, dict) else {}


@dataclass(frozen=True)
class ChatMessage:
    """One immutable message of a conversation."""

    role: Role
    content: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    tool_call_id: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "role", Role(self.role))
        object.__setattr__(self, "tool_calls", tuple(self.tool_calls))
        if self.tool_calls and self.role is not Role.ASSISTANT:
            raise ValueError("tool_calls are only allowed on assistant messages")
        if self.role is Role.TOOL and not self.tool_call_id:
            raise ValueError("tool messages require a tool_call_id")
        if self.tool_call_id and self.role is not Role.TOOL:
            raise ValueError("tool_call_id is only allowed on tool messages")

    @classmethod
    def system(cls, content: str) -> ChatMessage:
        return cls(Role.SYSTEM, content)

    @classmethod
    def user(cls, content: str) -> ChatMessage:
        return cls(Role.USER, content)

    @classmethod
    def assistant(
        cls, content: str, tool_calls: tuple[ToolCall, ...] | list[ToolCall] = (),
    ) -> ChatMessage:
        return cls(Role.ASSISTANT, content, tool_calls=tuple(tool_calls))

    @classmethod
    def tool(cls, call_id: str, content: str) -> ChatMessage:
        return cls(Role.TOOL, content, tool_call_id=call_id)


# ---------------------------------------------------------------------------
# LLM types
# ---------------------------------------------------------------------------

@dataclass
class ChatRequest:
    """Provider-agnostic chat completion request."""

    messages: list[ChatMessage]
    model: str
    stream: bool = False
    tools: list[dict[str, Any]] | None = None
    temperature: float = 0.3
    top_p: float = 0.9
    max_tokens: int = 2048


@dataclass
class LLMResponse:
    """Unified non-streaming (or fully accumulated streaming) response."""

    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    model: str = ""
    finish_reason: str = ""
    usage: dict[str, int] = field(default_factory=dict)
    latency_ms: float = 0
    used_text_fallback: bool = False

    @property
    def has_tool_calls(self) -> bool:
        return len(self.tool_calls) > 0


@dataclass
class StreamChunk:
    """One decoded streaming line."""

    content: str = ""
    done: bool = False
    tool_calls: list[ToolCall] = field(default_factory=list)
    # Incremental OpenAI-style ``delta.tool_calls`` entries
    tool_call_fragments: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class AssistantReply:
    """Final output of one user turn."""

    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    id: str = field(default_factory=new_message_id)
    role: Role = Role.ASSISTANT
    timestamp: datetime = field(default_factory=datetime.now)
    is_error: bool = False

    def to_message(self) -> ChatMessage:
        """Transcript form: tool calls are not carried into history."""
        return ChatMessage.assistant(self.content)


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

class EventType(enum.Enum):
    """Event types emitted by the engine."""

    # Turn lifecycle
    TURN_STARTED = "turn.started"
    TURN_DONE = "turn.done"
    TURN_ERROR = "turn.error"
    TURN_CANCELLED = "turn.cancelled"

    # LLM events
    LLM_REQUEST = "llm.request"
    LLM_RESPONSE = "llm.response"
    LLM_RETRY = "llm.retry"
    LLM_STREAMING = "llm.streaming"
    LLM_FALLBACK_TOOL_CALLS = "llm.fallback_tool_calls"

    # Tool events
    TOOL_EXECUTING = "tool.executing"
    TOOL_EXECUTED = "tool.executed"
    TOOL_ERROR = "tool.error"


@dataclass
class AgentEvent:
    """Event emitted through the EventBus."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

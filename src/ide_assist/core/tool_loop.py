"""Tool-call loop: one user turn with at most one tool-execution round.

Compose -> Dispatch -> Inspect -> Execute -> Synthesize -> Done.

Tool failures are folded into the conversation as tool messages; transport
failures at dispatch or synthesis end the turn.  ``Cancelled`` is terminal
and no synthesis round is started after it.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Sequence

from ide_assist.cancellation import CancellationToken
from ide_assist.errors import Cancelled, EngineError, ToolExecutionError
from ide_assist.events.bus import EventBus
from ide_assist.llm.adapters import Endpoint
from ide_assist.llm.client import AsyncLLMClient, ProgressSink
from ide_assist.types import (
    AgentEvent,
    AssistantReply,
    ChatMessage,
    ChatRequest,
    EventType,
    LLMResponse,
    Role,
    ToolCall,
)

from .context import ContextAssembler, ProjectFile, Snippet, SymbolSummary

if TYPE_CHECKING:
    from ide_assist.config import EngineConfig

_logger = logging.getLogger(__name__)

# Takes one ToolCall; returns a value (or awaitable of one), or raises.
ToolExecutor = Callable[[ToolCall], Any]

# Tools whose successful results are listed under "Files created"
FILE_CREATING_TOOLS = frozenset({"create_file"})


@dataclass
class ProjectContext:
    """Already-materialized project data for the system preamble."""

    files: list[ProjectFile] = field(default_factory=list)
    symbols: SymbolSummary | None = None
    snippets: list[Snippet] = field(default_factory=list)
    project_path: str | None = None


@dataclass
class ToolOutcome:
    """Result of running one ToolCall through the executor."""

    call: ToolCall
    value: Any = None
    error: ToolExecutionError | None = None

    @property
    def success(self) -> bool:
        return self.error is None

    def to_message(self) -> ChatMessage:
        if self.error is not None:
            content = json.dumps({"success": False, "error": self.error.message})
        elif isinstance(self.value, str):
            content = self.value
        else:
            content = json.dumps(self.value, default=str)
        return ChatMessage.tool(self.call.id, content)

    def created_path(self) -> str | None:
        """Path reported by a successful file-creating call, if any."""
        if not self.success or self.call.name not in FILE_CREATING_TOOLS:
            return None
        if isinstance(self.value, Mapping):
            path = self.value.get("file_path") or self.value.get("relative_path")
            if path:
                return str(path)
        return self.call.parsed_arguments().get("file_path") or None


class ToolCallLoop:
    """Runs user turns against a backend with tools attached.

    Parameters
    ----------
    client:
        Shared ``AsyncLLMClient``.
    executor:
        Callable run once per ToolCall.  When *None*, no tool declarations
        are sent and replies are returned as-is.
    tools:
        Tool declarations (OpenAI function shape) attached to the first
        round.
    event_bus:
        Optional bus for turn and tool events.
    """

    def __init__(
        self,
        client: AsyncLLMClient,
        executor: ToolExecutor | None = None,
        tools: list[dict[str, Any]] | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._client = client
        self._executor = executor
        self._tools = tools if executor is not None else None
        self._event_bus = event_bus

    async def run_turn(
        self,
        config: EngineConfig,
        user_message: str,
        history: Sequence[ChatMessage] = (),
        *,
        context: ProjectContext | None = None,
        kind: str = "chat",
        operation: str | None = None,
        token: CancellationToken | None = None,
        stream: bool = False,
        on_delta: ProgressSink | None = None,
    ) -> AssistantReply:
        """Run one turn to completion.

        *operation* names the retry policy of the first round; it defaults
        to ``"streaming_chat"`` or ``"chat"``.  The synthesis round always
        uses the ``"chat"`` policy.

        Raises the turn's ``EngineError`` when dispatch or synthesis fails;
        ``Cancelled`` when *token* is triggered.
        """
        token = token or CancellationToken()
        await self._emit(EventType.TURN_STARTED, {
            "model": config.backend.model, "stream": stream, "kind": kind,
        })
        try:
            reply = await self._run(
                config, user_message, history, context or ProjectContext(),
                kind, operation or ("streaming_chat" if stream else "chat"),
                token, stream, on_delta,
            )
        except Cancelled:
            _logger.info("Turn cancelled")
            await self._emit(EventType.TURN_CANCELLED, {})
            raise
        except EngineError as e:
            _logger.error("Turn failed: %s", e)
            await self._emit(EventType.TURN_ERROR, {"kind": e.kind, "error": str(e)})
            raise
        await self._emit(EventType.TURN_DONE, {
            "content_length": len(reply.content),
            "tool_calls": len(reply.tool_calls),
        })
        return reply

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _run(
        self,
        config: EngineConfig,
        user_message: str,
        history: Sequence[ChatMessage],
        context: ProjectContext,
        kind: str,
        operation: str,
        token: CancellationToken,
        stream: bool,
        on_delta: ProgressSink | None,
    ) -> AssistantReply:
        messages = self.compose(config, user_message, history, context, kind)
        token.raise_if_cancelled()

        backend = config.backend
        endpoint = backend.endpoint()
        request = ChatRequest(
            messages=messages,
            model=backend.model,
            tools=self._tools,
            temperature=backend.temperature,
            top_p=backend.top_p,
            max_tokens=backend.max_tokens,
        )

        if stream:
            response = await self._client.chat_stream(
                endpoint, request, config.policy(operation), token, on_delta,
            )
        else:
            response = await self._client.chat(
                endpoint, request, config.policy(operation), token,
            )

        if not response.has_tool_calls or self._executor is None:
            return AssistantReply(content=response.content)

        _logger.info(
            "Model requested %d tool call(s): %s",
            len(response.tool_calls), [tc.name for tc in response.tool_calls],
        )
        outcomes = await self.execute(response.tool_calls, token)
        token.raise_if_cancelled()

        final = await self._synthesize(
            endpoint, config, request, response, outcomes, token,
        )
        content = final.content + _created_files_summary(outcomes)
        return AssistantReply(content=content, tool_calls=list(response.tool_calls))

    def compose(
        self,
        config: EngineConfig,
        user_message: str,
        history: Sequence[ChatMessage],
        context: ProjectContext,
        kind: str = "chat",
    ) -> list[ChatMessage]:
        """System preamble + prior turns + the new user message."""
        caps = config.generation_context if kind == "code_generation" else config.chat_context
        preamble = ContextAssembler(caps).build(
            kind,
            files=context.files,
            symbols=context.symbols,
            snippets=context.snippets,
            project_path=context.project_path,
        )
        return [
            ChatMessage.system(preamble),
            *[m for m in history if m.role is not Role.SYSTEM],
            ChatMessage.user(user_message),
        ]

    async def execute(
        self, tool_calls: Sequence[ToolCall], token: CancellationToken,
    ) -> list[ToolOutcome]:
        """Run every call concurrently; outcomes keep the order of *tool_calls*.

        All executions settle before this returns, even when one of them
        is cut short by cancellation; ``Cancelled`` is raised afterwards.
        """
        results = await asyncio.gather(
            *(self._execute_one(tc, token) for tc in tool_calls),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return list(results)

    async def _execute_one(self, tc: ToolCall, token: CancellationToken) -> ToolOutcome:
        assert self._executor is not None
        await self._emit(EventType.TOOL_EXECUTING, {
            "tool": tc.name, "call_id": tc.id, "source": tc.source,
        })
        try:
            token.raise_if_cancelled()
            value = self._executor(tc)
            if inspect.isawaitable(value):
                value = await value
        except Cancelled:
            raise
        except Exception as e:
            error = ToolExecutionError(tc.id, str(e) or type(e).__name__)
        else:
            error = _failure_of(tc, value)

        if error is not None:
            _logger.warning("Tool %s (%s) failed: %s", tc.name, tc.id, error.message)
            await self._emit(EventType.TOOL_ERROR, {
                "tool": tc.name, "call_id": tc.id, "error": error.message,
            })
            return ToolOutcome(call=tc, error=error)

        _logger.debug("Tool %s (%s) succeeded", tc.name, tc.id)
        await self._emit(EventType.TOOL_EXECUTED, {"tool": tc.name, "call_id": tc.id})
        return ToolOutcome(call=tc, value=value)

    async def _synthesize(
        self,
        endpoint: Endpoint,
        config: EngineConfig,
        request: ChatRequest,
        response: LLMResponse,
        outcomes: list[ToolOutcome],
        token: CancellationToken,
    ) -> LLMResponse:
        tool_messages = [o.to_message() for o in outcomes]
        if len(tool_messages) != len(response.tool_calls):
            raise RuntimeError("tool result count does not match tool call count")
        messages = [
            *request.messages,
            ChatMessage.assistant(response.content, response.tool_calls),
            *tool_messages,
        ]
        _logger.debug("Synthesis round with %d tool result(s)", len(tool_messages))
        synthesis = ChatRequest(
            messages=messages,
            model=request.model,
            tools=None,
            temperature=request.temperature,
            top_p=request.top_p,
            max_tokens=request.max_tokens,
        )
        return await self._client.chat(
            endpoint, synthesis, config.policy("chat"), token,
        )

    async def _emit(self, event_type: EventType, data: dict[str, Any]) -> None:
        if self._event_bus:
            await self._event_bus.emit(AgentEvent(type=event_type, data=data))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _failure_of(tc: ToolCall, value: Any) -> ToolExecutionError | None:
    """Executors may report failure by returning instead of raising."""
    if isinstance(value, BaseException):
        return ToolExecutionError(tc.id, str(value) or type(value).__name__)
    if isinstance(value, Mapping) and value.get("success") is False:
        return ToolExecutionError(tc.id, str(value.get("error") or "Tool failed"))
    return None


def _created_files_summary(outcomes: Sequence[ToolOutcome]) -> str:
    paths = [p for p in (o.created_path() for o in outcomes) if p]
    if not paths:
        return ""
    return "\n\n**Files created:**\n" + "\n".join(f"- {p}" for p in paths)

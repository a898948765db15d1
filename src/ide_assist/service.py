"""IDE-facing assistant operations.

Every operation takes the ``EngineConfig`` to use for that call; the
service holds only the shared HTTP client and the tool loop.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

from ide_assist.cancellation import CancellationToken
from ide_assist.config import EngineConfig
from ide_assist.core.prompts import system_prompt
from ide_assist.core.tool_loop import ProjectContext, ToolCallLoop, ToolExecutor
from ide_assist.errors import Cancelled, EngineError
from ide_assist.events.bus import EventBus
from ide_assist.llm.client import AsyncLLMClient, ConnectionStatus, ProgressSink
from ide_assist.tools import tool_declarations
from ide_assist.types import AssistantReply, ChatMessage, ChatRequest

_logger = logging.getLogger(__name__)


@dataclass
class CodeSuggestion:
    type: str
    content: str
    description: str
    confidence: float


class AssistantService:
    """Chat, generation and code-assist operations over one backend client.

    Parameters
    ----------
    client:
        Optional shared ``AsyncLLMClient``.
    executor:
        Tool executor for chat turns.  Without one, no tools are declared.
    event_bus:
        Optional bus passed to the client and the tool loop.
    """

    def __init__(
        self,
        client: AsyncLLMClient | None = None,
        executor: ToolExecutor | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self.client = client or AsyncLLMClient(event_bus=event_bus)
        self.loop = ToolCallLoop(
            self.client,
            executor,
            tools=tool_declarations() if executor is not None else None,
            event_bus=event_bus,
        )

    async def __aenter__(self) -> AssistantService:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        await self.client.close()

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    async def chat(
        self,
        config: EngineConfig,
        message: str,
        history: Sequence[ChatMessage] = (),
        context: ProjectContext | None = None,
        token: CancellationToken | None = None,
    ) -> AssistantReply:
        return await self.loop.run_turn(
            config, message, history, context=context, token=token,
        )

    async def chat_stream(
        self,
        config: EngineConfig,
        message: str,
        on_delta: ProgressSink,
        history: Sequence[ChatMessage] = (),
        context: ProjectContext | None = None,
        token: CancellationToken | None = None,
    ) -> AssistantReply:
        """Like ``chat`` but the first round streams deltas to *on_delta*."""
        return await self.loop.run_turn(
            config, message, history,
            context=context, token=token, stream=True, on_delta=on_delta,
        )

    # ------------------------------------------------------------------
    # Code operations
    # ------------------------------------------------------------------

    async def generate_code(
        self,
        config: EngineConfig,
        prompt: str,
        context: ProjectContext | None = None,
        token: CancellationToken | None = None,
    ) -> CodeSuggestion:
        reply = await self.loop.run_turn(
            config, prompt,
            context=context, kind="code_generation",
            operation="code_generation", token=token,
        )
        return CodeSuggestion(
            type="generation",
            content=reply.content,
            description="AI generated code",
            confidence=0.8,
        )

    async def analyze_project(
        self,
        config: EngineConfig,
        files: Sequence[tuple[str, str]],
        token: CancellationToken | None = None,
    ) -> str:
        """Architecture review of ``(path, content)`` pairs."""
        file_context = "\n\n".join(
            f"File: {path}\n```\n{content}\n```" for path, content in files
        )
        return await self._ask(
            config, "project_analysis",
            f"Please analyze this project:\n\n{file_context}",
            operation="project_analysis", token=token,
        )

    async def refactor_code(
        self,
        config: EngineConfig,
        code: str,
        instruction: str,
        token: CancellationToken | None = None,
    ) -> CodeSuggestion:
        content = await self._ask(
            config, "code_refactoring",
            f"Refactor this code: {instruction}\n\nCode:\n```\n{code}\n```",
            operation="refactor", token=token,
        )
        return CodeSuggestion(
            type="refactor",
            content=content,
            description="Refactored code",
            confidence=0.85,
        )

    async def explain_code(
        self,
        config: EngineConfig,
        code: str,
        language: str,
        token: CancellationToken | None = None,
    ) -> str:
        return await self._ask(
            config, "code_explanation",
            f"Explain this {language} code:\n```{language}\n{code}\n```",
            operation="explain", token=token,
        )

    async def complete_code(
        self,
        config: EngineConfig,
        current_code: str,
        cursor_position: int | None = None,
        token: CancellationToken | None = None,
    ) -> list[CodeSuggestion]:
        """Completion options for the code before *cursor_position*.

        Returns ``[]`` when the backend call fails.
        """
        if cursor_position is not None:
            current_code = current_code[:cursor_position]
        try:
            content = await self._ask(
                config, "code_completion",
                f"Complete this code:\n```\n{current_code}\n```\n\n"
                "Provide completions for the code at the end.",
                operation="completion", token=token,
            )
        except Cancelled:
            raise
        except EngineError as e:
            _logger.error("Error completing code: %s", e)
            return []
        lines = [line.strip() for line in content.split("\n") if line.strip()]
        return [
            CodeSuggestion(
                type="completion",
                content=line,
                description=f"Completion {i}",
                confidence=0.7,
            )
            for i, line in enumerate(lines, 1)
        ]

    # ------------------------------------------------------------------
    # Backend
    # ------------------------------------------------------------------

    async def list_models(
        self, config: EngineConfig, token: CancellationToken | None = None,
    ) -> list[str]:
        """Model names served by the configured backend; ``[]`` on failure."""
        try:
            return await self.client.list_models(
                config.backend.endpoint(), token, config.policy("model_listing"),
            )
        except Cancelled:
            raise
        except EngineError as e:
            _logger.error("Error fetching models: %s", e)
            return []

    async def test_connection(self, config: EngineConfig) -> ConnectionStatus:
        return await self.client.test_connection(config.backend.endpoint())

    async def _ask(
        self,
        config: EngineConfig,
        kind: str,
        user_message: str,
        *,
        operation: str,
        token: CancellationToken | None,
    ) -> str:
        """Single tool-less round with the prompt for *kind*."""
        backend = config.backend
        request = ChatRequest(
            messages=[ChatMessage.system(system_prompt(kind)), ChatMessage.user(user_message)],
            model=backend.model,
            temperature=backend.temperature,
            top_p=backend.top_p,
            max_tokens=backend.max_tokens,
        )
        try:
            response = await self.client.chat(
                backend.endpoint(), request, config.policy(operation),
                token or CancellationToken(),
            )
        except EngineError as e:
            _logger.error("%s request failed: %s", operation, e)
            raise
        return response.content

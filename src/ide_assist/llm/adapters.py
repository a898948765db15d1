"""Wire adapters: pure translation between ``ChatRequest``/``LLMResponse``
and each backend's JSON shape.

Two providers are supported and the set is closed:

* ``Provider.OLLAMA``: native ``/api/chat``; NDJSON streaming.
* ``Provider.OPENAI``: OpenAI-compatible ``/v1/chat/completions`` (LM Studio
  and friends); SSE streaming.

Callers pick an adapter once with ``adapter_for()`` and pass it along; no
other module branches on the provider.
"""

from __future__ import annotations

import enum
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Collection

from ide_assist.errors import DecodeError, PreconditionFailed
from ide_assist.types import ChatMessage, ChatRequest, LLMResponse, StreamChunk

from .response_parser import (
    PatternToolCallExtractor,
    ToolCallExtractor,
    parse_native_tool_calls,
)


class Provider(str, enum.Enum):
    OLLAMA = "ollama"
    OPENAI = "openai"


class WireAdapter(ABC):
    """Request/response mapping for one provider.  No I/O."""

    provider: Provider
    chat_path: str
    models_path: str

    def __init__(self, extractor: ToolCallExtractor | None = None) -> None:
        self.extractor: ToolCallExtractor = extractor or PatternToolCallExtractor()

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def build_body(self, request: ChatRequest) -> dict[str, Any]:
        """Map *request* to the provider's JSON body.

        Raises ``PreconditionFailed`` when no model is selected.
        """
        if not request.model or not request.model.strip():
            raise PreconditionFailed(
                "No model selected. Please choose a model in the settings."
            )
        body = self._body(request)
        if request.tools:
            body.update(self._tools_fields(request.tools))
        return body

    @abstractmethod
    def _body(self, request: ChatRequest) -> dict[str, Any]:
        ...

    def _tools_fields(self, tools: list[dict[str, Any]]) -> dict[str, Any]:
        return {"tools": tools}

    def serialize_messages(self, messages: list[ChatMessage]) -> list[dict[str, Any]]:
        return [self._message(m) for m in messages]

    def _message(self, message: ChatMessage) -> dict[str, Any]:
        out: dict[str, Any] = {"role": message.role.value, "content": message.content}
        if message.tool_calls:
            out["tool_calls"] = [
                {
                    "id": tc.id,
                    "type": "function",
                    "function": {
                        "name": tc.name,
                        "arguments": self._call_arguments(tc.arguments),
                    },
                }
                for tc in message.tool_calls
            ]
        if message.tool_call_id:
            out["tool_call_id"] = message.tool_call_id
        return out

    def _call_arguments(self, arguments: str) -> Any:
        return arguments

    # ------------------------------------------------------------------
    # Responses
    # ------------------------------------------------------------------

    def parse_response(
        self, data: Any, tool_names: Collection[str] = (),
    ) -> LLMResponse:
        """Map a non-streaming JSON body to an ``LLMResponse``.

        When *tool_names* (the tools declared in the request) is non-empty
        and the structured ``tool_calls`` field is absent, calls to those
        tools are recovered from the content; such responses have
        ``used_text_fallback`` set.
        """
        if not isinstance(data, dict):
            raise DecodeError(f"Unexpected response body type: {type(data).__name__}")
        message = self._response_message(data)
        content = message.get("content") or ""
        if not isinstance(content, str):
            raise DecodeError("Response content is not text")

        tool_calls = parse_native_tool_calls(message.get("tool_calls"))
        used_fallback = False
        if not tool_calls and content and tool_names:
            tool_calls = self.extractor.extract(content, tool_names)
            used_fallback = bool(tool_calls)

        return LLMResponse(
            content=content,
            tool_calls=tool_calls,
            model=data.get("model", ""),
            finish_reason=self._finish_reason(data),
            usage=self._usage(data),
            used_text_fallback=used_fallback,
        )

    @abstractmethod
    def _response_message(self, data: dict[str, Any]) -> dict[str, Any]:
        ...

    @abstractmethod
    def _finish_reason(self, data: dict[str, Any]) -> str:
        ...

    @abstractmethod
    def _usage(self, data: dict[str, Any]) -> dict[str, int]:
        ...

    @abstractmethod
    def decode_line(self, line: str) -> StreamChunk | None:
        """Decode one complete streaming line.

        Returns ``None`` for lines that carry nothing or fail to parse.
        """

    @abstractmethod
    def parse_models(self, data: Any) -> list[str]:
        ...


# ---------------------------------------------------------------------------
# NDJSON provider (Ollama native API)
# ---------------------------------------------------------------------------

class NdjsonAdapter(WireAdapter):
    provider = Provider.OLLAMA
    chat_path = "/api/chat"
    models_path = "/api/tags"

    def _body(self, request: ChatRequest) -> dict[str, Any]:
        return {
            "model": request.model,
            "messages": self.serialize_messages(request.messages),
            "stream": request.stream,
            "options": {
                "temperature": request.temperature,
                "top_p": request.top_p,
                "max_tokens": request.max_tokens,
            },
        }

    def _call_arguments(self, arguments: str) -> Any:
        # Ollama expects the arguments of past calls as an object
        try:
            parsed = json.loads(arguments)
        except (json.JSONDecodeError, TypeError):
            return arguments
        return parsed if isinstance(parsed, dict) else arguments

    def _response_message(self, data: dict[str, Any]) -> dict[str, Any]:
        message = data.get("message")
        if not isinstance(message, dict):
            raise DecodeError(f"Missing 'message' in response: {str(data)[:200]}")
        return message

    def _finish_reason(self, data: dict[str, Any]) -> str:
        return data.get("done_reason", "stop")

    def _usage(self, data: dict[str, Any]) -> dict[str, int]:
        usage: dict[str, int] = {}
        if "prompt_eval_count" in data:
            usage["prompt_tokens"] = data["prompt_eval_count"]
        if "eval_count" in data:
            usage["completion_tokens"] = data["eval_count"]
        if usage:
            usage["total_tokens"] = usage.get("prompt_tokens", 0) + usage.get(
                "completion_tokens", 0,
            )
        return usage

    def decode_line(self, line: str) -> StreamChunk | None:
        line = line.strip()
        if not line:
            return None
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            return None
        if not isinstance(data, dict):
            return None
        message = data.get("message")
        if not isinstance(message, dict):
            message = {}
        content = message.get("content") or ""
        return StreamChunk(
            content=content if isinstance(content, str) else "",
            done=bool(data.get("done")),
            tool_calls=parse_native_tool_calls(message.get("tool_calls")),
        )

    def parse_models(self, data: Any) -> list[str]:
        models = data.get("models", []) if isinstance(data, dict) else []
        return [m["name"] for m in models if isinstance(m, dict) and m.get("name")]


# ---------------------------------------------------------------------------
# SSE provider (OpenAI-compatible API)
# ---------------------------------------------------------------------------

class SseAdapter(WireAdapter):
    provider = Provider.OPENAI
    chat_path = "/v1/chat/completions"
    models_path = "/v1/models"

    _DATA_PREFIX = "data:"
    _DONE_SENTINEL = "[DONE]"

    def _body(self, request: ChatRequest) -> dict[str, Any]:
        return {
            "model": request.model,
            "messages": self.serialize_messages(request.messages),
            "stream": request.stream,
            "temperature": request.temperature,
            "top_p": request.top_p,
            "max_tokens": request.max_tokens,
        }

    def _tools_fields(self, tools: list[dict[str, Any]]) -> dict[str, Any]:
        return {"tools": tools, "tool_choice": "auto"}

    def _response_message(self, data: dict[str, Any]) -> dict[str, Any]:
        choices = data.get("choices")
        if not isinstance(choices, list) or not choices:
            raise DecodeError(f"Empty choices in response: {str(data)[:200]}")
        message = choices[0].get("message") if isinstance(choices[0], dict) else None
        if not isinstance(message, dict):
            raise DecodeError("Missing 'message' in first choice")
        return message

    def _finish_reason(self, data: dict[str, Any]) -> str:
        return data["choices"][0].get("finish_reason") or ""

    def _usage(self, data: dict[str, Any]) -> dict[str, int]:
        usage = data.get("usage")
        return dict(usage) if isinstance(usage, dict) else {}

    def decode_line(self, line: str) -> StreamChunk | None:
        line = line.strip()
        if not line.startswith(self._DATA_PREFIX):
            return None
        payload = line[len(self._DATA_PREFIX):].strip()
        if payload == self._DONE_SENTINEL:
            return StreamChunk(done=True)
        try:
            data = json.loads(payload)
        except json.JSONDecodeError:
            return None
        if not isinstance(data, dict):
            return None
        choices = data.get("choices")
        first = choices[0] if isinstance(choices, list) and choices else {}
        delta = first.get("delta") if isinstance(first, dict) else None
        if not isinstance(delta, dict):
            delta = {}
        content = delta.get("content") or ""
        fragments = delta.get("tool_calls") or []
        return StreamChunk(
            content=content if isinstance(content, str) else "",
            tool_call_fragments=fragments if isinstance(fragments, list) else [],
        )

    def parse_models(self, data: Any) -> list[str]:
        models = data.get("data", []) if isinstance(data, dict) else []
        return [m["id"] for m in models if isinstance(m, dict) and m.get("id")]


@dataclass(frozen=True)
class Endpoint:
    """A backend base URL paired with the adapter that speaks its protocol."""

    adapter: WireAdapter
    base_url: str

    @property
    def provider(self) -> Provider:
        return self.adapter.provider

    def url(self, path: str) -> str:
        return self.base_url.rstrip("/") + path

    @property
    def chat_url(self) -> str:
        return self.url(self.adapter.chat_path)

    @property
    def models_url(self) -> str:
        return self.url(self.adapter.models_path)


_ADAPTERS: dict[Provider, type[WireAdapter]] = {
    Provider.OLLAMA: NdjsonAdapter,
    Provider.OPENAI: SseAdapter,
}


def adapter_for(
    provider: Provider | str,
    extractor: ToolCallExtractor | None = None,
) -> WireAdapter:
    """Return the adapter for *provider* (``"ollama"`` or ``"openai"``)."""
    try:
        cls = _ADAPTERS[Provider(provider)]
    except ValueError:
        raise PreconditionFailed(f"Unknown provider: {provider!r}") from None
    return cls(extractor)

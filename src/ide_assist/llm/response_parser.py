"""Tool call extraction from free-form text and streaming accumulation.

Structured ``tool_calls`` fields are always preferred.  The extractors here
only run when a backend (or a model without function-calling support)
leaves that field empty and writes the invocation into the content.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Collection, Iterable, Protocol

from ide_assist.types import ToolCall, new_call_id

_logger = logging.getLogger(__name__)

# Longest file body accepted from a textual create_file(...) call
_MAX_TEXT_CONTENT = 100_000


class ToolCallExtractor(Protocol):
    """Strategy for recovering tool calls from response text."""

    def extract(
        self, text: str, allowed_tools: Collection[str] | None = None,
    ) -> list[ToolCall]:
        ...


# ---------------------------------------------------------------------------
# JSON helpers
# ---------------------------------------------------------------------------

def _extract_balanced_json(text: str, start: int) -> str | None:
    """Extract a balanced JSON object starting at *start* (must be ``{``).

    Handles nested braces and quoted strings so that
    ``{"args": {"k": "v"}}`` is captured in full.
    """
    if start >= len(text) or text[start] != "{":
        return None
    depth = 0
    in_string = False
    escape = False
    for i in range(start, len(text)):
        ch = text[i]
        if escape:
            escape = False
            continue
        if ch == "\\":
            escape = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return None


def _arguments_to_str(args: Any) -> str:
    if isinstance(args, str):
        return args
    return json.dumps(args if args is not None else {})


def _unique_id(call_id: Any, seen: set[str]) -> str:
    """*call_id*, or a fresh id when it is missing or already in *seen*."""
    call_id = str(call_id) if call_id else ""
    if not call_id or call_id in seen:
        call_id = new_call_id()
    seen.add(call_id)
    return call_id


def _call_from_json(raw: str, name_key: bool = False) -> ToolCall | None:
    """Interpret one JSON object as a tool call, if it looks like one.

    A top-level ``"name"`` key only counts when *name_key* is set (inside
    ``<tool_call>`` tags); elsewhere it is too common in ordinary JSON
    such as a package.json.
    """
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None

    wrapped = isinstance(data.get("tool_call"), dict)
    if wrapped:
        data = data["tool_call"]

    name = data.get("tool") or data.get("function")
    if not name and (name_key or wrapped):
        name = data.get("name")
    if isinstance(name, dict):
        # {"function": {"name": ..., "arguments": ...}}
        data = name
        name = data.get("name")
    if not isinstance(name, str) or not name:
        return None
    args = data.get("arguments", data.get("args", {}))
    return ToolCall(
        id=str(data.get("id") or ""),
        name=name,
        arguments=_arguments_to_str(args),
        source="text",
    )


def _unescape(content: str) -> str:
    return (
        content.replace("\\n", "\n")
        .replace('\\"', '"')
        .replace("\\'", "'")
        .replace("\\t", "\t")
        .replace("\\\\", "\\")
    )


# ---------------------------------------------------------------------------
# Default extraction strategy
# ---------------------------------------------------------------------------

class PatternToolCallExtractor:
    """Best-effort heuristic extractor.

    Tries, short-circuiting on the first pattern that yields calls:

    1. ``<tool_call>{...}</tool_call>`` tags
    2. fenced code blocks holding a tool JSON object
    3. bare ``{"tool": ...}`` / ``{"tool_call": ...}`` objects
    4. ``Call create_file("path", "content")`` (double-quoted or backtick body)

    Only names in *allowed_tools* are accepted when it is given (either to
    the constructor or per ``extract`` call); calls to
    ``create_file``/``edit_file`` must carry ``file_path`` and ``content``.
    Ids written by the model are kept unless missing or repeated.
    """

    _TAG_PATTERN = re.compile(r"<tool_call>\s*(\{.*?\})\s*</tool_call>", re.DOTALL)
    _FENCE_PATTERN = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)
    _BARE_PATTERN = re.compile(r'\{\s*"(?:tool|tool_call)"\s*:')
    _CALL_QUOTED = re.compile(
        r'Call\s+create_file\s*\(\s*"([^"]+)"\s*,\s*"([\s\S]*?)"\s*\)', re.IGNORECASE,
    )
    _CALL_BACKTICK = re.compile(
        r'Call\s+create_file\s*\(\s*"([^"]+)"\s*,\s*`([^`]+)`\s*\)', re.IGNORECASE,
    )

    def __init__(self, allowed_tools: Iterable[str] | None = None) -> None:
        self._allowed = set(allowed_tools) if allowed_tools else None

    def extract(
        self, text: str, allowed_tools: Collection[str] | None = None,
    ) -> list[ToolCall]:
        if not text:
            return []
        allowed = set(allowed_tools) if allowed_tools is not None else self._allowed
        if allowed is not None and self._allowed is not None:
            allowed &= self._allowed
        for strategy in (self._from_tags, self._from_fences, self._from_bare, self._from_calls):
            calls = [c for c in strategy(text) if self._valid(c, allowed)]
            if calls:
                seen: set[str] = set()
                return [
                    ToolCall(_unique_id(c.id, seen), c.name, c.arguments, c.source)
                    for c in calls
                ]
        return []

    # -- strategies ----------------------------------------------------

    def _from_tags(self, text: str) -> list[ToolCall]:
        return self._parse_all(self._TAG_PATTERN.findall(text), name_key=True)

    def _from_fences(self, text: str) -> list[ToolCall]:
        return self._parse_all(self._FENCE_PATTERN.findall(text))

    def _from_bare(self, text: str) -> list[ToolCall]:
        objects = []
        for m in self._BARE_PATTERN.finditer(text):
            obj = _extract_balanced_json(text, m.start())
            if obj:
                objects.append(obj)
        return self._parse_all(objects)

    def _from_calls(self, text: str) -> list[ToolCall]:
        calls: list[ToolCall] = []
        for pattern, unescape in ((self._CALL_QUOTED, True), (self._CALL_BACKTICK, False)):
            for m in pattern.finditer(text):
                path, content = m.group(1), m.group(2) or ""
                if unescape:
                    content = _unescape(content)
                if len(content) > _MAX_TEXT_CONTENT:
                    _logger.warning(
                        "Textual create_file body for %s is %d chars, truncating",
                        path, len(content),
                    )
                    content = content[:_MAX_TEXT_CONTENT]
                calls.append(ToolCall(
                    id=new_call_id(),
                    name="create_file",
                    arguments=json.dumps({"file_path": path, "content": content}),
                    source="text",
                ))
        return calls

    # -- helpers -------------------------------------------------------

    @staticmethod
    def _parse_all(raw_objects: list[str], name_key: bool = False) -> list[ToolCall]:
        calls = []
        for raw in raw_objects:
            call = _call_from_json(raw, name_key)
            if call is not None:
                calls.append(call)
        return calls

    @staticmethod
    def _valid(call: ToolCall, allowed: set[str] | None) -> bool:
        if allowed is not None and call.name not in allowed:
            _logger.warning("Ignoring textual call to unsupported tool %r", call.name)
            return False
        if call.name in ("create_file", "edit_file"):
            args = call.parsed_arguments()
            if not isinstance(args.get("file_path"), str) or "content" not in args:
                _logger.warning("Ignoring textual %s call without file_path/content", call.name)
                return False
        return True


# ---------------------------------------------------------------------------
# Structured tool calls
# ---------------------------------------------------------------------------

def declared_tool_names(tools: list[dict[str, Any]] | None) -> frozenset[str]:
    """Function names from a request's OpenAI-shape ``tools`` declarations."""
    names = set()
    for tool in tools or ():
        func = tool.get("function") if isinstance(tool, dict) else None
        if isinstance(func, dict) and isinstance(func.get("name"), str):
            names.add(func["name"])
    return frozenset(names)


def parse_native_tool_calls(raw_calls: Any) -> list[ToolCall]:
    """Normalize a structured ``tool_calls`` array from either provider.

    Ollama sends ``arguments`` as an object and often omits ``id``;
    OpenAI-compatible servers send a JSON string and an ``id``.  Missing or
    duplicate ids are replaced so ids are unique within the response.
    """
    if not isinstance(raw_calls, list):
        return []
    calls: list[ToolCall] = []
    seen: set[str] = set()
    for tc in raw_calls:
        if not isinstance(tc, dict):
            continue
        func = tc.get("function") or {}
        name = func.get("name") or tc.get("name")
        if not name:
            continue
        calls.append(ToolCall(
            id=_unique_id(tc.get("id"), seen),
            name=name,
            arguments=_arguments_to_str(func.get("arguments", tc.get("arguments"))),
        ))
    return calls


class ToolCallAccumulator:
    """Collect tool calls seen while streaming.

    OpenAI-compatible providers send calls as incremental fragments keyed by
    ``index``: the first carries ``id`` and ``function.name``, later ones
    append to ``function.arguments``.  Ollama sends complete calls, which
    are kept as-is.
    """

    def __init__(self) -> None:
        self._fragments: dict[int, dict[str, str]] = {}
        self._complete: list[ToolCall] = []

    def feed_fragments(self, fragments: list[dict[str, Any]]) -> None:
        for tc in fragments:
            idx = tc.get("index", 0)
            func = tc.get("function") or {}
            entry = self._fragments.setdefault(idx, {"id": "", "name": "", "arguments": ""})
            if tc.get("id"):
                entry["id"] = tc["id"]
            if func.get("name"):
                entry["name"] = func["name"]
            if func.get("arguments"):
                entry["arguments"] += func["arguments"]

    def feed_calls(self, calls: list[ToolCall]) -> None:
        self._complete.extend(calls)

    def has_calls(self) -> bool:
        return bool(self._fragments or self._complete)

    def finalize(self) -> list[ToolCall]:
        result: list[ToolCall] = []
        seen: set[str] = set()
        for call in self._complete:
            call_id = _unique_id(call.id, seen)
            if call_id != call.id:
                call = ToolCall(call_id, call.name, call.arguments, call.source)
            result.append(call)
        for idx in sorted(self._fragments):
            entry = self._fragments[idx]
            if not entry["name"]:
                continue
            result.append(ToolCall(
                id=_unique_id(entry["id"], seen),
                name=entry["name"],
                arguments=entry["arguments"] or "{}",
            ))
        return result

"""System preamble assembly from already-materialized project context.

``ContextAssembler.build()`` is a pure function of its inputs and caps:
identical inputs always produce byte-identical text.  Nothing here reads
the file system or runs retrieval; callers supply files, a symbol-index
summary and ranked snippets.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Sequence

from ide_assist.core.prompts import system_prompt

_logger = logging.getLogger(__name__)

ELLIPSIS = "..."


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProjectFile:
    path: str
    content: str = ""


@dataclass(frozen=True)
class SymbolSummary:
    """Counts and names per symbol kind from the code index.

    ``symbols`` maps a kind (``"function"``, ``"class"``, ...) to the names
    found, in index order.
    """

    files_indexed: int = 0
    symbols: dict[str, list[str]] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not any(self.symbols.values())


@dataclass(frozen=True)
class Snippet:
    """One retrieval hit; ``score`` is a relevance in ``[0, 1]``."""

    path: str
    content: str
    score: float


@dataclass(frozen=True)
class ContextCaps:
    """Size limits for the preamble.  ``None`` character caps disable
    truncation."""

    max_files: int = 5
    max_file_chars: int | None = 1000
    max_symbols_per_kind: int = 10
    max_snippets: int = 5
    max_snippet_chars: int | None = 800


CHAT_CAPS = ContextCaps()
GENERATION_CAPS = ContextCaps(max_files=10, max_file_chars=None)


def _clip(text: str, limit: int | None) -> str:
    if limit is None or len(text) <= limit:
        return text
    return text[:limit] + ELLIPSIS


# ---------------------------------------------------------------------------
# Assembler
# ---------------------------------------------------------------------------

class ContextAssembler:
    """Builds the system-role preamble for a turn.

    Section order: task prompt, project files, retrieved snippets, and the
    symbol summary only when no snippets are available.
    """

    def __init__(self, caps: ContextCaps = CHAT_CAPS) -> None:
        self.caps = caps

    def build(
        self,
        kind: str = "chat",
        files: Iterable[ProjectFile] = (),
        symbols: SymbolSummary | None = None,
        snippets: Sequence[Snippet] = (),
        project_path: str | None = None,
    ) -> str:
        parts = [system_prompt(kind, project_path)]
        parts.append(self.files_section(files))
        snippet_text = self.snippets_section(snippets)
        parts.append(snippet_text)
        if not snippet_text and symbols is not None:
            parts.append(self.symbols_section(symbols))
        return "".join(parts)

    def files_section(self, files: Iterable[ProjectFile]) -> str:
        # Files without content carry nothing worth the tokens
        relevant = [f for f in files if f.content][: self.caps.max_files]
        if not relevant:
            return ""
        blocks = [
            f"**{f.path}:**\n```\n{_clip(f.content, self.caps.max_file_chars)}\n```\n"
            for f in relevant
        ]
        return "\n\n## Current Project Context:\n\n" + "\n".join(blocks)

    def snippets_section(self, snippets: Sequence[Snippet]) -> str:
        ranked = list(snippets)[: self.caps.max_snippets]
        if not ranked:
            return ""
        blocks = [
            f"**{s.path}** (relevance: {s.score * 100:.0f}%):\n"
            f"```\n{_clip(s.content, self.caps.max_snippet_chars)}\n```\n\n"
            for s in ranked
        ]
        _logger.debug(
            "Adding %d retrieved snippet(s), avg score %.2f",
            len(ranked), sum(s.score for s in ranked) / len(ranked),
        )
        return "\n\n## Relevant Code:\n\n" + "".join(blocks)

    def symbols_section(self, summary: SymbolSummary) -> str:
        limit = self.caps.max_symbols_per_kind
        lines = []
        for kind, names in summary.symbols.items():
            if not names:
                continue
            more = ELLIPSIS if len(names) > limit else ""
            lines.append(f"{kind}: {', '.join(names[:limit])}{more}")
        if not lines:
            return ""
        symbol_lines = "\n".join(lines)
        return (
            "\n\n## Project Structure:\n\n"
            f"Files indexed: {summary.files_indexed}\n"
            f"Symbols: {symbol_lines}\n"
        )

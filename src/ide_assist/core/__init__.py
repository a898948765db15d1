"""Turn orchestration: context assembly and the tool-call loop."""

from ide_assist.core.context import (
    ContextAssembler,
    ContextCaps,
    ProjectFile,
    Snippet,
    SymbolSummary,
)
from ide_assist.core.tool_loop import ProjectContext, ToolCallLoop, ToolOutcome

__all__ = [
    "ContextAssembler",
    "ContextCaps",
    "ProjectContext",
    "ProjectFile",
    "Snippet",
    "SymbolSummary",
    "ToolCallLoop",
    "ToolOutcome",
]

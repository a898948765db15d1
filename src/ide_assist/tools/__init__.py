"""Tool declarations and the reference project-file executor."""

from ide_assist.tools.base import ToolParameter, ToolSpec
from ide_assist.tools.file_ops import TOOL_SPECS, ProjectFileExecutor, tool_declarations

__all__ = ["ProjectFileExecutor", "TOOL_SPECS", "ToolParameter", "ToolSpec", "tool_declarations"]

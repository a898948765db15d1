"""Project file tools: declarations plus a reference executor.

``ProjectFileExecutor`` keeps every path inside the project root; file I/O
runs in a worker thread so the turn's event loop never blocks on disk.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from ide_assist.types import ToolCall

from .base import ToolParameter, ToolSpec

_logger = logging.getLogger(__name__)

CREATE_FILE = ToolSpec(
    name="create_file",
    description=(
        "Create a new file with the given content. Use this when the user "
        "asks to create, write or implement code."
    ),
    parameters=[
        ToolParameter(
            name="file_path",
            type="string",
            description='Path relative to the project root (e.g. "game.js", "src/Component.jsx")',
        ),
        ToolParameter(name="content", type="string", description="File content (code)"),
    ],
)

READ_FILE = ToolSpec(
    name="read_file",
    description="Read the content of an existing project file.",
    parameters=[
        ToolParameter(
            name="file_path", type="string",
            description="Path relative to the project root",
        ),
    ],
)

EDIT_FILE = ToolSpec(
    name="edit_file",
    description="Replace the content of an existing project file.",
    parameters=[
        ToolParameter(
            name="file_path", type="string",
            description="Path relative to the project root",
        ),
        ToolParameter(name="content", type="string", description="New file content"),
    ],
)

LIST_FILES = ToolSpec(
    name="list_files",
    description=(
        "List files and directories of the project. Use it to learn the "
        "project layout before creating files."
    ),
    parameters=[
        ToolParameter(
            name="directory_path",
            type="string",
            description='Directory relative to the project root; "." for the root',
            required=False,
            default=".",
        ),
        ToolParameter(
            name="max_depth",
            type="number",
            description="Maximum nesting depth to list",
            required=False,
            default=2,
        ),
    ],
)

TOOL_SPECS: tuple[ToolSpec, ...] = (CREATE_FILE, READ_FILE, EDIT_FILE, LIST_FILES)


def tool_declarations(specs: tuple[ToolSpec, ...] = TOOL_SPECS) -> list[dict[str, Any]]:
    return [s.to_openai_schema() for s in specs]


_SKIP_DIRS = {
    ".git", ".venv", "venv", "node_modules", "__pycache__",
    ".mypy_cache", ".pytest_cache", "dist", "build", ".tox", ".cache",
}

_MAX_LIST_ENTRIES = 500


class ProjectFileExecutor:
    """Executes the project file tools against *root*.

    Returns a result mapping on success and raises on failure; the tool
    loop turns raised errors into tool-result messages.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).expanduser().resolve()
        self._handlers = {
            CREATE_FILE.name: self._create_file,
            READ_FILE.name: self._read_file,
            EDIT_FILE.name: self._edit_file,
            LIST_FILES.name: self._list_files,
        }

    async def __call__(self, call: ToolCall) -> dict[str, Any]:
        handler = self._handlers.get(call.name)
        if handler is None:
            raise ValueError(f"Unknown function: {call.name}")
        args = call.parsed_arguments()
        _logger.debug("Executing tool call %s: %s", call.name, sorted(args))
        return await asyncio.to_thread(handler, args)

    def resolve(self, relative: str) -> Path:
        """Project path for *relative*; rejects paths that leave the root."""
        if not relative:
            raise ValueError("file_path is required")
        path = (self.root / relative).resolve()
        if path != self.root and not path.is_relative_to(self.root):
            raise ValueError(f"Invalid file path: {relative} is outside the project")
        return path

    # ------------------------------------------------------------------
    # Handlers (run in a worker thread)
    # ------------------------------------------------------------------

    def _create_file(self, args: dict[str, Any]) -> dict[str, Any]:
        rel = args.get("file_path", "")
        content = args.get("content")
        if not rel or content is None:
            raise ValueError("file_path and content are required")
        path = self.resolve(rel)
        if path.exists():
            _logger.warning("File already exists, will be overwritten: %s", path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        _logger.info("File created via tool call: %s", path)
        return {
            "success": True,
            "file_path": str(path),
            "relative_path": rel,
            "message": f"File {rel} created successfully",
            "size": len(content),
        }

    def _read_file(self, args: dict[str, Any]) -> dict[str, Any]:
        rel = args.get("file_path", "")
        path = self.resolve(rel)
        if not path.is_file():
            raise FileNotFoundError(f"File not found: {rel}")
        content = path.read_text(errors="replace")
        return {
            "success": True,
            "file_path": str(path),
            "relative_path": rel,
            "content": content,
            "size": len(content),
            "lines": len(content.split("\n")),
        }

    def _edit_file(self, args: dict[str, Any]) -> dict[str, Any]:
        rel = args.get("file_path", "")
        content = args.get("content")
        if not rel or content is None:
            raise ValueError("file_path and content are required")
        path = self.resolve(rel)
        if not path.is_file():
            raise FileNotFoundError(
                f"File {rel} does not exist. Use create_file to create new files."
            )
        path.write_text(content)
        _logger.info("File edited via tool call: %s", path)
        return {
            "success": True,
            "file_path": str(path),
            "message": f"File {rel} updated successfully",
        }

    def _list_files(self, args: dict[str, Any]) -> dict[str, Any]:
        rel = args.get("directory_path") or "."
        try:
            max_depth = int(args.get("max_depth") or 2)
        except (TypeError, ValueError):
            max_depth = 2
        path = self.resolve(rel)
        if not path.is_dir():
            raise NotADirectoryError(f"Not a directory: {rel}")

        budget = [_MAX_LIST_ENTRIES]
        tree = self._tree(path, 0, max_depth, budget)
        return {
            "success": True,
            "directory": str(path),
            "files": tree,
            "message": f"Listed {len(tree)} items in {rel}",
        }

    def _tree(
        self, directory: Path, depth: int, max_depth: int, budget: list[int],
    ) -> list[dict[str, Any]]:
        if depth >= max_depth:
            return []
        nodes: list[dict[str, Any]] = []
        for item in sorted(directory.iterdir()):
            if budget[0] <= 0:
                break
            if item.is_dir() and item.name in _SKIP_DIRS:
                continue
            budget[0] -= 1
            node: dict[str, Any] = {
                "name": item.name,
                "path": str(item.relative_to(self.root)),
                "is_directory": item.is_dir(),
            }
            if item.is_dir():
                node["children"] = self._tree(item, depth + 1, max_depth, budget)
            nodes.append(node)
        return nodes

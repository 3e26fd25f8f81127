"""File search tool: case-insensitive filename matching."""

import asyncio
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from forq.tools.registry import Tool, ToolContext

SKIP_DIRS = {"node_modules", "__pycache__", ".git", ".venv", "venv"}


def walk_files(root: Path):
    """Yield (directory, dirs, files), skipping hidden and vendored directories."""
    for current, dirs, files in os.walk(root):
        dirs[:] = sorted(d for d in dirs if not d.startswith(".") and d not in SKIP_DIRS)
        yield Path(current), dirs, sorted(files)


class FileSearchTool(Tool):
    """Find files and directories whose name contains the query."""

    name = "fileSearch"
    description = "Searches for files and directories whose name contains the query (case-insensitive)."
    timeout_seconds = 30.0
    parameters = {
        "type": "object",
        "properties": {
            "query": {
                "type": "string",
                "description": "Text to look for in file and directory names",
            },
            "root_dir": {
                "type": "string",
                "description": "Directory to start from (default: working directory)",
            },
        },
        "required": ["query"],
    }

    def __init__(self, max_results: int = 50):
        self.max_results = max_results

    def _search(self, query: str, root: Path, base: Path) -> dict[str, Any]:
        if not root.exists():
            raise FileNotFoundError(f"Root directory does not exist: {root}")
        if not root.is_dir():
            raise NotADirectoryError(f"Path is not a directory: {root}")

        needle = query.lower()
        results: list[str] = []
        for directory, dirs, files in walk_files(root):
            for name in [*dirs, *files]:
                if needle in name.lower():
                    results.append(os.path.relpath(directory / name, base))
                    if len(results) >= self.max_results:
                        return {"query": query, "results": results, "truncated": True}
        return {"query": query, "results": results, "truncated": False}

    async def execute(self, params: BaseModel, context: ToolContext) -> Any:
        root = context.resolve_path(params.root_dir)
        return await asyncio.to_thread(self._search, params.query, root, context.working_directory)

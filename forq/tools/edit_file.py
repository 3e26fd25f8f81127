"""Edit file tool: replace the full content of an existing file."""

import asyncio
import difflib
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from forq.tools.registry import PathScopedTool, ToolContext

MAX_DIFF_LINES = 200


def render_diff(path: str, old: str, new: str) -> str:
    """Unified diff between two versions of a file, truncated."""
    lines = list(
        difflib.unified_diff(
            old.splitlines(),
            new.splitlines(),
            fromfile=f"a/{path}",
            tofile=f"b/{path}",
            lineterm="",
        )
    )
    if len(lines) > MAX_DIFF_LINES:
        hidden = len(lines) - MAX_DIFF_LINES
        lines = lines[:MAX_DIFF_LINES] + [f"... [{hidden} more diff lines]"]
    return "\n".join(lines)


class EditFileTool(PathScopedTool):
    """Overwrite an existing file and report what changed."""

    name = "editFile"
    description = "Overwrites the content of an existing file with new content and returns a diff."
    timeout_seconds = 30.0
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Path to the file that needs to be edited",
            },
            "content": {
                "type": "string",
                "description": "The new content that will replace the existing file content",
            },
        },
        "required": ["path", "content"],
    }

    def permission_reason(self, params: BaseModel) -> str | None:
        return f"Edit {params.path}"

    @staticmethod
    def _edit(file_path: Path, content: str) -> dict[str, Any]:
        if not file_path.exists():
            raise FileNotFoundError(f"File does not exist: {file_path}")
        if not file_path.is_file():
            raise IsADirectoryError(f"Path is not a file: {file_path}")
        old = file_path.read_text(encoding="utf-8", errors="replace")
        file_path.write_text(content, encoding="utf-8")
        return {
            "path": str(file_path),
            "changed": old != content,
            "diff": render_diff(file_path.name, old, content),
        }

    async def execute(self, params: BaseModel, context: ToolContext) -> Any:
        file_path = context.resolve_path(params.path)
        return await asyncio.to_thread(self._edit, file_path, params.content)

"""Create file tool."""

import asyncio
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from forq.tools.registry import PathScopedTool, ToolContext


class CreateFileTool(PathScopedTool):
    """Create a new file with the given content."""

    name = "createFile"
    description = (
        "Create a new file with the given content. Parent directories are created "
        "as needed. Fails if the file exists unless overwrite is true."
    )
    timeout_seconds = 30.0
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Path of the file to create",
            },
            "content": {
                "type": "string",
                "description": "Content to write",
            },
            "overwrite": {
                "type": "boolean",
                "description": "Replace the file if it already exists",
                "default": False,
            },
        },
        "required": ["path", "content"],
    }

    def permission_reason(self, params: BaseModel) -> str | None:
        return f"Create {params.path}"

    @staticmethod
    def _write(file_path: Path, content: str, overwrite: bool) -> dict[str, Any]:
        existed = file_path.exists()
        if existed and not overwrite:
            raise FileExistsError(f"File already exists: {file_path}")
        if existed and not file_path.is_file():
            raise IsADirectoryError(f"Not a file: {file_path}")
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_path.write_text(content, encoding="utf-8")
        return {
            "path": str(file_path),
            "bytes": len(content.encode("utf-8")),
            "overwritten": existed,
        }

    async def execute(self, params: BaseModel, context: ToolContext) -> Any:
        file_path = context.resolve_path(params.path)
        return await asyncio.to_thread(self._write, file_path, params.content, bool(params.overwrite))

"""Delete file tool."""

import asyncio
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from forq.tools.registry import PathScopedTool, ToolContext


class DeleteFileTool(PathScopedTool):
    """Delete a single file. Directories are refused."""

    name = "deleteFile"
    description = "Deletes a file at the given path. Directories cannot be deleted."
    timeout_seconds = 15.0
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Path to the file to delete",
            },
        },
        "required": ["path"],
    }

    def permission_reason(self, params: BaseModel) -> str | None:
        return f"Delete {params.path}"

    @staticmethod
    def _delete(file_path: Path) -> dict[str, Any]:
        if not file_path.exists():
            raise FileNotFoundError(f"File does not exist: {file_path}")
        if file_path.is_dir():
            raise IsADirectoryError(f"Refusing to delete directory: {file_path}")
        size = file_path.stat().st_size
        file_path.unlink()
        return {"path": str(file_path), "deleted": True, "bytes": size}

    async def execute(self, params: BaseModel, context: ToolContext) -> Any:
        file_path = context.resolve_path(params.path)
        return await asyncio.to_thread(self._delete, file_path)

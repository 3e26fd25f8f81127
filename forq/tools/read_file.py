"""Read file tool."""

import asyncio
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from forq.tools.registry import PathScopedTool, ToolContext


class ReadFileTool(PathScopedTool):
    """Read file contents."""

    name = "readFile"
    description = "Read the contents of a text file, optionally a range of lines."
    timeout_seconds = 30.0
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Path to the file to read",
            },
            "offset": {
                "type": "integer",
                "description": "Line number to start reading from (1-indexed)",
            },
            "limit": {
                "type": "integer",
                "description": "Maximum number of lines to read",
            },
        },
        "required": ["path"],
    }

    def __init__(self, max_bytes: int = 1_000_000):
        self.max_bytes = max_bytes

    def permission_reason(self, params: BaseModel) -> str | None:
        return f"Read {params.path}"

    def _read(self, file_path: Path, offset: int | None, limit: int | None) -> str:
        if not file_path.exists():
            raise FileNotFoundError(f"File not found: {file_path}")
        if not file_path.is_file():
            raise IsADirectoryError(f"Not a file: {file_path}")

        file_size = file_path.stat().st_size
        if file_size > self.max_bytes:
            raise ValueError(f"File too large: {file_size} bytes (max {self.max_bytes})")

        content = file_path.read_text(encoding="utf-8", errors="replace")
        if offset is None and limit is None:
            return content

        lines = content.splitlines()
        start = max(1, offset or 1)
        selected = lines[start - 1:]
        if limit is not None:
            selected = selected[:max(0, limit)]
        end = start + len(selected) - 1
        return f"[{file_path} lines {start}-{end} of {len(lines)}]\n" + "\n".join(selected)

    async def execute(self, params: BaseModel, context: ToolContext) -> Any:
        file_path = context.resolve_path(params.path)
        return await asyncio.to_thread(self._read, file_path, params.offset, params.limit)

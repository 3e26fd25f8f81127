"""List directory tool."""

import asyncio
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from forq.tools.registry import Tool, ToolContext


def _iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, UTC).isoformat()


def _describe(entry: Path) -> dict[str, Any]:
    stat = entry.stat()
    return {
        "name": entry.name,
        "path": str(entry),
        "type": "directory" if entry.is_dir() else "file",
        "size": stat.st_size,
        "created": _iso(stat.st_ctime),
        "modified": _iso(stat.st_mtime),
    }


class ListDirTool(Tool):
    """List the entries of one directory."""

    name = "listDir"
    description = "Lists files and directories at the given path with type, size and timestamps."
    timeout_seconds = 15.0
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Directory to list, relative to the working directory (default: .)",
            },
        },
    }

    def _list(self, directory: Path) -> dict[str, Any]:
        if not directory.exists():
            raise FileNotFoundError(f"Directory does not exist: {directory}")
        if not directory.is_dir():
            raise NotADirectoryError(f"Path is not a directory: {directory}")
        items = []
        for entry in sorted(directory.iterdir(), key=lambda p: p.name):
            try:
                items.append(_describe(entry))
            except OSError:
                # broken symlink or entry removed mid-listing
                continue
        return {"path": str(directory), "items": items}

    async def execute(self, params: BaseModel, context: ToolContext) -> Any:
        directory = context.resolve_path(params.path)
        return await asyncio.to_thread(self._list, directory)

"""Content search tool: regex search across text files."""

import asyncio
import fnmatch
import os
import re
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from forq.tools.file_search import walk_files
from forq.tools.registry import Tool, ToolContext

MAX_FILE_BYTES = 2_000_000
MAX_LINE_CHARS = 300


class GrepSearchTool(Tool):
    """Search file contents with a regular expression."""

    name = "grepSearch"
    description = (
        "Searches file contents with a regular expression and returns matching "
        "lines with file and line number. Binary and very large files are skipped."
    )
    parameters = {
        "type": "object",
        "properties": {
            "pattern": {
                "type": "string",
                "description": "Regular expression to search for",
            },
            "root_dir": {
                "type": "string",
                "description": "Directory to search (default: working directory)",
            },
            "glob": {
                "type": "string",
                "description": "Only search files whose name matches this glob (e.g. '*.py')",
            },
            "max_results": {
                "type": "integer",
                "description": "Maximum number of matches to return (default: 50)",
            },
        },
        "required": ["pattern"],
    }

    def __init__(self, max_results: int = 50):
        self.max_results = max_results

    def _search(
        self,
        pattern: str,
        root: Path,
        base: Path,
        name_glob: str | None,
        limit: int,
    ) -> dict[str, Any]:
        try:
            regex = re.compile(pattern)
        except re.error as e:
            raise ValueError(f"Invalid regular expression: {e}") from e
        if not root.is_dir():
            raise NotADirectoryError(f"Path is not a directory: {root}")

        results: list[dict[str, Any]] = []
        for directory, _, files in walk_files(root):
            for name in files:
                if name.startswith(".") or (name_glob and not fnmatch.fnmatch(name, name_glob)):
                    continue
                file_path = directory / name
                try:
                    if file_path.stat().st_size > MAX_FILE_BYTES:
                        continue
                    data = file_path.read_bytes()
                except OSError:
                    continue
                if b"\0" in data[:8192]:
                    continue
                text = data.decode("utf-8", errors="replace")
                for number, line in enumerate(text.splitlines(), start=1):
                    if regex.search(line):
                        results.append({
                            "file": os.path.relpath(file_path, base),
                            "line": number,
                            "content": line[:MAX_LINE_CHARS],
                        })
                        if len(results) >= limit:
                            return {"pattern": pattern, "results": results, "truncated": True}
        return {"pattern": pattern, "results": results, "truncated": False}

    async def execute(self, params: BaseModel, context: ToolContext) -> Any:
        root = context.resolve_path(params.root_dir)
        limit = max(1, params.max_results or self.max_results)
        return await asyncio.to_thread(
            self._search,
            params.pattern,
            root,
            context.working_directory,
            params.glob,
            limit,
        )

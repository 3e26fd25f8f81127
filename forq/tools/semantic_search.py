"""Semantic search tools backed by a per-codebase embedding index.

The index for a codebase lives in ``.forq/embeddings/<name>/index.json`` under
the working directory. Each entry holds a file's relative path, its size and
mtime when embedded, and the vector of its first ``max_file_chars``
characters. Entries are re-embedded only when the file changed.
"""

import asyncio
import json
import os
import re
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from forq.embeddings import OllamaEmbeddings, cosine_similarity
from forq.logging import get_logger
from forq.permissions import PermissionType
from forq.tools.file_search import walk_files
from forq.tools.registry import Tool, ToolContext

log = get_logger(__name__)

CODE_EXTENSIONS = {
    ".js", ".ts", ".jsx", ".tsx", ".py", ".java", ".c", ".cpp", ".rb",
    ".go", ".rs", ".php", ".html", ".css", ".scss", ".md", ".json",
}
INDEX_SKIP_DIRS = {"dist", "build"}
INDEX_DIR = Path(".forq") / "embeddings"
MAX_INDEX_FILE_BYTES = 1_000_000
SNIPPET_CHARS = 2000


def index_path(root: Path, base: Path) -> Path:
    """Where the index for ``root`` is stored."""
    relative = os.path.relpath(root, base)
    name = "root" if relative == "." else re.sub(r"[^\w.-]+", "_", relative).strip("_.")
    return base / INDEX_DIR / (name or "root") / "index.json"


def collect_code_files(root: Path) -> list[Path]:
    """Source files under ``root``, skipping hidden, vendored and build directories."""
    if not root.is_dir():
        raise NotADirectoryError(f"Path is not a directory: {root}")
    files: list[Path] = []
    for directory, dirs, names in walk_files(root):
        dirs[:] = [d for d in dirs if d not in INDEX_SKIP_DIRS]
        for name in names:
            if Path(name).suffix.lower() in CODE_EXTENSIONS:
                files.append(directory / name)
    return files


def _read_text(path: Path, limit: int) -> str:
    try:
        if path.stat().st_size > MAX_INDEX_FILE_BYTES:
            return ""
        data = path.read_bytes()
    except OSError:
        return ""
    if b"\0" in data[:8192]:
        return ""
    return data.decode("utf-8", errors="replace")[:limit]


class CodebaseIndex:
    """Builds, refreshes and queries embedding indexes of source trees."""

    def __init__(self, embeddings: OllamaEmbeddings, max_file_chars: int = 8000):
        self.embeddings = embeddings
        self.max_file_chars = max_file_chars

    @staticmethod
    def _load(path: Path) -> dict[str, dict[str, Any]]:
        if not path.exists():
            return {}
        try:
            entries = json.loads(path.read_text(encoding="utf-8") or "[]")
        except (OSError, json.JSONDecodeError) as e:
            log.warning("Rebuilding unreadable embedding index", path=str(path), error=str(e))
            return {}
        if not isinstance(entries, list):
            return {}
        return {entry["path"]: entry for entry in entries if isinstance(entry, dict) and "path" in entry}

    @staticmethod
    def _save(path: Path, entries: list[dict[str, Any]]) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(entries), encoding="utf-8")
        except OSError as e:
            log.warning("Failed to save embedding index", path=str(path), error=str(e))

    def _scan(self, root: Path, base: Path, path: Path) -> tuple[list[dict[str, Any]], list[tuple[dict[str, Any], str]]]:
        """Split files into up-to-date entries and entries that need a new vector."""
        previous = self._load(path)
        current: list[dict[str, Any]] = []
        stale: list[tuple[dict[str, Any], str]] = []
        for file_path in collect_code_files(root):
            try:
                stat = file_path.stat()
            except OSError:
                continue
            relative = os.path.relpath(file_path, base)
            entry = previous.get(relative)
            if entry and entry.get("mtime") == stat.st_mtime and entry.get("size") == stat.st_size:
                current.append(entry)
                continue
            text = _read_text(file_path, self.max_file_chars)
            if not text.strip():
                continue
            stale.append(({"path": relative, "mtime": stat.st_mtime, "size": stat.st_size}, text))
        return current, stale

    async def refresh(self, root: Path, base: Path) -> list[dict[str, Any]]:
        """Bring the index of ``root`` up to date and return its entries."""
        path = index_path(root, base)
        current, stale = await asyncio.to_thread(self._scan, root, base, path)
        if stale:
            log.info("Embedding files", root=str(root), files=len(stale), unchanged=len(current))
            vectors = await self.embeddings.embed_batch([text for _, text in stale])
            for (entry, _), vector in zip(stale, vectors):
                entry["vector"] = vector
                current.append(entry)
        current.sort(key=lambda entry: entry["path"])
        if stale or not path.exists() or len(current) != len(self._load(path)):
            await asyncio.to_thread(self._save, path, current)
        return current

    async def search(self, query: str, root: Path, base: Path, top_k: int) -> list[tuple[dict[str, Any], float]]:
        entries = await self.refresh(root, base)
        if not entries:
            return []
        query_vector = await self.embeddings.embed(query)
        scored = [(entry, cosine_similarity(query_vector, entry.get("vector") or [])) for entry in entries]
        scored.sort(key=lambda item: item[1], reverse=True)
        return scored[:max(1, top_k)]


class SemanticSearchTool(Tool):
    """Find the source files whose meaning is closest to a query."""

    name = "semanticSearch"
    description = (
        "Returns semantically relevant code snippets for a natural language query, "
        "using local embeddings of the codebase. The first search of a codebase "
        "builds its index, later searches only re-embed changed files."
    )
    requires_permission = True
    permission_type = PermissionType.EMBEDDING
    timeout_seconds = 600.0
    parameters = {
        "type": "object",
        "properties": {
            "query": {
                "type": "string",
                "description": "Natural language description of the code to find",
            },
            "codebase": {
                "type": "string",
                "description": "Directory to search (default: working directory)",
            },
            "top_k": {
                "type": "integer",
                "description": "Number of results to return (default: 5)",
            },
        },
        "required": ["query"],
    }
    default_top_k = 5

    def __init__(self, index: CodebaseIndex):
        self.index = index

    def _root(self, params: BaseModel, context: ToolContext) -> Path:
        return context.resolve_path(getattr(params, "codebase", None))

    def permission_scope(self, params: BaseModel, context: ToolContext) -> str | None:
        return str(self._root(params, context))

    def permission_reason(self, params: BaseModel) -> str | None:
        return f"Embed source files with {self.index.embeddings.model} to search for: {params.query}"

    async def execute(self, params: BaseModel, context: ToolContext) -> Any:
        root = self._root(params, context)
        matches = await self.index.search(
            params.query,
            root,
            context.working_directory,
            params.top_k or self.default_top_k,
        )
        results = []
        for entry, score in matches:
            snippet = await asyncio.to_thread(
                _read_text, context.working_directory / entry["path"], SNIPPET_CHARS
            )
            results.append({"file": entry["path"], "similarity": round(score, 4), "snippet": snippet})
        return {
            "query": params.query,
            "codebase": os.path.relpath(root, context.working_directory),
            "results": results,
        }

    async def close(self) -> None:
        await self.index.embeddings.close()


class ReadSemanticSearchFilesTool(SemanticSearchTool):
    """Return the full content of the files most relevant to a query."""

    name = "readSemanticSearchFiles"
    description = (
        "Retrieves the full content of the files in the working directory that are "
        "semantically most relevant to a query. Combines semantic search with "
        "reading the files in one step."
    )
    parameters = {
        "type": "object",
        "properties": {
            "query": {
                "type": "string",
                "description": "Natural language query used to pick the files",
            },
            "top_k": {
                "type": "integer",
                "description": "Number of files to return (default: 2)",
            },
        },
        "required": ["query"],
    }
    default_top_k = 2

    def __init__(self, index: CodebaseIndex, max_bytes: int = 1_000_000):
        super().__init__(index)
        self.max_bytes = max_bytes

    async def execute(self, params: BaseModel, context: ToolContext) -> Any:
        matches = await self.index.search(
            params.query,
            context.working_directory,
            context.working_directory,
            params.top_k or self.default_top_k,
        )
        if not matches:
            return {"query": params.query, "message": "No semantically relevant files found", "files": {}}

        files: dict[str, Any] = {}
        for entry, score in matches:
            content = await asyncio.to_thread(
                _read_text, context.working_directory / entry["path"], self.max_bytes
            )
            files[entry["path"]] = {"content": content, "similarity": round(score, 4)}
        return {
            "query": params.query,
            "message": f"Found {len(files)} semantically relevant files",
            "file_count": len(files),
            "files": files,
        }

"""Tools package for forq."""

from pathlib import Path

from forq.config import ToolsConfig
from forq.embeddings import OllamaEmbeddings
from forq.logging import get_logger
from forq.permissions import PermissionLedger
from forq.tools.bash import BashTool
from forq.tools.create_file import CreateFileTool
from forq.tools.delete_file import DeleteFileTool
from forq.tools.echo import EchoTool
from forq.tools.edit_file import EditFileTool
from forq.tools.file_search import FileSearchTool
from forq.tools.grep_search import GrepSearchTool
from forq.tools.list_dir import ListDirTool
from forq.tools.read_file import ReadFileTool
from forq.tools.registry import (
    PERMISSION_DENIED,
    PathScopedTool,
    Tool,
    ToolContext,
    ToolRegistry,
    ToolResult,
)
from forq.tools.semantic_embed import SemanticEmbedTool
from forq.tools.semantic_search import (
    CodebaseIndex,
    ReadSemanticSearchFilesTool,
    SemanticSearchTool,
)

log = get_logger(__name__)


def build_builtin_tools(settings: ToolsConfig) -> list[Tool]:
    """Instantiate every built-in tool with its configured limits."""
    embedding = settings.embeddings
    embeddings = OllamaEmbeddings(
        model=embedding.model,
        base_url=embedding.base_url,
        timeout=embedding.timeout,
        cache_path=embedding.cache_path,
        cache_ttl=embedding.cache_ttl,
        batch_size=embedding.batch_size,
    )
    index = CodebaseIndex(embeddings, max_file_chars=embedding.max_file_chars)
    return [
        EchoTool(),
        ListDirTool(),
        ReadFileTool(max_bytes=settings.max_read_bytes),
        CreateFileTool(),
        EditFileTool(),
        DeleteFileTool(),
        BashTool(timeout=settings.shell.timeout, blocked=settings.shell.blocked),
        FileSearchTool(max_results=settings.max_search_results),
        GrepSearchTool(max_results=settings.max_search_results),
        SemanticEmbedTool(embeddings),
        SemanticSearchTool(index),
        ReadSemanticSearchFilesTool(index, max_bytes=settings.max_read_bytes),
    ]


def create_default_registry(
    ledger: PermissionLedger,
    settings: ToolsConfig | None = None,
    working_directory: Path | str | None = None,
) -> ToolRegistry:
    """Registry holding the built-in tools enabled in config."""
    settings = settings or ToolsConfig()
    registry = ToolRegistry(
        ledger=ledger,
        working_directory=working_directory,
        default_timeout=settings.timeout,
    )
    enabled = set(settings.enabled)
    for tool in build_builtin_tools(settings):
        if tool.name in enabled:
            registry.register(tool)
    unknown = enabled - set(registry.list_tools())
    if unknown:
        log.warning("Ignoring unknown tools in config", tools=sorted(unknown))
    return registry


__all__ = [
    "PERMISSION_DENIED",
    "BashTool",
    "CodebaseIndex",
    "CreateFileTool",
    "DeleteFileTool",
    "EchoTool",
    "EditFileTool",
    "FileSearchTool",
    "GrepSearchTool",
    "ListDirTool",
    "PathScopedTool",
    "ReadFileTool",
    "ReadSemanticSearchFilesTool",
    "SemanticEmbedTool",
    "SemanticSearchTool",
    "Tool",
    "ToolContext",
    "ToolRegistry",
    "ToolResult",
    "build_builtin_tools",
    "create_default_registry",
]

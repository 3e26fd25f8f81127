"""Semantic embed tool: turn text into an embedding vector."""

from typing import Any

from pydantic import BaseModel

from forq.embeddings import OllamaEmbeddings
from forq.permissions import PermissionType
from forq.tools.registry import Tool, ToolContext

PREVIEW_CHARS = 100


def _preview(text: str) -> str:
    if len(text) <= PREVIEW_CHARS:
        return text
    return text[:PREVIEW_CHARS] + "..."


class SemanticEmbedTool(Tool):
    """Embed a piece of text with the configured embedding model."""

    name = "semanticEmbed"
    description = (
        "Converts input text into a semantic embedding vector. This is used for "
        "semantic analysis and comparison of code or text."
    )
    requires_permission = True
    permission_type = PermissionType.EMBEDDING
    timeout_seconds = 120.0
    parameters = {
        "type": "object",
        "properties": {
            "text": {
                "type": "string",
                "description": "The text to convert into an embedding vector",
            },
        },
        "required": ["text"],
    }

    def __init__(self, embeddings: OllamaEmbeddings):
        self.embeddings = embeddings

    def permission_reason(self, params: BaseModel) -> str | None:
        return f"Embed text with {self.embeddings.model}: {_preview(params.text)}"

    async def execute(self, params: BaseModel, context: ToolContext) -> Any:
        vector = await self.embeddings.embed(params.text)
        return {
            "text": _preview(params.text),
            "vector": vector,
            "dimensions": len(vector),
        }

    async def close(self) -> None:
        await self.embeddings.close()

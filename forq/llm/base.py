"""Model gateway contract shared by all providers."""

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Sequence

from forq.conversation import Message


class StopReason(str, Enum):
    """Why the model stopped producing output."""

    COMPLETE = "complete"
    TOOL_USE = "tool_use"
    MAX_TOKENS = "max_tokens"
    ERROR = "error"


@dataclass
class ToolCall:
    """A tool call requested by the model."""

    name: str
    parameters: dict[str, Any] = field(default_factory=dict)
    correlation_id: str = ""

    def __post_init__(self) -> None:
        if not self.correlation_id:
            self.correlation_id = f"call_{uuid.uuid4().hex[:24]}"


@dataclass
class ModelResponse:
    """Terminal structure of one model turn."""

    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    stop_reason: StopReason = StopReason.COMPLETE
    # Ordered content blocks to commit; built from text/tool_calls when empty.
    content: list[Any] = field(default_factory=list)
    correlation_id: str | None = None
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)


# Stream items: text chunks, then exactly one ModelResponse.
StreamEvent = str | ModelResponse


class LLMProvider(ABC):
    """Abstract base class for model providers."""

    model: str = ""

    @abstractmethod
    async def send(
        self,
        messages: Sequence[Message],
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> ModelResponse:
        pass

    async def stream(
        self,
        messages: Sequence[Message],
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Yield text chunks followed by the final response."""
        response = await self.send(messages, tools, temperature, max_tokens)
        if response.text:
            yield response.text
        yield response

    async def close(self) -> None:
        pass

"""Conversation store: role-tagged message history with compaction."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Annotated, Any, Iterator, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from forq.exceptions import ConversationInvariantError
from forq.logging import get_logger

if TYPE_CHECKING:
    from forq.llm import ModelResponse, ToolCall
    from forq.tools.registry import ToolResult

log = get_logger(__name__)

SUMMARY_HEADER = "[This is a summary of {count} earlier messages in the conversation]"


class TextBlock(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ThinkingBlock(BaseModel):
    type: Literal["thinking"] = "thinking"
    thinking: str
    signature: str = ""


class RedactedThinkingBlock(BaseModel):
    type: Literal["redacted_thinking"] = "redacted_thinking"
    data: str


class ToolUseBlock(BaseModel):
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str = ""
    is_error: bool = False


ContentBlock = Annotated[
    Union[TextBlock, ThinkingBlock, RedactedThinkingBlock, ToolUseBlock, ToolResultBlock],
    Field(discriminator="type"),
]


class Message(BaseModel):
    """One conversation entry. Only ``metadata`` may change after append."""

    model_config = ConfigDict(frozen=True)

    role: Literal["system", "user", "assistant"]
    content: str | list[ContentBlock]
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def blocks(self) -> list[Any]:
        if isinstance(self.content, str):
            return [TextBlock(text=self.content)] if self.content else []
        return list(self.content)

    @property
    def text(self) -> str:
        """Plain text of the message (text blocks only)."""
        if isinstance(self.content, str):
            return self.content
        return "".join(block.text for block in self.content if isinstance(block, TextBlock))

    @property
    def is_tool_result(self) -> bool:
        return bool(self.metadata.get("tool_result"))

    def tool_uses(self) -> list[ToolUseBlock]:
        return [block for block in self.blocks if isinstance(block, ToolUseBlock)]

    def tool_results(self) -> list[ToolResultBlock]:
        return [block for block in self.blocks if isinstance(block, ToolResultBlock)]

    def thinking_blocks(self) -> list[ThinkingBlock | RedactedThinkingBlock]:
        return [
            block for block in self.blocks
            if isinstance(block, (ThinkingBlock, RedactedThinkingBlock))
        ]

    def summary_text(self) -> str:
        """Readable rendering used by compaction summaries and history views."""
        parts: list[str] = []
        for block in self.blocks:
            if isinstance(block, TextBlock):
                parts.append(block.text)
            elif isinstance(block, ToolUseBlock):
                parts.append(f"[called {block.name} {json.dumps(block.input, ensure_ascii=False)}]")
            elif isinstance(block, ToolResultBlock):
                label = "tool error" if block.is_error else "tool result"
                parts.append(f"[{label}: {block.content}]")
        return " ".join(part for part in parts if part).strip()


class CompactionResult(BaseModel):
    compacted: bool
    reason: str = ""
    trigger: str = "auto"
    before_count: int = 0
    after_count: int = 0
    summarized_count: int = 0
    kept_count: int = 0


def _truncate(text: str, limit: int) -> str:
    text = " ".join(text.split())
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


class Conversation:
    """Ordered message history whose first entry is always the system prompt."""

    def __init__(
        self,
        system_prompt: str | Message,
        window_size: int = 20,
        compaction_threshold: int | None = None,
        keep_count: int | None = None,
        summary_chars: int = 100,
    ):
        if isinstance(system_prompt, Message):
            if system_prompt.role != "system":
                raise ConversationInvariantError("First message must be a system message")
            first = system_prompt
        else:
            first = Message(role="system", content=system_prompt)
        self._messages: list[Message] = [first]
        self.window_size = window_size
        self.compaction_threshold = compaction_threshold or window_size * 2
        self.keep_count = keep_count if keep_count is not None else window_size
        self.summary_chars = summary_chars
        self.metadata: dict[str, Any] = {}

    @classmethod
    def from_config(cls, system_prompt: str, context_config: Any) -> "Conversation":
        return cls(
            system_prompt,
            window_size=context_config.window_size,
            compaction_threshold=context_config.effective_threshold,
            keep_count=context_config.effective_keep_count,
            summary_chars=context_config.summary_chars,
        )

    # ----- read -----

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    @property
    def system_message(self) -> Message:
        return self._messages[0]

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._messages))

    def __getitem__(self, index: int) -> Message:
        return self._messages[index]

    def check_invariants(self) -> None:
        if not self._messages or self._messages[0].role != "system":
            raise ConversationInvariantError("Conversation lost its system message")

    def pending_tool_uses(self) -> list[ToolUseBlock]:
        """Tool calls of the last assistant message that have no result yet."""
        for index in range(len(self._messages) - 1, 0, -1):
            message = self._messages[index]
            if message.role == "assistant":
                answered = {
                    block.tool_use_id
                    for later in self._messages[index + 1:]
                    for block in later.tool_results()
                }
                return [block for block in message.tool_uses() if block.id not in answered]
        return []

    # ----- append -----

    def append(self, message: Message) -> Message:
        self.check_invariants()
        self._messages.append(message)
        return message

    def append_user(self, text: str) -> Message:
        return self.append(Message(role="user", content=text))

    def append_assistant(self, response: "ModelResponse") -> Message:
        blocks: list[Any] = list(response.content)
        if not blocks:
            if response.text:
                blocks.append(TextBlock(text=response.text))
            for call in response.tool_calls:
                blocks.append(
                    ToolUseBlock(id=call.correlation_id, name=call.name, input=call.parameters)
                )
        metadata: dict[str, Any] = {"stop_reason": response.stop_reason.value}
        if response.model:
            metadata["model"] = response.model
        if response.correlation_id:
            metadata["response_id"] = response.correlation_id
        if response.usage:
            metadata["usage"] = dict(response.usage)
        return self.append(Message(role="assistant", content=blocks, metadata=metadata))

    def append_tool_result(
        self,
        tool_call: "ToolCall",
        result: "ToolResult",
        skipped: bool = False,
    ) -> Message:
        """Record a tool result as a user-role message tagged as a tool result."""
        block = ToolResultBlock(
            tool_use_id=tool_call.correlation_id,
            content=result.content,
            is_error=not result.success,
        )
        metadata: dict[str, Any] = {
            "tool_result": True,
            "tool_name": tool_call.name,
            "success": result.success,
        }
        if result.error:
            metadata["error"] = result.error
        if result.denied:
            metadata["denied"] = True
        if skipped:
            metadata["skipped"] = True
        return self.append(Message(role="user", content=[block], metadata=metadata))

    def append_error(self, text: str, kind: str = "error") -> Message:
        """Show a failure inline as an assistant message."""
        return self.append(
            Message(role="assistant", content=text, metadata={"error": True, "kind": kind})
        )

    # ----- reset -----

    def reset(self) -> None:
        """Drop everything except the system prompt."""
        self._messages = [self._messages[0]]
        self.metadata.pop("compaction", None)

    def set_system_prompt(self, text: str) -> None:
        self._messages[0] = Message(role="system", content=text)

    # ----- compaction -----

    def should_compact(self) -> bool:
        return len(self._messages) > self.compaction_threshold

    def compact(self, force: bool = False, trigger: str = "auto") -> CompactionResult:
        """Summarize everything between the system prompt and the kept tail.

        Without ``force`` this is a no-op until the history grows past the
        compaction threshold. ``force`` (a user request) compacts as soon as
        there is anything beyond the kept tail to summarize.
        """
        before = len(self._messages)
        limit = self.keep_count + 1 if force else self.compaction_threshold
        if before <= 2:
            return CompactionResult(
                compacted=False,
                reason="too_short",
                trigger=trigger,
                before_count=before,
                after_count=before,
            )
        if before <= limit:
            return CompactionResult(
                compacted=False,
                reason="already_compact",
                trigger=trigger,
                before_count=before,
                after_count=before,
            )

        keep = min(self.keep_count, before - 1)
        head = self._messages[0]
        middle = self._messages[1:before - keep]
        tail = self._messages[before - keep:]
        if not middle:
            return CompactionResult(
                compacted=False,
                reason="nothing_to_summarize",
                trigger=trigger,
                before_count=before,
                after_count=before,
            )

        summary = self._summarize(middle, trigger)
        self._messages = [head, summary, *tail]

        state = self.metadata.setdefault("compaction", {"count": 0})
        state["count"] = int(state.get("count", 0)) + 1
        state["last_trigger"] = trigger
        state["last_compacted_at"] = datetime.now(UTC).isoformat()
        state["last_summarized_count"] = len(middle)

        log.info(
            "Conversation compacted",
            trigger=trigger,
            before=before,
            after=len(self._messages),
            summarized=len(middle),
        )
        return CompactionResult(
            compacted=True,
            reason="compacted",
            trigger=trigger,
            before_count=before,
            after_count=len(self._messages),
            summarized_count=len(middle),
            kept_count=len(tail),
        )

    def _summarize(self, messages: list[Message], trigger: str) -> Message:
        lines: list[str] = []
        thinking: list[dict[str, Any]] = []
        for offset, message in enumerate(messages, start=1):
            text = message.summary_text()
            if text:
                lines.append(f"{message.role.capitalize()}: {_truncate(text, self.summary_chars)}")
            thinking.extend(message.metadata.get("thinking", []))
            for block in message.thinking_blocks():
                entry = block.model_dump()
                entry["position"] = offset
                thinking.append(entry)

        body = SUMMARY_HEADER.format(count=len(messages))
        if lines:
            body += "\n\n" + "\n\n".join(lines)

        metadata: dict[str, Any] = {
            "compaction_summary": True,
            "summarized_count": len(messages),
            "trigger": trigger,
        }
        if thinking:
            metadata["thinking"] = thinking
        return Message(role="system", content=body, metadata=metadata)

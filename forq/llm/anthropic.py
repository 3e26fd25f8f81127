"""Anthropic provider - direct HTTP calls to the Messages API."""

import asyncio
import json
import os
from typing import Any, AsyncIterator, Sequence

import httpx

from forq.conversation import (
    Message,
    RedactedThinkingBlock,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
)
from forq.exceptions import LLMAPIError, LLMError
from forq.llm.base import LLMProvider, ModelResponse, StopReason, StreamEvent, ToolCall
from forq.logging import get_logger

log = get_logger(__name__)


ANTHROPIC_BASE_URL = "https://api.anthropic.com"
ANTHROPIC_VERSION = "2023-06-01"

_STOP_REASONS = {
    "end_turn": StopReason.COMPLETE,
    "stop_sequence": StopReason.COMPLETE,
    "pause_turn": StopReason.COMPLETE,
    "tool_use": StopReason.TOOL_USE,
    "max_tokens": StopReason.MAX_TOKENS,
    "refusal": StopReason.ERROR,
}


class AnthropicProvider(LLMProvider):
    """Anthropic Messages API provider with SSE streaming."""

    def __init__(
        self,
        model: str = "claude-3-7-sonnet-latest",
        api_key: str | None = None,
        base_url: str = ANTHROPIC_BASE_URL,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        timeout: float = 120.0,
        max_retries: int = 2,
        retry_backoff: float = 1.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.model = model
        self.api_key = api_key or os.getenv("ANTHROPIC_API_KEY", "")
        self.base_url = (base_url or ANTHROPIC_BASE_URL).rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.max_retries = max(0, max_retries)
        self.retry_backoff = retry_backoff
        self.client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    def _headers(self) -> dict[str, str]:
        headers = {
            "content-type": "application/json",
            "anthropic-version": ANTHROPIC_VERSION,
        }
        if self.api_key:
            headers["x-api-key"] = self.api_key
        return headers

    def _convert_messages(
        self, messages: Sequence[Message]
    ) -> tuple[str, list[dict[str, Any]]]:
        """Convert conversation messages to (system, messages) for the API.

        System entries (the prompt and any compaction summaries) are joined
        into the top-level system field. Adjacent turns of the same role are
        merged. Tool results whose tool_use was summarized away are sent as
        text.
        """
        system_parts: list[str] = []
        result: list[dict[str, Any]] = []
        seen_tool_ids: set[str] = set()

        for msg in messages:
            if msg.role == "system":
                if msg.text:
                    system_parts.append(msg.text)
                continue

            blocks: list[dict[str, Any]] = []
            for block in msg.blocks:
                if isinstance(block, TextBlock):
                    if block.text:
                        blocks.append({"type": "text", "text": block.text})
                elif isinstance(block, ThinkingBlock):
                    if msg.role == "assistant" and block.signature:
                        blocks.append({
                            "type": "thinking",
                            "thinking": block.thinking,
                            "signature": block.signature,
                        })
                elif isinstance(block, RedactedThinkingBlock):
                    if msg.role == "assistant":
                        blocks.append({"type": "redacted_thinking", "data": block.data})
                elif isinstance(block, ToolUseBlock):
                    seen_tool_ids.add(block.id)
                    blocks.append({
                        "type": "tool_use",
                        "id": block.id,
                        "name": block.name,
                        "input": block.input,
                    })
                elif isinstance(block, ToolResultBlock):
                    if block.tool_use_id in seen_tool_ids:
                        blocks.append({
                            "type": "tool_result",
                            "tool_use_id": block.tool_use_id,
                            "content": block.content,
                            "is_error": block.is_error,
                        })
                    else:
                        blocks.append({
                            "type": "text",
                            "text": f"[Result of an earlier tool call]\n{block.content}",
                        })

            if not blocks:
                continue
            if result and result[-1]["role"] == msg.role:
                result[-1]["content"].extend(blocks)
            else:
                result.append({"role": msg.role, "content": blocks})

        if result and result[0]["role"] != "user":
            result.insert(0, {
                "role": "user",
                "content": [{"type": "text", "text": "(Earlier conversation summarized above.)"}],
            })

        return "\n\n".join(system_parts), result

    def _convert_tools(self, tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return [
            {
                "name": tool["name"],
                "description": tool.get("description", ""),
                "input_schema": tool.get("parameters") or {"type": "object", "properties": {}},
            }
            for tool in tools
            if tool.get("name")
        ]

    def _build_body(
        self,
        messages: Sequence[Message],
        tools: list[dict[str, Any]] | None,
        temperature: float | None,
        max_tokens: int | None,
        stream: bool,
    ) -> dict[str, Any]:
        system, api_messages = self._convert_messages(messages)
        body: dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens or self.max_tokens,
            "temperature": self.temperature if temperature is None else temperature,
            "messages": api_messages,
        }
        if system:
            body["system"] = system
        if tools:
            body["tools"] = self._convert_tools(tools)
        if stream:
            body["stream"] = True
        return body

    def _parse_response(self, data: dict[str, Any]) -> ModelResponse:
        text_parts: list[str] = []
        content: list[Any] = []
        tool_calls: list[ToolCall] = []

        for block in data.get("content", []):
            block_type = block.get("type")
            if block_type == "text":
                text_parts.append(block.get("text", ""))
                content.append(TextBlock(text=block.get("text", "")))
            elif block_type == "thinking":
                content.append(
                    ThinkingBlock(
                        thinking=block.get("thinking", ""),
                        signature=block.get("signature", ""),
                    )
                )
            elif block_type == "redacted_thinking":
                content.append(RedactedThinkingBlock(data=block.get("data", "")))
            elif block_type == "tool_use":
                call = ToolCall(
                    name=block.get("name", ""),
                    parameters=block.get("input") or {},
                    correlation_id=block.get("id", ""),
                )
                tool_calls.append(call)
                content.append(
                    ToolUseBlock(id=call.correlation_id, name=call.name, input=call.parameters)
                )

        usage = data.get("usage") or {}
        return ModelResponse(
            text="".join(text_parts),
            tool_calls=tool_calls,
            stop_reason=_STOP_REASONS.get(data.get("stop_reason") or "", StopReason.COMPLETE),
            content=content,
            correlation_id=data.get("id"),
            model=data.get("model", self.model),
            usage={
                "prompt_tokens": int(usage.get("input_tokens", 0) or 0),
                "completion_tokens": int(usage.get("output_tokens", 0) or 0),
            },
        )

    async def _post(self, body: dict[str, Any]) -> dict[str, Any]:
        """POST with bounded retry on rate limits, 5xx and transport errors."""
        url = f"{self.base_url}/v1/messages"
        for attempt in range(self.max_retries + 1):
            try:
                response = await self.client.post(url, json=body, headers=self._headers())
            except httpx.HTTPError as e:
                error = LLMAPIError(f"Anthropic HTTP error: {e}")
                retryable = True
            else:
                if response.is_success:
                    return response.json()
                error = LLMAPIError(
                    f"Anthropic API error {response.status_code}: {response.text}",
                    status_code=response.status_code,
                )
                retryable = error.retryable

            if not retryable or attempt >= self.max_retries:
                raise error
            delay = self.retry_backoff * (2 ** attempt)
            log.warning("Retrying Anthropic request", attempt=attempt + 1, delay=delay, error=str(error))
            await asyncio.sleep(delay)

        raise LLMError("Anthropic request failed")

    async def send(
        self,
        messages: Sequence[Message],
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> ModelResponse:
        """Generate a completion."""
        body = self._build_body(messages, tools, temperature, max_tokens, stream=False)
        log.debug("Calling Anthropic", model=self.model, msg_count=len(body["messages"]))
        try:
            data = await self._post(body)
        except LLMError:
            raise
        except json.JSONDecodeError as e:
            raise LLMError(f"Anthropic response decode error: {e}") from e
        return self._parse_response(data)

    async def stream(
        self,
        messages: Sequence[Message],
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream a completion over server-sent events."""
        url = f"{self.base_url}/v1/messages"
        body = self._build_body(messages, tools, temperature, max_tokens, stream=True)

        message: dict[str, Any] = {"content": [], "usage": {}}
        blocks: dict[int, dict[str, Any]] = {}
        partial_json: dict[int, str] = {}

        try:
            async with self.client.stream("POST", url, json=body, headers=self._headers()) as response:
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    raise LLMAPIError(
                        f"Anthropic API error {response.status_code}: {error_text}",
                        status_code=response.status_code,
                    )

                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    try:
                        event = json.loads(line[5:].strip())
                    except json.JSONDecodeError:
                        continue

                    event_type = event.get("type")
                    if event_type == "message_start":
                        start = event.get("message", {})
                        message["id"] = start.get("id")
                        message["model"] = start.get("model", self.model)
                        message["usage"].update(start.get("usage") or {})
                    elif event_type == "content_block_start":
                        index = event.get("index", len(blocks))
                        blocks[index] = dict(event.get("content_block") or {})
                        if blocks[index].get("type") == "tool_use":
                            partial_json[index] = ""
                    elif event_type == "content_block_delta":
                        index = event.get("index", 0)
                        block = blocks.setdefault(index, {"type": "text", "text": ""})
                        delta = event.get("delta") or {}
                        delta_type = delta.get("type")
                        if delta_type == "text_delta":
                            chunk = delta.get("text", "")
                            block["text"] = block.get("text", "") + chunk
                            if chunk:
                                yield chunk
                        elif delta_type == "thinking_delta":
                            block["thinking"] = block.get("thinking", "") + delta.get("thinking", "")
                        elif delta_type == "signature_delta":
                            block["signature"] = delta.get("signature", "")
                        elif delta_type == "input_json_delta":
                            partial_json[index] = partial_json.get(index, "") + delta.get("partial_json", "")
                    elif event_type == "message_delta":
                        delta = event.get("delta") or {}
                        if delta.get("stop_reason"):
                            message["stop_reason"] = delta["stop_reason"]
                        message["usage"].update(event.get("usage") or {})
                    elif event_type == "error":
                        error = event.get("error") or {}
                        raise LLMAPIError(f"Anthropic stream error: {error.get('message', error)}")
                    elif event_type == "message_stop":
                        break

        except LLMError:
            raise
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Anthropic streaming error: {e}") from e

        for index in sorted(blocks):
            block = blocks[index]
            if index in partial_json:
                raw = partial_json[index]
                try:
                    block["input"] = json.loads(raw) if raw else (block.get("input") or {})
                except json.JSONDecodeError as e:
                    raise LLMError(f"Malformed tool input from stream: {e}") from e
            message["content"].append(block)

        yield self._parse_response(message)

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

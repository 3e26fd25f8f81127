"""Ollama provider - direct HTTP calls to the Ollama chat API."""

import json
import uuid
from typing import Any, AsyncIterator, Sequence

import httpx

from forq.conversation import Message, TextBlock, ToolResultBlock, ToolUseBlock
from forq.exceptions import LLMAPIError, LLMError
from forq.llm.base import LLMProvider, ModelResponse, StopReason, StreamEvent, ToolCall
from forq.logging import get_logger

log = get_logger(__name__)


OLLAMA_NATIVE_BASE_URL = "http://127.0.0.1:11434"


class OllamaProvider(LLMProvider):
    """Direct Ollama API provider."""

    def __init__(
        self,
        model: str = "llama3.2",
        base_url: str = OLLAMA_NATIVE_BASE_URL,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        api_key: str | None = None,
        timeout: float = 120.0,
        num_ctx: int = 65536,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize Ollama provider.

        Args:
            model: Ollama model name (e.g., 'llama3.2', 'qwen3:32b')
            base_url: Ollama API base URL
            temperature: Sampling temperature
            max_tokens: Max tokens to generate
            api_key: Optional API key (Ollama usually doesn't need one locally)
            timeout: HTTP timeout in seconds
            num_ctx: Context window requested from the server
            client: Optional preconfigured HTTP client
        """
        self.model = model
        self.base_url = (base_url or OLLAMA_NATIVE_BASE_URL).rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_key = api_key
        self.num_ctx = num_ctx
        self.client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    def _convert_messages(self, messages: Sequence[Message]) -> list[dict[str, Any]]:
        """Convert conversation messages to Ollama format."""
        result: list[dict[str, Any]] = []

        for msg in messages:
            if msg.role == "system":
                result.append({"role": "system", "content": msg.text})
            elif msg.role == "assistant":
                entry: dict[str, Any] = {"role": "assistant", "content": msg.text}
                tool_uses = msg.tool_uses()
                if tool_uses:
                    entry["tool_calls"] = [
                        {"function": {"name": block.name, "arguments": block.input}}
                        for block in tool_uses
                    ]
                result.append(entry)
            else:
                texts: list[str] = []
                for block in msg.blocks:
                    if isinstance(block, ToolResultBlock):
                        entry = {"role": "tool", "content": block.content}
                        tool_name = msg.metadata.get("tool_name")
                        if tool_name:
                            entry["tool_name"] = tool_name
                        result.append(entry)
                    elif isinstance(block, TextBlock) and block.text:
                        texts.append(block.text)
                if texts:
                    result.append({"role": "user", "content": "".join(texts)})

        return result

    def _convert_tools(self, tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Convert tool descriptors to Ollama format."""
        return [
            {
                "type": "function",
                "function": {
                    "name": tool["name"],
                    "description": tool.get("description", ""),
                    "parameters": tool.get("parameters") or {},
                },
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
        options: dict[str, Any] = {
            "num_ctx": self.num_ctx,
            "temperature": self.temperature if temperature is None else temperature,
        }
        if max_tokens or self.max_tokens:
            options["num_predict"] = max_tokens or self.max_tokens

        body: dict[str, Any] = {
            "model": self.model,
            "messages": self._convert_messages(messages),
            "stream": stream,
            "options": options,
        }
        if tools:
            body["tools"] = self._convert_tools(tools)
        return body

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @staticmethod
    def _parse_tool_calls(raw_calls: list[dict[str, Any]]) -> list[ToolCall]:
        calls: list[ToolCall] = []
        for tc in raw_calls:
            function = tc.get("function", {})
            arguments = function.get("arguments") or {}
            if isinstance(arguments, str):
                try:
                    arguments = json.loads(arguments)
                except json.JSONDecodeError:
                    arguments = {"raw": arguments}
            if not isinstance(arguments, dict):
                arguments = {"value": arguments}
            calls.append(
                ToolCall(
                    name=function.get("name", ""),
                    parameters=arguments or {},
                    correlation_id=tc.get("id") or f"ollama_call_{uuid.uuid4().hex[:16]}",
                )
            )
        return calls

    def _finish(
        self,
        content: str,
        tool_calls: list[ToolCall],
        final: dict[str, Any],
    ) -> ModelResponse:
        if tool_calls:
            stop_reason = StopReason.TOOL_USE
        elif final.get("done_reason") == "length":
            stop_reason = StopReason.MAX_TOKENS
        else:
            stop_reason = StopReason.COMPLETE

        blocks: list[Any] = []
        if content:
            blocks.append(TextBlock(text=content))
        for call in tool_calls:
            blocks.append(ToolUseBlock(id=call.correlation_id, name=call.name, input=call.parameters))

        return ModelResponse(
            text=content,
            tool_calls=tool_calls,
            stop_reason=stop_reason,
            content=blocks,
            model=final.get("model", self.model),
            usage={
                "prompt_tokens": final.get("prompt_eval_count", 0),
                "completion_tokens": final.get("eval_count", 0),
            },
        )

    async def send(
        self,
        messages: Sequence[Message],
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> ModelResponse:
        """Generate a completion."""
        url = f"{self.base_url}/api/chat"
        body = self._build_body(messages, tools, temperature, max_tokens, stream=False)

        try:
            log.debug("Calling Ollama", model=self.model, url=url, msg_count=len(body["messages"]))
            response = await self.client.post(url, json=body, headers=self._headers())
            if not response.is_success:
                raise LLMAPIError(
                    f"Ollama API error {response.status_code}: {response.text}",
                    status_code=response.status_code,
                )
            data = response.json()
        except LLMError:
            raise
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Ollama HTTP error: {e}") from e
        except json.JSONDecodeError as e:
            raise LLMError(f"Ollama response decode error: {e}") from e

        message = data.get("message", {})
        return self._finish(
            message.get("content", ""),
            self._parse_tool_calls(message.get("tool_calls") or []),
            data,
        )

    async def stream(
        self,
        messages: Sequence[Message],
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream a completion as newline-delimited JSON."""
        url = f"{self.base_url}/api/chat"
        body = self._build_body(messages, tools, temperature, max_tokens, stream=True)

        content_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        final: dict[str, Any] = {}

        try:
            async with self.client.stream("POST", url, json=body, headers=self._headers()) as response:
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    raise LLMAPIError(
                        f"Ollama API error {response.status_code}: {error_text}",
                        status_code=response.status_code,
                    )

                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        chunk = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    if chunk.get("error"):
                        raise LLMAPIError(f"Ollama stream error: {chunk['error']}")
                    message = chunk.get("message", {})
                    text = message.get("content")
                    if text:
                        content_parts.append(text)
                        yield text
                    if message.get("tool_calls"):
                        tool_calls.extend(self._parse_tool_calls(message["tool_calls"]))
                    if chunk.get("done"):
                        final = chunk
                        break
        except LLMError:
            raise
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Ollama streaming error: {e}") from e

        yield self._finish("".join(content_parts), tool_calls, final)

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

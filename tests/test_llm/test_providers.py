import json

import httpx
import pytest

from forq.conversation import Message, TextBlock, ThinkingBlock, ToolResultBlock, ToolUseBlock
from forq.exceptions import LLMAPIError
from forq.llm import AnthropicProvider, ModelResponse, OllamaProvider, StopReason, create_provider


def _anthropic(handler, **kwargs) -> AnthropicProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AnthropicProvider(api_key="test-key", client=client, retry_backoff=0, **kwargs)


def _ollama(handler) -> OllamaProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OllamaProvider(model="llama3.2", client=client)


def _sse(*events: dict) -> bytes:
    return "".join(f"event: {event['type']}\ndata: {json.dumps(event)}\n\n" for event in events).encode()


def test_create_provider_supports_claude_alias():
    provider = create_provider(provider="claude", model="claude-sonnet-4-0", api_key="k")
    assert isinstance(provider, AnthropicProvider)
    assert provider.model == "claude-sonnet-4-0"


def test_create_provider_supports_ollama():
    provider = create_provider(provider="ollama", model="llama3.2", base_url="http://localhost:11434")
    assert isinstance(provider, OllamaProvider)
    assert provider.base_url == "http://localhost:11434"


def test_create_provider_rejects_unknown():
    with pytest.raises(ValueError):
        create_provider(provider="carrier-pigeon")


def test_anthropic_message_conversion():
    provider = AnthropicProvider(api_key="k")
    messages = [
        Message(role="system", content="You are forq."),
        Message(role="system", content="[This is a summary of 4 earlier messages in the conversation]"),
        Message(role="user", content=[ToolResultBlock(tool_use_id="gone", content="old output")]),
        Message(role="user", content="hello"),
        Message(
            role="assistant",
            content=[
                ThinkingBlock(thinking="unsigned"),
                ThinkingBlock(thinking="signed", signature="sig"),
                TextBlock(text="Looking."),
                ToolUseBlock(id="t1", name="listDir", input={"path": "."}),
            ],
        ),
        Message(role="user", content=[ToolResultBlock(tool_use_id="t1", content="[]")]),
    ]

    system, converted = provider._convert_messages(messages)

    assert system.startswith("You are forq.\n\n[This is a summary")
    assert [entry["role"] for entry in converted] == ["user", "assistant", "user"]
    first_user = converted[0]["content"]
    assert first_user[0] == {"type": "text", "text": "[Result of an earlier tool call]\nold output"}
    assert first_user[1] == {"type": "text", "text": "hello"}
    assistant = converted[1]["content"]
    assert [block["type"] for block in assistant] == ["thinking", "text", "tool_use"]
    assert converted[2]["content"][0]["type"] == "tool_result"


@pytest.mark.asyncio
async def test_anthropic_send_parses_tool_use():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "id": "msg_1",
            "model": "claude-test",
            "stop_reason": "tool_use",
            "content": [
                {"type": "text", "text": "Checking."},
                {"type": "tool_use", "id": "toolu_1", "name": "readFile", "input": {"path": "a.py"}},
            ],
            "usage": {"input_tokens": 10, "output_tokens": 5},
        })

    provider = _anthropic(handler, model="claude-test")
    tools = [{"name": "readFile", "description": "Read", "parameters": {"type": "object"}}]
    response = await provider.send([Message(role="system", content="sys"), Message(role="user", content="hi")], tools)

    assert seen["headers"]["x-api-key"] == "test-key"
    assert seen["body"]["system"] == "sys"
    assert seen["body"]["tools"][0]["input_schema"] == {"type": "object"}
    assert response.stop_reason == StopReason.TOOL_USE
    assert response.text == "Checking."
    assert response.tool_calls[0].correlation_id == "toolu_1"
    assert response.tool_calls[0].parameters == {"path": "a.py"}
    assert response.usage == {"prompt_tokens": 10, "completion_tokens": 5}
    await provider.close()


@pytest.mark.asyncio
async def test_anthropic_retries_server_errors():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        if len(attempts) < 3:
            return httpx.Response(529, text="overloaded")
        return httpx.Response(200, json={"content": [{"type": "text", "text": "ok"}], "stop_reason": "end_turn"})

    provider = _anthropic(handler, max_retries=2)
    response = await provider.send([Message(role="user", content="hi")])

    assert len(attempts) == 3
    assert response.text == "ok"
    assert response.stop_reason == StopReason.COMPLETE


@pytest.mark.asyncio
async def test_anthropic_client_error_is_not_retried():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        return httpx.Response(400, text="bad request")

    provider = _anthropic(handler, max_retries=3)
    with pytest.raises(LLMAPIError) as excinfo:
        await provider.send([Message(role="user", content="hi")])

    assert excinfo.value.status_code == 400
    assert len(attempts) == 1


@pytest.mark.asyncio
async def test_anthropic_stream_assembles_response():
    body = _sse(
        {"type": "message_start", "message": {"id": "msg_2", "model": "claude-test", "usage": {"input_tokens": 3}}},
        {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hel"}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "lo"}},
        {"type": "content_block_start", "index": 1,
         "content_block": {"type": "tool_use", "id": "toolu_9", "name": "echo", "input": {}}},
        {"type": "content_block_delta", "index": 1,
         "delta": {"type": "input_json_delta", "partial_json": "{\"message\": "}},
        {"type": "content_block_delta", "index": 1,
         "delta": {"type": "input_json_delta", "partial_json": "\"hi\"}"}},
        {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 7}},
        {"type": "message_stop"},
    )

    def handler(request: httpx.Request) -> httpx.Response:
        assert json.loads(request.content)["stream"] is True
        return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

    provider = _anthropic(handler)
    events = [event async for event in provider.stream([Message(role="user", content="hi")])]

    assert events[:2] == ["Hel", "lo"]
    final = events[-1]
    assert isinstance(final, ModelResponse)
    assert final.text == "Hello"
    assert final.stop_reason == StopReason.TOOL_USE
    assert final.tool_calls[0].parameters == {"message": "hi"}
    assert final.usage == {"prompt_tokens": 3, "completion_tokens": 7}


@pytest.mark.asyncio
async def test_anthropic_stream_error_event_raises():
    body = _sse({"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=body)

    provider = _anthropic(handler)
    with pytest.raises(LLMAPIError, match="Overloaded"):
        async for _ in provider.stream([Message(role="user", content="hi")]):
            pass


def test_ollama_message_conversion_uses_tool_role():
    provider = OllamaProvider()
    converted = provider._convert_messages([
        Message(role="system", content="sys"),
        Message(role="assistant", content=[ToolUseBlock(id="c1", name="listDir", input={})]),
        Message(
            role="user",
            content=[ToolResultBlock(tool_use_id="c1", content="[]")],
            metadata={"tool_result": True, "tool_name": "listDir"},
        ),
    ])

    assert converted[1]["tool_calls"] == [{"function": {"name": "listDir", "arguments": {}}}]
    assert converted[2] == {"role": "tool", "content": "[]", "tool_name": "listDir"}


@pytest.mark.asyncio
async def test_ollama_send_parses_string_arguments():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/chat"
        return httpx.Response(200, json={
            "model": "llama3.2",
            "message": {
                "role": "assistant",
                "content": "",
                "tool_calls": [{"function": {"name": "echo", "arguments": "{\"message\": \"hey\"}"}}],
            },
            "done": True,
            "prompt_eval_count": 4,
            "eval_count": 2,
        })

    provider = _ollama(handler)
    response = await provider.send([Message(role="user", content="hi")])

    assert response.stop_reason == StopReason.TOOL_USE
    assert response.tool_calls[0].parameters == {"message": "hey"}
    assert response.usage == {"prompt_tokens": 4, "completion_tokens": 2}


@pytest.mark.asyncio
async def test_ollama_stream_reads_ndjson():
    lines = [
        {"message": {"content": "Hi "}, "done": False},
        {"message": {"content": "there"}, "done": False},
        {"message": {"content": ""}, "done": True, "done_reason": "length", "eval_count": 2},
    ]
    body = "\n".join(json.dumps(line) for line in lines).encode()

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=body)

    provider = _ollama(handler)
    events = [event async for event in provider.stream([Message(role="user", content="hi")])]

    assert events[:2] == ["Hi ", "there"]
    assert events[-1].text == "Hi there"
    assert events[-1].stop_reason == StopReason.MAX_TOKENS


@pytest.mark.asyncio
async def test_ollama_http_error_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="boom")

    provider = _ollama(handler)
    with pytest.raises(LLMAPIError) as excinfo:
        await provider.send([Message(role="user", content="hi")])
    assert excinfo.value.status_code == 500

"""Model gateway: provider contract, concrete providers and factory."""

from forq.llm.anthropic import ANTHROPIC_BASE_URL, AnthropicProvider
from forq.llm.base import LLMProvider, ModelResponse, StopReason, StreamEvent, ToolCall
from forq.llm.ollama import OLLAMA_NATIVE_BASE_URL, OllamaProvider


def create_provider(
    provider: str = "anthropic",
    model: str = "claude-3-7-sonnet-latest",
    api_key: str | None = None,
    base_url: str | None = None,
    temperature: float = 0.7,
    max_tokens: int = 4096,
    timeout: float = 120.0,
    max_retries: int = 2,
) -> LLMProvider:
    """Create a model provider.

    Args:
        provider: Provider name (anthropic, ollama)
        model: Model name
        api_key: Optional API key
        base_url: Optional base URL
        temperature: Default temperature
        max_tokens: Default max tokens
        timeout: HTTP timeout in seconds
        max_retries: Retries for rate limits and server errors (anthropic only)

    Returns:
        Configured LLMProvider instance
    """
    name = (provider or "").strip().lower()
    if name in {"anthropic", "claude"}:
        return AnthropicProvider(
            model=model,
            api_key=api_key,
            base_url=base_url or ANTHROPIC_BASE_URL,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
            max_retries=max_retries,
        )
    if name == "ollama":
        return OllamaProvider(
            model=model,
            base_url=base_url or OLLAMA_NATIVE_BASE_URL,
            temperature=temperature,
            max_tokens=max_tokens,
            api_key=api_key,
            timeout=timeout,
        )
    raise ValueError(f"Provider '{provider}' not supported. Use 'anthropic' or 'ollama'.")


__all__ = [
    "AnthropicProvider",
    "LLMProvider",
    "ModelResponse",
    "OllamaProvider",
    "StopReason",
    "StreamEvent",
    "ToolCall",
    "create_provider",
]

"""Custom exceptions for forq."""


class ForqError(Exception):
    """Base exception for forq."""

    pass


class ConfigurationError(ForqError):
    """Configuration-related errors."""

    pass


class LLMError(ForqError):
    """Model gateway errors."""

    pass


class LLMAPIError(LLMError):
    """Provider API errors (rate limit, auth, bad request)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.status_code is not None and (
            self.status_code == 429 or self.status_code >= 500
        )


class ToolError(ForqError):
    """Tool execution errors."""

    pass


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f'Tool "{tool_name}" not found')
        self.tool_name = tool_name


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class ToolValidationError(ToolError):
    """Tool arguments did not match the declared parameter schema."""

    def __init__(self, tool_name: str, errors: list[str]):
        detail = "; ".join(errors) if errors else "invalid arguments"
        super().__init__(f"Invalid parameters for {tool_name}: {detail}")
        self.tool_name = tool_name
        self.errors = errors


class PermissionStoreError(ForqError):
    """Persisted permission file could not be read or written."""

    pass


class EmbeddingError(ForqError):
    """Embedding service request failed."""

    pass


class ConversationError(ForqError):
    """Conversation store errors."""

    pass


class ConversationInvariantError(ConversationError):
    """Conversation is in an undefined state. Not recoverable."""

    pass

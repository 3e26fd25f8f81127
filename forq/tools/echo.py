"""Echo tool, mostly useful for checking the tool loop end to end."""

from typing import Any

from pydantic import BaseModel

from forq.tools.registry import Tool, ToolContext


class EchoTool(Tool):
    """Return the message unchanged."""

    name = "echo"
    description = "Echo back the provided message. Useful for testing tool calls."
    timeout_seconds = 5.0
    parameters = {
        "type": "object",
        "properties": {
            "message": {
                "type": "string",
                "description": "The message to echo back",
            },
        },
        "required": ["message"],
    }

    async def execute(self, params: BaseModel, context: ToolContext) -> Any:
        return params.message

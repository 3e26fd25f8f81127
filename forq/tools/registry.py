"""Tool registry and base tool class."""

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, create_model, model_validator

from forq.exceptions import ToolNotFoundError, ToolValidationError
from forq.llm.base import ToolCall
from forq.logging import get_logger
from forq.permissions import PermissionLedger, PermissionType

log = get_logger(__name__)

PERMISSION_DENIED = "permission denied"

_JSON_TYPES: dict[str, Any] = {
    "string": str,
    "integer": int,
    "number": float,
    "boolean": bool,
    "array": list,
    "object": dict,
}


def _annotation_for(spec: dict[str, Any]) -> Any:
    """Map one JSON-schema property to a Python annotation."""
    if "enum" in spec:
        return Literal[tuple(spec["enum"])]
    kind = spec.get("type")
    if isinstance(kind, list):
        kinds = [k for k in kind if k != "null"]
        kind = kinds[0] if len(kinds) == 1 else None
    if kind == "array" and isinstance(spec.get("items"), dict):
        return list[_annotation_for(spec["items"])]
    return _JSON_TYPES.get(kind, Any)


def build_params_model(tool_name: str, schema: dict[str, Any]) -> type[BaseModel]:
    """Build a pydantic model validating arguments against a tool's JSON schema."""
    properties: dict[str, Any] = schema.get("properties") or {}
    required = set(schema.get("required") or [])
    fields: dict[str, Any] = {}
    for key, spec in properties.items():
        annotation = _annotation_for(spec)
        description = spec.get("description")
        if key in required:
            fields[key] = (annotation, Field(..., description=description))
        else:
            fields[key] = (Optional[annotation], Field(spec.get("default"), description=description))
    extra = "allow" if schema.get("additionalProperties") is True else "forbid"
    return create_model(
        f"{tool_name[:1].upper()}{tool_name[1:]}Params",
        __config__=ConfigDict(extra=extra),
        **fields,
    )


def _format_validation_errors(error: ValidationError) -> list[str]:
    messages = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ())) or "arguments"
        messages.append(f"{location}: {item.get('msg', 'invalid value')}")
    return messages


class ToolResult(BaseModel):
    """Result from tool execution."""

    tool_name: str = ""
    success: bool = True
    result: Any = None
    error: str | None = None
    denied: bool = False

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolResult":
        """Ensure failed results always provide an error message."""
        if not self.success and not (self.error or "").strip():
            self.error = "Tool execution failed"
        return self

    @property
    def content(self) -> str:
        """Payload rendered for the model."""
        if not self.success:
            return f"Error: {self.error}"
        if self.result is None:
            return ""
        if isinstance(self.result, str):
            return self.result
        return json.dumps(self.result, indent=2, ensure_ascii=False, default=str)

    @classmethod
    def failure(cls, tool_name: str, error: str, **kwargs: Any) -> "ToolResult":
        return cls(tool_name=tool_name, success=False, error=error, **kwargs)


@dataclass
class ToolContext:
    """Execution context handed to every tool action."""

    working_directory: Path
    logger: Any = field(default_factory=lambda: log)
    abort_event: asyncio.Event | None = None

    def resolve_path(self, raw: str | None) -> Path:
        path = Path(raw or ".").expanduser()
        if not path.is_absolute():
            path = self.working_directory / path
        return path.resolve()


class Tool(ABC):
    """Base class for all tools."""

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {"type": "object", "properties": {}}
    requires_permission: bool = False
    permission_type: PermissionType = PermissionType.FILESYSTEM
    timeout_seconds: float | None = None

    @abstractmethod
    async def execute(self, params: BaseModel, context: ToolContext) -> Any:
        """Run the tool action.

        Args:
            params: Arguments validated against ``parameters``
            context: Working directory, logger and abort signal

        Returns:
            Result payload (string or JSON-serializable value)

        Raises:
            Any exception; the registry turns it into a failed ToolResult
        """
        pass

    def permission_scope(self, params: BaseModel, context: ToolContext) -> str | None:
        """Scope the permission check applies to. ``None`` means any use."""
        return None

    def permission_reason(self, params: BaseModel) -> str | None:
        return None

    async def close(self) -> None:
        """Release resources held by the tool."""
        return None

    @property
    def params_model(self) -> type[BaseModel]:
        model = self.__dict__.get("_params_model")
        if model is None:
            model = build_params_model(self.name, self.parameters)
            self.__dict__["_params_model"] = model
        return model

    def get_definition(self) -> dict[str, Any]:
        """Get the tool descriptor for the model gateway."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }

    def validate_arguments(self, arguments: dict[str, Any]) -> BaseModel:
        """Validate arguments against the parameter schema.

        Raises:
            ToolValidationError if invalid
        """
        if not isinstance(arguments, dict):
            raise ToolValidationError(self.name, ["arguments must be an object"])
        try:
            return self.params_model.model_validate(arguments)
        except ValidationError as e:
            raise ToolValidationError(self.name, _format_validation_errors(e)) from e


class PathScopedTool(Tool):
    """Tool whose filesystem permission is scoped to its resolved path argument."""

    requires_permission = True
    permission_type = PermissionType.FILESYSTEM
    path_argument = "path"

    def permission_scope(self, params: BaseModel, context: ToolContext) -> str | None:
        return str(context.resolve_path(getattr(params, self.path_argument)))

    def permission_reason(self, params: BaseModel) -> str | None:
        return f"{self.name} wants to access {getattr(params, self.path_argument)}"


class ToolRegistry:
    """Name-keyed tool table with a uniform invoke contract."""

    def __init__(
        self,
        ledger: PermissionLedger | None = None,
        working_directory: Path | str | None = None,
        default_timeout: float = 60.0,
    ):
        self.ledger = ledger or PermissionLedger()
        # used by tools that do not declare their own timeout_seconds
        self.default_timeout = default_timeout
        self.working_directory = Path(working_directory or Path.cwd()).expanduser().resolve()
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> bool:
        """Register a tool. Duplicate names are rejected, not overwritten."""
        if not tool.name:
            log.error("Refusing to register tool without a name", tool_class=type(tool).__name__)
            return False
        if tool.name in self._tools:
            log.error("Tool already registered", tool=tool.name)
            return False
        log.debug("Registering tool", tool=tool.name)
        self._tools[tool.name] = tool
        return True

    def unregister(self, name: str) -> bool:
        if self._tools.pop(name, None) is None:
            return False
        log.debug("Unregistered tool", tool=name)
        return True

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if tool not found
        """
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFoundError(name)
        return tool

    def list_tools(self) -> list[str]:
        return list(self._tools)

    def __len__(self) -> int:
        return len(self._tools)

    def schema(self) -> list[dict[str, Any]]:
        """Tool descriptors as of right now."""
        return [tool.get_definition() for tool in self._tools.values()]

    async def close(self) -> None:
        for tool in self._tools.values():
            await tool.close()

    def make_context(self, abort_event: asyncio.Event | None = None) -> ToolContext:
        return ToolContext(
            working_directory=self.working_directory,
            logger=log,
            abort_event=abort_event,
        )

    async def invoke(self, tool_call: ToolCall, context: ToolContext | None = None) -> ToolResult:
        """Validate, gate and run one tool call. Never raises except on cancellation."""
        name = tool_call.name
        try:
            tool = self.get(name)
        except ToolNotFoundError as e:
            log.warning("Model requested unknown tool", tool=name)
            return ToolResult.failure(name, str(e))

        context = context or self.make_context()
        try:
            params = tool.validate_arguments(tool_call.parameters)
        except ToolValidationError as e:
            log.warning("Rejected tool arguments", tool=name, errors=e.errors)
            return ToolResult.failure(name, str(e))

        if tool.requires_permission and not await self._check_permission(tool, params, context):
            return ToolResult.failure(name, PERMISSION_DENIED, denied=True)

        return await self._run_action(tool, params, context)

    async def _check_permission(self, tool: Tool, params: BaseModel, context: ToolContext) -> bool:
        try:
            scope = tool.permission_scope(params, context)
            return await self.ledger.request_and_wait(
                tool.name,
                tool.permission_type,
                scope,
                reason=tool.permission_reason(params),
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error("Permission check failed, denying", tool=tool.name, error=str(e))
            return False

    @staticmethod
    async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
        """Cancel task and await it to avoid pending task warnings."""
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            log.debug("Cancelled task raised", error=str(e))

    async def _run_action(self, tool: Tool, params: BaseModel, context: ToolContext) -> ToolResult:
        """Run the action with timeout and abort propagation."""
        name = tool.name
        tool_abort_event = asyncio.Event()
        tool_context = ToolContext(
            working_directory=context.working_directory,
            logger=context.logger,
            abort_event=tool_abort_event,
        )
        execute_task: asyncio.Task[Any] | None = None
        abort_wait_task: asyncio.Task[Any] | None = None
        bridge_task: asyncio.Task[Any] | None = None
        timeout_seconds = max(1.0, float(tool.timeout_seconds or self.default_timeout))

        try:
            log.info("Executing tool", tool=name, args=params.model_dump(exclude_none=True))
            if context.abort_event is not None:
                bridge_task = asyncio.create_task(context.abort_event.wait())
                bridge_task.add_done_callback(lambda _: tool_abort_event.set())

            execute_task = asyncio.create_task(tool.execute(params, tool_context))
            abort_wait_task = asyncio.create_task(tool_abort_event.wait())
            done, _ = await asyncio.wait(
                {execute_task, abort_wait_task},
                timeout=timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )

            if execute_task in done:
                payload = execute_task.result()
                log.info("Tool executed", tool=name, success=True)
                return ToolResult(tool_name=name, success=True, result=payload)

            if abort_wait_task in done:
                await self._cancel_task(execute_task)
                return ToolResult.failure(name, "Execution aborted")

            tool_abort_event.set()
            await self._cancel_task(execute_task)
            timeout_label = int(timeout_seconds) if timeout_seconds.is_integer() else timeout_seconds
            log.warning("Tool timed out", tool=name, timeout=timeout_label)
            return ToolResult.failure(name, f"Execution timed out after {timeout_label}s")
        except asyncio.CancelledError:
            tool_abort_event.set()
            await self._cancel_task(execute_task)
            raise
        except Exception as e:
            log.error("Tool execution failed", tool=name, error=str(e))
            return ToolResult.failure(name, str(e) or type(e).__name__)
        finally:
            await self._cancel_task(abort_wait_task)
            await self._cancel_task(bridge_task)

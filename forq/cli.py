"""Terminal UI for forq."""

import asyncio
import atexit
import json
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.prompt import Confirm, InvalidResponse
from rich.table import Table

from forq.config import Config, UIConfig
from forq.logging import get_logger
from forq.permissions import PermissionLedger, PermissionRequest

log = get_logger(__name__)


def _retrieve_result(read: asyncio.Future) -> None:
    if not read.cancelled():
        read.exception()


class TerminalUI:
    """Line-oriented terminal front end."""

    def __init__(self, settings: UIConfig | None = None, console: Console | None = None):
        self.settings = settings or UIConfig()
        self.console = console or Console(highlight=False, no_color=not self.settings.colors)
        self._special_commands = [
            "/help",
            "/clear",
            "/reset",
            "/compact",
            "/config",
            "/tools",
            "/permissions",
            "/tool-cycle",
            "/exit",
            "/quit",
        ]
        self._history_file = Path(self.settings.history_path).expanduser()
        self._readline = None
        self._assistant_output_active = False
        self._pending_read: asyncio.Future[str] | None = None
        self._setup_readline()

    def _setup_readline(self) -> None:
        """Set up line editing, history, and command completion."""
        try:
            import readline  # type: ignore
        except ImportError:
            return

        self._readline = readline
        try:
            self._history_file.parent.mkdir(parents=True, exist_ok=True)
            if self._history_file.exists():
                readline.read_history_file(str(self._history_file))
            readline.set_history_length(self.settings.history_size)
            if hasattr(readline, "set_auto_history"):
                readline.set_auto_history(False)
            readline.parse_and_bind("tab: complete")
            readline.set_completer(self._complete_special_command)
            atexit.register(self._save_history)
        except OSError as e:
            log.debug("Readline setup failed", error=str(e))

    def _save_history(self) -> None:
        """Persist readline history to disk."""
        if self._readline is None:
            return
        try:
            self._readline.write_history_file(str(self._history_file))
        except OSError as e:
            log.debug("Failed to save history", error=str(e))

    def _complete_special_command(self, text: str, state: int) -> str | None:
        """Readline completer for slash commands."""
        if not text.startswith("/"):
            return None
        matches = [cmd for cmd in self._special_commands if cmd.startswith(text)]
        if state < len(matches):
            return matches[state]
        return None

    def _truncate(self, text: str) -> str:
        limit = self.settings.tool_output_chars
        if limit > 0 and len(text) > limit:
            return text[:limit] + "..."
        return text

    def print_welcome(self, model: str = "", working_directory: str = "") -> None:
        """Print welcome message."""
        self.console.print("=== forq ===", style="bold")
        if model:
            self.console.print(f"Model: {model}")
        if working_directory:
            self.console.print(f"Working directory: {working_directory}")
        self.console.print("Type your message, '/help' for commands, '/exit' to quit.\n")

    def print_help(self) -> None:
        """Print help message."""
        help_text = """
Commands:
  /help               - Show this help message
  /clear              - Clear the conversation
  /reset              - Clear the conversation and reload project context
  /compact            - Summarize older messages now
  /config             - Show configuration
  /tools              - List available tools
  /permissions        - Show granted and denied permissions
  /tool-cycle on|off  - Send tool results back to the model automatically
  /exit, /quit        - Exit the application

  Press Ctrl-C while the assistant is working to interrupt the turn.
"""
        self.console.print(help_text, markup=False)

    def print_message(self, role: str, content: str) -> None:
        """Print a message with a role prefix."""
        self.console.print(f"[{role.upper()}] {content}", markup=False)

    def print_error(self, error: str) -> None:
        self.console.print(f"Error: {error}", style="red", markup=False)

    def print_warning(self, warning: str) -> None:
        self.console.print(f"Warning: {warning}", style="yellow", markup=False)

    def print_success(self, message: str) -> None:
        self.console.print(f"OK: {message}", style="green", markup=False)

    def begin_assistant_stream(self) -> None:
        """Start assistant streaming output."""
        if self._assistant_output_active:
            return
        self._assistant_output_active = True
        self.console.print("[ASSISTANT] ", end="", markup=False)

    def print_streaming(self, chunk: str) -> None:
        """Print streaming response chunk."""
        self.begin_assistant_stream()
        self.console.print(chunk, end="", markup=False, soft_wrap=True)

    def end_assistant_stream(self) -> None:
        """Finish the current streaming line."""
        if not self._assistant_output_active:
            return
        self._assistant_output_active = False
        self.console.print()

    def print_tool_call(self, tool_name: str, arguments: dict[str, Any]) -> None:
        self.end_assistant_stream()
        rendered = self._truncate(json.dumps(arguments, ensure_ascii=False, default=str))
        self.console.print(f"[TOOL] {tool_name}: {rendered}", style="cyan", markup=False)

    def print_tool_result(
        self,
        tool_name: str,
        result: str,
        success: bool = True,
    ) -> None:
        label = "TOOL RESULT" if success else "TOOL FAILED"
        self.console.print(
            f"[{label}] {tool_name}: {self._truncate(result)}",
            style=None if success else "red",
            markup=False,
        )

    def print_config(self, config: Config) -> None:
        """Print current configuration."""
        table = Table(title="Current Configuration", show_header=False)
        table.add_column("Setting", style="bold")
        table.add_column("Value")
        table.add_row("Provider", config.model.provider)
        table.add_row("Model", config.model.model)
        table.add_row("Temperature", str(config.model.temperature))
        table.add_row("Max tokens", str(config.model.max_tokens))
        table.add_row("Streaming", str(config.loop.stream))
        table.add_row("Complete tool cycle", str(config.loop.complete_tool_cycle))
        table.add_row("Max rounds", str(config.loop.max_rounds))
        table.add_row("Context window", str(config.context.window_size))
        table.add_row("Compaction threshold", str(config.context.effective_threshold))
        table.add_row("Enabled tools", ", ".join(config.tools.enabled))
        self.console.print(table)

    def print_tools(self, tools: list[dict[str, Any]]) -> None:
        """Print tool names and descriptions."""
        table = Table(title="Tools")
        table.add_column("Name", style="bold")
        table.add_column("Description")
        for tool in tools:
            table.add_row(tool["name"], tool.get("description", ""))
        self.console.print(table)

    def print_permissions(self, ledger: PermissionLedger) -> None:
        """Print the latest state of every recorded permission key."""
        table = Table(title="Permissions")
        table.add_column("Tool", style="bold")
        table.add_column("Type")
        table.add_column("Scope")
        table.add_column("State")
        rows = 0
        for tool_name, records in sorted(ledger.records().items()):
            latest: dict[tuple[str, str | None], bool] = {}
            for record in records:
                latest[(record.type.value, record.scope)] = record.granted
            for (perm_type, scope), granted in latest.items():
                table.add_row(tool_name, perm_type, scope or "*", "granted" if granted else "denied")
                rows += 1
        if rows == 0:
            self.console.print("No permissions recorded.")
            return
        self.console.print(table)

    def print_compaction(self, result: Any) -> None:
        if result.compacted:
            self.print_success(
                f"Compacted {result.summarized_count} messages "
                f"({result.before_count} -> {result.after_count})"
            )
        else:
            self.print_warning(f"Nothing to compact ({result.reason})")

    async def read_line(self, prompt_text: str = "") -> str:
        """Read one line from the terminal.

        All reads share one in-flight ``input()`` call. When the caller waiting
        on it is cancelled the read stays alive and its line goes to the next
        caller instead of being swallowed.
        """
        read = self._pending_read
        if read is None or read.done():
            read = asyncio.ensure_future(asyncio.to_thread(input, prompt_text))
            read.add_done_callback(_retrieve_result)
            self._pending_read = read
        elif prompt_text:
            self.console.print(f"\n{prompt_text}", end="", markup=False)
        return await asyncio.shield(read)

    async def prompt(self, prompt_text: str | None = None) -> str:
        """Prompt for input."""
        value = await self.read_line(self.settings.prompt if prompt_text is None else prompt_text)
        if self._readline and value.strip():
            self._readline.add_history(value)
        return value

    async def confirm(self, message: str) -> bool:
        """Ask for confirmation. Defaults to No."""
        question = Confirm(message, console=self.console)
        while True:
            self.console.print(question.make_prompt(False), end="")
            value = await self.read_line()
            if not value.strip():
                return False
            try:
                return question.process_response(value)
            except InvalidResponse as error:
                question.on_validate_error(value, error)

    def handle_special_command(self, cmd: str) -> str | None:
        """Map slash commands to action tokens. Plain input passes through."""
        cmd = cmd.strip()

        if not cmd.startswith("/"):
            return cmd

        parts = cmd.split(None, 1)
        command = parts[0].lower()
        args = parts[1].strip().lower() if len(parts) > 1 else ""

        if command in ("/help", "/h", "/?"):
            self.print_help()
            return None
        elif command == "/clear":
            return "CLEAR"
        elif command == "/reset":
            return "RESET"
        elif command == "/compact":
            return "COMPACT"
        elif command == "/config":
            return "CONFIG"
        elif command == "/tools":
            return "TOOLS"
        elif command == "/permissions":
            return "PERMISSIONS"
        elif command == "/tool-cycle":
            if args == "on":
                return "TOOL_CYCLE_ON"
            if args == "off":
                return "TOOL_CYCLE_OFF"
            if not args:
                return "TOOL_CYCLE_STATUS"
            self.print_error("Usage: /tool-cycle on|off")
            return None
        elif command in ("/exit", "/quit", "/q"):
            return "EXIT"
        else:
            self.print_error(f"Unknown command: {command}")
            return None


class TerminalPermissionPrompt:
    """Asks the user to approve a permission request on the terminal."""

    def __init__(self, ui: TerminalUI):
        self.ui = ui

    def describe(self, request: PermissionRequest) -> str:
        target = request.scope or "all targets"
        lines = [f"Tool '{request.tool_name}' wants to {request.type.description}: {target}"]
        if request.reason:
            lines.append(f"Reason: {request.reason}")
        return "\n".join(lines)

    async def __call__(self, request: PermissionRequest) -> bool:
        self.ui.end_assistant_stream()
        self.ui.console.print(self.describe(request), style="yellow", markup=False)
        return await self.ui.confirm("Allow?")

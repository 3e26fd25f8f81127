"""Bash tool for executing shell commands."""

import asyncio
import os
import re
import shlex
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from forq.exceptions import ToolExecutionError
from forq.logging import get_logger
from forq.permissions import PermissionType
from forq.tools.registry import Tool, ToolContext

log = get_logger(__name__)

_SEPARATOR_TOKENS = {";", "&&", "||", "|", "&"}
_WRAPPER_TOKENS = {"sudo", "env", "command", "builtin", "exec", "nohup", "time", "xargs"}
_ASSIGNMENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=.*$")
_WORD_PATTERN = re.compile(r"[\w.+-]+")
_MAX_NESTING = 3
MAX_OUTPUT_CHARS = 20_000


def split_command_segments(command: str) -> list[list[str]]:
    """Tokenize a command line into segments split on control operators."""
    lexer = shlex.shlex(command, posix=True, punctuation_chars=";&|")
    lexer.whitespace_split = True
    lexer.commenters = ""
    segments: list[list[str]] = []
    current: list[str] = []
    for token in lexer:
        if token in _SEPARATOR_TOKENS:
            if current:
                segments.append(current)
                current = []
            continue
        current.append(token)
    if current:
        segments.append(current)
    return segments


def strip_command_wrappers(tokens: list[str]) -> list[str]:
    """Drop leading ``sudo``/``env`` style wrappers and ``VAR=value`` assignments."""
    idx = 0
    while idx < len(tokens):
        token = tokens[idx].strip()
        if token in _WRAPPER_TOKENS or (idx > 0 and token.startswith("-")):
            idx += 1
            continue
        if _ASSIGNMENT_RE.match(token):
            idx += 1
            continue
        break
    return tokens[idx:]


def _canonical_rm(tokens: list[str]) -> list[str]:
    """Rewrite ``rm -fr``, ``rm -r -f`` and ``rm --recursive --force`` as ``rm -rf``."""
    flags: set[str] = set()
    args: list[str] = []
    for token in tokens[1:]:
        if token == "--recursive":
            flags.add("r")
        elif token == "--force":
            flags.add("f")
        elif token.startswith("-") and not token.startswith("--") and len(token) > 1:
            flags.update(token[1:].lower())
        else:
            args.append(token)
    if {"r", "f"} <= flags:
        return ["rm", "-rf", *args]
    return tokens


def _command_views(command: str, depth: int = 0) -> tuple[set[str], list[str]]:
    """Executables and normalized segment texts of a command line.

    Arguments that hold whitespace (``bash -c "..."``, ``psql -c "..."``) are
    inspected as command lines of their own.
    """
    try:
        segments = split_command_segments(command)
    except ValueError:
        return set(), []

    executables: set[str] = set()
    texts: list[str] = []
    for segment in segments:
        tokens = strip_command_wrappers(segment)
        if not tokens:
            continue
        base = os.path.basename(tokens[0])
        if base == "rm":
            tokens = _canonical_rm(tokens)
        executables.add(base)
        texts.append(" ".join(" ".join(tokens).split()))
        if depth < _MAX_NESTING:
            for token in tokens[1:]:
                if any(char.isspace() for char in token.strip()):
                    nested_executables, nested_texts = _command_views(token, depth + 1)
                    executables |= nested_executables
                    texts.extend(nested_texts)
    return executables, texts


def find_blocked_pattern(command: str, blocked_patterns: list[str]) -> str | None:
    """Return the first blocked pattern the command matches, if any.

    Single-word patterns match the executable of any segment once wrappers
    such as ``sudo`` and ``VAR=1`` are skipped. Anything else matches as a
    substring of the whitespace-normalized command or of one of its
    normalized segments.
    """
    normalized = " ".join(command.split())
    executables, texts = _command_views(command)

    for raw in blocked_patterns:
        pattern = raw.strip()
        if not pattern:
            continue
        if _WORD_PATTERN.fullmatch(pattern):
            if pattern in executables:
                return pattern
        elif pattern in normalized or any(pattern in text for text in texts):
            return pattern
    return None


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + f"\n... [truncated, {len(text)} total chars]"


class BashTool(Tool):
    """Run commands in a shell whose working directory persists across calls."""

    name = "bash"
    description = (
        "Run a command in a bash shell. The working directory persists across "
        "calls (use `cd` to change it). Commands time out after a configurable "
        "limit and potentially dangerous commands are blocked. To inspect a "
        "line range of a file use: sed -n 10,25p path/to/file"
    )
    requires_permission = True
    permission_type = PermissionType.SHELL
    parameters = {
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "description": "The bash command to run",
            },
            "timeout": {
                "type": "integer",
                "description": "Timeout in seconds (optional, default from config)",
            },
        },
        "required": ["command"],
    }

    def __init__(
        self,
        timeout: int = 120,
        blocked: list[str] | None = None,
        max_output_chars: int = MAX_OUTPUT_CHARS,
    ):
        self.default_timeout = max(1, int(timeout))
        self.blocked = list(blocked or [])
        self.max_output_chars = max_output_chars
        # registry guard sits above the tool's own process timeout
        self.timeout_seconds = float(self.default_timeout + 5)
        self.cwd: Path | None = None

    def permission_reason(self, params: BaseModel) -> str | None:
        return f"Run: {params.command}"

    def _change_directory(self, target: str, base: Path) -> dict[str, Any]:
        new_dir = Path(target).expanduser()
        if not new_dir.is_absolute():
            new_dir = base / new_dir
        new_dir = new_dir.resolve()
        if not new_dir.is_dir():
            raise NotADirectoryError(f"Failed to change directory to {target}: no such directory")
        self.cwd = new_dir
        return {"command": f"cd {target}", "stdout": "", "stderr": "", "exit_code": 0, "cwd": str(new_dir)}

    async def execute(self, params: BaseModel, context: ToolContext) -> Any:
        command = params.command.strip()
        if not command:
            raise ValueError("Command is empty")

        matched = find_blocked_pattern(command, self.blocked)
        if matched:
            log.warning("Blocked dangerous command", command=command, pattern=matched)
            raise PermissionError(f"Command blocked: matches dangerous pattern '{matched}'")

        cwd = self.cwd or context.working_directory
        try:
            tokens = shlex.split(command)
        except ValueError:
            tokens = []
        if len(tokens) == 2 and tokens[0] == "cd" and not any(op in command for op in _SEPARATOR_TOKENS):
            return self._change_directory(tokens[1], cwd)

        timeout = max(1, int(params.timeout or self.default_timeout))
        abort_event = context.abort_event

        log.info("Executing shell command", command=command, timeout=timeout, cwd=str(cwd))
        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd),
            env=os.environ.copy(),
        )

        communicate_task = asyncio.create_task(process.communicate())
        abort_wait_task = asyncio.create_task(abort_event.wait()) if abort_event is not None else None
        try:
            wait_tasks: set[asyncio.Task[Any]] = {communicate_task}
            if abort_wait_task is not None:
                wait_tasks.add(abort_wait_task)
            done, _ = await asyncio.wait(
                wait_tasks,
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if communicate_task not in done:
                process.kill()
                await process.wait()
                communicate_task.cancel()
                try:
                    await communicate_task
                except asyncio.CancelledError:
                    pass
                if abort_wait_task is not None and abort_wait_task in done:
                    raise ToolExecutionError(self.name, "Command aborted")
                raise TimeoutError(f"Command timed out after {timeout}s")
            stdout, stderr = communicate_task.result()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            communicate_task.cancel()
            raise
        finally:
            if abort_wait_task is not None and not abort_wait_task.done():
                abort_wait_task.cancel()
                try:
                    await abort_wait_task
                except asyncio.CancelledError:
                    pass

        stdout_text = _truncate(stdout.decode("utf-8", errors="replace"), self.max_output_chars)
        stderr_text = _truncate(stderr.decode("utf-8", errors="replace"), self.max_output_chars)
        if process.returncode != 0:
            output = "\n".join(part for part in (stdout_text.strip(), stderr_text.strip()) if part)
            raise ToolExecutionError(
                self.name,
                f"Command exited with code {process.returncode}" + (f"\n{output}" if output else ""),
            )

        return {
            "command": command,
            "stdout": stdout_text,
            "stderr": stderr_text,
            "exit_code": process.returncode,
            "cwd": str(cwd),
        }

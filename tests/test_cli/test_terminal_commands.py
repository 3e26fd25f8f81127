import asyncio
import threading

import pytest
from rich.console import Console

from forq.cli import TerminalPermissionPrompt, TerminalUI
from forq.config import Config, UIConfig
from forq.permissions import PermissionLedger, PermissionRequest, PermissionType


@pytest.fixture
def ui(tmp_path):
    settings = UIConfig(history_path=str(tmp_path / "history"), colors=False, tool_output_chars=20)
    return TerminalUI(settings, console=Console(width=120, no_color=True, highlight=False))


def test_special_command_completion(ui):
    assert ui._complete_special_command("/to", 0) == "/tools"
    assert ui._complete_special_command("/to", 1) == "/tool-cycle"
    assert ui._complete_special_command("/to", 2) is None
    assert ui._complete_special_command("hello", 0) is None


@pytest.mark.parametrize(
    ("command", "token"),
    [
        ("/clear", "CLEAR"),
        ("/reset", "RESET"),
        ("/compact", "COMPACT"),
        ("/config", "CONFIG"),
        ("/tools", "TOOLS"),
        ("/permissions", "PERMISSIONS"),
        ("/tool-cycle on", "TOOL_CYCLE_ON"),
        ("/tool-cycle OFF", "TOOL_CYCLE_OFF"),
        ("/tool-cycle", "TOOL_CYCLE_STATUS"),
        ("/exit", "EXIT"),
        ("/quit", "EXIT"),
    ],
)
def test_special_command_tokens(ui, command, token):
    assert ui.handle_special_command(command) == token


def test_plain_input_passes_through(ui):
    assert ui.handle_special_command("  list the files  ") == "list the files"


def test_unknown_command_prints_error(ui, capsys):
    assert ui.handle_special_command("/frobnicate") is None
    assert "Unknown command: /frobnicate" in capsys.readouterr().out


def test_help_lists_commands(ui, capsys):
    assert ui.handle_special_command("/help") is None
    out = capsys.readouterr().out
    for command in ("/compact", "/tool-cycle", "/permissions", "/exit"):
        assert command in out


def test_tool_result_is_truncated(ui, capsys):
    ui.print_tool_result("readFile", "x" * 50)
    out = capsys.readouterr().out
    assert "[TOOL RESULT] readFile: " + "x" * 20 + "..." in out


def test_streaming_has_single_prefix(ui, capsys):
    ui.print_streaming("Hel")
    ui.print_streaming("lo")
    ui.end_assistant_stream()
    out = capsys.readouterr().out
    assert out.count("[ASSISTANT]") == 1
    assert "Hello" in out


def test_config_table_shows_loop_settings(ui, capsys):
    ui.print_config(Config())
    out = capsys.readouterr().out
    assert "Complete tool cycle" in out
    assert "claude-3-7-sonnet-latest" in out


def test_permissions_view_shows_latest_state(ui, capsys):
    ledger = PermissionLedger()
    ledger.grant("bash", PermissionType.SHELL)
    ledger.revoke("bash", PermissionType.SHELL)
    ledger.grant("readFile", PermissionType.FILESYSTEM, "/proj")

    ui.print_permissions(ledger)
    out = capsys.readouterr().out

    assert "denied" in out
    assert "/proj" in out
    assert "granted" in out


def test_permissions_view_when_empty(ui, capsys):
    ui.print_permissions(PermissionLedger())
    assert "No permissions recorded." in capsys.readouterr().out


def _scripted_input(monkeypatch, answers):
    asked: list[str] = []

    def fake_input(prompt=""):
        asked.append(prompt)
        return answers.pop(0)

    monkeypatch.setattr("builtins.input", fake_input)
    return asked


@pytest.mark.asyncio
async def test_permission_prompt_asks_on_terminal(ui, monkeypatch, capsys):
    _scripted_input(monkeypatch, ["y"])
    prompt = TerminalPermissionPrompt(ui)
    request = PermissionRequest(
        request_id="r1",
        tool_name="editFile",
        type=PermissionType.FILESYSTEM,
        scope="/proj/a.py",
        reason="Edit a.py",
    )

    assert await prompt(request) is True
    out = capsys.readouterr().out
    assert "read and modify files: /proj/a.py" in out
    assert "Reason: Edit a.py" in out
    assert "Allow? [y/n]" in out


@pytest.mark.asyncio
async def test_confirm_defaults_to_no(ui, monkeypatch):
    _scripted_input(monkeypatch, [""])
    assert await ui.confirm("Allow?") is False


@pytest.mark.asyncio
async def test_confirm_repeats_on_invalid_answer(ui, monkeypatch, capsys):
    asked = _scripted_input(monkeypatch, ["maybe", "N"])

    assert await ui.confirm("Allow?") is False
    assert len(asked) == 2
    assert "Please enter Y or N" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_abandoned_confirm_hands_its_line_to_next_prompt(ui, monkeypatch):
    release = threading.Event()
    asked: list[str] = []

    def blocking_input(prompt=""):
        asked.append(prompt)
        release.wait(5)
        return "list the files"

    monkeypatch.setattr("builtins.input", blocking_input)

    confirm = asyncio.create_task(ui.confirm("Allow?"))
    while not asked:
        await asyncio.sleep(0.01)
    confirm.cancel()
    with pytest.raises(asyncio.CancelledError):
        await confirm

    next_prompt = asyncio.create_task(ui.prompt())
    await asyncio.sleep(0.01)
    release.set()

    assert await next_prompt == "list the files"
    assert len(asked) == 1


@pytest.mark.asyncio
async def test_prompt_reads_a_fresh_line_after_completed_read(ui, monkeypatch):
    asked = _scripted_input(monkeypatch, ["first", "second"])

    assert await ui.prompt() == "first"
    assert await ui.prompt() == "second"
    assert asked == ["forq> ", "forq> "]

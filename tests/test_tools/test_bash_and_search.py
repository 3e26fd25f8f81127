import asyncio

import pytest

from forq.config import ShellToolConfig
from forq.exceptions import ToolExecutionError
from forq.permissions import PermissionType
from forq.tools.bash import BashTool, find_blocked_pattern, split_command_segments
from forq.tools.echo import EchoTool
from forq.tools.file_search import FileSearchTool
from forq.tools.grep_search import GrepSearchTool
from forq.tools.registry import ToolContext


def _context(tmp_path, abort_event=None):
    return ToolContext(working_directory=tmp_path.resolve(), abort_event=abort_event)


def test_split_command_segments_on_operators():
    assert split_command_segments("ls -la && echo 'a;b' | wc -l") == [
        ["ls", "-la"],
        ["echo", "a;b"],
        ["wc", "-l"],
    ]


def test_blocked_single_word_matches_executable_only():
    blocked = ["shutdown", "rm -rf /"]
    assert find_blocked_pattern("sudo true; shutdown -h now", blocked) == "shutdown"
    assert find_blocked_pattern("echo shutdown-notes", blocked) is None
    assert find_blocked_pattern("rm  -rf   /", blocked) == "rm -rf /"


@pytest.mark.parametrize(
    "command",
    [
        "sudo shutdown -h now",
        "FOO=1 reboot",
        "env -i PATH=/bin reboot",
        "nohup halt &",
        "cd /tmp && sudo -E poweroff",
    ],
)
def test_blocked_executable_behind_wrappers(command):
    blocked = ShellToolConfig().blocked
    assert find_blocked_pattern(command, blocked) is not None


@pytest.mark.parametrize(
    ("command", "pattern"),
    [
        ("rm -fr /", "rm -rf /"),
        ("rm -r -f ~", "rm -rf ~"),
        ("sudo rm --recursive --force /", "rm -rf /"),
        ("rm -Rf .", "rm -rf ."),
    ],
)
def test_blocked_rm_flag_spellings(command, pattern):
    assert find_blocked_pattern(command, ShellToolConfig().blocked) == pattern


def test_blocked_inside_inline_scripts():
    blocked = ShellToolConfig().blocked
    assert find_blocked_pattern('psql -c "DROP TABLE users"', blocked) == "DROP"
    assert find_blocked_pattern("sqlite3 app.db 'delete from users'", blocked) == "delete from"
    assert find_blocked_pattern("bash -c 'sudo reboot'", blocked) == "reboot"
    assert find_blocked_pattern("dd if=/dev/zero of=disk.img", blocked) == "dd"


def test_ordinary_commands_are_not_blocked():
    blocked = ShellToolConfig().blocked
    for command in ("git add -A", "ls -la", "rm -f build.log", "grep -rn shutdown src/", "sudo ls"):
        assert find_blocked_pattern(command, blocked) is None


def test_bash_requires_global_shell_permission(tmp_path):
    tool = BashTool()
    params = tool.validate_arguments({"command": "ls"})
    assert tool.requires_permission
    assert tool.permission_type == PermissionType.SHELL
    assert tool.permission_scope(params, _context(tmp_path)) is None


@pytest.mark.asyncio
async def test_bash_runs_in_working_directory(tmp_path):
    (tmp_path / "marker.txt").write_text("x")
    tool = BashTool()

    payload = await tool.execute(tool.validate_arguments({"command": "ls"}), _context(tmp_path))

    assert payload["exit_code"] == 0
    assert "marker.txt" in payload["stdout"]
    assert payload["cwd"] == str(tmp_path.resolve())


@pytest.mark.asyncio
async def test_bash_cd_persists_between_calls(tmp_path):
    (tmp_path / "sub").mkdir()
    (tmp_path / "sub" / "inner.txt").write_text("x")
    tool = BashTool()
    ctx = _context(tmp_path)

    moved = await tool.execute(tool.validate_arguments({"command": "cd sub"}), ctx)
    listed = await tool.execute(tool.validate_arguments({"command": "ls"}), ctx)

    assert moved["cwd"] == str((tmp_path / "sub").resolve())
    assert "inner.txt" in listed["stdout"]


@pytest.mark.asyncio
async def test_bash_non_zero_exit_raises(tmp_path):
    tool = BashTool()
    with pytest.raises(ToolExecutionError, match="exited with code 3"):
        await tool.execute(
            tool.validate_arguments({"command": "echo oops >&2; exit 3"}), _context(tmp_path)
        )


@pytest.mark.asyncio
async def test_bash_blocks_dangerous_commands(tmp_path):
    tool = BashTool(blocked=["mkfs"])
    with pytest.raises(PermissionError, match="Command blocked"):
        await tool.execute(tool.validate_arguments({"command": "mkfs /dev/sda"}), _context(tmp_path))


@pytest.mark.asyncio
async def test_bash_timeout(tmp_path):
    tool = BashTool(timeout=1)
    with pytest.raises(TimeoutError):
        await tool.execute(tool.validate_arguments({"command": "sleep 5"}), _context(tmp_path))


@pytest.mark.asyncio
async def test_bash_abort(tmp_path):
    tool = BashTool(timeout=30)
    abort_event = asyncio.Event()
    task = asyncio.create_task(
        tool.execute(tool.validate_arguments({"command": "sleep 10"}), _context(tmp_path, abort_event))
    )
    await asyncio.sleep(0.2)
    abort_event.set()

    with pytest.raises(ToolExecutionError, match="aborted"):
        await task


@pytest.mark.asyncio
async def test_echo_returns_message(tmp_path):
    tool = EchoTool()
    assert await tool.execute(tool.validate_arguments({"message": "ping"}), _context(tmp_path)) == "ping"


@pytest.mark.asyncio
async def test_file_search_skips_hidden_and_vendored_dirs(tmp_path):
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "Config.py").write_text("")
    (tmp_path / ".hidden").mkdir()
    (tmp_path / ".hidden" / "config.py").write_text("")
    (tmp_path / "node_modules").mkdir()
    (tmp_path / "node_modules" / "config.js").write_text("")
    tool = FileSearchTool()

    payload = await tool.execute(tool.validate_arguments({"query": "config"}), _context(tmp_path))

    assert payload["results"] == ["src/Config.py"]
    assert payload["truncated"] is False


@pytest.mark.asyncio
async def test_file_search_caps_results(tmp_path):
    for index in range(5):
        (tmp_path / f"match_{index}.txt").write_text("")
    tool = FileSearchTool(max_results=3)

    payload = await tool.execute(tool.validate_arguments({"query": "match"}), _context(tmp_path))

    assert len(payload["results"]) == 3
    assert payload["truncated"] is True


@pytest.mark.asyncio
async def test_grep_search_finds_lines_and_skips_binary(tmp_path):
    (tmp_path / "a.py").write_text("import os\nTODO_MARKER = 1\n")
    (tmp_path / "b.txt").write_text("TODO_MARKER in text\n")
    (tmp_path / "blob.bin").write_bytes(b"\0TODO_MARKER")
    tool = GrepSearchTool()
    ctx = _context(tmp_path)

    everywhere = await tool.execute(tool.validate_arguments({"pattern": "TODO_MARKER"}), ctx)
    only_py = await tool.execute(
        tool.validate_arguments({"pattern": "TODO_MARKER", "glob": "*.py"}), ctx
    )

    assert {(hit["file"], hit["line"]) for hit in everywhere["results"]} == {("a.py", 2), ("b.txt", 1)}
    assert only_py["results"] == [{"file": "a.py", "line": 2, "content": "TODO_MARKER = 1"}]


@pytest.mark.asyncio
async def test_grep_search_rejects_bad_regex(tmp_path):
    tool = GrepSearchTool()
    with pytest.raises(ValueError, match="Invalid regular expression"):
        await tool.execute(tool.validate_arguments({"pattern": "("}), _context(tmp_path))

import json

import pytest

from forq.agent import Agent
from forq.config import Config
from forq.llm import LLMProvider, ModelResponse, StopReason, ToolCall
from forq.orchestrator import TurnOutcome
from forq.permissions import PermissionType


class ScriptedProvider(LLMProvider):
    model = "scripted"

    def __init__(self, responses):
        self.responses = list(responses)
        self.closed = False

    async def send(self, messages, tools=None, temperature=None, max_tokens=None):
        return self.responses.pop(0)

    async def close(self):
        self.closed = True


def _config(tmp_path, persist: bool = True) -> Config:
    cfg = Config()
    cfg.permissions.persist = persist
    cfg.permissions.global_path = str(tmp_path / "home" / "permissions.json")
    cfg.loop.stream = False
    return cfg


def _agent(tmp_path, responses=(), **kwargs) -> Agent:
    project = tmp_path / "project"
    project.mkdir(exist_ok=True)
    return Agent(
        kwargs.pop("config", None) or _config(tmp_path),
        provider=ScriptedProvider(responses),
        working_directory=project,
        system_prompt="You are forq.",
        **kwargs,
    )


def test_agent_wires_default_tools(tmp_path):
    agent = _agent(tmp_path)

    assert set(agent.tool_names()) == {
        "echo", "listDir", "readFile", "createFile", "editFile",
        "deleteFile", "bash", "fileSearch", "grepSearch",
        "semanticEmbed", "semanticSearch", "readSemanticSearchFiles",
    }
    assert agent.orchestrator.ledger is agent.ledger
    assert agent.registry.ledger is agent.ledger
    assert agent.conversation.system_message.text == "You are forq."


@pytest.mark.asyncio
async def test_agent_complete_runs_tool_loop(tmp_path):
    granted = []

    async def allow(request):
        granted.append(request.tool_name)
        return True

    agent = _agent(
        tmp_path,
        responses=[
            ModelResponse(
                tool_calls=[ToolCall(name="createFile", parameters={"path": "a.txt", "content": "hi"})],
                stop_reason=StopReason.TOOL_USE,
            ),
            ModelResponse(text="Created a.txt"),
        ],
        permission_prompt=allow,
    )

    summary = await agent.complete("make a file")

    assert summary.outcome == TurnOutcome.COMPLETED
    assert summary.text == "Created a.txt"
    assert granted == ["createFile"]
    assert (tmp_path / "project" / "a.txt").read_text() == "hi"


@pytest.mark.asyncio
async def test_agent_saves_only_project_grants(tmp_path):
    global_file = tmp_path / "home" / "permissions.json"
    global_file.parent.mkdir(parents=True)
    global_file.write_text(json.dumps({
        "tools": {"bash": [{"type": "shell_command", "scope": None, "granted": True, "timestamp": 1}]}
    }))

    agent = _agent(tmp_path)
    assert agent.ledger.has_permission("bash", PermissionType.SHELL)

    agent.ledger.grant("readFile", PermissionType.FILESYSTEM, str(tmp_path / "project"))
    await agent.close()

    saved = json.loads((tmp_path / "project" / ".forq" / "permissions.json").read_text())
    assert list(saved["tools"]) == ["readFile"]
    assert agent.provider.closed


@pytest.mark.asyncio
async def test_agent_reloads_project_grants(tmp_path):
    first = _agent(tmp_path)
    first.ledger.grant("editFile", PermissionType.FILESYSTEM, str(tmp_path / "project"))
    await first.close()

    second = _agent(tmp_path)
    assert second.ledger.has_permission(
        "editFile", PermissionType.FILESYSTEM, str(tmp_path / "project" / "x.py")
    )


@pytest.mark.asyncio
async def test_agent_without_persistence_writes_nothing(tmp_path):
    agent = _agent(tmp_path, config=_config(tmp_path, persist=False))
    agent.ledger.grant("bash", PermissionType.SHELL)
    await agent.close()

    assert not (tmp_path / "project" / ".forq").exists()


def test_unreadable_permission_file_is_ignored(tmp_path):
    project_file = tmp_path / "project" / ".forq" / "permissions.json"
    project_file.parent.mkdir(parents=True)
    project_file.write_text("{not json")

    agent = _agent(tmp_path)
    assert agent.ledger.records() == {}


@pytest.mark.asyncio
async def test_agent_compact_clear_and_tool_cycle(tmp_path):
    agent = _agent(tmp_path, responses=[ModelResponse(text=f"a{i}") for i in range(3)])
    agent.conversation.keep_count = 2
    for i in range(3):
        await agent.complete(f"q{i}")

    result = agent.compact()
    assert result.compacted
    assert result.trigger == "manual"

    agent.set_complete_tool_cycle(False)
    assert agent.complete_tool_cycle is False
    assert agent.orchestrator.config.complete_tool_cycle is False

    agent.clear()
    assert len(agent.conversation) == 1
    assert agent.conversation.system_message.text == "You are forq."


def test_agent_reset_rebuilds_system_prompt(tmp_path):
    agent = _agent(tmp_path)
    (tmp_path / "project" / "FORQ.md").write_text("Always use tabs.")

    agent.reset()

    assert "Always use tabs." in agent.conversation.system_message.text

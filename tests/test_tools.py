"""Tests for the model-facing tools."""

import asyncio

import pytest

from yoloagent.cancel import CancelToken
from yoloagent.modes import ModeManager
from yoloagent.sandbox.manager import SandboxManager
from yoloagent.tools.base import ToolContext, ToolDefinition, ToolRegistry, validate_tool_params
from yoloagent.tools.executor import CommandExecutor
from yoloagent.tools.file_ops import ListFilesTool, ReadFileTool, WriteFileTool
from yoloagent.tools.question import (
    QUESTION_CANCELLED,
    AskQuestionTool,
    ExitPlanningModeTool,
)
from yoloagent.tools.sandbox import GetSandboxStatusTool, RunSandboxedCommandTool
from yoloagent.tools.terminal import RunTerminalTool


@pytest.fixture
def workspace(test_project, no_bwrap):
    return SandboxManager(test_project)


def run(tool, args, context=None):
    return asyncio.run(tool.execute(args, context))


def test_validate_tool_params():
    definition = WriteFileTool.definition

    assert validate_tool_params(definition, {"path": "a", "content": ""}) is None
    assert validate_tool_params(definition, {"path": "a"}) == (
        "Missing required parameters: content"
    )
    assert validate_tool_params(definition, {"path": 3, "content": "x"}) == (
        "Wrong parameter types: path (expected string, got integer)"
    )


def test_boolean_is_not_a_number():
    definition = ToolDefinition(
        name="t",
        description="",
        parameters={"properties": {"n": {"type": "number"}}, "required": ["n"]},
    )

    assert "expected number, got boolean" in validate_tool_params(definition, {"n": True})


def test_registry_definitions_keep_order(workspace):
    registry = ToolRegistry([ReadFileTool(workspace), WriteFileTool(workspace)])

    assert registry.names() == ["readFile", "writeFile"]
    assert [d.name for d in registry.definitions(["writeFile", "readFile"])] == [
        "readFile",
        "writeFile",
    ]
    assert "readFile" in registry
    assert registry.get("missing") is None


def test_read_file(workspace):
    result = run(ReadFileTool(workspace), {"path": "src/main.py"})

    assert not result.is_error
    assert "def hello" in result.content


def test_read_file_line_range(workspace):
    result = run(ReadFileTool(workspace), {"path": "src/main.py", "startLine": 2, "endLine": 2})

    assert result.content == "    return 'world'"


def test_read_missing_file(workspace):
    result = run(ReadFileTool(workspace), {"path": "nope.txt"})

    assert result.is_error
    assert 'Failed to read file "nope.txt"' in result.content


def test_write_file_creates_parents(workspace, test_project):
    result = run(WriteFileTool(workspace), {"path": "pkg/new/mod.py", "content": "x = 1\n"})

    assert not result.is_error
    assert result.content == "File written: pkg/new/mod.py"
    assert (test_project / "pkg" / "new" / "mod.py").read_text() == "x = 1\n"


def test_write_outside_workspace_blocked(workspace, temp_dir):
    result = run(WriteFileTool(workspace), {"path": "../escape.txt", "content": "x"})

    assert result.is_error
    assert "outside the workspace" in result.content
    assert not (temp_dir / "escape.txt").exists()


def test_list_files(workspace):
    result = run(ListFilesTool(workspace), {"pattern": "**/*.py"})

    assert result.content.splitlines() == ["src/main.py", "src/utils.py", "tests/test_main.py"]


def test_list_files_exclude(workspace):
    result = run(ListFilesTool(workspace), {"pattern": "**/*.py", "exclude": "tests/"})

    assert result.content.splitlines() == ["src/main.py", "src/utils.py"]


def test_list_files_no_match(workspace):
    result = run(ListFilesTool(workspace), {"pattern": "*.rs"})

    assert result.content == "No files found matching the pattern."


def test_run_terminal(workspace, test_project):
    recorded = []
    tool = RunTerminalTool(
        workspace, CommandExecutor(test_project), on_result=lambda c, r: recorded.append(c)
    )

    result = run(tool, {"command": "ls", "cwd": "src"})

    assert not result.is_error
    assert "main.py" in result.content
    assert recorded == ["ls"]


def test_run_terminal_failure_is_error(workspace, test_project):
    tool = RunTerminalTool(workspace, CommandExecutor(test_project))

    result = run(tool, {"command": "exit 4"})

    assert result.is_error
    assert "Exit code: 4" in result.content


def test_run_terminal_blocks_restricted(workspace, test_project):
    tool = RunTerminalTool(workspace, CommandExecutor(test_project))

    result = run(tool, {"command": "sudo rm -rf /tmp/x"})

    assert result.is_error
    assert result.content == "Command blocked: Command contains restricted pattern: sudo"


def test_run_terminal_streams_output(workspace, test_project):
    chunks = []
    tool = RunTerminalTool(workspace, CommandExecutor(test_project))

    run(tool, {"command": "echo streamed"}, ToolContext(on_output=chunks.append))

    assert "streamed" in "".join(chunks)


def test_run_terminal_stays_in_sandbox(sandbox_manager):
    tool = RunTerminalTool(sandbox_manager, sandbox_manager.executor)

    async def scenario():
        config = await sandbox_manager.create_sandbox()
        try:
            results = [
                await tool.execute({"command": "pwd", "cwd": "src"}),
                await tool.execute({"command": "ls", "cwd": "../../.."}),
                await tool.execute({"command": "sudo ls"}),
            ]
            return config, results
        finally:
            await sandbox_manager.exit_sandbox(keep_changes=False)

    config, (inside, escaped, blocked) = asyncio.run(scenario())

    assert inside.content.strip() == str(config.worktree_path / "src")
    assert escaped.is_error
    assert escaped.content.startswith("Command blocked: Working directory is outside")
    assert blocked.content == "Command blocked: Command contains restricted pattern: sudo"


def test_sandboxed_command_requires_sandbox(workspace):
    result = run(RunSandboxedCommandTool(workspace), {"command": "ls"})

    assert result.is_error
    assert result.content.startswith("No sandbox is currently active")


def test_sandbox_status_inactive(workspace):
    result = run(GetSandboxStatusTool(workspace), {})

    assert result.content.startswith("Sandbox Environment: Not created")


def test_ask_question_waits_for_answer():
    tool = AskQuestionTool()

    async def scenario():
        task = asyncio.create_task(
            tool.execute({"question": "Which port?"}, ToolContext(session_id="s1"))
        )
        await asyncio.sleep(0)
        assert tool.pending.has_pending("s1")
        assert not tool.pending.resolve("s2", "wrong session")
        assert tool.pending.resolve("s1", "8080")
        return await task

    result = asyncio.run(scenario())

    assert result.content == "User's answer: 8080"


def test_ask_question_cancelled():
    tool = AskQuestionTool()
    token = CancelToken()

    async def scenario():
        task = asyncio.create_task(
            tool.execute({"question": "Which port?"}, ToolContext(session_id="s1", cancel=token))
        )
        await asyncio.sleep(0)
        token.cancel()
        return await task

    result = asyncio.run(scenario())

    assert result.content == f"User's answer: {QUESTION_CANCELLED}"
    assert not tool.pending.has_pending("s1")


def test_ask_question_requires_text():
    result = run(AskQuestionTool(), {"question": ""})

    assert result.is_error


def test_exit_planning_mode_accepted():
    modes = ModeManager("agent")
    modes.planning_mode = True
    tool = ExitPlanningModeTool(modes)

    async def scenario():
        task = asyncio.create_task(
            tool.execute({"reason": "Plan ready"}, ToolContext(session_id="s1"))
        )
        await asyncio.sleep(0)
        tool.pending.resolve("s1", True)
        return await task

    result = asyncio.run(scenario())

    assert "turned off" in result.content
    assert not modes.planning_mode


def test_exit_planning_mode_declined():
    modes = ModeManager("agent")
    modes.planning_mode = True
    tool = ExitPlanningModeTool(modes)

    async def scenario():
        task = asyncio.create_task(
            tool.execute({"reason": "Plan ready"}, ToolContext(session_id="s1"))
        )
        await asyncio.sleep(0)
        tool.pending.cancel("s1")
        return await task

    result = asyncio.run(scenario())

    assert "stay in planning mode" in result.content
    assert modes.planning_mode

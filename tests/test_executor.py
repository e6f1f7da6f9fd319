"""Tests for command executor."""

import asyncio

import pytest

from yoloagent.constants import KEEP_HEAD, KEEP_TAIL, MAX_OUTPUT
from yoloagent.errors import CommandSpawnError
from yoloagent.tools.executor import CommandExecutor, CommandResult, strip_ansi, truncate_output


def run(executor, command, **kwargs):
    return asyncio.run(executor.run(command, **kwargs))


def test_execute_simple_command(test_project):
    """Test executing a simple command."""
    executor = CommandExecutor(test_project)

    result = run(executor, "echo 'hello world'")

    assert result.success
    assert result.exit_code == 0
    assert "hello world" in result.stdout
    assert not result.timed_out


def test_execute_with_error(test_project):
    """Non-zero exits are data, not exceptions."""
    executor = CommandExecutor(test_project)

    result = run(executor, "echo oops >&2; exit 3")

    assert not result.success
    assert result.exit_code == 3
    assert "oops" in result.stderr


def test_runs_in_working_directory(test_project):
    executor = CommandExecutor(test_project)

    result = run(executor, "ls", cwd=test_project / "src")

    assert "main.py" in result.stdout


def test_spawn_failure_raises(test_project):
    executor = CommandExecutor(test_project)

    with pytest.raises(CommandSpawnError):
        run(executor, "echo hi", cwd=test_project / "missing")


def test_stall_kills_silent_command(test_project):
    """A command with no output past the stall threshold is terminated."""
    executor = CommandExecutor(test_project, kill_grace=1)

    result = run(executor, "sleep 10", stall_timeout=0.5, max_timeout=20)

    assert result.stalled_out
    assert result.timed_out
    assert result.exit_code is None
    assert result.duration_ms < 5000
    assert "stalled" in result.format_output()


def test_max_timeout_applies_to_chatty_command(test_project):
    """Output keeps the stall timer alive but not the absolute cap."""
    executor = CommandExecutor(test_project, kill_grace=1)

    result = run(
        executor,
        "while true; do echo tick; sleep 0.1; done",
        stall_timeout=10,
        max_timeout=1,
    )

    assert result.timed_out
    assert not result.stalled_out
    assert result.exit_code is None
    assert "tick" in result.stdout
    assert "timed out after 1s" in result.format_output()


def test_streaming_output_batches(test_project):
    executor = CommandExecutor(test_project)
    chunks = []

    result = run(
        executor,
        "for i in 1 2 3; do echo line$i; sleep 0.3; done",
        on_output=chunks.append,
    )

    streamed = "".join(chunks)
    assert streamed == result.stdout
    assert 1 <= len(chunks) < 10


def test_ansi_sequences_are_stripped(test_project):
    executor = CommandExecutor(test_project)

    result = run(executor, "printf '\\033[31mred\\033[0m'")

    assert result.stdout == "red"


def test_color_disabled_in_environment(test_project):
    executor = CommandExecutor(test_project)

    result = run(executor, 'echo "$NO_COLOR $TERM"')

    assert result.stdout.strip() == "1 dumb"


def test_strip_ansi():
    assert strip_ansi("\x1b[1;32mok\x1b[0m \x1b]0;title\x07done") == "ok done"


def test_truncate_keeps_head_and_tail():
    text = "START" + "x" * 1_000_000 + "END"

    truncated = truncate_output(text)

    assert truncated.startswith("START")
    assert truncated.endswith("END")
    assert truncated.count("characters truncated") == 1
    assert len(truncated) <= KEEP_HEAD + KEEP_TAIL + 100
    assert len(truncated) < len(text)


def test_truncate_leaves_small_output():
    text = "y" * MAX_OUTPUT
    assert truncate_output(text) == text


def test_format_output():
    result = CommandResult(command="make", stdout="built", stderr="warning", exit_code=2)

    output = result.format_output()

    assert output == "built\n--- stderr ---\nwarning\nExit code: 2"


def test_format_output_empty():
    result = CommandResult(command="true", stdout="", stderr="", exit_code=0)

    assert result.format_output() == "Command completed with exit code 0"

"""Tests for the git worktree sandbox."""

import asyncio
import shutil
import subprocess

import pytest

from yoloagent.errors import CommandBlocked, SandboxError
from yoloagent.sandbox.manager import (
    SandboxManager,
    branch_safe,
    sandbox_timestamp,
    to_relative_path,
)


def run(coro):
    return asyncio.run(coro)


def git_output(cwd, *args):
    return subprocess.run(
        ["git", *args], cwd=cwd, check=True, capture_output=True, text=True
    ).stdout


def test_to_relative_path(temp_dir):
    root = temp_dir / "project"

    assert to_relative_path(f"{root}/src/app.py", root) == "src/app.py"
    assert to_relative_path(str(root), root) == "."
    assert to_relative_path("/etc/passwd", root) == "etc/passwd"
    assert to_relative_path("src/app.py", root) == "src/app.py"


def test_branch_safe():
    assert branch_safe("fix auth bug!") == "fix-auth-bug"
    assert branch_safe("--weird..") == "weird"


def test_sandbox_timestamp_has_no_colons():
    assert ":" not in sandbox_timestamp()


def test_deny_list(sandbox_manager):
    assert sandbox_manager.is_command_allowed("ls -la") == (True, "")

    for command in ("sudo apt install x", "PKILL node", "rm -rf /", "killall python"):
        allowed, reason = sandbox_manager.is_command_allowed(command)
        assert not allowed
        assert reason.startswith("Command contains restricted pattern")


def test_create_and_exit_keep(sandbox_manager, git_repo):
    notifications = []
    sandbox_manager.subscribe(notifications.append)

    config = run(sandbox_manager.create_sandbox("my feature"))

    assert sandbox_manager.is_active
    assert config.branch_name.startswith("sandbox/my-feature-")
    assert config.worktree_path.parent == git_repo.parent
    assert config.worktree_path.name.startswith(f"{git_repo.name}-")
    assert (config.worktree_path / "src" / "main.py").exists()
    assert sandbox_manager.get_current_workspace() == config.worktree_path
    assert config.sandbox_root is None
    assert notifications[-1].is_active

    (config.worktree_path / "new.txt").write_text("sandboxed\n")
    report = run(sandbox_manager.exit_sandbox(keep_changes=True))

    assert report.ok
    assert report.branch_kept
    assert not sandbox_manager.is_active
    assert not config.worktree_path.exists()
    assert not notifications[-1].is_active
    assert config.branch_name in git_output(git_repo, "branch", "--list", config.branch_name)
    assert "new.txt" in git_output(git_repo, "show", "--name-only", config.branch_name)
    assert not (git_repo / "new.txt").exists()


def test_exit_without_keep_deletes_branch(sandbox_manager, git_repo):
    config = run(sandbox_manager.create_sandbox())

    report = run(sandbox_manager.exit_sandbox(keep_changes=False))

    assert report.ok
    assert not report.branch_kept
    assert git_output(git_repo, "branch", "--list", config.branch_name).strip() == ""


def test_exit_asks_keep_changes_prompt(git_repo, no_bwrap):
    asked = []

    async def prompt(config):
        asked.append(config.branch_name)
        return False

    manager = SandboxManager(git_repo, keep_changes_prompt=prompt)
    config = run(manager.create_sandbox())

    report = run(manager.exit_sandbox())

    assert asked == [config.branch_name]
    assert not report.branch_kept


def test_second_create_fails(sandbox_manager):
    async def scenario():
        await sandbox_manager.create_sandbox()
        try:
            with pytest.raises(SandboxError, match="Already in a sandbox"):
                await sandbox_manager.create_sandbox()
        finally:
            await sandbox_manager.exit_sandbox(keep_changes=False)

    run(scenario())


def test_exit_without_sandbox_fails(sandbox_manager):
    with pytest.raises(SandboxError, match="Not in a sandbox"):
        run(sandbox_manager.exit_sandbox())


def test_create_requires_git(test_project, no_bwrap):
    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    manager = SandboxManager(test_project)

    with pytest.raises(SandboxError, match="Not a git repository"):
        run(manager.create_sandbox())
    assert not manager.is_active


def test_path_validation(sandbox_manager, git_repo):
    async def scenario():
        config = await sandbox_manager.create_sandbox()
        try:
            assert sandbox_manager.is_file_path_allowed("src/new.py") == (True, "")
            assert sandbox_manager.is_file_path_allowed(f"{git_repo}/src/new.py")[0]
            assert sandbox_manager.resolve_path(f"{git_repo}/src/app.py") == (
                config.worktree_path / "src" / "app.py"
            )

            allowed, reason = sandbox_manager.is_file_path_allowed("../../outside.txt")
            assert not allowed
            assert reason == "Cannot write files outside sandbox workspace"
        finally:
            await sandbox_manager.exit_sandbox(keep_changes=False)

    run(scenario())


def test_execute_command_in_worktree(sandbox_manager):
    async def scenario():
        config = await sandbox_manager.create_sandbox()
        try:
            result = await sandbox_manager.execute_command("pwd")
            assert result.stdout.strip() == str(config.worktree_path)

            with pytest.raises(CommandBlocked):
                await sandbox_manager.execute_command("sudo ls")
            with pytest.raises(CommandBlocked, match="outside the sandbox"):
                await sandbox_manager.execute_command("ls", cwd="../..")
        finally:
            await sandbox_manager.exit_sandbox(keep_changes=False)

    run(scenario())


def test_diff_reports_changes(sandbox_manager):
    async def scenario():
        config = await sandbox_manager.create_sandbox()
        try:
            (config.worktree_path / "src" / "main.py").write_text("def hello():\n    return 'yolo'\n")
            (config.worktree_path / "added.py").write_text("x = 1\ny = 2\n")
            return await sandbox_manager.get_sandbox_diff()
        finally:
            await sandbox_manager.exit_sandbox(keep_changes=False)

    diff = run(scenario())

    changes = {change.path: change for change in diff.files}
    assert changes["added.py"].status == "A"
    assert changes["added.py"].added == 2
    assert changes["src/main.py"].status == "M"
    assert changes["src/main.py"].removed == 1
    assert "2 files changed" in diff.summary


def test_diff_without_sandbox(sandbox_manager):
    diff = run(sandbox_manager.get_sandbox_diff())

    assert diff.files == []
    assert diff.summary == "No active sandbox"


def test_apply_merges_branch(sandbox_manager, git_repo):
    async def scenario():
        config = await sandbox_manager.create_sandbox("apply")
        (config.worktree_path / "feature.py").write_text("FEATURE = True\n")
        return config, await sandbox_manager.apply_sandbox()

    config, outcome = run(scenario())

    assert outcome.success
    assert "merged into" in outcome.message
    assert (git_repo / "feature.py").read_text() == "FEATURE = True\n"
    assert not sandbox_manager.is_active
    assert not config.worktree_path.exists()
    assert git_output(git_repo, "branch", "--list", config.branch_name).strip() == ""


def test_apply_without_changes(sandbox_manager):
    async def scenario():
        await sandbox_manager.create_sandbox()
        return await sandbox_manager.apply_sandbox()

    outcome = run(scenario())

    assert outcome.success
    assert outcome.message.startswith("Sandbox had no changes to apply")
    assert not sandbox_manager.is_active


def test_discard_drops_changes(sandbox_manager, git_repo):
    async def scenario():
        config = await sandbox_manager.create_sandbox()
        (config.worktree_path / "scratch.py").write_text("pass\n")
        return config, await sandbox_manager.discard_sandbox()

    config, outcome = run(scenario())

    assert outcome.success
    assert not (git_repo / "scratch.py").exists()
    assert not config.worktree_path.exists()
    assert git_output(git_repo, "branch", "--list", config.branch_name).strip() == ""


def test_apply_and_discard_without_sandbox(sandbox_manager):
    assert not run(sandbox_manager.apply_sandbox()).success
    assert not run(sandbox_manager.discard_sandbox()).success

"""Git worktree sandbox lifecycle, command routing and path validation."""

import asyncio
import logging
import re
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable, Optional

from yoloagent.constants import RESTRICTED_COMMANDS, SANDBOX_BRANCH_PREFIX
from yoloagent.errors import CommandBlocked, SandboxError
from yoloagent.sandbox.isolation import OsIsolation
from yoloagent.tools.executor import CommandExecutor, CommandResult, OutputCallback
from yoloagent.utils.diffs import (
    FileChange,
    count_line_changes,
    merge_line_counts,
    parse_name_status,
)

logger = logging.getLogger(__name__)

GIT_TIMEOUT = 120


@dataclass(frozen=True)
class SandboxConfig:
    """One active isolated workspace."""

    worktree_path: Path
    branch_name: str
    original_path: Path
    sandbox_root: Optional[Path] = None


@dataclass
class SandboxInfo:
    """Snapshot of sandbox state handed to subscribers."""

    is_active: bool
    config: Optional[SandboxConfig] = None
    os_level_isolation: bool = False


@dataclass
class TeardownReport:
    """Outcome of exit_sandbox; errors never prevent the state reset."""

    branch_name: str
    worktree_path: Path
    branch_kept: bool
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass
class SandboxDiff:
    """Changes on the sandbox branch since it forked."""

    files: list[FileChange]
    summary: str


@dataclass
class SandboxOutcome:
    """Result of apply_sandbox / discard_sandbox."""

    success: bool
    message: str


SandboxListener = Callable[[SandboxInfo], None]
KeepChangesPrompt = Callable[[SandboxConfig], Awaitable[bool]]


def sandbox_timestamp(now: Optional[datetime] = None) -> str:
    """ISO-8601 UTC timestamp with ':' replaced, e.g. 2026-10-18T13-28-05."""
    now = now or datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H-%M-%S")


def branch_safe(name: str) -> str:
    """Reduce a feature name to characters git accepts in a branch name."""
    return re.sub(r"[^A-Za-z0-9._-]+", "-", name).strip("-.")


def to_relative_path(path: str, original_root: Path) -> str:
    """Strip the original workspace prefix and leading slashes from a path.

    Absolute paths the model copied from the original workspace would
    otherwise make resolution ignore the worktree base directory.
    """
    root = str(original_root)
    if path == root:
        return "."
    prefix = root if root.endswith("/") else root + "/"
    if path.startswith(prefix):
        path = path[len(prefix):]
    return path.lstrip("/") or "."


class SandboxManager:
    """Owns the single active sandbox for one workspace.

    State machine: no sandbox -> create_sandbox -> active -> exit_sandbox ->
    no sandbox. All sessions share one manager, so there is at most one
    sandbox per workspace.
    """

    def __init__(
        self,
        workspace: Path,
        executor: Optional[CommandExecutor] = None,
        keep_changes_prompt: Optional[KeepChangesPrompt] = None,
    ):
        """Initialize sandbox manager.

        Args:
            workspace: Original workspace (git repository root)
            executor: Command executor used for git and sandboxed commands
            keep_changes_prompt: Asked whether to keep the branch when
                exit_sandbox is called without keep_changes
        """
        self.workspace = workspace.resolve()
        self.executor = executor or CommandExecutor(self.workspace)
        self.keep_changes_prompt = keep_changes_prompt
        self.isolation = OsIsolation()
        self._current: Optional[SandboxConfig] = None
        self._listeners: list[SandboxListener] = []
        self._lifecycle_lock = asyncio.Lock()

    # ----- state ---------------------------------------------------------

    @property
    def current(self) -> Optional[SandboxConfig]:
        return self._current

    @property
    def is_active(self) -> bool:
        return self._current is not None

    def get_sandbox_info(self) -> SandboxInfo:
        return SandboxInfo(
            is_active=self._current is not None,
            config=self._current,
            os_level_isolation=self.isolation.active,
        )

    def get_current_workspace(self) -> Path:
        """Directory tools should operate in: the worktree when active."""
        return self._current.worktree_path if self._current else self.workspace

    def get_sandbox_status(self) -> str:
        if not self._current:
            return "Not in sandbox"
        isolation = " [OS-level]" if self.isolation.active else " [Software-level]"
        return (
            f"Sandbox{isolation}: {self._current.branch_name} "
            f"@ {self._current.worktree_path}"
        )

    def subscribe(self, listener: SandboxListener) -> Callable[[], None]:
        """Register for sandbox-change notifications.

        Returns:
            Function that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        info = self.get_sandbox_info()
        for listener in list(self._listeners):
            try:
                listener(info)
            except Exception:
                logger.exception("Sandbox listener failed")

    # ----- lifecycle -----------------------------------------------------

    async def create_sandbox(self, feature_name: Optional[str] = None) -> SandboxConfig:
        """Create a worktree + branch and, when possible, OS-level isolation.

        Args:
            feature_name: Optional branch label

        Returns:
            The new SandboxConfig

        Raises:
            SandboxError: Already in a sandbox, not a git repository, or the
                worktree could not be created
        """
        async with self._lifecycle_lock:
            if self._current:
                raise SandboxError("Already in a sandbox. Exit the current sandbox first.")

            probe = await self._git("rev-parse", "--is-inside-work-tree", cwd=self.workspace)
            if not probe.success:
                raise SandboxError(f"Not a git repository: {self.workspace}")

            timestamp = sandbox_timestamp()
            label = branch_safe(feature_name) if feature_name else ""
            branch_name = (
                f"{SANDBOX_BRANCH_PREFIX}{label}-{timestamp}"
                if label
                else f"{SANDBOX_BRANCH_PREFIX}{timestamp}"
            )
            worktree_path = self.workspace.parent / f"{self.workspace.name}-{timestamp}"

            await self._add_worktree(branch_name, worktree_path)

            sandbox_root = None
            if OsIsolation.is_available():
                try:
                    sandbox_root = self.isolation.initialize(worktree_path)
                except OSError as e:
                    logger.warning(
                        "OS-level sandbox initialization failed: %s. "
                        "Falling back to software-level restrictions.", e
                    )
            else:
                logger.warning(
                    "bwrap not found; sandbox uses software-level restrictions only"
                )

            self._current = SandboxConfig(
                worktree_path=worktree_path,
                branch_name=branch_name,
                original_path=self.workspace,
                sandbox_root=sandbox_root,
            )
            logger.info("Sandbox created: %s at %s", branch_name, worktree_path)

        self._notify()
        return self._current

    async def _add_worktree(self, branch_name: str, worktree_path: Path) -> None:
        result = await self._git(
            "worktree", "add", "-b", branch_name, str(worktree_path), cwd=self.workspace
        )
        if not result.success:
            raise SandboxError(f"Failed to create git worktree: {result.stderr.strip()}")

        verify = await self._git("rev-parse", "--git-dir", cwd=worktree_path)
        if verify.success:
            return

        # Half-created worktree: clean it up and retry once
        logger.warning("Worktree at %s is not a valid repository, retrying", worktree_path)
        await self._git("worktree", "remove", str(worktree_path), "--force", cwd=self.workspace)
        shutil.rmtree(worktree_path, ignore_errors=True)
        await self._git("worktree", "prune", cwd=self.workspace)
        await self._git("branch", "-D", branch_name, cwd=self.workspace)

        retry = await self._git(
            "worktree", "add", "-b", branch_name, str(worktree_path), cwd=self.workspace
        )
        verify = await self._git("rev-parse", "--git-dir", cwd=worktree_path)
        if not retry.success or not verify.success:
            raise SandboxError(
                f"Git worktree was created at '{worktree_path}' but is not a valid "
                f"git repository. Repair attempt failed: "
                f"{(retry.stderr or verify.stderr).strip()}"
            )

    async def exit_sandbox(self, keep_changes: Optional[bool] = None) -> TeardownReport:
        """Tear down the active sandbox.

        Teardown failures are collected in the report and logged; the
        manager always returns to the no-sandbox state.

        Args:
            keep_changes: Keep the branch (True) or force-delete it (False);
                asks keep_changes_prompt when None, defaulting to keep

        Raises:
            SandboxError: If no sandbox is active
        """
        async with self._lifecycle_lock:
            config = self._current
            if not config:
                raise SandboxError("Not in a sandbox.")

            report = TeardownReport(
                branch_name=config.branch_name,
                worktree_path=config.worktree_path,
                branch_kept=True,
            )
            try:
                if keep_changes is None:
                    keep_changes = await self._ask_keep_changes(config)
                report.branch_kept = keep_changes

                if self.isolation.active:
                    try:
                        self.isolation.cleanup()
                    except OSError as e:
                        report.errors.append(f"Isolation cleanup failed: {e}")

                if keep_changes:
                    try:
                        await self._auto_commit(config.worktree_path, "sandbox: keep changes")
                    except SandboxError as e:
                        report.errors.append(str(e))
                    removed = await self._git(
                        "worktree", "remove", str(config.worktree_path), cwd=config.original_path
                    )
                else:
                    removed = await self._git(
                        "worktree", "remove", str(config.worktree_path), "--force",
                        cwd=config.original_path,
                    )
                if not removed.success:
                    report.errors.append(f"git worktree remove failed: {removed.stderr.strip()}")

                if not keep_changes:
                    deleted = await self._git(
                        "branch", "-D", config.branch_name, cwd=config.original_path
                    )
                    if not deleted.success:
                        report.errors.append(f"git branch -D failed: {deleted.stderr.strip()}")
            except Exception as e:
                report.errors.append(f"Failed to clean up sandbox: {e}")
            finally:
                self._current = None

            for error in report.errors:
                logger.error("Sandbox teardown: %s", error)

        self._notify()
        return report

    async def _ask_keep_changes(self, config: SandboxConfig) -> bool:
        if self.keep_changes_prompt is None:
            return True
        return bool(await self.keep_changes_prompt(config))

    # ----- validation ----------------------------------------------------

    def is_command_allowed(self, command: str) -> tuple[bool, str]:
        """Check a command against the software-level deny-list.

        This is a guardrail, not a security boundary: a substring match is
        trivially bypassed. Under OS-level isolation every command is allowed.

        Returns:
            Tuple of (allowed, reason)
        """
        if self.isolation.active:
            return True, ""

        lowered = command.lower().strip()
        for restricted in RESTRICTED_COMMANDS:
            if restricted.lower() in lowered:
                return False, f"Command contains restricted pattern: {restricted}"

        return True, ""

    def is_file_path_allowed(self, path: str) -> tuple[bool, str]:
        """Reject paths that resolve outside the active worktree.

        Returns:
            Tuple of (allowed, reason)
        """
        if not self._current:
            return True, ""

        worktree = self._current.worktree_path.resolve()
        resolved = self.resolve_path(path).resolve()
        if not resolved.is_relative_to(worktree):
            return False, "Cannot write files outside sandbox workspace"
        return True, ""

    def resolve_path(self, path: str) -> Path:
        """Map a model-supplied path onto the effective workspace."""
        if self._current:
            relative = to_relative_path(path, self._current.original_path)
            return self._current.worktree_path / relative
        return self.workspace / path

    # ----- execution -----------------------------------------------------

    async def execute_command(
        self,
        command: str,
        cwd: Optional[str] = None,
        max_timeout: Optional[float] = None,
        stall_timeout: Optional[float] = None,
        on_output: Optional[OutputCallback] = None,
    ) -> CommandResult:
        """Run a command in the sandbox.

        Under OS isolation the command is wrapped in bwrap; otherwise it must
        pass is_command_allowed and runs in the worktree directly.

        Raises:
            CommandBlocked: The software-level validator rejected the command
            CommandSpawnError: The process could not be started
        """
        relative_cwd = "."
        if cwd:
            root = self._current.original_path if self._current else self.workspace
            relative_cwd = to_relative_path(cwd, root)

        workdir = self.get_current_workspace() / relative_cwd
        if self._current:
            worktree = self._current.worktree_path.resolve()
            resolved = workdir.resolve()
            if not resolved.is_relative_to(worktree):
                raise CommandBlocked("Working directory is outside the sandbox workspace")
            relative_cwd = resolved.relative_to(worktree).as_posix()

        if self.isolation.active:
            argv = self.isolation.wrap(command, relative_cwd)
            return await self.executor.run_args(
                argv,
                cwd=self.get_current_workspace(),
                max_timeout=max_timeout,
                stall_timeout=stall_timeout,
                on_output=on_output,
                display=command,
            )

        allowed, reason = self.is_command_allowed(command)
        if not allowed:
            raise CommandBlocked(reason)

        return await self.executor.run(
            command,
            cwd=workdir,
            max_timeout=max_timeout,
            stall_timeout=stall_timeout,
            on_output=on_output,
        )

    # ----- diff / apply / discard ----------------------------------------

    async def get_sandbox_diff(self) -> SandboxDiff:
        """Summarize everything committed on the sandbox branch."""
        if not self._current:
            return SandboxDiff(files=[], summary="No active sandbox")

        worktree = self._current.worktree_path
        try:
            await self._auto_commit(worktree, "sandbox: auto-commit pending changes")
            base = await self._merge_base()

            stat = await self._git("diff", "--stat", f"{base}..HEAD", cwd=worktree)
            names = await self._git("diff", "--name-status", f"{base}..HEAD", cwd=worktree)
            patch = await self._git("diff", f"{base}..HEAD", cwd=worktree)
        except SandboxError as e:
            logger.warning("Unable to compute sandbox diff: %s", e)
            return SandboxDiff(files=[], summary="Unable to compute diff")

        files = parse_name_status(names.stdout if names.success else "")
        files = merge_line_counts(files, count_line_changes(patch.stdout if patch.success else ""))
        summary = stat.stdout.strip() if stat.success else ""
        return SandboxDiff(files=files, summary=summary or "(no changes)")

    async def apply_sandbox(self) -> SandboxOutcome:
        """Merge the sandbox branch into the original branch and clean up."""
        async with self._lifecycle_lock:
            config = self._current
            if not config:
                return SandboxOutcome(False, "No active sandbox to apply.")

            try:
                await self._auto_commit(config.worktree_path, "sandbox: final changes")
            except SandboxError as e:
                return SandboxOutcome(
                    False,
                    f"Failed to commit sandbox changes: {e}. The worktree at "
                    f"'{config.worktree_path}' has been preserved.",
                )

            base = await self._merge_base()
            count = await self._git(
                "rev-list", "--count", f"{base}..HEAD", cwd=config.worktree_path
            )
            has_commits = count.success and count.stdout.strip() not in ("", "0")

            self._cleanup_isolation()
            removed = await self._git(
                "worktree", "remove", str(config.worktree_path), "--force",
                cwd=config.original_path,
            )
            if not removed.success:
                return SandboxOutcome(
                    False,
                    f"Apply failed: {removed.stderr.strip()}. The sandbox worktree at "
                    f"'{config.worktree_path}' is still intact; you can retry or discard.",
                )

            if not has_commits:
                await self._git("branch", "-D", config.branch_name, cwd=config.original_path)
                self._current = None
                outcome = SandboxOutcome(True, "Sandbox had no changes to apply. Worktree cleaned up.")
            else:
                outcome = await self._merge_branch(config, base)

        self._notify()
        return outcome

    async def _merge_branch(self, config: SandboxConfig, base: str) -> SandboxOutcome:
        current = await self._git("rev-parse", "--abbrev-ref", "HEAD", cwd=config.original_path)
        merged = await self._git("merge", config.branch_name, "--no-edit", cwd=config.original_path)
        self._current = None

        if not merged.success:
            return SandboxOutcome(
                False,
                f"Merge failed: {merged.stderr.strip() or merged.stdout.strip()}. "
                f"The branch '{config.branch_name}' has been kept for manual resolution. "
                f"Run: git merge {config.branch_name} --no-edit",
            )

        changed = await self._git(
            "diff", "--name-only", f"{base}..HEAD", cwd=config.original_path
        )
        file_count = len([line for line in changed.stdout.splitlines() if line.strip()])

        deleted = await self._git("branch", "-d", config.branch_name, cwd=config.original_path)
        if not deleted.success:
            await self._git("branch", "-D", config.branch_name, cwd=config.original_path)

        return SandboxOutcome(
            True,
            f"Sandbox branch '{config.branch_name}' merged into "
            f"'{current.stdout.strip()}' ({file_count} file(s) applied).",
        )

    async def discard_sandbox(self) -> SandboxOutcome:
        """Remove the worktree and delete the branch, dropping all changes."""
        async with self._lifecycle_lock:
            config = self._current
            if not config:
                return SandboxOutcome(False, "No active sandbox to discard.")

            self._cleanup_isolation()
            removed = await self._git(
                "worktree", "remove", str(config.worktree_path), "--force",
                cwd=config.original_path,
            )
            await self._git("branch", "-D", config.branch_name, cwd=config.original_path)
            await self._git("worktree", "prune", cwd=config.original_path)
            self._current = None

            if removed.success:
                outcome = SandboxOutcome(
                    True,
                    f"Sandbox discarded. Branch '{config.branch_name}' and worktree removed.",
                )
            else:
                outcome = SandboxOutcome(
                    False,
                    f"Cleanup failed: {removed.stderr.strip()}. You may need to manually run: "
                    f"git worktree remove {config.worktree_path} && "
                    f"git branch -D {config.branch_name}",
                )

        self._notify()
        return outcome

    # ----- helpers -------------------------------------------------------

    def _cleanup_isolation(self) -> None:
        if not self.isolation.active:
            return
        try:
            self.isolation.cleanup()
        except OSError as e:
            logger.warning("Failed to remove sandbox root: %s", e)

    async def _merge_base(self) -> str:
        config = self._current
        base = await self._git("merge-base", "HEAD", config.branch_name, cwd=config.original_path)
        if base.success and base.stdout.strip():
            return base.stdout.strip()

        first = await self._git("rev-list", "--max-parents=0", "HEAD", cwd=config.worktree_path)
        if first.success and first.stdout.strip():
            return first.stdout.strip().splitlines()[0]
        return "HEAD~1"

    async def _auto_commit(self, worktree: Path, message: str) -> bool:
        """Commit all pending changes in the worktree.

        Returns:
            True if a commit was made, False if there was nothing to commit

        Raises:
            SandboxError: If the worktree is not a repository or commit fails
        """
        if not (await self._git("rev-parse", "--git-dir", cwd=worktree)).success:
            raise SandboxError(f"The worktree at '{worktree}' is not a valid git repository")

        status = await self._git("status", "--porcelain", cwd=worktree)
        if not status.stdout.strip():
            return False

        added = await self._git("add", "-A", cwd=worktree)
        committed = await self._git("commit", "-m", message, cwd=worktree)
        if not added.success or not committed.success:
            raise SandboxError(
                f"git commit failed: {(committed.stderr or added.stderr).strip()}"
            )
        return True

    async def _git(self, *args: str, cwd: Path) -> CommandResult:
        if not cwd.exists():
            raise SandboxError(f"Directory does not exist: {cwd}")
        return await self.executor.run_args(
            ["git", *args], cwd=cwd, max_timeout=GIT_TIMEOUT, stall_timeout=GIT_TIMEOUT
        )

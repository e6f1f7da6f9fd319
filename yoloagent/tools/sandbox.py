"""Sandbox lifecycle tools exposed to the model."""

from typing import Any, Optional

from yoloagent.errors import CommandBlocked, CommandSpawnError, SandboxError
from yoloagent.sandbox.isolation import OsIsolation
from yoloagent.sandbox.manager import SandboxManager
from yoloagent.tools.base import Tool, ToolContext, ToolDefinition, ToolResult


class CreateSandboxTool(Tool):
    definition = ToolDefinition(
        name="createSandbox",
        description=(
            "Create an isolated sandbox: a git worktree in a separate directory on a new "
            "branch. Uses OS-level isolation (bubblewrap) when available, otherwise "
            "software-level restrictions. File writes are confined to the sandbox workspace."
        ),
        parameters={
            "type": "object",
            "properties": {
                "featureName": {
                    "type": "string",
                    "description": "Optional name for the feature/branch (e.g., \"fix-auth-bug\")",
                },
            },
        },
    )

    def __init__(self, sandbox: SandboxManager):
        self.sandbox = sandbox

    async def execute(
        self, args: dict[str, Any], context: Optional[ToolContext] = None
    ) -> ToolResult:
        try:
            config = await self.sandbox.create_sandbox(args.get("featureName"))
        except SandboxError as e:
            return ToolResult(f"Failed to create sandbox: {e}", is_error=True)

        isolation = (
            "✓ Enabled (bubblewrap)"
            if self.sandbox.isolation.active
            else "✗ Not available, using software-level restrictions"
        )
        return ToolResult(
            "Sandbox created successfully!\n"
            f"- Branch: {config.branch_name}\n"
            f"- Worktree path: {config.worktree_path}\n"
            f"- Original workspace: {config.original_path}\n"
            f"- OS-level isolation: {isolation}\n\n"
            "You can now work in the isolated environment. Use exitSandbox when done."
        )


class GetSandboxStatusTool(Tool):
    definition = ToolDefinition(
        name="getSandboxStatus",
        description="Get information about the current sandbox environment.",
    )

    def __init__(self, sandbox: SandboxManager):
        self.sandbox = sandbox

    async def execute(
        self, args: dict[str, Any], context: Optional[ToolContext] = None
    ) -> ToolResult:
        info = self.sandbox.get_sandbox_info()
        if not info.is_active:
            available = "available" if OsIsolation.is_available() else "not installed"
            return ToolResult(
                "Sandbox Environment: Not created\n"
                "- Software-level command restrictions: ✓ Active (sudo, pkill, killall, "
                "rm -rf / and similar commands are blocked)\n"
                f"- OS-level isolation: ✗ Not active (bubblewrap {available}; "
                "use createSandbox to enable)\n"
                "- Git worktree isolation: ✗ Not active (use createSandbox to enable)"
            )

        config = info.config
        isolation = "✓ Yes (bubblewrap)" if info.os_level_isolation else "✗ No (software-level only)"
        return ToolResult(
            "Sandbox Environment: Active\n"
            f"- OS-level isolation: {isolation}\n"
            "- Software-level command restrictions: ✓ Active\n"
            f"- Branch: {config.branch_name}\n"
            f"- Worktree Path: {config.worktree_path}\n"
            f"- Original Path: {config.original_path}"
        )


class ExitSandboxTool(Tool):
    definition = ToolDefinition(
        name="exitSandbox",
        description=(
            "Exit the current sandbox environment. keepChanges: true keeps the branch, "
            "false deletes it; if omitted the user decides."
        ),
        parameters={
            "type": "object",
            "properties": {
                "keepChanges": {
                    "type": "boolean",
                    "description": "Whether to keep the branch (true) or delete it (false)",
                },
            },
        },
    )

    def __init__(self, sandbox: SandboxManager):
        self.sandbox = sandbox

    async def execute(
        self, args: dict[str, Any], context: Optional[ToolContext] = None
    ) -> ToolResult:
        try:
            report = await self.sandbox.exit_sandbox(args.get("keepChanges"))
        except SandboxError as e:
            return ToolResult(f"Failed to exit sandbox: {e}", is_error=True)

        kept = f"Branch '{report.branch_name}' kept." if report.branch_kept else "Branch deleted."
        if report.ok:
            return ToolResult(f"Sandbox exited successfully. {kept}")
        problems = "\n".join(f"- {error}" for error in report.errors)
        return ToolResult(f"Sandbox exited with cleanup problems. {kept}\n{problems}")


class RunSandboxedCommandTool(Tool):
    definition = ToolDefinition(
        name="runSandboxedCommand",
        description=(
            "Execute a shell command inside the active sandbox. With bubblewrap the command "
            "sees only the sandbox workspace, a private /tmp and its own namespaces; without "
            "it the software-level deny-list applies. Requires createSandbox first."
        ),
        parameters={
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "The shell command to run"},
                "cwd": {
                    "type": "string",
                    "description": "Optional working directory (relative to workspace root)",
                },
            },
            "required": ["command"],
        },
    )

    def __init__(self, sandbox: SandboxManager):
        self.sandbox = sandbox

    async def execute(
        self, args: dict[str, Any], context: Optional[ToolContext] = None
    ) -> ToolResult:
        if not self.sandbox.is_active:
            return ToolResult(
                "No sandbox is currently active. Use createSandbox first, "
                "or use runTerminal for unrestricted execution.",
                is_error=True,
            )

        try:
            result = await self.sandbox.execute_command(
                args["command"],
                cwd=args.get("cwd"),
                on_output=context.on_output if context else None,
            )
        except CommandBlocked as e:
            return ToolResult(f"Command blocked: {e}", is_error=True)
        except (CommandSpawnError, SandboxError) as e:
            return ToolResult(f"Failed to run command: {e}", is_error=True)

        is_error = result.exit_code is not None and result.exit_code != 0
        return ToolResult(result.format_output(), is_error=is_error or result.timed_out)

"""runTerminal: shell commands with streaming output and stall detection."""

import logging
from typing import Any, Callable, Optional

from yoloagent.constants import DEFAULT_EXEC_TIMEOUT, DEFAULT_STALL_TIMEOUT
from yoloagent.errors import CommandBlocked, CommandSpawnError
from yoloagent.sandbox.manager import SandboxManager, to_relative_path
from yoloagent.tools.base import Tool, ToolContext, ToolDefinition, ToolResult
from yoloagent.tools.executor import CommandExecutor, CommandResult

logger = logging.getLogger(__name__)

ResultHook = Callable[[str, CommandResult], None]


class RunTerminalTool(Tool):
    definition = ToolDefinition(
        name="runTerminal",
        description=(
            "Execute a shell command and return its stdout/stderr output.\n\n"
            "Commands are monitored in real time:\n"
            f"- With no output for {DEFAULT_STALL_TIMEOUT}s (stall timeout) the command is killed.\n"
            f"- Maximum total runtime is {DEFAULT_EXEC_TIMEOUT}s.\n"
            "- Raise 'timeout' and 'stallTimeout' for known long-running commands "
            "(dependency installs, large builds, test suites)."
        ),
        parameters={
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "The shell command to run"},
                "cwd": {
                    "type": "string",
                    "description": "Optional working directory (relative to workspace root)",
                },
                "timeout": {
                    "type": "number",
                    "description": f"Max total runtime in seconds (default: {DEFAULT_EXEC_TIMEOUT})",
                },
                "stallTimeout": {
                    "type": "number",
                    "description": (
                        "Seconds without output before the command is considered stuck "
                        f"(default: {DEFAULT_STALL_TIMEOUT})"
                    ),
                },
            },
            "required": ["command"],
        },
    )

    def __init__(
        self,
        sandbox: SandboxManager,
        executor: CommandExecutor,
        on_result: Optional[ResultHook] = None,
    ):
        """Initialize tool.

        Args:
            sandbox: Runs commands while a sandbox is active; supplies the deny-list otherwise
            executor: Runs the command
            on_result: Receives (command, CommandResult) for run logs
        """
        self.sandbox = sandbox
        self.executor = executor
        self.on_result = on_result

    async def execute(
        self, args: dict[str, Any], context: Optional[ToolContext] = None
    ) -> ToolResult:
        command = args["command"]
        cwd = args.get("cwd")
        max_timeout = args.get("timeout") or self.executor.max_timeout
        stall_timeout = args.get("stallTimeout") or self.executor.stall_timeout

        on_output = context.on_output if context else None

        try:
            if self.sandbox.is_active:
                result = await self.sandbox.execute_command(
                    command,
                    cwd=cwd,
                    max_timeout=float(max_timeout),
                    stall_timeout=float(stall_timeout),
                    on_output=on_output,
                )
            else:
                allowed, reason = self.sandbox.is_command_allowed(command)
                if not allowed:
                    raise CommandBlocked(reason)
                workdir = self.sandbox.workspace
                if cwd:
                    workdir = workdir / to_relative_path(cwd, self.sandbox.workspace)
                result = await self.executor.run(
                    command,
                    cwd=workdir,
                    max_timeout=float(max_timeout),
                    stall_timeout=float(stall_timeout),
                    on_output=on_output,
                )
        except CommandBlocked as e:
            return ToolResult(f"Command blocked: {e}", is_error=True)
        except CommandSpawnError as e:
            return ToolResult(f"Failed to run command: {e}", is_error=True)

        self._record(command, result)
        is_error = result.exit_code is not None and result.exit_code != 0
        return ToolResult(result.format_output(), is_error=is_error)

    def _record(self, command: str, result: CommandResult) -> None:
        if self.on_result is None:
            return
        try:
            self.on_result(command, result)
        except Exception:
            logger.exception("Failed to record command result")

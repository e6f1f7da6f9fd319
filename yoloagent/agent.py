"""Agent facade: wires the execution core for one workspace."""

import logging
from pathlib import Path
from typing import Iterable, Optional

from yoloagent.config import Config
from yoloagent.engine import RoundEngine
from yoloagent.errors import CommandBlocked
from yoloagent.events import EventSink, SandboxState, SessionEventRouter
from yoloagent.llm import AnthropicProvider, LLMProvider
from yoloagent.modes import Mode, ModeManager
from yoloagent.orchestrator import SmartTodoOrchestrator
from yoloagent.sandbox.manager import KeepChangesPrompt, SandboxInfo, SandboxManager
from yoloagent.sessions import Session, SessionManager
from yoloagent.tools.base import ToolRegistry
from yoloagent.tools.executor import CommandExecutor, CommandResult
from yoloagent.tools.file_ops import ListFilesTool, ReadFileTool, WriteFileTool
from yoloagent.tools.question import AskQuestionTool, ExitPlanningModeTool
from yoloagent.tools.sandbox import (
    CreateSandboxTool,
    ExitSandboxTool,
    GetSandboxStatusTool,
    RunSandboxedCommandTool,
)
from yoloagent.tools.terminal import RunTerminalTool
from yoloagent.utils.logging import SessionLogger

logger = logging.getLogger(__name__)


class Agent:
    """One workspace: sessions, modes, the shared sandbox and the engines.

    All sessions share the single SandboxManager, so there is at most one
    sandbox per workspace.
    """

    def __init__(
        self,
        project_root: Path,
        config: Config,
        sink: EventSink,
        provider: Optional[LLMProvider] = None,
        keep_changes_prompt: Optional[KeepChangesPrompt] = None,
        run_logger: Optional[SessionLogger] = None,
    ):
        """Initialize the agent.

        Args:
            project_root: Workspace root
            config: Configuration object
            sink: Receives events of the visible session
            provider: LLM backend (Anthropic from config when None)
            keep_changes_prompt: Asks the user whether to keep a sandbox branch
            run_logger: Optional transcript/command logger

        Raises:
            ValueError: If no provider is given and no API key is configured
        """
        self.project_root = project_root.resolve()
        self.config = config
        self.run_logger = run_logger

        if provider is None:
            if not config.anthropic_api_key:
                raise ValueError("No Anthropic API key found. Set ANTHROPIC_API_KEY in .env")
            provider = AnthropicProvider(config.anthropic_api_key)
        self.provider = provider

        self.sessions = SessionManager()
        self.router = SessionEventRouter(self.sessions, sink)
        self.modes = ModeManager(config.default_mode, config.custom_modes)

        self.executor = CommandExecutor(
            self.project_root,
            max_timeout=config.exec_timeout,
            stall_timeout=config.stall_timeout,
            kill_grace=config.kill_grace,
        )
        self.sandbox = SandboxManager(self.project_root, self.executor, keep_changes_prompt)
        self.sandbox.subscribe(self._on_sandbox_change)

        self.ask_question = AskQuestionTool()
        self.exit_planning = ExitPlanningModeTool(self.modes)
        self.tools = ToolRegistry([
            ReadFileTool(self.sandbox),
            WriteFileTool(self.sandbox),
            ListFilesTool(self.sandbox),
            RunTerminalTool(self.sandbox, self.executor, on_result=self._record_command),
            CreateSandboxTool(self.sandbox),
            GetSandboxStatusTool(self.sandbox),
            ExitSandboxTool(self.sandbox),
            RunSandboxedCommandTool(self.sandbox),
            self.ask_question,
            self.exit_planning,
        ])

        self.engine = RoundEngine(
            self.provider,
            self.tools,
            self.sessions,
            self.modes,
            self.sandbox,
            self.router,
            config,
            self.project_root,
            run_logger=run_logger,
        )
        self.orchestrator = SmartTodoOrchestrator(
            self.engine, self.sessions, self.modes, self.sandbox, config, run_logger=run_logger
        )
        self.sessions.create_session()

    # ----- requests ------------------------------------------------------

    async def send(
        self,
        text: str,
        session_id: Optional[str] = None,
        file_references: Optional[Iterable[str]] = None,
    ) -> str:
        """Handle one user message in a session (the active one by default).

        Smart To-Do modes run the plan/execute/verify flow; a session waiting
        for clarification takes the message as its answers. Other modes run
        a single round.

        Returns:
            Flow outcome or the round's final text

        Raises:
            SessionBusy: If the session is still handling an earlier message
        """
        session_id = session_id or self.sessions.get_or_create_active().id
        self.engine.ensure_idle(session_id)
        if self.orchestrator.is_awaiting_clarification(session_id):
            return await self.orchestrator.resume_with_answers(session_id, text)
        if self.modes.is_smart_todo_mode() and not self.modes.planning_mode:
            return await self.orchestrator.run(session_id, text)
        return await self.engine.run_round(session_id, text, file_references=file_references)

    def cancel(self, session_id: Optional[str] = None) -> bool:
        """Stop the session's round, flow and pending question waits."""
        session_id = session_id or self.sessions.active_id
        if session_id is None:
            return False
        return self.engine.cancel(session_id)

    def answer_question(self, session_id: str, answer: str) -> bool:
        return self.ask_question.pending.resolve(session_id, answer)

    def answer_exit_planning(self, session_id: str, accepted: bool) -> bool:
        return self.exit_planning.pending.resolve(session_id, accepted)

    async def execute_command(self, command: str) -> CommandResult:
        """Run a user command in the effective workspace.

        Raises:
            CommandBlocked: If the deny-list rejects the command
        """
        if self.sandbox.is_active:
            result = await self.sandbox.execute_command(command)
        else:
            allowed, reason = self.sandbox.is_command_allowed(command)
            if not allowed:
                raise CommandBlocked(reason)
            result = await self.executor.run(command)
        self._record_command(command, result)
        return result

    # ----- sessions and modes --------------------------------------------

    def new_session(self) -> Session:
        session = self.sessions.create_session()
        self.router.activate(session.id)
        return session

    def switch_session(self, session_id: str) -> Optional[Session]:
        """Make a session visible and replay its buffered events."""
        session = self.sessions.get_session(session_id)
        if session is not None:
            self.router.activate(session_id)
        return session

    def switch_mode(self, mode_id: str) -> Mode:
        return self.modes.switch_mode(mode_id)

    def set_planning_mode(self, enabled: bool) -> None:
        self.modes.planning_mode = enabled
        logger.info("Planning mode %s", "on" if enabled else "off")

    # ----- callbacks -----------------------------------------------------

    def _on_sandbox_change(self, info: SandboxInfo) -> None:
        config = info.config
        self.router.broadcast(
            SandboxState(
                active=info.is_active,
                branch_name=config.branch_name if config else None,
                worktree_path=str(config.worktree_path) if config else None,
                os_isolation=info.os_level_isolation,
            )
        )

    def _record_command(self, command: str, result: CommandResult) -> None:
        if self.run_logger is None:
            return
        try:
            self.run_logger.save_exec_result(
                command,
                {
                    "exit_code": result.exit_code,
                    "timed_out": result.timed_out,
                    "stalled_out": result.stalled_out,
                    "duration_ms": result.duration_ms,
                    "stdout": result.stdout,
                    "stderr": result.stderr,
                },
            )
        except OSError as e:
            logger.warning("Failed to save command result: %s", e)

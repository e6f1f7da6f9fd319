"""Round engine: one LLM <-> tool exchange driven to completion."""

import logging
from pathlib import Path
from typing import Iterable, Optional

from yoloagent.cancel import CancelToken
from yoloagent.config import Config
from yoloagent.constants import EXECUTION_HIDDEN_TOOLS
from yoloagent.errors import GenerationCancelled, ProviderError, SessionBusy
from yoloagent.events import (
    AskQuestion,
    ErrorEvent,
    ExitPlanningModeRequest,
    FileActivity,
    MessageComplete,
    SessionEventRouter,
    StreamChunk,
    TerminalOutput,
    ToolCallResult,
    ToolCallStarted,
)
from yoloagent.llm import (
    ChatMessage,
    LLMProvider,
    LLMResponse,
    RequestOptions,
    ToolCall,
    ToolResultBlock,
)
from yoloagent.loop_detector import LoopDetector, ToolCallRound
from yoloagent.modes import ModeManager
from yoloagent.prompts import (
    FORCE_BREAK_NOTICE,
    GENERATION_STOPPED,
    MAX_ITERATIONS_NOTICE,
    build_force_break,
    build_nudge,
)
from yoloagent.sandbox.manager import SandboxManager
from yoloagent.sessions import SessionManager
from yoloagent.tools.base import ToolContext, ToolRegistry, ToolResult, validate_tool_params
from yoloagent.utils.logging import SessionLogger

logger = logging.getLogger(__name__)

CANCELLED = "[CANCELLED]"
ERROR_PREFIX = "[ERROR]"
TOOL_CANCELLED = "Tool call cancelled: generation stopped"

CONTEXT_FILES = ("AGENTS.md", "CLAUDE.md")
MAX_REFERENCE_CHARS = 20_000

# Tool name -> (fileActivity action, argument holding the path)
FILE_ACTIVITY = {
    "readFile": ("read", "path"),
    "writeFile": ("write", "path"),
    "listFiles": ("list", "pattern"),
    "runTerminal": ("command", "command"),
    "runSandboxedCommand": ("command", "command"),
    "createSandbox": ("sandbox", None),
    "exitSandbox": ("sandbox", None),
    "getSandboxStatus": ("sandbox", None),
}


def load_project_context(project_root: Path) -> str:
    """Build project-specific context from AGENTS.md / CLAUDE.md."""
    sections = []
    for name in CONTEXT_FILES:
        path = project_root / name
        if not path.is_file():
            continue
        try:
            content = path.read_text(encoding="utf-8").strip()
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Could not read %s: %s", path, e)
            continue
        if content:
            sections.append(f"## {name}\n\n{content}")

    if not sections:
        return ""

    docs = "\n\n".join(sections)
    return f"""# Current Project Context

The following is documentation about the project you're working on.
Use it to understand the codebase structure and follow the conventions it documents.

{docs}"""


class RoundEngine:
    """Drives one model round: prompt, stream, dispatch tools, repeat.

    Provider errors and cancellation never escape ``run_round``; they come
    back as the ``[ERROR] ...`` and ``[CANCELLED]`` sentinels so that the
    orchestrator can keep its own control flow.
    """

    def __init__(
        self,
        provider: LLMProvider,
        tools: ToolRegistry,
        sessions: SessionManager,
        modes: ModeManager,
        sandbox: SandboxManager,
        router: SessionEventRouter,
        config: Config,
        project_root: Path,
        run_logger: Optional[SessionLogger] = None,
    ):
        self.provider = provider
        self.tools = tools
        self.sessions = sessions
        self.modes = modes
        self.sandbox = sandbox
        self.router = router
        self.config = config
        self.project_root = project_root
        self.run_logger = run_logger
        self.context_docs = load_project_context(project_root)
        self._tokens: dict[str, CancelToken] = {}

    # ----- cancellation --------------------------------------------------

    def begin(self, session_id: str) -> CancelToken:
        """Register a fresh cancellation token for the session's work.

        Raises:
            SessionBusy: If the session already has work in flight
        """
        self.ensure_idle(session_id)
        token = CancelToken()
        self._tokens[session_id] = token
        return token

    def finish(self, session_id: str, token: CancelToken) -> None:
        if self._tokens.get(session_id) is token:
            del self._tokens[session_id]

    def cancel(self, session_id: str) -> bool:
        """Cancel the session's in-flight work; other sessions are untouched.

        Returns:
            True if something was running
        """
        token = self._tokens.get(session_id)
        if token is None:
            return False
        logger.info("Cancelling session %s", session_id)
        token.cancel()
        return True

    def is_running(self, session_id: str) -> bool:
        return session_id in self._tokens

    def ensure_idle(self, session_id: str) -> None:
        """Raise SessionBusy if the session already has work in flight."""
        if session_id in self._tokens:
            raise SessionBusy(f"Session {session_id} is already processing a request")

    # ----- prompt assembly -----------------------------------------------

    def effective_tools(self, restrict_read_only: bool = False) -> list[str]:
        """Registered tools the current mode offers right now.

        Args:
            restrict_read_only: Hide listing/diagnostic tools (execution rounds)
        """
        names = self.modes.filter_tools(self.tools.names())
        if not self.sandbox.is_active:
            names = [n for n in names if n != "runSandboxedCommand"]
        if restrict_read_only:
            names = [n for n in names if n not in EXECUTION_HIDDEN_TOOLS]
        return names

    def build_system_prompt(
        self,
        override: Optional[str] = None,
        file_references: Optional[Iterable[str]] = None,
    ) -> str:
        parts = [override or self.modes.current_mode.system_prompt]
        if self.context_docs:
            parts.append(self.context_docs)
        references = self._file_reference_context(file_references or ())
        if references:
            parts.append(references)
        return "\n\n".join(parts)

    def _file_reference_context(self, paths: Iterable[str]) -> str:
        blocks = []
        for path in paths:
            try:
                content = self.sandbox.resolve_path(path).read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                logger.warning("Skipping referenced file %s: %s", path, e)
                continue
            if len(content) > MAX_REFERENCE_CHARS:
                content = content[:MAX_REFERENCE_CHARS] + "\n... (truncated)"
            blocks.append(f"### {path}\n```\n{content}\n```")
        if not blocks:
            return ""
        return "## Referenced files\n\n" + "\n\n".join(blocks)

    # ----- rounds --------------------------------------------------------

    async def run_round(
        self,
        session_id: str,
        user_text: str,
        system_prompt_override: Optional[str] = None,
        restrict_read_only: bool = False,
        internal: bool = False,
        file_references: Optional[Iterable[str]] = None,
        cancel: Optional[CancelToken] = None,
        plan_nudges: bool = False,
    ) -> str:
        """Run one round with tools and session history.

        Args:
            session_id: Session the round belongs to
            user_text: New user message
            system_prompt_override: Replaces the mode prompt
            restrict_read_only: Hide listing/diagnostic tools
            internal: Orchestration traffic, hidden from session replay
            file_references: Workspace files injected into the system prompt
            cancel: Token owned by the caller; a new one is registered if None
            plan_nudges: Seed the loop detector from the Smart To-Do plan and
                save its nudge count back (execution rounds of a running flow)

        Returns:
            Final assistant text, "[CANCELLED]", or "[ERROR] <message>"
        """
        owned = cancel is None
        token = cancel or self.begin(session_id)
        try:
            return await self._run_round(
                session_id,
                user_text,
                system_prompt_override,
                restrict_read_only,
                internal,
                file_references,
                token,
                plan_nudges,
            )
        finally:
            if owned:
                self.finish(session_id, token)

    async def _run_round(
        self,
        session_id: str,
        user_text: str,
        system_prompt_override: Optional[str],
        restrict_read_only: bool,
        internal: bool,
        file_references: Optional[Iterable[str]],
        token: CancelToken,
        plan_nudges: bool,
    ) -> str:
        allowed = self.effective_tools(restrict_read_only)
        options = RequestOptions(
            model=self.config.default_model,
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
            tools=self.tools.definitions(allowed),
            cancel=token,
        )
        system_prompt = self.build_system_prompt(system_prompt_override, file_references)
        messages = [
            ChatMessage("system", system_prompt),
            *self.sessions.get_history(session_id),
            ChatMessage("user", user_text),
        ]
        self.record_message(session_id, ChatMessage("user", user_text, internal=internal))
        self.sessions.set_status(session_id, "busy")

        plan = self.sessions.get_smart_todo(session_id) if plan_nudges else None
        detector = LoopDetector(
            initial_nudges=plan.cumulative_nudges if plan else 0,
            error_threshold=self.config.error_nudge_threshold,
        )

        def on_chunk(text: str) -> None:
            self.router.post(session_id, StreamChunk(content=text))

        try:
            response = await self._send(session_id, messages, options, on_chunk)
            iterations = 0
            forced = False

            while response.tool_calls and iterations < self.config.max_tool_iterations:
                iterations += 1
                planning = self.modes.planning_mode

                self._append(
                    session_id,
                    messages,
                    ChatMessage(
                        "assistant", response.content, tool_calls=response.tool_calls, internal=True
                    ),
                )
                results = await self._dispatch(session_id, response.tool_calls, allowed, token)
                self._append(
                    session_id, messages, ChatMessage("user", tool_results=results, internal=True)
                )
                token.raise_if_cancelled()

                check = detector.record_round(
                    ToolCallRound.from_calls(
                        ((call.name, call.arguments) for call in response.tool_calls),
                        (result.is_error for result in results),
                    ),
                    planning_mode=planning,
                )
                if check.should_force_break:
                    logger.warning(
                        "Forcing tool-loop exit in session %s after %d nudges",
                        session_id,
                        detector.nudge_count,
                    )
                    self._append(
                        session_id,
                        messages,
                        ChatMessage("user", build_force_break(planning), internal=True),
                    )
                    on_chunk(FORCE_BREAK_NOTICE)
                    response = await self._send(session_id, messages, options, on_chunk)
                    forced = True
                    break
                if check.should_nudge:
                    logger.info(
                        "Nudging session %s (identical=%s, failing=%s)",
                        session_id,
                        check.identical_consecutive,
                        check.repeated_error_tools,
                    )
                    self._append(
                        session_id,
                        messages,
                        ChatMessage(
                            "user",
                            build_nudge(planning, check.repeated_error_tools),
                            internal=True,
                        ),
                    )
                    detector.reset()

                response = await self._send(session_id, messages, options, on_chunk)

            if response.tool_calls and not forced:
                logger.warning("Session %s hit the tool iteration limit", session_id)
                on_chunk(MAX_ITERATIONS_NOTICE)

        except GenerationCancelled:
            logger.info("Round cancelled in session %s", session_id)
            on_chunk(GENERATION_STOPPED)
            self.router.post(session_id, MessageComplete())
            self.sessions.set_status(session_id, "idle")
            return CANCELLED
        except ProviderError as e:
            logger.error("Provider error in session %s: %s", session_id, e)
            self.router.post(session_id, ErrorEvent(message=str(e)))
            self.sessions.set_status(session_id, "error")
            return f"{ERROR_PREFIX} {e}"
        except Exception:
            self.sessions.set_status(session_id, "error")
            raise
        finally:
            if plan is not None:
                plan.cumulative_nudges = detector.nudge_count

        if response.content:
            self.record_message(
                session_id, ChatMessage("assistant", response.content, internal=internal)
            )
        if not internal:
            self.router.post(session_id, MessageComplete())
        self.sessions.set_status(session_id, "idle")
        return response.content

    async def run_isolated(
        self,
        session_id: str,
        system_prompt: str,
        user_text: str,
        cancel: Optional[CancelToken] = None,
    ) -> str:
        """Run a tool-free round that ignores and does not extend history.

        Used for planning and verification.

        Returns:
            The model's text, or "" if cancelled

        Raises:
            ProviderError: After posting an error event to the session
        """
        owned = cancel is None
        token = cancel or self.begin(session_id)
        messages = [ChatMessage("system", system_prompt), ChatMessage("user", user_text)]
        options = RequestOptions(
            model=self.config.default_model,
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
            cancel=token,
        )
        try:
            response = await self._send(
                session_id,
                messages,
                options,
                lambda text: self.router.post(session_id, StreamChunk(content=text)),
            )
        except GenerationCancelled:
            return ""
        except ProviderError as e:
            self.router.post(session_id, ErrorEvent(message=str(e)))
            raise
        finally:
            if owned:
                self.finish(session_id, token)
        return response.content

    # ----- helpers -------------------------------------------------------

    async def _send(self, session_id, messages, options, on_chunk) -> LLMResponse:
        response = await self.provider.send_message(list(messages), options, on_chunk)
        if response.usage:
            self.sessions.add_token_usage(session_id, response.usage)
        return response

    async def _dispatch(
        self,
        session_id: str,
        calls: list[ToolCall],
        allowed: list[str],
        token: CancelToken,
    ) -> list[ToolResultBlock]:
        """Execute calls in order; every call gets a result block.

        Calls left when the token fires get a cancelled error result, so
        the history never holds a tool call without its result.
        """
        results = []
        for call in calls:
            if token.cancelled:
                results.append(ToolResultBlock(call.id, TOOL_CANCELLED, is_error=True))
                continue

            self.router.post(
                session_id, ToolCallStarted(id=call.id, name=call.name, args=call.arguments)
            )
            self._emit_file_activity(session_id, call)

            result = await self._execute(session_id, call, allowed, token)
            if result.is_error:
                logger.debug("Tool %s failed: %s", call.name, result.content[:200])

            self.router.post(
                session_id,
                ToolCallResult(
                    id=call.id, name=call.name, content=result.content, is_error=result.is_error
                ),
            )
            results.append(ToolResultBlock(call.id, result.content, result.is_error))
        return results

    async def _execute(
        self, session_id: str, call: ToolCall, allowed: list[str], token: CancelToken
    ) -> ToolResult:
        tool = self.tools.get(call.name)
        if tool is None:
            return ToolResult(f"Unknown tool: {call.name}", is_error=True)
        if call.name not in allowed:
            return ToolResult(
                f"Tool not available in the current mode: {call.name}", is_error=True
            )

        error = validate_tool_params(tool.definition, call.arguments)
        if error:
            return ToolResult(f"Invalid parameters for {call.name}: {error}", is_error=True)

        if call.name == "askQuestion":
            self.router.post(
                session_id,
                AskQuestion(question=call.arguments["question"], tool_call_id=call.id),
            )
        elif call.name == "exitPlanningMode":
            self.router.post(
                session_id,
                ExitPlanningModeRequest(reason=call.arguments["reason"], tool_call_id=call.id),
            )

        def on_output(chunk: str) -> None:
            self.router.post(session_id, TerminalOutput(tool_call_id=call.id, chunk=chunk))

        context = ToolContext(
            session_id=session_id, tool_call_id=call.id, cancel=token, on_output=on_output
        )
        try:
            return await tool.execute(call.arguments, context)
        except Exception as e:
            logger.exception("Tool %s raised", call.name)
            return ToolResult(f"Tool execution error: {e}", is_error=True)

    def _emit_file_activity(self, session_id: str, call: ToolCall) -> None:
        if not self.sandbox.is_active:
            return
        action, key = FILE_ACTIVITY.get(call.name, ("command", None))
        path = str(call.arguments.get(key, "")) if key else call.name
        self.router.post(session_id, FileActivity(action=action, path=path or call.name))

    def _append(self, session_id: str, messages: list[ChatMessage], message: ChatMessage) -> None:
        messages.append(message)
        self.record_message(session_id, message)

    def record_message(self, session_id: str, message: ChatMessage) -> None:
        self.sessions.add_message(session_id, message)
        if self.run_logger is None:
            return
        try:
            self.run_logger.log_message(session_id, message)
        except OSError as e:
            logger.warning("Failed to write transcript: %s", e)

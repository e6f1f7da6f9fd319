"""Smart To-Do orchestration: plan -> execute -> verify as a LangGraph workflow."""

import logging
import re
from dataclasses import asdict
from typing import Optional, TypedDict

from langgraph.graph import END, StateGraph

from yoloagent.cancel import CancelToken
from yoloagent.config import Config
from yoloagent.constants import (
    MAX_NON_PRODUCTIVE_EXEC_ROUNDS,
    VERIFY_MAX_FILE_CHARS,
    VERIFY_MAX_FILES,
    VERIFY_READABLE_SUFFIXES,
    WRITE_TOOLS,
)
from yoloagent.engine import CANCELLED, ERROR_PREFIX, RoundEngine
from yoloagent.errors import ProviderError, SandboxError
from yoloagent.events import MessageComplete, SandboxResult, SmartTodoUpdate, StreamChunk
from yoloagent.llm import ChatMessage
from yoloagent.modes import ModeManager
from yoloagent.prompts import (
    CLARIFICATION_REQUEST,
    EXECUTE_FIRST_MESSAGE,
    EXECUTE_REPEAT_MESSAGE,
    EXECUTION_PROMPT,
    GENERATION_STOPPED,
    PLANNING_PROMPT,
    RETRY_PLANNING_PROMPT,
    SANDBOX_PREAMBLE,
    VERIFY_MESSAGE,
    VERIFY_PROMPT,
)
from yoloagent.sandbox.manager import SandboxManager
from yoloagent.sessions import SessionManager, TodoItem
from yoloagent.todo_parser import (
    apply_verification,
    extract_clarification_questions,
    format_plan_text,
    looks_like_verification,
    parse_todos_from_plan,
    parse_verification,
)
from yoloagent.tools.file_ops import list_workspace_files
from yoloagent.utils.logging import SessionLogger

logger = logging.getLogger(__name__)

PLAN_RETRY_NOTICE = "\n\n⚠️ Plan format not detected. Retrying planning phase...\n\n"
SINGLE_TASK_NOTICE = (
    "\n\n⚠️ Could not extract structured TODOs. Using a single task for the full request.\n\n"
)
SANDBOX_CREATING_NOTICE = "\n\n🔒 **Creating sandbox branch for isolated development...**\n"
VERIFICATION_ONLY_NOTICE = (
    "\n\n✅ **Remaining verification tasks completed (no file changes needed).**\n"
)
STALLED_NOTICE = (
    "\n\n⚠️ **Agent could not make further progress after 2 consecutive execution rounds.**\n"
    "Try a different model, simplify the request, or complete the remaining steps manually.\n"
)


class FlowState(TypedDict):
    """State passed through the Smart To-Do graph.

    Attributes:
        session_id: Session the flow runs for
        request: Original user request
        planning_text: User text for the planning round (request, or
            request plus clarification answers)
        outcome: Set by the node that ends the flow
        exec_rounds: Execution rounds run so far
        non_productive: Consecutive execution rounds without progress
        notified: The round engine already closed the message
    """

    session_id: str
    request: str
    planning_text: str
    outcome: Optional[str]
    exec_rounds: int
    non_productive: int
    notified: bool


def feature_name_for(request: str) -> str:
    """Branch label from the first four words of a request."""
    words = re.sub(r"[^A-Za-z0-9\s]", "", request).split()[:4]
    return "-".join(words).lower()[:40] or "task"


class SmartTodoOrchestrator:
    """Runs one request through planning, execution and verification.

    The verify counter is a hard ceiling: the flow ends after at most
    ``max_iterations`` verification passes.
    """

    def __init__(
        self,
        engine: RoundEngine,
        sessions: SessionManager,
        modes: ModeManager,
        sandbox: SandboxManager,
        config: Config,
        run_logger: Optional[SessionLogger] = None,
    ):
        self.engine = engine
        self.sessions = sessions
        self.modes = modes
        self.sandbox = sandbox
        self.config = config
        self.run_logger = run_logger
        self.router = engine.router
        self._tokens: dict[str, CancelToken] = {}
        self.graph = self.build_graph()

    def build_graph(self):
        """Build the plan/execute/verify workflow.

        Returns:
            Compiled StateGraph
        """
        workflow = StateGraph(FlowState)

        workflow.add_node("plan", self.plan_node)
        workflow.add_node("execute", self.execute_node)
        workflow.add_node("verify", self.verify_node)

        workflow.set_entry_point("plan")
        workflow.add_conditional_edges(
            "plan", self._next("execute"), {"execute": "execute", END: END}
        )
        workflow.add_conditional_edges(
            "execute", self._next("verify"), {"verify": "verify", END: END}
        )
        workflow.add_conditional_edges(
            "verify", self._next("execute"), {"execute": "execute", END: END}
        )

        return workflow.compile()

    def _next(self, node: str):
        def route(state: FlowState) -> str:
            if state.get("outcome") or self._token(state).cancelled:
                return END
            return node

        return route

    # ----- entry points --------------------------------------------------

    async def run(self, session_id: str, request: str) -> str:
        """Start a new Smart To-Do flow for a request.

        Returns:
            Outcome: complete, max-iterations, stalled, awaiting-clarification,
            cancelled or error
        """
        self.engine.ensure_idle(session_id)
        self.sessions.init_smart_todo(session_id, request, self.config.max_iterations)
        self.engine.record_message(session_id, ChatMessage("user", request))
        return await self._start(session_id, request, request)

    async def resume_with_answers(self, session_id: str, answers: str) -> str:
        """Resume planning with the user's answers to clarification questions.

        Raises:
            ValueError: If the session is not awaiting clarification
            SessionBusy: If the session already has work in flight
        """
        self.engine.ensure_idle(session_id)
        plan = self.sessions.get_smart_todo(session_id)
        if plan is None or plan.phase != "awaiting-clarification":
            raise ValueError("Session is not awaiting clarification")

        self.engine.record_message(session_id, ChatMessage("user", answers))
        planning_text = CLARIFICATION_REQUEST.format(
            request=plan.user_request,
            questions=plan.clarification_questions or "",
            answers=answers,
        )
        plan.clarification_questions = None
        plan.phase = "planning"
        return await self._start(session_id, plan.user_request, planning_text)

    def is_awaiting_clarification(self, session_id: str) -> bool:
        plan = self.sessions.get_smart_todo(session_id)
        return plan is not None and plan.phase == "awaiting-clarification"

    async def _start(self, session_id: str, request: str, planning_text: str) -> str:
        token = self.engine.begin(session_id)
        self._tokens[session_id] = token
        self.sessions.set_status(session_id, "busy")

        state: FlowState = {
            "session_id": session_id,
            "request": request,
            "planning_text": planning_text,
            "outcome": None,
            "exec_rounds": 0,
            "non_productive": 0,
            "notified": False,
        }
        notified = False
        try:
            final = await self.graph.ainvoke(
                state, config={"recursion_limit": 2 * self.config.max_iterations + 5}
            )
            outcome = final.get("outcome") or "cancelled"
            notified = final.get("notified", False)
        except ProviderError as e:
            logger.error("Smart To-Do flow failed in session %s: %s", session_id, e)
            outcome = "error"
        finally:
            self.engine.finish(session_id, token)
            self._tokens.pop(session_id, None)

        plan = self.sessions.get_smart_todo(session_id)
        if plan is not None and outcome != "awaiting-clarification":
            # Nudge escalation is scoped to one request
            plan.cumulative_nudges = 0

        if not notified:
            if outcome == "cancelled":
                self._chunk(session_id, GENERATION_STOPPED)
            self.router.post(session_id, MessageComplete())
        self.sessions.set_status(session_id, "error" if outcome == "error" else "idle")
        logger.info("Smart To-Do flow in session %s ended: %s", session_id, outcome)
        return outcome

    # ----- nodes ---------------------------------------------------------

    async def plan_node(self, state: FlowState) -> dict:
        session_id = state["session_id"]
        token = self._token(state)
        if token.cancelled:
            return {"outcome": "cancelled"}

        self.sessions.set_smart_todo_phase(session_id, "planning")
        self._post_update(session_id)

        response = await self.engine.run_isolated(
            session_id, self._with_preamble(PLANNING_PROMPT), state["planning_text"], cancel=token
        )
        if token.cancelled:
            return {"outcome": "cancelled"}

        todos = parse_todos_from_plan(response)
        if not todos:
            questions = extract_clarification_questions(response)
            if questions:
                self.sessions.set_clarification(session_id, questions)
                self._post_update(session_id)
                return {"outcome": "awaiting-clarification"}

            logger.info("No plan found in session %s, retrying", session_id)
            self._chunk(session_id, PLAN_RETRY_NOTICE)
            response = await self.engine.run_isolated(
                session_id,
                self._with_preamble(RETRY_PLANNING_PROMPT),
                state["planning_text"],
                cancel=token,
            )
            if token.cancelled:
                return {"outcome": "cancelled"}
            todos = parse_todos_from_plan(response)

        if not todos:
            self._chunk(session_id, SINGLE_TASK_NOTICE)
            todos = [TodoItem(id=1, title="Complete user request", detail=state["request"])]

        self.sessions.set_smart_todo_items(session_id, todos)
        self.sessions.set_smart_todo_phase(session_id, "executing")
        self._save_plan(session_id)
        self._post_update(session_id)

        if self.modes.is_sandboxed_smart_todo_mode() and not self.sandbox.is_active:
            await self._auto_sandbox(session_id, state["request"])
        return {"outcome": None}

    async def execute_node(self, state: FlowState) -> dict:
        session_id = state["session_id"]
        token = self._token(state)
        if token.cancelled:
            return {"outcome": "cancelled"}

        plan = self.sessions.get_smart_todo(session_id)
        if state["exec_rounds"] == 0:
            message = EXECUTE_FIRST_MESSAGE.format(request=plan.user_request)
        else:
            pending = "\n".join(f"- TODO {t.id}: {t.title}" for t in plan.remaining())
            message = EXECUTE_REPEAT_MESSAGE.format(pending=pending, request=plan.user_request)
        prompt = self._with_preamble(EXECUTION_PROMPT.format(PLAN=format_plan_text(plan.todos)))

        before = self._snapshot()
        history_start = len(self.sessions.require(session_id).history)
        result = await self.engine.run_round(
            session_id,
            message,
            system_prompt_override=prompt,
            restrict_read_only=True,
            internal=True,
            cancel=token,
            plan_nudges=True,
        )
        if result == CANCELLED:
            return {"outcome": "cancelled", "notified": True}
        if token.cancelled:
            return {"outcome": "cancelled"}
        if result.startswith(ERROR_PREFIX):
            return {"outcome": "error"}

        productive = self._snapshot() != before or self._used_write_tools(
            session_id, history_start
        )
        streak = 0 if productive else state["non_productive"] + 1
        update = {"exec_rounds": state["exec_rounds"] + 1, "non_productive": streak}
        if streak < MAX_NON_PRODUCTIVE_EXEC_ROUNDS:
            return {**update, "outcome": None}

        remaining = plan.remaining()
        if remaining and all(looks_like_verification(t) for t in remaining):
            for item in remaining:
                item.status = "done"
            self._post_update(session_id)
            self._chunk(session_id, VERIFICATION_ONLY_NOTICE)
            outcome = "complete"
        else:
            logger.warning("Session %s made no progress in %d rounds", session_id, streak)
            self._chunk(session_id, STALLED_NOTICE)
            outcome = "stalled"
        self._save_plan(session_id)
        await self._send_sandbox_result(session_id)
        return {**update, "outcome": outcome}

    async def verify_node(self, state: FlowState) -> dict:
        session_id = state["session_id"]
        token = self._token(state)
        if token.cancelled:
            return {"outcome": "cancelled"}

        plan = self.sessions.get_smart_todo(session_id)
        self.sessions.set_smart_todo_phase(session_id, "verifying")
        iteration = self.sessions.increment_verify_iteration(session_id)
        self._post_update(session_id)

        prompt = self._with_preamble(
            VERIFY_PROMPT.format(USER_REQUEST=plan.user_request, PLAN=format_plan_text(plan.todos))
        )
        response = await self.engine.run_isolated(
            session_id,
            prompt + self._verification_context(),
            VERIFY_MESSAGE.format(iteration=iteration),
            cancel=token,
        )
        if token.cancelled:
            return {"outcome": "cancelled"}

        apply_verification(plan.todos, parse_verification(response))
        self._save_plan(session_id)

        if self.sessions.all_todos_done(session_id):
            self._post_update(session_id)
            self._chunk(
                session_id,
                f"\n\n✅ **All TODOs verified complete after {iteration} iteration(s).**\n",
            )
            await self._send_sandbox_result(session_id)
            return {"outcome": "complete"}

        if self.sessions.has_reached_max_iterations(session_id):
            self._post_update(session_id)
            remaining = "\n".join(
                f"- TODO {t.id}: {t.title} ({t.status})" for t in plan.remaining()
            )
            self._chunk(
                session_id,
                f"\n\n⚠️ **Reached max iterations ({plan.max_iterations}).** "
                f"Remaining items:\n{remaining}\n",
            )
            await self._send_sandbox_result(session_id)
            return {"outcome": "max-iterations"}

        for item in plan.todos:
            if item.status in ("failed", "in-progress"):
                item.status = "pending"
        self.sessions.set_smart_todo_phase(session_id, "executing")
        self._post_update(session_id)
        return {"outcome": None}

    # ----- helpers -------------------------------------------------------

    def _token(self, state: FlowState) -> CancelToken:
        return self._tokens[state["session_id"]]

    def _with_preamble(self, prompt: str) -> str:
        if self.modes.is_sandboxed_smart_todo_mode():
            return SANDBOX_PREAMBLE + prompt
        return prompt

    def _chunk(self, session_id: str, text: str) -> None:
        self.router.post(session_id, StreamChunk(content=text))

    def _post_update(self, session_id: str) -> None:
        plan = self.sessions.get_smart_todo(session_id)
        if plan is None:
            return
        self.router.post(
            session_id,
            SmartTodoUpdate(
                phase=plan.phase,
                todos=[t.model_copy() for t in plan.todos],
                iteration=plan.verify_iterations,
            ),
        )

    def _save_plan(self, session_id: str) -> None:
        plan = self.sessions.get_smart_todo(session_id)
        if self.run_logger is None or plan is None:
            return
        try:
            self.run_logger.save_plan(plan.model_dump())
        except OSError as e:
            logger.warning("Failed to save plan: %s", e)

    def _snapshot(self) -> frozenset[str]:
        try:
            return frozenset(list_workspace_files(self.sandbox.get_current_workspace(), "**/*"))
        except OSError as e:
            logger.warning("Workspace listing failed: %s", e)
            return frozenset()

    def _used_write_tools(self, session_id: str, start: int) -> bool:
        """True if the round's messages (history from start) call a write tool."""
        recent = self.sessions.get_history(session_id)[start:]
        return any(
            call.name in WRITE_TOOLS for message in recent for call in message.tool_calls
        )

    def _verification_context(self) -> str:
        """File listing plus the contents of a few small text files."""
        root = self.sandbox.get_current_workspace()
        try:
            files = list_workspace_files(root, "**/*")
        except OSError as e:
            logger.warning("Workspace listing failed: %s", e)
            files = []

        context = "\n\n--- Files in workspace ---\n" + ("\n".join(files) or "(no files)")
        shown = 0
        for relative in files:
            if shown >= VERIFY_MAX_FILES:
                break
            if not relative.endswith(VERIFY_READABLE_SUFFIXES):
                continue
            try:
                content = (root / relative).read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError):
                continue
            if len(content) >= VERIFY_MAX_FILE_CHARS:
                continue
            context += f"\n\n--- {relative} ---\n{content}"
            shown += 1
        return context

    async def _auto_sandbox(self, session_id: str, request: str) -> None:
        self._chunk(session_id, SANDBOX_CREATING_NOTICE)
        try:
            config = await self.sandbox.create_sandbox(feature_name_for(request))
        except SandboxError as e:
            logger.warning("Auto-sandbox failed: %s", e)
            self._chunk(
                session_id,
                f"\n⚠️ Sandbox creation failed: {e}. Continuing without sandbox isolation.\n\n",
            )
            return
        self._chunk(
            session_id,
            f"\n✅ Sandbox created: branch `{config.branch_name}` at `{config.worktree_path}`\n\n",
        )

    async def _send_sandbox_result(self, session_id: str) -> None:
        config = self.sandbox.current
        if config is None:
            return
        diff = await self.sandbox.get_sandbox_diff()
        self.router.post(
            session_id,
            SandboxResult(
                branch_name=config.branch_name,
                worktree_path=str(config.worktree_path),
                files=[asdict(change) for change in diff.files],
                summary=diff.summary,
            ),
        )
        if self.run_logger:
            try:
                self.run_logger.save_diff(config.branch_name.replace("/", "_"), diff.summary)
            except OSError as e:
                logger.warning("Failed to save sandbox diff: %s", e)

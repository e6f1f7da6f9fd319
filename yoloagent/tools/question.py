"""Tools that suspend a round until the user answers."""

import asyncio
import logging
from typing import Any, Generic, Optional, TypeVar

from yoloagent.tools.base import Tool, ToolContext, ToolDefinition, ToolResult

logger = logging.getLogger(__name__)

T = TypeVar("T")

QUESTION_CANCELLED = "[Question cancelled by user]"


class PendingInput(Generic[T]):
    """One suspended wait per session, resumed by resolve() or cancel().

    Cancelling resolves the wait with the fallback value instead of
    raising, so the tool still returns a result the model can read.
    """

    def __init__(self, fallback: T):
        self.fallback = fallback
        self._waiting: dict[str, asyncio.Future] = {}

    def has_pending(self, session_id: str) -> bool:
        future = self._waiting.get(session_id)
        return future is not None and not future.done()

    async def wait(self, session_id: str, cancel: Optional[Any] = None) -> T:
        """Suspend until the session's input arrives.

        Args:
            session_id: Session whose user must answer
            cancel: Optional CancelToken; firing it resolves with the fallback
        """
        if self.has_pending(session_id):
            self._waiting[session_id].set_result(self.fallback)

        future = asyncio.get_running_loop().create_future()
        self._waiting[session_id] = future
        remove = cancel.on_cancel(lambda: self.cancel(session_id)) if cancel else None
        try:
            return await future
        finally:
            if remove:
                remove()
            if self._waiting.get(session_id) is future:
                del self._waiting[session_id]

    def resolve(self, session_id: str, value: T) -> bool:
        """Deliver the user's input; returns False if nothing was waiting."""
        future = self._waiting.get(session_id)
        if future is None or future.done():
            return False
        future.set_result(value)
        return True

    def cancel(self, session_id: str) -> bool:
        return self.resolve(session_id, self.fallback)


class AskQuestionTool(Tool):
    definition = ToolDefinition(
        name="askQuestion",
        description=(
            "Ask the user a clarifying question and wait for the answer. Use this when "
            "you need more information to proceed. Execution pauses until the user replies."
        ),
        parameters={
            "type": "object",
            "properties": {
                "question": {"type": "string", "description": "The question to ask the user"},
            },
            "required": ["question"],
        },
    )

    def __init__(self):
        self.pending: PendingInput[str] = PendingInput(QUESTION_CANCELLED)

    async def execute(
        self, args: dict[str, Any], context: Optional[ToolContext] = None
    ) -> ToolResult:
        question = args.get("question")
        if not question:
            return ToolResult("No question provided.", is_error=True)

        context = context or ToolContext()
        answer = await self.pending.wait(context.session_id or "", context.cancel)
        return ToolResult(f"User's answer: {answer}")


class ExitPlanningModeTool(Tool):
    definition = ToolDefinition(
        name="exitPlanningMode",
        description=(
            "Propose turning off planning mode so implementation can start. Use this when "
            "the plan is ready. The user must confirm; execution pauses until they decide."
        ),
        parameters={
            "type": "object",
            "properties": {
                "reason": {
                    "type": "string",
                    "description": "Brief summary of why planning is complete",
                },
            },
            "required": ["reason"],
        },
    )

    def __init__(self, modes: Optional[Any] = None):
        """Initialize tool.

        Args:
            modes: ModeManager whose planning flag is cleared on acceptance
        """
        self.modes = modes
        self.pending: PendingInput[bool] = PendingInput(False)

    async def execute(
        self, args: dict[str, Any], context: Optional[ToolContext] = None
    ) -> ToolResult:
        if not args.get("reason"):
            return ToolResult("No reason provided.", is_error=True)

        context = context or ToolContext()
        accepted = await self.pending.wait(context.session_id or "", context.cancel)
        if not accepted:
            return ToolResult(
                "The user chose to stay in planning mode. "
                "Continue planning without making changes."
            )

        if self.modes is not None:
            self.modes.planning_mode = False
            logger.info("Planning mode turned off")
        return ToolResult(
            "Planning mode has been turned off. You can now use all tools to implement the plan."
        )

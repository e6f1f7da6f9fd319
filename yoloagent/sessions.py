"""Session registry: independent conversations with Smart To-Do state."""

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from yoloagent.constants import (
    DEFAULT_MAX_VERIFY_ITERATIONS,
    DEFAULT_SESSION_TITLE,
    SESSION_TITLE_LENGTH,
)
from yoloagent.llm import ChatMessage, TokenUsage

logger = logging.getLogger(__name__)

SessionStatus = Literal["idle", "busy", "error"]
TodoStatus = Literal["pending", "in-progress", "done", "failed"]
TodoPhase = Literal["planning", "executing", "verifying", "awaiting-clarification"]


class TodoItem(BaseModel):
    """Atomic unit of work in a plan."""

    id: int = Field(description="Stable id assigned at parse time")
    title: str = Field(description="Short title")
    detail: Optional[str] = Field(None, description="Free-text description")
    status: TodoStatus = "pending"


class SmartTodoPlan(BaseModel):
    """Per-session plan -> execute -> verify state."""

    user_request: str
    todos: list[TodoItem] = Field(default_factory=list)
    phase: TodoPhase = "planning"
    verify_iterations: int = 0
    max_iterations: int = DEFAULT_MAX_VERIFY_ITERATIONS
    cumulative_nudges: int = 0
    clarification_questions: Optional[str] = None

    def get_item(self, todo_id: int) -> Optional[TodoItem]:
        for item in self.todos:
            if item.id == todo_id:
                return item
        return None

    def remaining(self) -> list[TodoItem]:
        return [t for t in self.todos if t.status != "done"]


@dataclass
class Session:
    """One independent conversation."""

    id: str
    title: str = DEFAULT_SESSION_TITLE
    status: SessionStatus = "idle"
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    history: list[ChatMessage] = field(default_factory=list)
    buffer: list[Any] = field(default_factory=list)
    smart_todo: Optional[SmartTodoPlan] = None
    token_usage: TokenUsage = field(default_factory=TokenUsage)

    def touch(self) -> None:
        self.updated_at = time.time()


@dataclass
class SessionSummary:
    id: str
    title: str
    status: SessionStatus
    created_at: float
    updated_at: float
    message_count: int


class SessionManager:
    """Owns all sessions; only the active one is shown to the user."""

    def __init__(self):
        self._sessions: dict[str, Session] = {}
        self._active_id: Optional[str] = None

    # ----- registry ------------------------------------------------------

    def create_session(self) -> Session:
        session = Session(id=str(uuid.uuid4()))
        self._sessions[session.id] = session
        if self._active_id is None:
            self._active_id = session.id
        logger.debug("Created session %s", session.id)
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def require(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise KeyError(f"Unknown session: {session_id}")
        return session

    def get_active_session(self) -> Optional[Session]:
        return self._sessions.get(self._active_id) if self._active_id else None

    def get_or_create_active(self) -> Session:
        session = self.get_active_session()
        if session is None:
            session = self.create_session()
            self._active_id = session.id
        return session

    def switch_session(self, session_id: str) -> Optional[Session]:
        session = self._sessions.get(session_id)
        if session is not None:
            self._active_id = session_id
        return session

    def delete_session(self, session_id: str) -> bool:
        if self._sessions.pop(session_id, None) is None:
            return False
        if self._active_id == session_id:
            remaining = sorted(self._sessions.values(), key=lambda s: s.updated_at, reverse=True)
            self._active_id = remaining[0].id if remaining else None
        return True

    def list_sessions(self) -> list[SessionSummary]:
        sessions = sorted(self._sessions.values(), key=lambda s: s.updated_at, reverse=True)
        return [
            SessionSummary(
                id=s.id,
                title=s.title,
                status=s.status,
                created_at=s.created_at,
                updated_at=s.updated_at,
                message_count=len(s.history),
            )
            for s in sessions
        ]

    def is_active(self, session_id: str) -> bool:
        return self._active_id == session_id

    @property
    def active_id(self) -> Optional[str]:
        return self._active_id

    # ----- conversation --------------------------------------------------

    def set_status(self, session_id: str, status: SessionStatus) -> None:
        session = self.require(session_id)
        session.status = status
        session.touch()

    def add_message(self, session_id: str, message: ChatMessage) -> None:
        session = self.require(session_id)
        session.history.append(message)
        if (
            session.title == DEFAULT_SESSION_TITLE
            and message.role == "user"
            and message.content
            and not message.internal
        ):
            text = message.content.strip().replace("\n", " ")
            if len(text) > SESSION_TITLE_LENGTH:
                text = text[:SESSION_TITLE_LENGTH] + "..."
            session.title = text
        session.touch()

    def get_history(self, session_id: str) -> list[ChatMessage]:
        return list(self.require(session_id).history)

    def buffer_event(self, session_id: str, event: Any) -> None:
        session = self._sessions.get(session_id)
        if session is not None:
            session.buffer.append(event)

    def drain_buffer(self, session_id: str) -> list[Any]:
        session = self._sessions.get(session_id)
        if session is None:
            return []
        drained, session.buffer = session.buffer, []
        return drained

    def add_token_usage(self, session_id: str, usage: TokenUsage) -> None:
        session = self.require(session_id)
        session.token_usage.input_tokens += usage.input_tokens
        session.token_usage.output_tokens += usage.output_tokens

    # ----- Smart To-Do ---------------------------------------------------

    def init_smart_todo(
        self, session_id: str, user_request: str, max_iterations: int = DEFAULT_MAX_VERIFY_ITERATIONS
    ) -> SmartTodoPlan:
        plan = SmartTodoPlan(user_request=user_request, max_iterations=max_iterations)
        self.require(session_id).smart_todo = plan
        return plan

    def get_smart_todo(self, session_id: str) -> Optional[SmartTodoPlan]:
        session = self._sessions.get(session_id)
        return session.smart_todo if session else None

    def set_smart_todo_phase(self, session_id: str, phase: TodoPhase) -> None:
        plan = self.get_smart_todo(session_id)
        if plan:
            plan.phase = phase

    def set_smart_todo_items(self, session_id: str, todos: list[TodoItem]) -> None:
        plan = self.get_smart_todo(session_id)
        if plan:
            plan.todos = todos

    def update_smart_todo_item(self, session_id: str, todo_id: int, status: TodoStatus) -> bool:
        plan = self.get_smart_todo(session_id)
        item = plan.get_item(todo_id) if plan else None
        if item is None:
            return False
        item.status = status
        return True

    def set_clarification(self, session_id: str, questions: str) -> None:
        plan = self.get_smart_todo(session_id)
        if plan:
            plan.clarification_questions = questions
            plan.phase = "awaiting-clarification"

    def increment_verify_iteration(self, session_id: str) -> int:
        plan = self.get_smart_todo(session_id)
        if plan is None:
            return 0
        plan.verify_iterations += 1
        return plan.verify_iterations

    def all_todos_done(self, session_id: str) -> bool:
        plan = self.get_smart_todo(session_id)
        if plan is None or not plan.todos:
            return False
        return all(t.status == "done" for t in plan.todos)

    def has_reached_max_iterations(self, session_id: str) -> bool:
        plan = self.get_smart_todo(session_id)
        return plan is not None and plan.verify_iterations >= plan.max_iterations

    def clear_smart_todo(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session:
            session.smart_todo = None

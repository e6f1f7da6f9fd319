"""Typed UI events and per-session delivery with background buffering."""

import logging
from typing import Any, Literal, Optional, Protocol

from pydantic import BaseModel, Field

from yoloagent.constants import MAX_BUFFERED_EVENTS
from yoloagent.sessions import SessionManager, TodoItem

logger = logging.getLogger(__name__)


class Event(BaseModel):
    type: str
    session_id: Optional[str] = None


class StreamChunk(Event):
    type: Literal["streamChunk"] = "streamChunk"
    content: str


class ToolCallStarted(Event):
    type: Literal["toolCallStarted"] = "toolCallStarted"
    id: str
    name: str
    args: dict[str, Any] = Field(default_factory=dict)


class ToolCallResult(Event):
    type: Literal["toolCallResult"] = "toolCallResult"
    id: str
    name: str
    content: str
    is_error: bool = False


class TerminalOutput(Event):
    type: Literal["terminalOutput"] = "terminalOutput"
    tool_call_id: Optional[str] = None
    chunk: str


class SmartTodoUpdate(Event):
    type: Literal["smartTodoUpdate"] = "smartTodoUpdate"
    phase: str
    todos: list[TodoItem] = Field(default_factory=list)
    iteration: int = 0


class SandboxState(Event):
    type: Literal["sandboxState"] = "sandboxState"
    active: bool
    branch_name: Optional[str] = None
    worktree_path: Optional[str] = None
    os_isolation: bool = False


class SandboxResult(Event):
    type: Literal["sandboxResult"] = "sandboxResult"
    branch_name: str
    worktree_path: str
    files: list[dict[str, Any]] = Field(default_factory=list)
    summary: str = ""


class FileActivity(Event):
    type: Literal["fileActivity"] = "fileActivity"
    action: str
    path: str


class AskQuestion(Event):
    type: Literal["askQuestion"] = "askQuestion"
    question: str
    tool_call_id: Optional[str] = None


class ExitPlanningModeRequest(Event):
    type: Literal["exitPlanningModeRequest"] = "exitPlanningModeRequest"
    reason: str
    tool_call_id: Optional[str] = None


class ErrorEvent(Event):
    type: Literal["error"] = "error"
    message: str


class MessageComplete(Event):
    type: Literal["messageComplete"] = "messageComplete"


class EventSink(Protocol):
    """Receives events for the visible session. Rendering is its concern."""

    def emit(self, event: Event) -> None: ...


class ListSink:
    """Sink that records every event (headless runs and tests)."""

    def __init__(self):
        self.events: list[Event] = []

    def emit(self, event: Event) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> list[Event]:
        return [e for e in self.events if e.type == event_type]


class SessionEventRouter:
    """Delivers events of the active session, buffers the rest.

    A background session never blocks on the UI; its events wait in the
    session buffer until ``activate`` makes it visible.
    """

    def __init__(self, sessions: SessionManager, sink: EventSink):
        self.sessions = sessions
        self.sink = sink

    def post(self, session_id: str, event: Event) -> None:
        event.session_id = session_id
        if self.sessions.is_active(session_id):
            self._deliver(event)
        else:
            self._buffer(session_id, event)

    def broadcast(self, event: Event) -> None:
        """Deliver a workspace-wide event (sandbox state) immediately."""
        self._deliver(event)

    def activate(self, session_id: str) -> int:
        """Make a session visible and flush its buffered events.

        Returns:
            Number of flushed events
        """
        if self.sessions.switch_session(session_id) is None:
            return 0
        buffered = self.sessions.drain_buffer(session_id)
        for event in buffered:
            self._deliver(event)
        return len(buffered)

    def _buffer(self, session_id: str, event: Event) -> None:
        session = self.sessions.get_session(session_id)
        if session is None:
            return

        last = session.buffer[-1] if session.buffer else None
        # Consecutive output chunks merge into one event
        if isinstance(event, StreamChunk) and isinstance(last, StreamChunk):
            last.content += event.content
            return
        if (
            isinstance(event, TerminalOutput)
            and isinstance(last, TerminalOutput)
            and last.tool_call_id == event.tool_call_id
        ):
            last.chunk += event.chunk
            return

        self.sessions.buffer_event(session_id, event)
        overflow = len(session.buffer) - MAX_BUFFERED_EVENTS
        if overflow > 0:
            logger.warning("Dropping %d buffered events of session %s", overflow, session_id)
            del session.buffer[:overflow]

    def _deliver(self, event: Event) -> None:
        try:
            self.sink.emit(event)
        except Exception:
            logger.exception("Event sink failed on %s", event.type)

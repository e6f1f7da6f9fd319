"""Operating modes: system prompts and tool permissions."""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Literal, Optional

from yoloagent.constants import DEFAULT_MODE, PLANNING_MODE_TOOLS

logger = logging.getLogger(__name__)

ToolPermission = Literal["allow", "deny"]

# Offered in planning mode whatever the mode policy says
PLANNING_ONLY_TOOLS = frozenset({"askQuestion", "exitPlanningMode"})

_BASE_PROMPT = """You are YOLO Agent, an autonomous coding assistant working directly in the user's project.

- Take concrete actions with your tools instead of only describing changes.
- Read existing code before modifying it and follow the project's conventions.
- Write complete, working code; no placeholders.
- When a tool returns an error, read it and adapt instead of repeating the same call.
- Keep answers short and technical."""

_SANDBOX_PROMPT = """

## Sandbox
You may work inside an isolated git worktree on a dedicated branch.
- Call createSandbox before runSandboxedCommand; without it use runTerminal.
- Writes and commands are confined to the sandbox workspace while it is active.
- Dangerous commands (sudo, pkill, killall, rm -rf /, ...) are blocked.
- Use getSandboxStatus to check the current sandbox and exitSandbox when finished."""

_SMART_TODO_PROMPT = """

## Smart To-Do
Requests are split into a numbered TODO plan, implemented item by item, then verified.
Work through pending items in order and report "TODO N: DONE" as each one is finished."""

_ASK_PROMPT = """You are YOLO Agent in Ask mode. Answer questions about the code and explain it.
You may read and list files but you never modify the project or run commands."""

_WORK_TOOLS = {
    "readFile": "allow",
    "writeFile": "allow",
    "listFiles": "allow",
    "runTerminal": "allow",
    "askQuestion": "allow",
}

_SANDBOX_TOOLS = {
    **_WORK_TOOLS,
    "runSandboxedCommand": "allow",
    "createSandbox": "allow",
    "getSandboxStatus": "allow",
    "exitSandbox": "allow",
}


@dataclass
class Mode:
    """A named operating mode.

    Built-in modes use ``tool_permissions`` (tools missing from the map are
    denied). Custom modes use allow/deny lists; an empty allow list means
    every tool not denied is allowed.
    """

    id: str
    name: str
    description: str
    system_prompt: str
    is_builtin: bool = True
    tool_permissions: dict[str, ToolPermission] = field(default_factory=dict)
    tool_allow_list: list[str] = field(default_factory=list)
    tool_deny_list: list[str] = field(default_factory=list)
    smart_todo: bool = False
    sandboxed: bool = False

    def allows(self, tool_name: str) -> bool:
        if self.is_builtin:
            return self.tool_permissions.get(tool_name, "deny") == "allow"
        if tool_name in self.tool_deny_list:
            return False
        return not self.tool_allow_list or tool_name in self.tool_allow_list

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Mode":
        """Build a custom mode from project configuration."""
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            description=data.get("description", ""),
            system_prompt=data.get("system_prompt", _BASE_PROMPT),
            is_builtin=False,
            tool_allow_list=list(data.get("allow", [])),
            tool_deny_list=list(data.get("deny", [])),
            smart_todo=bool(data.get("smart_todo", False)),
            sandboxed=bool(data.get("sandboxed", False)),
        )


BUILTIN_MODES: dict[str, Mode] = {
    "sandboxed-smart-todo": Mode(
        id="sandboxed-smart-todo",
        name="Sandboxed Smart To-Do",
        description="Plan, execute and verify inside an isolated sandbox branch",
        system_prompt=_BASE_PROMPT + _SANDBOX_PROMPT + _SMART_TODO_PROMPT,
        tool_permissions=dict(_SANDBOX_TOOLS),
        smart_todo=True,
        sandboxed=True,
    ),
    "smart-todo": Mode(
        id="smart-todo",
        name="Smart To-Do",
        description="Plan, execute and verify directly in the workspace",
        system_prompt=_BASE_PROMPT + _SMART_TODO_PROMPT,
        tool_permissions=dict(_WORK_TOOLS),
        smart_todo=True,
    ),
    "sandbox": Mode(
        id="sandbox",
        name="Sandbox",
        description="Free-form agent with sandbox tools",
        system_prompt=_BASE_PROMPT + _SANDBOX_PROMPT,
        tool_permissions=dict(_SANDBOX_TOOLS),
        sandboxed=True,
    ),
    "agent": Mode(
        id="agent",
        name="Agent",
        description="Full autonomy in the workspace",
        system_prompt=_BASE_PROMPT,
        tool_permissions=dict(_WORK_TOOLS),
    ),
    "ask": Mode(
        id="ask",
        name="Ask",
        description="Read-only questions and answers",
        system_prompt=_ASK_PROMPT,
        tool_permissions={"readFile": "allow", "listFiles": "allow"},
    ),
}


class ModeManager:
    """Tracks the current mode and the planning-mode flag."""

    def __init__(self, mode_id: str = DEFAULT_MODE, custom_modes: Iterable[dict] = ()):
        self._custom: dict[str, Mode] = {}
        for data in custom_modes:
            self.add_custom_mode(Mode.from_dict(data))
        self.planning_mode = False
        self._current_id = DEFAULT_MODE
        self.switch_mode(mode_id)

    @property
    def current_mode(self) -> Mode:
        return self.get_mode(self._current_id) or BUILTIN_MODES[DEFAULT_MODE]

    def get_mode(self, mode_id: str) -> Optional[Mode]:
        return BUILTIN_MODES.get(mode_id) or self._custom.get(mode_id)

    def list_modes(self) -> list[Mode]:
        return list(BUILTIN_MODES.values()) + list(self._custom.values())

    def switch_mode(self, mode_id: str) -> Mode:
        """Switch modes.

        Raises:
            ValueError: If the mode is unknown
        """
        mode = self.get_mode(mode_id)
        if mode is None:
            raise ValueError(
                f"Unknown mode: {mode_id}. "
                f"Available: {', '.join(m.id for m in self.list_modes())}"
            )
        if mode.id != self._current_id:
            logger.info("Switching mode %s -> %s", self._current_id, mode.id)
        self._current_id = mode.id
        return mode

    def add_custom_mode(self, mode: Mode) -> None:
        if mode.id in BUILTIN_MODES:
            raise ValueError(f"Cannot override built-in mode: {mode.id}")
        self._custom[mode.id] = mode

    def is_tool_allowed(self, tool_name: str) -> bool:
        """Mode policy, narrowed to the read-only planning set while planning."""
        if self.planning_mode:
            if tool_name not in PLANNING_MODE_TOOLS:
                return False
            return tool_name in PLANNING_ONLY_TOOLS or self.current_mode.allows(tool_name)
        return self.current_mode.allows(tool_name)

    def filter_tools(self, names: Iterable[str]) -> list[str]:
        return [name for name in names if self.is_tool_allowed(name)]

    def is_smart_todo_mode(self) -> bool:
        return self.current_mode.smart_todo

    def is_sandboxed_smart_todo_mode(self) -> bool:
        mode = self.current_mode
        return mode.smart_todo and mode.sandboxed

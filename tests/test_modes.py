"""Tests for operating modes and tool permissions."""

import pytest

from yoloagent.modes import BUILTIN_MODES, Mode, ModeManager


def test_default_mode():
    manager = ModeManager()

    assert manager.current_mode.id == "sandboxed-smart-todo"
    assert manager.is_smart_todo_mode()
    assert manager.is_sandboxed_smart_todo_mode()


def test_switch_mode():
    manager = ModeManager("agent")

    mode = manager.switch_mode("smart-todo")

    assert mode.id == "smart-todo"
    assert manager.is_smart_todo_mode()
    assert not manager.is_sandboxed_smart_todo_mode()


def test_unknown_mode_rejected():
    manager = ModeManager("agent")

    with pytest.raises(ValueError, match="Unknown mode"):
        manager.switch_mode("turbo")
    assert manager.current_mode.id == "agent"


def test_builtin_permissions():
    manager = ModeManager("agent")

    assert manager.is_tool_allowed("writeFile")
    assert manager.is_tool_allowed("runTerminal")
    assert not manager.is_tool_allowed("createSandbox")
    assert not manager.is_tool_allowed("exitPlanningMode")


def test_ask_mode_is_read_only():
    manager = ModeManager("ask")

    assert manager.filter_tools(["readFile", "writeFile", "listFiles", "runTerminal"]) == [
        "readFile",
        "listFiles",
    ]


def test_sandbox_modes_offer_sandbox_tools():
    for mode_id in ("sandbox", "sandboxed-smart-todo"):
        mode = BUILTIN_MODES[mode_id]
        assert mode.sandboxed
        assert mode.allows("createSandbox")
        assert mode.allows("runSandboxedCommand")


def test_planning_mode_narrows_tools():
    manager = ModeManager("agent")
    manager.planning_mode = True

    allowed = manager.filter_tools(
        ["readFile", "writeFile", "listFiles", "runTerminal", "askQuestion", "exitPlanningMode"]
    )

    assert allowed == ["readFile", "listFiles", "askQuestion", "exitPlanningMode"]


def test_planning_mode_respects_mode_policy():
    manager = ModeManager("ask")
    manager.planning_mode = True

    assert manager.is_tool_allowed("readFile")
    assert not manager.is_tool_allowed("getSandboxStatus")
    assert manager.is_tool_allowed("exitPlanningMode")


def test_custom_mode_allow_and_deny_lists():
    manager = ModeManager(
        "reviewer",
        custom_modes=[
            {"id": "reviewer", "allow": ["readFile", "listFiles", "runTerminal"], "deny": ["runTerminal"]},
        ],
    )

    assert manager.current_mode.name == "reviewer"
    assert not manager.current_mode.is_builtin
    assert manager.is_tool_allowed("readFile")
    assert not manager.is_tool_allowed("runTerminal")
    assert not manager.is_tool_allowed("writeFile")


def test_custom_mode_empty_allow_list_allows_all_but_denied():
    mode = Mode.from_dict({"id": "open", "deny": ["runTerminal"], "smart_todo": True})

    assert mode.allows("writeFile")
    assert mode.allows("createSandbox")
    assert not mode.allows("runTerminal")
    assert mode.smart_todo


def test_custom_mode_cannot_shadow_builtin():
    with pytest.raises(ValueError, match="Cannot override"):
        ModeManager(custom_modes=[{"id": "agent"}])


def test_list_modes_includes_custom():
    manager = ModeManager(custom_modes=[{"id": "docs", "name": "Docs"}])

    ids = [m.id for m in manager.list_modes()]

    assert ids[:5] == ["sandboxed-smart-todo", "smart-todo", "sandbox", "agent", "ask"]
    assert ids[-1] == "docs"

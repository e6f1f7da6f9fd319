"""Tests for the Smart To-Do plan -> execute -> verify flow."""

import asyncio

import pytest
from conftest import cancel_during_call, tool_reply

from yoloagent.errors import ProviderError
from yoloagent.orchestrator import (
    PLAN_RETRY_NOTICE,
    SINGLE_TASK_NOTICE,
    STALLED_NOTICE,
    VERIFICATION_ONLY_NOTICE,
    feature_name_for,
)
from yoloagent.prompts import FORCE_BREAK_NOTICE, GENERATION_STOPPED

TWO_ITEM_PLAN = (
    "```plan\n"
    "TODO 1: Create app — write app.py\n"
    "TODO 2: Add greeting — write greet.py\n"
    "```"
)
ONE_ITEM_PLAN = "```plan\nTODO 1: Create app — write app.py\n```"
ALL_VERIFIED = "TODO 1: DONE | exists\nTODO 2: DONE | exists\nALL TODOS VERIFIED"


@pytest.fixture
def smart_agent(agent):
    agent.switch_mode("smart-todo")
    return agent


def send(agent, text):
    return asyncio.run(agent.send(text))


def streamed(sink):
    return "".join(e.content for e in sink.of_type("streamChunk"))


def plan_of(agent):
    return agent.sessions.get_smart_todo(agent.sessions.active_id)


def write(path, content="x = 1\n"):
    return tool_reply(("writeFile", {"path": path, "content": content}))


def test_feature_name_for():
    assert feature_name_for("Add a login page, please!") == "add-a-login-page"
    assert feature_name_for("???") == "task"


def test_happy_path(smart_agent, sink, fake_provider, test_project):
    fake_provider.script = [
        TWO_ITEM_PLAN,
        write("app.py", "print('app')\n"),
        write("greet.py", "print('hi')\n"),
        "Both files written.",
        ALL_VERIFIED,
    ]

    outcome = send(smart_agent, "Build a tiny app")

    assert outcome == "complete"
    assert (test_project / "app.py").exists()
    assert (test_project / "greet.py").exists()

    plan = plan_of(smart_agent)
    assert [t.status for t in plan.todos] == ["done", "done"]
    assert plan.verify_iterations == 1

    verify_request = fake_provider.requests[-1]
    assert fake_provider.requests[0]["options"].tools == []
    assert verify_request["options"].tools == []
    system = verify_request["messages"][0].content
    assert "--- Files in workspace ---" in system
    assert "--- app.py ---\nprint('app')" in system

    execute_request = fake_provider.requests[1]
    assert "TODO 1: Create app — write app.py [PENDING]" in execute_request["messages"][0].content
    assert "listFiles" not in [t.name for t in execute_request["options"].tools]

    phases = [e.phase for e in sink.of_type("smartTodoUpdate")]
    assert phases[0] == "planning"
    assert "executing" in phases
    assert "verifying" in phases
    assert "All TODOs verified complete after 1 iteration(s)" in streamed(sink)
    assert len(sink.of_type("messageComplete")) == 1
    assert sink.events[-1].type == "messageComplete"

    session = smart_agent.sessions.get_active_session()
    assert session.status == "idle"
    assert session.title == "Build a tiny app"
    visible = [m.content for m in session.history if not m.internal]
    assert visible == ["Build a tiny app"]


def test_clarification_then_resume(smart_agent, sink, fake_provider):
    fake_provider.script = [
        "```questions\n1. Which framework?\n2. Which port?\n```",
        ONE_ITEM_PLAN,
        write("app.py"),
        "done",
        "TODO 1: DONE | ok",
    ]

    assert send(smart_agent, "Build a web server") == "awaiting-clarification"

    plan = plan_of(smart_agent)
    assert plan.phase == "awaiting-clarification"
    assert plan.clarification_questions == "1. Which framework?\n2. Which port?"
    assert len(fake_provider.requests) == 1

    assert send(smart_agent, "Flask on port 5000") == "complete"

    planning_text = fake_provider.requests[1]["messages"][-1].content
    assert planning_text.startswith("Original request: Build a web server")
    assert "User's answers:\nFlask on port 5000" in planning_text
    assert plan_of(smart_agent).clarification_questions is None


def test_resume_requires_pending_questions(smart_agent):
    with pytest.raises(ValueError):
        asyncio.run(
            smart_agent.orchestrator.resume_with_answers(smart_agent.sessions.active_id, "hi")
        )


def test_catch_all_item_when_no_plan(smart_agent, sink, fake_provider):
    fake_provider.script = [
        "Sure, I can do that.",
        "I will get right on it.",
        write("app.py"),
        "done",
        "TODO 1: DONE | ok",
    ]

    outcome = send(smart_agent, "Make it work")

    assert outcome == "complete"
    todos = plan_of(smart_agent).todos
    assert len(todos) == 1
    assert todos[0].title == "Complete user request"
    assert todos[0].detail == "Make it work"
    assert PLAN_RETRY_NOTICE in streamed(sink)
    assert SINGLE_TASK_NOTICE in streamed(sink)
    assert "CRITICAL" in fake_provider.requests[1]["messages"][0].content


def test_max_iterations_is_a_hard_ceiling(smart_agent, sink, fake_provider):
    fake_provider.script = [ONE_ITEM_PLAN]
    for n in range(3):
        fake_provider.script += [write(f"attempt{n}.py"), "tried", "TODO 1: FAILED | broken"]

    outcome = send(smart_agent, "Build the app")

    assert outcome == "max-iterations"
    plan = plan_of(smart_agent)
    assert plan.verify_iterations == plan.max_iterations == 3
    assert plan.todos[0].status == "failed"
    assert len(fake_provider.requests) == 10
    assert "Reached max iterations (3)" in streamed(sink)
    assert "TODO 1: Create app (failed)" in streamed(sink)

    repeat = fake_provider.requests[4]["messages"][-1].content
    assert repeat.startswith("Some TODOs are still incomplete")
    assert "- TODO 1: Create app" in repeat


def test_failed_items_return_to_pending(smart_agent, sink, fake_provider):
    fake_provider.script = [
        TWO_ITEM_PLAN,
        write("app.py"),
        "first pass",
        "TODO 1: DONE | ok\nTODO 2: IN-PROGRESS | half",
        write("greet.py"),
        "second pass",
        ALL_VERIFIED,
    ]

    assert send(smart_agent, "Build it") == "complete"

    executing = [
        [t.status for t in e.todos]
        for e in sink.of_type("smartTodoUpdate")
        if e.phase == "executing" and e.iteration == 1
    ]
    assert executing[-1] == ["done", "pending"]


def test_stalled_execution(smart_agent, sink, fake_provider):
    fake_provider.script = [
        ONE_ITEM_PLAN,
        "I will think about it.",
        "TODO 1: FAILED | nothing there",
        "Still thinking.",
    ]

    outcome = send(smart_agent, "Build the app")

    assert outcome == "stalled"
    assert STALLED_NOTICE in streamed(sink)
    assert plan_of(smart_agent).verify_iterations == 1
    assert len(fake_provider.requests) == 4


def test_remaining_verification_items_complete(smart_agent, sink, fake_provider):
    fake_provider.script = [
        "```plan\nTODO 1: Create app — app.py\nTODO 2: Run the test suite — pytest\n```",
        write("app.py"),
        "written",
        "TODO 1: DONE | ok\nTODO 2: FAILED | not run",
        "Nothing to change.",
        "TODO 1: DONE | ok\nTODO 2: FAILED | not run",
        "Nothing to change.",
    ]

    outcome = send(smart_agent, "Build and test")

    assert outcome == "complete"
    assert [t.status for t in plan_of(smart_agent).todos] == ["done", "done"]
    assert VERIFICATION_ONLY_NOTICE in streamed(sink)


def test_cancel_during_planning(smart_agent, sink, fake_provider):
    fake_provider.script = [cancel_during_call]
    session_id = smart_agent.sessions.active_id

    outcome = send(smart_agent, "Build the app")

    assert outcome == "cancelled"
    assert len(fake_provider.requests) == 1
    assert streamed(sink).endswith(GENERATION_STOPPED)
    assert len(sink.of_type("messageComplete")) == 1
    assert smart_agent.sessions.get_session(session_id).status == "idle"
    assert not smart_agent.engine.is_running(session_id)


def test_cancel_during_execution(smart_agent, sink, fake_provider):
    fake_provider.script = [ONE_ITEM_PLAN, cancel_during_call]

    outcome = send(smart_agent, "Build the app")

    assert outcome == "cancelled"
    assert len(fake_provider.requests) == 2
    assert len(sink.of_type("messageComplete")) == 1
    assert plan_of(smart_agent).verify_iterations == 0


def test_cancel_from_outside(smart_agent, sink, fake_provider):
    fake_provider.script = [
        ONE_ITEM_PLAN,
        tool_reply(("askQuestion", {"question": "Which name?"})),
    ]
    session_id = smart_agent.sessions.active_id

    async def scenario():
        task = asyncio.create_task(smart_agent.send("Build the app"))
        while not smart_agent.ask_question.pending.has_pending(session_id):
            await asyncio.sleep(0.01)
        assert smart_agent.cancel()
        return await task

    assert asyncio.run(scenario()) == "cancelled"
    assert len(fake_provider.requests) == 2


def test_provider_error_ends_flow(smart_agent, sink, fake_provider):
    fake_provider.script = [ProviderError("overloaded")]

    outcome = send(smart_agent, "Build the app")

    assert outcome == "error"
    assert sink.of_type("error")[0].message == "overloaded"
    assert smart_agent.sessions.get_active_session().status == "error"
    assert sink.events[-1].type == "messageComplete"


def test_planning_mode_bypasses_flow(smart_agent, fake_provider):
    smart_agent.set_planning_mode(True)
    fake_provider.script = ["Here is my analysis."]

    assert send(smart_agent, "Look around") == "Here is my analysis."
    assert plan_of(smart_agent) is None


def test_sandboxed_flow_reports_branch_changes(smart_agent, sink, fake_provider, git_repo):
    smart_agent.switch_mode("sandboxed-smart-todo")
    fake_provider.script = [
        "```plan\nTODO 1: Add feature — feature.py\n```",
        write("feature.py", "FEATURE = True\n"),
        "done",
        "TODO 1: DONE | ok",
    ]

    try:
        outcome = send(smart_agent, "Add the feature flag")

        assert outcome == "complete"
        config = smart_agent.sandbox.current
        assert config.branch_name.startswith("sandbox/add-the-feature-flag-")
        assert (config.worktree_path / "feature.py").exists()
        assert not (git_repo / "feature.py").exists()

        assert sink.of_type("sandboxState")[0].active
        result = sink.of_type("sandboxResult")[0]
        assert result.branch_name == config.branch_name
        assert [(f["status"], f["path"]) for f in result.files] == [("A", "feature.py")]
        assert fake_provider.requests[0]["messages"][0].content.startswith(
            "**SANDBOX MODE ACTIVE:**"
        )
    finally:
        if smart_agent.sandbox.is_active:
            asyncio.run(smart_agent.sandbox.discard_sandbox())


def test_nudges_do_not_outlive_the_flow(smart_agent, sink, fake_provider):
    read = tool_reply(("readFile", {"path": "README.md"}))
    fake_provider.script = [
        ONE_ITEM_PLAN,
        read,
        read,
        write("app.py"),
        "done",
        "TODO 1: DONE | ok",
    ]

    assert send(smart_agent, "Build the app") == "complete"
    assert plan_of(smart_agent).cumulative_nudges == 0

    smart_agent.switch_mode("agent")
    for reply in ["ok", "ok again"]:
        fake_provider.script = [read, read, reply]
        assert send(smart_agent, "Look around") == reply
        nudge = fake_provider.requests[-1]["messages"][-1].content
        assert nudge.startswith("[SYSTEM]")
        assert not nudge.startswith("[SYSTEM] Stopping tool loop")

    assert FORCE_BREAK_NOTICE not in streamed(sink)

"""Tests for plan, clarification and verification parsing."""

from yoloagent.sessions import TodoItem
from yoloagent.todo_parser import (
    VerificationResult,
    apply_verification,
    extract_clarification_questions,
    format_plan_text,
    looks_like_verification,
    parse_todos_from_plan,
    parse_verification,
)


def test_parse_plan_block():
    response = "```plan\nTODO 1: Add header — create file\nTODO 2: Add tests — cover header\n```"

    todos = parse_todos_from_plan(response)

    assert [t.id for t in todos] == [1, 2]
    assert todos[0].title == "Add header"
    assert todos[0].detail == "create file"
    assert todos[1].title == "Add tests"
    assert all(t.status == "pending" for t in todos)


def test_plan_block_wins_over_surrounding_text():
    response = (
        "TODO 9: Ignored — outside the block\n"
        "```plan\nTODO 1: Only item - inside\n```\n"
    )

    todos = parse_todos_from_plan(response)

    assert [(t.id, t.title) for t in todos] == [(1, "Only item")]


def test_todo_lines_without_block():
    todos = parse_todos_from_plan("Here you go:\nTODO 1: Create app.py\nTODO 2: Run it")

    assert [t.title for t in todos] == ["Create app.py", "Run it"]
    assert todos[0].detail is None


def test_duplicate_ids_are_dropped():
    todos = parse_todos_from_plan("TODO 1: First\nTODO 1: Again\nTODO 2: Second")

    assert [t.id for t in todos] == [1, 2]
    assert todos[0].title == "First"


def test_numbered_list_fallback():
    response = "1. Create the server module\n2. **Add routes** - wire endpoints\n3) Write tests"

    todos = parse_todos_from_plan(response)

    assert [t.id for t in todos] == [1, 2, 3]
    assert todos[1].title == "Add routes"
    assert todos[1].detail == "wire endpoints"


def test_bullet_list_fallback_skips_short_items():
    response = "- Create index.html\n- ok\n* Style the page with CSS"

    todos = parse_todos_from_plan(response)

    assert [t.title for t in todos] == ["Create index.html", "Style the page with CSS"]
    assert [t.id for t in todos] == [1, 2]


def test_structured_plan_with_steps_and_verification():
    response = (
        "## Goal\nAdd a greeting endpoint\n\n"
        "## Steps\n1. Add the route handler\n2. Register the route\n\n"
        "## Verification\nCall /greet and check the response\n"
    )

    todos = parse_todos_from_plan(response)

    assert [t.title for t in todos] == [
        "Add the route handler",
        "Register the route",
        "Verify implementation",
    ]
    assert todos[-1].id == 3
    assert todos[-1].detail == "Call /greet and check the response"


def test_structured_plan_with_file_groups():
    response = (
        "## Steps\n"
        "- **File**: `src/app.py`\n"
        "  - **Change**:\n"
        "    1. Add a greet() function\n"
        "    2. Export it\n"
        "- **File**: `tests/test_app.py`\n"
        "  - **Change**: add a test for greet\n"
    )

    todos = parse_todos_from_plan(response)

    assert len(todos) == 2
    assert todos[0].title == "Add a greet() function (+1 more change) (src/app.py)"
    assert todos[1].title.endswith("(tests/test_app.py)")


def test_structured_plan_goal_only():
    todos = parse_todos_from_plan("## Goal\nMake the build green\n")

    assert len(todos) == 1
    assert todos[0].title == "Make the build green"


def test_titles_are_capped():
    todos = parse_todos_from_plan("1. " + "word " * 40)

    assert len(todos[0].title) <= 80


def test_nothing_to_parse():
    assert parse_todos_from_plan("Sure, I can help with that.") == []


def test_questions_block():
    response = "```questions\n1. Which framework?\n2. Which port?\n```"

    assert extract_clarification_questions(response) == "1. Which framework?\n2. Which port?"


def test_questions_block_is_not_a_plan():
    assert parse_todos_from_plan("```questions\n1. Which framework?\n2. Which port?\n```") == []


def test_question_lines_without_block():
    response = "Before I start:\nWhich database should I use?\nShould auth be included?"

    questions = extract_clarification_questions(response)

    assert questions == "Which database should I use?\nShould auth be included?"


def test_single_question_is_not_clarification():
    assert extract_clarification_questions("Is this fine?") is None


def test_plan_block_suppresses_question_lines():
    response = "```plan\nTODO 1: Build it\n```\nWhy?\nHow?"

    assert extract_clarification_questions(response) is None


def test_parse_verification_block():
    response = (
        "```verification\n"
        "TODO 1: DONE | file exists\n"
        "TODO 2: FAILED | missing test\n"
        "TODO 3: IN-PROGRESS | half done\n"
        "```"
    )

    result = parse_verification(response)

    assert result.updates == {1: "done", 2: "failed", 3: "in-progress"}
    assert not result.all_verified


def test_all_verified_marker_completes_everything():
    todos = [TodoItem(id=1, title="a"), TodoItem(id=2, title="b"), TodoItem(id=3, title="c")]

    result = parse_verification("TODO 1: DONE | looks good\nALL TODOS VERIFIED")
    apply_verification(todos, result)

    assert result.all_verified
    assert all(t.status == "done" for t in todos)


def test_verification_can_regress_done_item():
    todos = [TodoItem(id=1, title="a", status="done"), TodoItem(id=2, title="b")]

    apply_verification(todos, VerificationResult(updates={1: "failed", 7: "done"}))

    assert todos[0].status == "failed"
    assert todos[1].status == "pending"


def test_format_plan_text():
    todos = [
        TodoItem(id=1, title="Create app", detail="app.py", status="done"),
        TodoItem(id=2, title="Test app"),
    ]

    assert format_plan_text(todos) == (
        "TODO 1: Create app — app.py [DONE]\nTODO 2: Test app [PENDING]"
    )
    assert format_plan_text([]) == "(No structured plan available)"


def test_looks_like_verification():
    assert looks_like_verification(TodoItem(id=1, title="Run the test suite"))
    assert looks_like_verification(TodoItem(id=2, title="Final check", detail=None))
    assert not looks_like_verification(TodoItem(id=3, title="Create index.html"))

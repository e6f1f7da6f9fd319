"""Parsing of plan, clarification and verification replies."""

import re
from dataclasses import dataclass, field
from typing import Optional

from yoloagent.sessions import TodoItem, TodoStatus

PLAN_BLOCK = re.compile(r"```plan\s*\n(.*?)```", re.DOTALL)
QUESTIONS_BLOCK = re.compile(r"```questions\s*\n(.*?)```", re.DOTALL)
VERIFICATION_BLOCK = re.compile(r"```verification\s*\n(.*?)```", re.DOTALL)

TODO_LINE = re.compile(r"TODO\s*(\d+)\s*:\s*(.+)", re.IGNORECASE)
TITLE_SEPARATOR = re.compile(r"\s[—\-–]\s")
LIST_SEPARATOR = re.compile(r"\s[—\-–:]\s")
LEADING_SEPARATOR = re.compile(r"^[\s—\-–:]+")

STRUCTURED_HEADER = re.compile(r"^##\s*(Goal|Steps|Verification)", re.IGNORECASE | re.MULTILINE)
STEPS_SECTION = re.compile(r"##\s*Steps\s*\n(.*?)(?=\n##|\Z)", re.DOTALL)
GOAL_LINE = re.compile(r"##\s*Goal\s*\n+(.+)", re.IGNORECASE)
VERIFICATION_SECTION = re.compile(r"##\s*Verification\s*\n+(.*?)(?=\n##|\Z)", re.DOTALL)
FILE_GROUP_START = re.compile(r"(?=^\s*-\s*(?:\*\*)?File(?:\*\*)?:\s)", re.MULTILINE)
FILE_GROUP_HEAD = re.compile(r"^\s*-\s*(?:\*\*)?File(?:\*\*)?:", re.MULTILINE)
FILE_PATH = re.compile(r"(?:\*\*)?File(?:\*\*)?:\s*`?([^`\n]+)`?", re.IGNORECASE)
FILE_CHANGE = re.compile(
    r"(?:\*\*)?Change(?:\*\*)?:\s*\n?(.*?)(?=\n\s*-\s*(?:(?:\*\*)?(?:File|Why|Reason)(?:\*\*)?:)|\Z)",
    re.IGNORECASE | re.DOTALL,
)
SUB_STEP = re.compile(r"^\d+[.)]\s")

NUMBERED_STEP = re.compile(r"^\s*(\d+)[.)\]]\s+(.+)", re.MULTILINE)
NUMBERED_ITEM = re.compile(r"^\s*(?:\*\*)?\s*(\d+)[.)\]]\s*(.+)", re.MULTILINE)
BULLET_ITEM = re.compile(r"^\s*[-*]\s+(.+)", re.MULTILINE)

VERIFY_LINE = re.compile(
    r"TODO\s*(\d+)\s*:\s*(DONE|FAILED|IN-PROGRESS|IN_PROGRESS)\s*\|?\s*(.*)", re.IGNORECASE
)
ALL_VERIFIED = re.compile(r"ALL\s+TODOS?\s+VERIFIED", re.IGNORECASE)

VERIFICATION_LIKE = re.compile(
    r"verif|test|confirm|check|run.*server|start.*server|open.*browser", re.IGNORECASE
)

TITLE_LIMIT = 80
MIN_ITEM_LENGTH = 5


def _split_title(text: str, separator: re.Pattern) -> tuple[str, Optional[str]]:
    match = separator.search(text)
    if match is None:
        return text, None
    title = text[: match.start()].strip()
    detail = LEADING_SEPARATOR.sub("", text[match.start():]).strip()
    return title, detail or None


def _unique(todos: list[TodoItem]) -> list[TodoItem]:
    seen = set()
    unique = []
    for todo in todos:
        if todo.id not in seen:
            seen.add(todo.id)
            unique.append(todo)
    return unique


def _parse_todo_lines(text: str) -> list[TodoItem]:
    todos = []
    for match in TODO_LINE.finditer(text):
        title, detail = _split_title(match.group(2).strip(), TITLE_SEPARATOR)
        todos.append(TodoItem(id=int(match.group(1)), title=title, detail=detail))
    return todos


def _summarize_change(group: str) -> str:
    change = FILE_CHANGE.search(group)
    if not change:
        return ""
    lines = [line.strip() for line in change.group(1).split("\n") if len(line.strip()) > 3]
    steps = [line for line in lines if SUB_STEP.match(line)]
    if steps:
        summary = re.sub(r"^\d+[.)]\s*", "", steps[0]).replace("**", "").strip()
        if len(steps) > 1:
            more = len(steps) - 1
            summary += f" (+{more} more change{'s' if more > 1 else ''})"
        return summary
    if lines:
        return re.sub(r"^[-*]\s*", "", lines[0]).replace("**", "").strip()
    return ""


def _parse_list_items(text: str, pattern: re.Pattern, group: int) -> list[TodoItem]:
    todos = []
    for match in pattern.finditer(text):
        full = match.group(group).replace("**", "").strip()
        if len(full) < MIN_ITEM_LENGTH:
            continue
        todos.append(TodoItem(id=len(todos) + 1, title=full[:TITLE_LIMIT], detail=full))
    return todos


def _parse_structured(text: str) -> list[TodoItem]:
    """Markdown plans with ``## Goal`` / ``## Steps`` / ``## Verification``."""
    todos: list[TodoItem] = []
    steps = STEPS_SECTION.search(text)
    if steps:
        steps_text = steps.group(1)
        groups = [g for g in FILE_GROUP_START.split(steps_text) if g.strip()]
        if groups and FILE_GROUP_HEAD.search(groups[0]):
            for index, group in enumerate(groups, start=1):
                path_match = FILE_PATH.search(group)
                path = path_match.group(1).strip() if path_match else ""
                change = _summarize_change(group)
                if path:
                    title = f"{change[:50] if change else 'Update'} ({path})"
                else:
                    first_line = re.sub(r"^[-*]\s*", "", group.strip().split("\n")[0]).strip()
                    title = change or first_line
                todos.append(
                    TodoItem(id=index, title=title[:TITLE_LIMIT], detail=group.strip())
                )
        else:
            todos = _parse_list_items(steps_text, NUMBERED_STEP, 2)
            if not todos:
                todos = _parse_list_items(steps_text, BULLET_ITEM, 1)

    if not todos:
        goal = GOAL_LINE.search(text)
        if goal:
            todos.append(
                TodoItem(id=1, title=goal.group(1).strip()[:TITLE_LIMIT], detail=text.strip())
            )

    if todos:
        verification = VERIFICATION_SECTION.search(text)
        if verification:
            todos.append(
                TodoItem(
                    id=max(t.id for t in todos) + 1,
                    title="Verify implementation",
                    detail=verification.group(1).strip(),
                )
            )
    return todos


def parse_todos_from_plan(response: str) -> list[TodoItem]:
    """Extract TODO items from a planning reply.

    Strategies, in order: ``TODO n: title — detail`` lines (inside a
    fenced ``plan`` block when present), a structured markdown plan,
    a numbered list, then a bullet list.

    Args:
        response: Raw model reply

    Returns:
        Parsed items, all pending; empty when nothing matched
    """
    block = PLAN_BLOCK.search(response)
    # Numbered clarification questions are not plan items
    text = block.group(1) if block else QUESTIONS_BLOCK.sub("", response)

    todos = _parse_todo_lines(text)
    if todos:
        return _unique(todos)

    if STRUCTURED_HEADER.search(text):
        todos = _parse_structured(text)
        if todos:
            return _unique(todos)

    for match in NUMBERED_ITEM.finditer(text):
        title, detail = _split_title(match.group(2).replace("**", "").strip(), LIST_SEPARATOR)
        todos.append(TodoItem(id=int(match.group(1)), title=title[:TITLE_LIMIT], detail=detail))
    if todos:
        return _unique(todos)

    for match in BULLET_ITEM.finditer(text):
        full = match.group(1).replace("**", "").strip()
        if len(full) < MIN_ITEM_LENGTH:
            continue
        title, detail = _split_title(full, LIST_SEPARATOR)
        todos.append(TodoItem(id=len(todos) + 1, title=title[:TITLE_LIMIT], detail=detail))
    return todos


def extract_clarification_questions(response: str) -> Optional[str]:
    """Questions asked instead of a plan, or None."""
    block = QUESTIONS_BLOCK.search(response)
    if block:
        return block.group(1).strip()

    if re.search(r"```plan\s*\n", response):
        return None

    questions = [line.strip() for line in response.split("\n") if line.strip().endswith("?")]
    if len(questions) >= 2:
        return "\n".join(questions)
    return None


@dataclass
class VerificationResult:
    """Statuses reported by one verification reply."""

    updates: dict[int, TodoStatus] = field(default_factory=dict)
    all_verified: bool = False


def parse_verification(response: str) -> VerificationResult:
    """Parse ``TODO n: DONE|FAILED|IN-PROGRESS | reason`` lines.

    Args:
        response: Raw model reply

    Returns:
        VerificationResult with per-id statuses and the all-verified marker
    """
    block = VERIFICATION_BLOCK.search(response)
    text = block.group(1) if block else response

    result = VerificationResult()
    for match in VERIFY_LINE.finditer(text):
        raw = match.group(2).upper().replace("-", "_")
        if raw == "DONE":
            status = "done"
        elif raw == "FAILED":
            status = "failed"
        else:
            status = "in-progress"
        result.updates[int(match.group(1))] = status

    result.all_verified = bool(ALL_VERIFIED.search(response))
    return result


def apply_verification(todos: list[TodoItem], result: VerificationResult) -> None:
    """Update items in place; the all-verified marker completes every item."""
    for todo in todos:
        if todo.id in result.updates:
            todo.status = result.updates[todo.id]
        if result.all_verified:
            todo.status = "done"


def format_plan_text(todos: list[TodoItem]) -> str:
    if not todos:
        return "(No structured plan available)"
    return "\n".join(
        f"TODO {t.id}: {t.title}{' — ' + t.detail if t.detail else ''} [{t.status.upper()}]"
        for t in todos
    )


def looks_like_verification(todo: TodoItem) -> bool:
    """True for items that check work rather than produce files."""
    return bool(VERIFICATION_LIKE.search(f"{todo.title} {todo.detail or ''}"))

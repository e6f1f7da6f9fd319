"""Detection of unproductive tool-call loops."""

import json
from dataclasses import dataclass, field
from typing import Any, Iterable

from yoloagent.constants import (
    DEFAULT_ERROR_NUDGE_THRESHOLD,
    FORCE_BREAK_NUDGES,
    NON_PRODUCTIVE_STREAK_LIMIT,
    READ_ONLY_TOOLS,
)


def call_signature(name: str, arguments: dict[str, Any]) -> str:
    """Deterministic signature of one call: name plus canonical JSON args."""
    return f"{name}:{json.dumps(arguments, sort_keys=True, default=str)}"


@dataclass
class ToolCallRound:
    """The tool calls from one model reply."""

    tool_names: list[str]
    signature: str
    errors: list[bool]

    @classmethod
    def from_calls(
        cls, calls: Iterable[tuple[str, dict[str, Any]]], errors: Iterable[bool]
    ) -> "ToolCallRound":
        calls = list(calls)
        return cls(
            tool_names=[name for name, _ in calls],
            signature="|".join(call_signature(name, args) for name, args in calls),
            errors=list(errors),
        )


@dataclass
class LoopCheck:
    """Verdict for the round just recorded."""

    should_nudge: bool
    should_force_break: bool
    identical_consecutive: bool = False
    repeated_error_tools: list[str] = field(default_factory=list)


class LoopDetector:
    """Watches consecutive rounds for repetition, spinning and failing tools.

    Pure state machine; no I/O. ``reset()`` after sending a nudge keeps the
    nudge counter, ``reset_all()`` at the start of a new request clears it.
    """

    def __init__(
        self,
        initial_nudges: int = 0,
        error_threshold: int = DEFAULT_ERROR_NUDGE_THRESHOLD,
    ):
        """Initialize detector.

        Args:
            initial_nudges: Nudges already sent for this request
            error_threshold: Errors per tool that trigger a nudge
        """
        self.nudges_sent = initial_nudges
        self.error_threshold = error_threshold
        self.signatures: list[str] = []
        self.non_productive_streak = 0
        self.tool_errors: dict[str, int] = {}

    def record_round(self, round_: ToolCallRound, planning_mode: bool = False) -> LoopCheck:
        """Record a round and decide whether to intervene.

        Args:
            round_: Tool calls of the latest reply
            planning_mode: Read-only calls are expected and never count as
                non-productive

        Returns:
            LoopCheck verdict
        """
        self.signatures.append(round_.signature)

        for name, errored in zip(round_.tool_names, round_.errors):
            if errored:
                self.tool_errors[name] = self.tool_errors.get(name, 0) + 1

        non_productive = not planning_mode and all(
            name in READ_ONLY_TOOLS or errored
            for name, errored in zip(round_.tool_names, round_.errors)
        )
        if non_productive:
            self.non_productive_streak += 1
        else:
            self.non_productive_streak = 0

        identical = len(self.signatures) >= 2 and self.signatures[-1] == self.signatures[-2]

        repeated_error_tools = [
            name for name, count in self.tool_errors.items() if count >= self.error_threshold
        ]

        should_nudge = (
            identical
            or self.non_productive_streak >= NON_PRODUCTIVE_STREAK_LIMIT
            or bool(repeated_error_tools)
        )

        should_force_break = False
        if should_nudge:
            self.nudges_sent += 1
            should_force_break = self.nudges_sent >= FORCE_BREAK_NUDGES

        return LoopCheck(
            should_nudge=should_nudge,
            should_force_break=should_force_break,
            identical_consecutive=identical,
            repeated_error_tools=repeated_error_tools,
        )

    def reset(self) -> None:
        """Clear round history; the nudge counter survives."""
        self.signatures.clear()
        self.non_productive_streak = 0
        self.tool_errors.clear()

    def reset_all(self) -> None:
        """Clear everything including the nudge counter."""
        self.reset()
        self.nudges_sent = 0

    @property
    def nudge_count(self) -> int:
        return self.nudges_sent

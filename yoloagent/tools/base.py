"""Tool interface, registry and generic parameter validation."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

JSON_TYPE_NAMES = {
    bool: "boolean",
    int: "integer",
    float: "number",
    str: "string",
    list: "array",
    dict: "object",
    type(None): "null",
}


@dataclass
class ToolDefinition:
    """Name, description and JSON-schema parameters advertised to the model."""

    name: str
    description: str
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )


@dataclass
class ToolResult:
    """Result of executing a tool."""

    content: str
    is_error: bool = False


@dataclass
class ToolContext:
    """Per-call context handed to tools by the round engine.

    Attributes:
        session_id: Session the call belongs to
        tool_call_id: Id of the model's tool call
        cancel: Cancellation token of the running round
        on_output: Receives streamed command output
    """

    session_id: Optional[str] = None
    tool_call_id: Optional[str] = None
    cancel: Optional[Any] = None
    on_output: Optional[Callable[[str], None]] = None


class Tool(ABC):
    """A capability the model can call by name."""

    definition: ToolDefinition

    @property
    def name(self) -> str:
        return self.definition.name

    @abstractmethod
    async def execute(
        self, args: dict[str, Any], context: Optional[ToolContext] = None
    ) -> ToolResult:
        """Run the tool. Failures should come back as is_error results."""


def json_type_name(value: Any) -> str:
    return JSON_TYPE_NAMES.get(type(value), type(value).__name__)


def matches_json_type(value: Any, expected: str) -> bool:
    if expected == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if expected == "integer":
        return isinstance(value, int) and not isinstance(value, bool)
    if expected == "boolean":
        return isinstance(value, bool)
    if expected == "string":
        return isinstance(value, str)
    if expected == "array":
        return isinstance(value, list)
    if expected == "object":
        return isinstance(value, dict)
    return True


def validate_tool_params(definition: ToolDefinition, args: dict[str, Any]) -> Optional[str]:
    """Check required parameters are present and of the declared type.

    Args:
        definition: Tool definition carrying the JSON schema
        args: Arguments supplied by the model

    Returns:
        Error message for the model, or None if valid
    """
    schema = definition.parameters or {}
    required = schema.get("required", [])
    properties = schema.get("properties", {})

    missing = []
    wrong_type = []
    for param in required:
        value = args.get(param)
        if value is None:
            missing.append(param)
            continue
        expected = properties.get(param, {}).get("type")
        if expected and not matches_json_type(value, expected):
            wrong_type.append(f"{param} (expected {expected}, got {json_type_name(value)})")

    parts = []
    if missing:
        parts.append(f"Missing required parameters: {', '.join(missing)}")
    if wrong_type:
        parts.append(f"Wrong parameter types: {', '.join(wrong_type)}")
    return ". ".join(parts) if parts else None


class ToolRegistry:
    """Maps tool names to tools; dispatch is by name."""

    def __init__(self, tools: Iterable[Tool] = ()):
        self._tools: dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        self._tools[tool.name] = tool

    def get(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def definitions(self, names: Optional[Iterable[str]] = None) -> list[ToolDefinition]:
        """Definitions for the given names (all tools when None), in registry order."""
        if names is None:
            return [tool.definition for tool in self._tools.values()]
        wanted = set(names)
        return [tool.definition for name, tool in self._tools.items() if name in wanted]

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

"""Sandbox-aware file tools: readFile, writeFile, listFiles."""

import logging
from pathlib import Path
from typing import Any, Optional

import pathspec

from yoloagent.sandbox.manager import SandboxManager, to_relative_path
from yoloagent.tools.base import Tool, ToolContext, ToolDefinition, ToolResult
from yoloagent.utils.ignore import IgnoreRules

logger = logging.getLogger(__name__)

MAX_READ_BYTES = 8 * 1024 * 1024
MAX_LIST_RESULTS = 500


class _WorkspaceTool(Tool):
    """Shared path handling: the worktree while a sandbox is active."""

    def __init__(self, sandbox: SandboxManager):
        self.sandbox = sandbox

    def _resolve(self, path: str) -> Path:
        return self.sandbox.resolve_path(path)

    def _in_sandbox(self) -> str:
        return " in sandbox" if self.sandbox.is_active else ""


class ReadFileTool(_WorkspaceTool):
    definition = ToolDefinition(
        name="readFile",
        description=(
            "Read the contents of a file, optionally limited to a line range.\n\n"
            "Always read a file before modifying it with writeFile. Use startLine/endLine "
            "for large files. Prefer this tool over runTerminal with cat/head/tail."
        ),
        parameters={
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Relative path to the file from the workspace root",
                },
                "startLine": {"type": "number", "description": "Optional start line (1-indexed)"},
                "endLine": {
                    "type": "number",
                    "description": "Optional end line (1-indexed, inclusive)",
                },
            },
            "required": ["path"],
        },
    )

    async def execute(
        self, args: dict[str, Any], context: Optional[ToolContext] = None
    ) -> ToolResult:
        path = args["path"]
        start_line = args.get("startLine")
        end_line = args.get("endLine")
        file_path = self._resolve(path)

        try:
            if file_path.stat().st_size > MAX_READ_BYTES:
                return ToolResult(
                    f"Failed to read file \"{path}\"{self._in_sandbox()}: file too large "
                    f"(max: {MAX_READ_BYTES // (1024 * 1024)} MB)",
                    is_error=True,
                )
            with open(file_path, "r", encoding="utf-8") as f:
                text = f.read()
        except UnicodeDecodeError:
            return ToolResult(f"Failed to read file \"{path}\": not valid UTF-8 text", is_error=True)
        except OSError as e:
            return ToolResult(
                f"Failed to read file \"{path}\"{self._in_sandbox()}: {e.strerror or e}",
                is_error=True,
            )

        if start_line is not None or end_line is not None:
            lines = text.split("\n")
            start = int(start_line or 1) - 1
            end = int(end_line) if end_line is not None else len(lines)
            text = "\n".join(lines[max(start, 0):end])

        return ToolResult(text)


class WriteFileTool(_WorkspaceTool):
    definition = ToolDefinition(
        name="writeFile",
        description=(
            "Create or overwrite a file with the given content.\n\n"
            "- Read the file with readFile first so existing content is not lost.\n"
            "- Prefer editing existing files over creating new ones.\n"
            "- Do not create documentation files unless explicitly requested.\n"
            "- Use this instead of runTerminal with echo/cat redirects.\n"
            "- Parent directories are created automatically."
        ),
        parameters={
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Relative path to the file from the workspace root",
                },
                "content": {"type": "string", "description": "The content to write to the file"},
            },
            "required": ["path", "content"],
        },
    )

    async def execute(
        self, args: dict[str, Any], context: Optional[ToolContext] = None
    ) -> ToolResult:
        path = args["path"]
        content = args["content"]

        config = self.sandbox.current
        if config:
            allowed, reason = self.sandbox.is_file_path_allowed(path)
            if not allowed:
                return ToolResult(f"File write blocked: {reason}", is_error=True)
        elif not self._resolve(path).resolve().is_relative_to(self.sandbox.workspace):
            return ToolResult(
                "File write blocked: Cannot write files outside the workspace", is_error=True
            )

        file_path = self._resolve(path)
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(file_path, "w", encoding="utf-8") as f:
                f.write(content)
        except OSError as e:
            return ToolResult(
                f"Failed to write file \"{path}\"{self._in_sandbox()}: {e.strerror or e}",
                is_error=True,
            )

        logger.debug("Wrote %d chars to %s", len(content), file_path)
        if config:
            return ToolResult(f"File written: {path} (in sandbox branch: {config.branch_name})")
        return ToolResult(f"File written: {path}")


class ListFilesTool(_WorkspaceTool):
    definition = ToolDefinition(
        name="listFiles",
        description=(
            "List files in the workspace matching a glob pattern.\n\n"
            "Use this instead of runTerminal with find or ls. Common patterns: "
            "\"**/*.py\" (all Python files), \"src/**\" (everything in src), "
            "\"*.json\" (root JSON files). Use exclude to filter out irrelevant results."
        ),
        parameters={
            "type": "object",
            "properties": {
                "pattern": {
                    "type": "string",
                    "description": "Glob pattern to match files (e.g., \"**/*.py\", \"src/**\")",
                },
                "exclude": {
                    "type": "string",
                    "description": "Optional glob pattern to exclude files",
                },
            },
            "required": ["pattern"],
        },
    )

    async def execute(
        self, args: dict[str, Any], context: Optional[ToolContext] = None
    ) -> ToolResult:
        root = self.sandbox.get_current_workspace()
        config = self.sandbox.current
        pattern = args["pattern"]
        if config:
            pattern = to_relative_path(pattern, config.original_path)

        try:
            matches = list_workspace_files(root, pattern, args.get("exclude"))
        except (OSError, ValueError) as e:
            return ToolResult(f"Failed to list files{self._in_sandbox()}: {e}", is_error=True)

        if not matches:
            return ToolResult("No files found matching the pattern.")
        return ToolResult("\n".join(matches))


def list_workspace_files(
    root: Path, pattern: str, exclude: Optional[str] = None, limit: int = MAX_LIST_RESULTS
) -> list[str]:
    """Files under root matching a gitwildmatch pattern, minus ignored paths.

    Args:
        root: Directory to walk
        pattern: Glob pattern relative to root
        exclude: Optional glob of paths to drop
        limit: Maximum number of results

    Returns:
        Sorted relative POSIX paths
    """
    ignore_rules = IgnoreRules(root)
    include = pathspec.PathSpec.from_lines("gitwildmatch", [pattern])
    excluded = pathspec.PathSpec.from_lines("gitwildmatch", [exclude]) if exclude else None

    matches = []
    for path in root.rglob("*"):
        if not path.is_file() or ignore_rules.should_ignore(path):
            continue
        relative = path.relative_to(root).as_posix()
        if not include.match_file(relative):
            continue
        if excluded is not None and excluded.match_file(relative):
            continue
        matches.append(relative)

    matches.sort()
    return matches[:limit]

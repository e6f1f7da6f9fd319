"""Run transcript logging under .yolo/runs."""

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from yoloagent.llm import ChatMessage


class SessionLogger:
    """Writes the transcript, plan, command results and diffs of one run."""

    def __init__(self, project_root: Path, run_id: Optional[str] = None):
        """Initialize session logger.

        Args:
            project_root: Project root directory
            run_id: Optional run ID (generated if not provided)
        """
        self.project_root = Path(project_root)
        self.run_id = run_id or datetime.now().strftime("%Y%m%d_%H%M%S")

        self.log_dir = self.project_root / ".yolo" / "runs" / self.run_id
        self.log_dir.mkdir(parents=True, exist_ok=True)

        self.transcript_path = self.log_dir / "transcript.ndjson"
        self.plan_path = self.log_dir / "plan.json"
        self.diffs_dir = self.log_dir / "diffs"
        self.exec_dir = self.log_dir / "exec"

        self.diffs_dir.mkdir(exist_ok=True)
        self.exec_dir.mkdir(exist_ok=True)

    def log_message(self, session_id: str, message: ChatMessage) -> None:
        """Append one conversation message to the transcript."""
        entry: dict[str, Any] = {
            "ts": datetime.now().isoformat(),
            "session": session_id,
            "role": message.role,
            "content": message.content,
        }
        if message.tool_calls:
            entry["tool_calls"] = [
                {"id": c.id, "name": c.name, "arguments": c.arguments} for c in message.tool_calls
            ]
        if message.tool_results:
            entry["tool_results"] = [
                {"id": r.tool_call_id, "content": r.content, "is_error": r.is_error}
                for r in message.tool_results
            ]
        if message.internal:
            entry["internal"] = True

        with open(self.transcript_path, "a") as f:
            f.write(json.dumps(entry, default=str) + "\n")

    def save_plan(self, plan: dict) -> None:
        with open(self.plan_path, "w") as f:
            json.dump(plan, f, indent=2)

    def save_diff(self, filename: str, diff_content: str) -> None:
        diff_path = self.diffs_dir / f"{filename}.diff"
        with open(diff_path, "w") as f:
            f.write(diff_content)

    def save_exec_result(self, command: str, result: dict) -> None:
        """Save a command result.

        Args:
            command: Command that was executed
            result: Result fields (exit code, flags, output)
        """
        safe_cmd = "".join(c if c.isalnum() else "_" for c in command[:50])
        timestamp = datetime.now().strftime("%H%M%S%f")
        exec_path = self.exec_dir / f"{timestamp}_{safe_cmd}.json"
        with open(exec_path, "w") as f:
            json.dump(
                {
                    "command": command,
                    "timestamp": datetime.now().isoformat(),
                    **result,
                },
                f,
                indent=2,
                default=str,
            )

    def get_log_path(self) -> str:
        return str(self.log_dir.absolute())

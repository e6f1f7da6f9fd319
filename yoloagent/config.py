"""Configuration loading and management."""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv

from yoloagent.constants import (
    DEFAULT_ERROR_NUDGE_THRESHOLD,
    DEFAULT_EXEC_TIMEOUT,
    DEFAULT_KILL_GRACE,
    DEFAULT_MAX_TOKENS,
    DEFAULT_MAX_VERIFY_ITERATIONS,
    DEFAULT_MODE,
    DEFAULT_MODEL,
    DEFAULT_STALL_TIMEOUT,
    DEFAULT_TEMPERATURE,
    MAX_TOOL_ITERATIONS,
    SUPPORTED_MODELS,
)

BUILTIN_MODE_IDS = ("sandboxed-smart-todo", "smart-todo", "sandbox", "agent", "ask")


@dataclass
class Config:
    """YOLO Agent configuration.

    Loads from .env / environment and optionally .yolo/config.json
    """

    # API key
    anthropic_api_key: Optional[str] = None

    # Model settings
    default_model: str = DEFAULT_MODEL
    max_tokens: int = DEFAULT_MAX_TOKENS
    temperature: float = DEFAULT_TEMPERATURE

    # Command execution
    exec_timeout: float = DEFAULT_EXEC_TIMEOUT
    stall_timeout: float = DEFAULT_STALL_TIMEOUT
    kill_grace: float = DEFAULT_KILL_GRACE

    # Agent loop
    max_iterations: int = DEFAULT_MAX_VERIFY_ITERATIONS
    max_tool_iterations: int = MAX_TOOL_ITERATIONS
    error_nudge_threshold: int = DEFAULT_ERROR_NUDGE_THRESHOLD
    default_mode: str = DEFAULT_MODE

    log_level: str = "WARNING"

    # Custom modes (from .yolo/config.json)
    custom_modes: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def load(cls, project_root: Optional[Path] = None) -> "Config":
        """Load configuration from environment and project-specific config.

        Args:
            project_root: Project root directory (for .yolo/config.json)

        Returns:
            Config instance
        """
        load_dotenv()

        config = cls(
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY"),
            default_model=os.getenv("YOLO_DEFAULT_MODEL", DEFAULT_MODEL),
            max_tokens=int(os.getenv("YOLO_MAX_TOKENS", DEFAULT_MAX_TOKENS)),
            temperature=float(os.getenv("YOLO_TEMPERATURE", DEFAULT_TEMPERATURE)),
            exec_timeout=float(os.getenv("YOLO_EXEC_TIMEOUT", DEFAULT_EXEC_TIMEOUT)),
            stall_timeout=float(os.getenv("YOLO_STALL_TIMEOUT", DEFAULT_STALL_TIMEOUT)),
            kill_grace=float(os.getenv("YOLO_KILL_GRACE", DEFAULT_KILL_GRACE)),
            max_iterations=int(os.getenv("YOLO_MAX_ITERATIONS", DEFAULT_MAX_VERIFY_ITERATIONS)),
            max_tool_iterations=int(os.getenv("YOLO_MAX_TOOL_ITERATIONS", MAX_TOOL_ITERATIONS)),
            error_nudge_threshold=int(
                os.getenv("YOLO_ERROR_NUDGE_THRESHOLD", DEFAULT_ERROR_NUDGE_THRESHOLD)
            ),
            default_mode=os.getenv("YOLO_MODE", DEFAULT_MODE),
            log_level=os.getenv("YOLO_LOG_LEVEL", "WARNING").upper(),
        )

        if project_root:
            project_config_path = project_root / ".yolo" / "config.json"
            if project_config_path.exists():
                try:
                    with open(project_config_path) as f:
                        project_config = json.load(f)
                except (json.JSONDecodeError, IOError):
                    project_config = {}  # Ignore invalid config

                config.default_mode = project_config.get("mode", config.default_mode)
                config.max_iterations = int(
                    project_config.get("max_iterations", config.max_iterations)
                )
                config.custom_modes = list(project_config.get("custom_modes", []))

        return config

    def validate(self) -> list[str]:
        """Validate configuration and return list of errors.

        Returns:
            List of error messages (empty if valid)
        """
        errors = []

        if not self.anthropic_api_key:
            errors.append("No API key found. Set ANTHROPIC_API_KEY")

        if self.default_model not in SUPPORTED_MODELS:
            errors.append(f"Unsupported model: {self.default_model}")

        if self.exec_timeout <= 0:
            errors.append("exec_timeout must be positive")

        if self.stall_timeout <= 0:
            errors.append("stall_timeout must be positive")

        if self.max_iterations <= 0:
            errors.append("max_iterations must be positive")

        if self.max_tool_iterations <= 0:
            errors.append("max_tool_iterations must be positive")

        if self.error_nudge_threshold <= 0:
            errors.append("error_nudge_threshold must be positive")

        custom_ids = {m.get("id") for m in self.custom_modes}
        if self.default_mode not in BUILTIN_MODE_IDS and self.default_mode not in custom_ids:
            errors.append(f"Unknown mode: {self.default_mode}")

        return errors

    def to_dict(self) -> dict:
        """Convert config to dictionary (for logging/display)."""
        return {
            "default_model": self.default_model,
            "default_mode": self.default_mode,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "exec_timeout": self.exec_timeout,
            "stall_timeout": self.stall_timeout,
            "max_iterations": self.max_iterations,
            "max_tool_iterations": self.max_tool_iterations,
            "error_nudge_threshold": self.error_nudge_threshold,
            "custom_modes": [m.get("id") for m in self.custom_modes],
            "has_anthropic_key": bool(self.anthropic_api_key),
        }

"""Constants and default values for YOLO Agent."""

import re

# Default model configuration
DEFAULT_MODEL = "anthropic:claude-sonnet-4-5"
DEFAULT_MAX_TOKENS = 8192
DEFAULT_TEMPERATURE = 0.2

# Default operating mode
DEFAULT_MODE = "sandboxed-smart-todo"

# Command execution defaults (seconds)
DEFAULT_EXEC_TIMEOUT = 300
DEFAULT_STALL_TIMEOUT = 60
DEFAULT_KILL_GRACE = 5
OUTPUT_FLUSH_INTERVAL = 0.5
STALL_CHECK_INTERVAL = 0.25

# Output caps (characters)
MAX_OUTPUT = 100_000
KEEP_HEAD = 40_000
KEEP_TAIL = 40_000

# Matches CSI sequences, OSC sequences terminated by BEL, and the charset reset
ANSI_PATTERN = re.compile(r"\x1B(?:\[[0-9;]*[a-zA-Z]|\][^\x07]*\x07|\(B)")

# Environment overrides that keep command output deterministic
NO_COLOR_ENV = {
    "FORCE_COLOR": "0",
    "NO_COLOR": "1",
    "TERM": "dumb",
}

# Agent loop limits
MAX_TOOL_ITERATIONS = 25
DEFAULT_MAX_VERIFY_ITERATIONS = 5
DEFAULT_ERROR_NUDGE_THRESHOLD = 1
NON_PRODUCTIVE_STREAK_LIMIT = 2
FORCE_BREAK_NUDGES = 2
MAX_NON_PRODUCTIVE_EXEC_ROUNDS = 2

# Tools that only observe the workspace
READ_ONLY_TOOLS = frozenset({
    "listFiles",
    "readFile",
    "getDiagnostics",
    "getSandboxStatus",
})

# Tools hidden from execution rounds so the model acts instead of re-reading
EXECUTION_HIDDEN_TOOLS = frozenset({
    "listFiles",
    "getDiagnostics",
    "getSandboxStatus",
})

# Tools offered while planning mode is on
PLANNING_MODE_TOOLS = frozenset({
    "readFile",
    "listFiles",
    "getDiagnostics",
    "getSandboxStatus",
    "askQuestion",
    "exitPlanningMode",
})

# Tools whose use counts as progress during execution
WRITE_TOOLS = frozenset({
    "writeFile",
    "runTerminal",
    "runSandboxedCommand",
})

# Software-level deny-list (case-insensitive substring match).
# A UX guardrail only: it is trivially bypassed and is not a security control.
RESTRICTED_COMMANDS = [
    "sudo",
    "su",
    "pkill",
    "killall",
    "kill -9",
    "rm -rf /",
    "chmod 000",
    "chown root",
    "mkfs",
    "dd if=",
    ":(){:|:&};:",
]

# Sandbox layout
SANDBOX_BRANCH_PREFIX = "sandbox/"
SANDBOX_ROOT_DIR = ".sandbox-root"
SANDBOX_ROOT_SUBDIRS = [
    "usr/bin",
    "lib",
    "lib64",
    "etc",
    "tmp",
    "home/sandbox",
]
SANDBOX_PASSWD = (
    "root:x:0:0:root:/root:/bin/sh\n"
    "sandbox:x:1000:1000:sandbox:/home/sandbox:/bin/sh\n"
)
SANDBOX_GROUP = "root:x:0:\nsandbox:x:1000:\n"
SANDBOX_RESOLV_CONF = "nameserver 8.8.8.8\nnameserver 8.8.4.4\n"
BWRAP_BINARY = "bwrap"
SANDBOX_WORKSPACE_MOUNT = "/workspace"

# Verification context limits
VERIFY_MAX_FILES = 10
VERIFY_MAX_FILE_CHARS = 5000
VERIFY_READABLE_SUFFIXES = (
    ".py", ".ts", ".tsx", ".js", ".jsx", ".json", ".html", ".css",
    ".md", ".yml", ".yaml", ".toml", ".cfg", ".txt",
)

# Session defaults
DEFAULT_SESSION_TITLE = "New Chat"
SESSION_TITLE_LENGTH = 50
# Events kept for a background session until it becomes visible
MAX_BUFFERED_EVENTS = 500

# Built-in ignore patterns
BUILTIN_IGNORES = [
    # Version control and project metadata
    ".git/",
    ".git",

    # YOLO Agent internal
    ".yolo/",
    ".sandbox-root/",

    # Python
    "__pycache__/",
    "*.pyc",
    ".pytest_cache/",
    ".mypy_cache/",
    "*.egg-info/",

    # Virtual environments
    "venv/",
    ".venv/",

    # JavaScript/Node
    "node_modules/",

    # IDE and editor files
    ".DS_Store",
    "*.swp",
    ".vscode/",
    ".idea/",
]

# Model descriptors - Anthropic Claude models only
SUPPORTED_MODELS = {
    "anthropic:claude-sonnet-4-5": {
        "provider": "anthropic",
        "name": "claude-sonnet-4-5-20250929",
        "max_output_tokens": 8192,
    },
    "anthropic:claude-haiku-4-5": {
        "provider": "anthropic",
        "name": "claude-haiku-4-5-20251001",
        "max_output_tokens": 8192,
    },
    "anthropic:claude-opus-4-1": {
        "provider": "anthropic",
        "name": "claude-opus-4-1-20250805",
        "max_output_tokens": 8192,
    },
}

"""Exception types raised by YOLO Agent."""


class YoloError(Exception):
    """Base class for agent errors."""


class SandboxError(YoloError):
    """A sandbox lifecycle operation failed."""


class CommandSpawnError(YoloError):
    """The command executor could not start a process."""


class ProviderError(YoloError):
    """The LLM provider call failed (network, auth, rate limit)."""


class GenerationCancelled(YoloError):
    """The caller cancelled the in-flight round."""


class CommandBlocked(YoloError):
    """The software-level validator rejected a command."""


class SessionBusy(YoloError):
    """A session already has a round or flow in flight."""

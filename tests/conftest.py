"""Pytest configuration and fixtures."""

import shutil
import subprocess
import tempfile
from pathlib import Path

import pytest

from yoloagent.agent import Agent
from yoloagent.config import Config
from yoloagent.errors import GenerationCancelled
from yoloagent.events import ListSink
from yoloagent.llm import LLMProvider, LLMResponse, ModelInfo, ToolCall
from yoloagent.sandbox.isolation import OsIsolation
from yoloagent.sandbox.manager import SandboxManager
from yoloagent.utils.ignore import IgnoreRules


class FakeProvider(LLMProvider):
    """Scripted provider: replays responses in order and records requests.

    A script entry may be an LLMResponse, a string (plain text reply), an
    exception instance (raised), or a callable taking (messages, options)
    and returning any of those.
    """

    def __init__(self, script=None, default="Done."):
        self.script = list(script or [])
        self.default = default
        self.requests = []

    async def send_message(self, messages, options, on_chunk=None):
        self.requests.append({"messages": list(messages), "options": options})
        if options.cancel:
            options.cancel.raise_if_cancelled()

        entry = self.script.pop(0) if self.script else self.default
        if callable(entry) and not isinstance(entry, LLMResponse):
            entry = entry(messages, options)
        if isinstance(entry, BaseException):
            raise entry
        if isinstance(entry, str):
            entry = LLMResponse(content=entry, finish_reason="end_turn")

        if options.cancel:
            options.cancel.raise_if_cancelled()
        if on_chunk and entry.content:
            on_chunk(entry.content)
        return entry

    async def list_models(self):
        return [ModelInfo(id="fake", name="fake-model", max_output_tokens=1024)]

    async def validate_api_key(self, api_key):
        return api_key == "valid"


def tool_reply(*calls, content=""):
    """LLMResponse requesting tool calls given as (name, args) tuples."""
    return LLMResponse(
        content=content,
        tool_calls=[
            ToolCall(id=f"call_{i}_{name}", name=name, arguments=args)
            for i, (name, args) in enumerate(calls)
        ],
        finish_reason="tool_use",
    )


def cancel_during_call(messages, options):
    """Script entry that fires the round's cancel token mid-request."""
    options.cancel.cancel()
    raise GenerationCancelled("Generation stopped")


@pytest.fixture
def temp_dir():
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir).resolve()


@pytest.fixture
def test_project(temp_dir):
    """Create a test project structure."""
    project = temp_dir / "project"
    project.mkdir()

    (project / "src").mkdir()
    (project / "src" / "main.py").write_text("def hello():\n    return 'world'\n")
    (project / "src" / "utils.py").write_text("def add(a, b):\n    return a + b\n")

    (project / "tests").mkdir()
    (project / "tests" / "test_main.py").write_text(
        "def test_hello():\n    from src.main import hello\n    assert hello() == 'world'\n"
    )

    (project / "README.md").write_text("# Test Project\n")

    yield project


@pytest.fixture
def git_repo(test_project):
    """The test project as a git repository with one commit."""
    if shutil.which("git") is None:
        pytest.skip("git is not installed")

    def git(*args):
        subprocess.run(["git", *args], cwd=test_project, check=True, capture_output=True)

    git("init", "-q")
    git("config", "user.email", "yolo@example.com")
    git("config", "user.name", "YOLO Tests")
    git("config", "commit.gpgsign", "false")
    git("add", "-A")
    git("commit", "-q", "-m", "initial")
    yield test_project


@pytest.fixture
def mock_config():
    """Create a mock configuration."""
    return Config(
        anthropic_api_key="test_key",
        default_model="anthropic:claude-sonnet-4-5",
        default_mode="agent",
        max_iterations=3,
        exec_timeout=30,
        stall_timeout=10,
    )


@pytest.fixture
def ignore_rules(test_project):
    """Create ignore rules for the test project."""
    return IgnoreRules(test_project)


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def no_bwrap(monkeypatch):
    """Force software-level restrictions regardless of the host."""
    monkeypatch.setattr(OsIsolation, "is_available", staticmethod(lambda: False))


@pytest.fixture
def sandbox_manager(git_repo, no_bwrap):
    """Sandbox manager over a git repository, without OS-level isolation."""
    return SandboxManager(git_repo)


@pytest.fixture
def sink():
    return ListSink()


@pytest.fixture
def agent(test_project, mock_config, sink, fake_provider, no_bwrap):
    """Agent in "agent" mode over the test project with a scripted provider."""
    return Agent(test_project, mock_config, sink, provider=fake_provider)

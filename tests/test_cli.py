"""Tests for the command-line entry point."""

from typer.testing import CliRunner

from yoloagent.cli import app

runner = CliRunner()


def test_missing_path(temp_dir):
    result = runner.invoke(app, [str(temp_dir / "nope")])

    assert result.exit_code == 1
    assert "Path does not exist" in result.output


def test_missing_api_key(test_project, monkeypatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "")

    result = runner.invoke(app, [str(test_project), "--mode", "agent"])

    assert result.exit_code == 1
    assert "No API key found" in result.output


def test_unknown_model_rejected(test_project, monkeypatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")

    result = runner.invoke(app, [str(test_project), "--model", "openai:gpt-4"])

    assert result.exit_code == 1
    assert "Unsupported model: openai:gpt-4" in result.output

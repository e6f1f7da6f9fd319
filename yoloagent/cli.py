"""CLI and REPL for YOLO Agent."""

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table

from yoloagent.agent import Agent
from yoloagent.config import Config
from yoloagent.errors import CommandBlocked, CommandSpawnError, SandboxError
from yoloagent.events import (
    AskQuestion,
    ErrorEvent,
    Event,
    ExitPlanningModeRequest,
    FileActivity,
    MessageComplete,
    SandboxResult,
    SandboxState,
    SmartTodoUpdate,
    StreamChunk,
    TerminalOutput,
    ToolCallResult,
    ToolCallStarted,
)
from yoloagent.sandbox.manager import SandboxConfig
from yoloagent.utils.logging import SessionLogger

app = typer.Typer(help="YOLO Agent - autonomous coding agent with sandboxed execution")
console = Console()

STATUS_ICONS = {
    "pending": "[dim]○[/dim]",
    "in-progress": "[yellow]◐[/yellow]",
    "done": "[green]✓[/green]",
    "failed": "[red]✗[/red]",
}


class ConsoleSink:
    """Renders agent events in the terminal."""

    def __init__(self, console: Console):
        self.console = console
        self.agent: Optional[Agent] = None
        self._answers: set[asyncio.Task] = set()

    def emit(self, event: Event) -> None:
        if isinstance(event, StreamChunk):
            self.console.print(event.content, end="", markup=False, highlight=False)
        elif isinstance(event, ToolCallStarted):
            self.console.print(f"\n[dim]→ {event.name}[/dim] {_summarize_args(event.args)}")
        elif isinstance(event, ToolCallResult):
            if event.is_error:
                first_line = event.content.strip().split("\n", 1)[0]
                self.console.print(f"[red]✗ {event.name}: {escape(first_line)}[/red]")
            else:
                self.console.print(f"[dim]✓ {event.name}[/dim]")
        elif isinstance(event, TerminalOutput):
            self.console.print(event.chunk, end="", style="dim", markup=False, highlight=False)
        elif isinstance(event, SmartTodoUpdate):
            self._render_todos(event)
        elif isinstance(event, SandboxState):
            if event.active:
                isolation = "OS-level" if event.os_isolation else "software-level"
                self.console.print(
                    f"\n[magenta]🔒 Sandbox active ({isolation}): "
                    f"{event.branch_name} @ {event.worktree_path}[/magenta]"
                )
            else:
                self.console.print("\n[magenta]Sandbox closed[/magenta]")
        elif isinstance(event, SandboxResult):
            self._render_sandbox_result(event)
        elif isinstance(event, FileActivity):
            self.console.print(f"[dim]  {event.action}: {event.path}[/dim]")
        elif isinstance(event, (AskQuestion, ExitPlanningModeRequest)):
            task = asyncio.get_running_loop().create_task(self._answer(event))
            self._answers.add(task)
            task.add_done_callback(self._answers.discard)
        elif isinstance(event, ErrorEvent):
            self.console.print(f"\n[red]Error: {escape(event.message)}[/red]")
        elif isinstance(event, MessageComplete):
            self.console.print()

    async def _answer(self, event: Event) -> None:
        if self.agent is None or event.session_id is None:
            return
        if isinstance(event, AskQuestion):
            self.console.print(Panel(event.question, title="Question", border_style="yellow"))
            answer = await asyncio.to_thread(Prompt.ask, "[yellow]Your answer[/yellow]")
            self.agent.answer_question(event.session_id, answer)
        else:
            self.console.print(
                Panel(event.reason, title="Exit planning mode?", border_style="yellow")
            )
            accepted = await asyncio.to_thread(
                Confirm.ask, "[yellow]Turn off planning mode and start implementing?[/yellow]"
            )
            self.agent.answer_exit_planning(event.session_id, accepted)

    def _render_todos(self, event: SmartTodoUpdate) -> None:
        if not event.todos:
            self.console.print(f"\n[cyan]Smart To-Do: {event.phase}[/cyan]")
            return
        lines = [f"{STATUS_ICONS.get(t.status, '?')} TODO {t.id}: {escape(t.title)}" for t in event.todos]
        title = f"Smart To-Do: {event.phase}"
        if event.iteration:
            title += f" (iteration {event.iteration})"
        self.console.print()
        self.console.print(Panel("\n".join(lines), title=title, border_style="cyan"))

    def _render_sandbox_result(self, event: SandboxResult) -> None:
        table = Table(title=f"Sandbox branch {event.branch_name}", show_header=True)
        table.add_column("Status")
        table.add_column("File")
        table.add_column("+/-", justify="right")
        for change in event.files:
            table.add_row(
                change.get("status", "?"),
                change.get("path", ""),
                f"+{change.get('added', 0)} -{change.get('removed', 0)}",
            )
        self.console.print()
        self.console.print(table)
        self.console.print(f"[dim]{event.summary}[/dim]")
        self.console.print("[yellow]Use /apply to merge or /discard to throw the branch away[/yellow]")


def _summarize_args(args: dict) -> str:
    for key in ("command", "path", "pattern", "question", "reason", "featureName"):
        if key in args:
            value = str(args[key]).replace("\n", " ")
            return f"[dim]{escape(value[:80])}[/dim]"
    return ""


class REPL:
    """Interactive REPL for YOLO Agent."""

    def __init__(self, project_root: Path, config: Config):
        """Initialize REPL.

        Args:
            project_root: Project root directory
            config: Configuration object
        """
        self.project_root = project_root
        self.config = config
        self.logger = SessionLogger(project_root)
        self.sink = ConsoleSink(console)
        self.agent = Agent(
            project_root,
            config,
            self.sink,
            keep_changes_prompt=self._ask_keep_changes,
            run_logger=self.logger,
        )
        self.sink.agent = self.agent

        self.running = True
        self.request: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Start the REPL."""
        console.print(Panel.fit(
            "[bold cyan]YOLO Agent[/bold cyan] - autonomous coding agent\n"
            f"Project: {self.project_root}\n"
            f"Model: {self.config.default_model}\n"
            f"Mode: {self.agent.modes.current_mode.name}\n"
            "\n"
            "Type /help for commands or /quit to exit",
            border_style="cyan"
        ))

        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, self._on_interrupt)
        except NotImplementedError:
            pass  # no loop signal handlers on this platform

        while self.running:
            try:
                user_input = await asyncio.to_thread(console.input, "[bold cyan]yolo>[/bold cyan] ")
            except EOFError:
                break

            user_input = user_input.strip()
            if not user_input:
                continue
            await self.handle_input(user_input)

        console.print("\n[cyan]Goodbye![/cyan]")

    def _on_interrupt(self) -> None:
        if self.request is not None and not self.request.done():
            console.print("\n[yellow]Stopping...[/yellow]")
            self.agent.cancel()
        else:
            console.print("\n[dim]Use /quit to exit[/dim]")

    async def handle_input(self, user_input: str) -> None:
        """Handle user input (command or natural language).

        Args:
            user_input: User input string
        """
        if user_input.startswith("/"):
            await self.handle_command(user_input)
        else:
            await self.handle_natural_language(user_input)

    async def handle_natural_language(self, text: str) -> None:
        self.request = asyncio.get_running_loop().create_task(self.agent.send(text))
        try:
            await self.request
        except Exception as e:
            console.print(f"\n[red]Error: {escape(str(e))}[/red]")
            logging.getLogger(__name__).exception("Request failed")
        finally:
            self.request = None

    async def handle_command(self, command: str) -> None:
        """Handle slash command.

        Args:
            command: Command string (starting with /)
        """
        parts = command.split(maxsplit=1)
        cmd = parts[0].lower()
        args = parts[1].strip() if len(parts) > 1 else ""

        try:
            if cmd == "/help":
                self.show_help()
            elif cmd == "/quit":
                self.running = False
            elif cmd == "/mode":
                self.handle_mode(args)
            elif cmd == "/planning":
                if args not in ("on", "off"):
                    console.print("[red]Usage: /planning on|off[/red]")
                    return
                self.agent.set_planning_mode(args == "on")
                console.print(f"[green]Planning mode {args}[/green]")
            elif cmd == "/sessions":
                self.show_sessions()
            elif cmd == "/new":
                session = self.agent.new_session()
                console.print(f"[green]New session {session.id[:8]}[/green]")
            elif cmd == "/switch":
                self.handle_switch(args)
            elif cmd == "/sandbox":
                console.print(self.agent.sandbox.get_sandbox_status())
            elif cmd == "/diff":
                await self.handle_diff()
            elif cmd == "/apply":
                outcome = await self.agent.sandbox.apply_sandbox()
                style = "green" if outcome.success else "red"
                console.print(f"[{style}]{outcome.message}[/{style}]")
            elif cmd == "/discard":
                if not Confirm.ask("Discard all sandbox changes?", default=False):
                    return
                outcome = await self.agent.sandbox.discard_sandbox()
                style = "green" if outcome.success else "red"
                console.print(f"[{style}]{outcome.message}[/{style}]")
            elif cmd == "/exit-sandbox":
                await self.handle_exit_sandbox(args)
            elif cmd == "/exec":
                if not args:
                    console.print("[red]Usage: /exec <command>[/red]")
                    return
                result = await self.agent.execute_command(args)
                console.print(result.format_output(), markup=False, highlight=False)
            elif cmd == "/config":
                config_dict = self.config.to_dict()
                console.print(Panel(
                    "\n".join(f"{k}: {v}" for k, v in config_dict.items()),
                    title="Configuration",
                    border_style="blue"
                ))
            elif cmd == "/log":
                log_path = self.logger.get_log_path()
                console.print(f"[dim]Session logs: {log_path}[/dim]")
            else:
                console.print(f"[red]Unknown command: {cmd}[/red]")
                console.print("[dim]Type /help for available commands[/dim]")

        except (CommandBlocked, CommandSpawnError, SandboxError, ValueError) as e:
            console.print(f"[red]Error: {escape(str(e))}[/red]")

    def handle_mode(self, mode_id: str) -> None:
        if mode_id:
            mode = self.agent.switch_mode(mode_id)
            console.print(f"[green]Switched to {mode.name}[/green]")
            return

        current = self.agent.modes.current_mode.id
        for mode in self.agent.modes.list_modes():
            marker = "[cyan]*[/cyan]" if mode.id == current else " "
            console.print(f"{marker} [bold]{mode.id}[/bold] - {mode.description}")

    def show_sessions(self) -> None:
        table = Table(show_header=True)
        table.add_column("ID")
        table.add_column("Title")
        table.add_column("Status")
        table.add_column("Messages", justify="right")
        active = self.agent.sessions.active_id
        for summary in self.agent.sessions.list_sessions():
            marker = "*" if summary.id == active else ""
            table.add_row(
                f"{marker}{summary.id[:8]}",
                summary.title,
                summary.status,
                str(summary.message_count),
            )
        console.print(table)

    def handle_switch(self, prefix: str) -> None:
        if not prefix:
            console.print("[red]Usage: /switch <session-id>[/red]")
            return
        matches = [s for s in self.agent.sessions.list_sessions() if s.id.startswith(prefix)]
        if len(matches) != 1:
            console.print(f"[red]No unique session matches '{prefix}'[/red]")
            return
        self.agent.switch_session(matches[0].id)
        console.print(f"[green]Switched to {matches[0].title}[/green]")

    async def handle_diff(self) -> None:
        diff = await self.agent.sandbox.get_sandbox_diff()
        if not diff.files:
            console.print(f"[dim]{diff.summary}[/dim]")
            return
        table = Table(show_header=True)
        table.add_column("Status")
        table.add_column("File")
        table.add_column("+/-", justify="right")
        for change in diff.files:
            table.add_row(change.status, change.path, f"+{change.added} -{change.removed}")
        console.print(table)
        console.print(f"[dim]{diff.summary}[/dim]")

    async def handle_exit_sandbox(self, args: str) -> None:
        if args not in ("", "keep", "delete"):
            console.print("[red]Usage: /exit-sandbox [keep|delete][/red]")
            return
        keep = None if not args else args == "keep"
        report = await self.agent.sandbox.exit_sandbox(keep)
        kept = "kept" if report.branch_kept else "deleted"
        console.print(f"[green]Sandbox exited; branch {report.branch_name} {kept}[/green]")
        for error in report.errors:
            console.print(f"[yellow]  - {error}[/yellow]")

    async def _ask_keep_changes(self, config: SandboxConfig) -> bool:
        return await asyncio.to_thread(
            Confirm.ask, f"Keep sandbox branch {config.branch_name}?", default=True
        )

    def show_help(self) -> None:
        """Show help message."""
        help_text = """
**Available Commands:**

- `/mode [id]` - List modes or switch mode
- `/planning on|off` - Toggle read-only planning mode
- `/sessions` - List sessions
- `/new` - Start a new session
- `/switch <id>` - Switch to another session
- `/sandbox` - Show sandbox status
- `/diff` - Show changes on the sandbox branch
- `/apply` - Merge the sandbox branch and clean up
- `/discard` - Delete the sandbox branch and worktree
- `/exit-sandbox [keep|delete]` - Leave the sandbox
- `/exec <cmd>` - Execute a command in the current workspace
- `/config` - Show current configuration
- `/log` - Show session log path
- `/help` - Show this help message
- `/quit` - Exit YOLO Agent

Anything else is sent to the agent. Press Ctrl-C to stop a running request.
        """
        console.print(Markdown(help_text))


@app.command()
def main(
    path: Optional[str] = typer.Argument(
        None,
        help="Project path (default: current directory)"
    ),
    model: Optional[str] = typer.Option(
        None,
        "--model", "-m",
        help="Model to use (e.g., anthropic:claude-sonnet-4-5)"
    ),
    mode: Optional[str] = typer.Option(
        None,
        "--mode",
        help="Operating mode (e.g., sandboxed-smart-todo, agent, ask)"
    ),
    max_iterations: Optional[int] = typer.Option(
        None,
        "--max-iterations",
        help="Maximum Smart To-Do verification passes"
    ),
) -> None:
    """Start a YOLO Agent interactive session."""
    project_root = Path(path).resolve() if path else Path.cwd()

    if not project_root.exists():
        console.print(f"[red]Error: Path does not exist: {project_root}[/red]")
        sys.exit(1)

    if not project_root.is_dir():
        console.print(f"[red]Error: Path is not a directory: {project_root}[/red]")
        sys.exit(1)

    try:
        config = Config.load(project_root)
    except (OSError, ValueError) as e:
        console.print(f"[red]Error loading configuration: {escape(str(e))}[/red]")
        sys.exit(1)

    if model:
        config.default_model = model
    if mode:
        config.default_mode = mode
    if max_iterations is not None:
        config.max_iterations = max_iterations

    logging.basicConfig(
        level=config.log_level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )

    errors = config.validate()
    if errors:
        console.print("[red]Configuration errors:[/red]")
        for error in errors:
            console.print(f"  - {error}")
        sys.exit(1)

    try:
        repl = REPL(project_root, config)
        asyncio.run(repl.start())
    except Exception as e:
        console.print(f"[red]Fatal error: {escape(str(e))}[/red]")
        logging.getLogger(__name__).exception("Fatal error")
        sys.exit(1)


if __name__ == "__main__":
    app()

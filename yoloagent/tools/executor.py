"""Command execution with stall detection, runtime caps and output capping."""

import asyncio
import codecs
import logging
import os
import signal
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Sequence

from yoloagent.constants import (
    ANSI_PATTERN,
    DEFAULT_EXEC_TIMEOUT,
    DEFAULT_KILL_GRACE,
    DEFAULT_STALL_TIMEOUT,
    KEEP_HEAD,
    KEEP_TAIL,
    MAX_OUTPUT,
    NO_COLOR_ENV,
    OUTPUT_FLUSH_INTERVAL,
    STALL_CHECK_INTERVAL,
)
from yoloagent.errors import CommandSpawnError

logger = logging.getLogger(__name__)

OutputCallback = Callable[[str], None]

READ_CHUNK = 4096


def strip_ansi(text: str) -> str:
    """Remove ANSI escape sequences from text."""
    return ANSI_PATTERN.sub("", text)


def truncate_output(text: str) -> str:
    """Cap text at MAX_OUTPUT characters, keeping a head and a tail window.

    Args:
        text: Text to cap

    Returns:
        The original text, or head + truncation marker + tail
    """
    if len(text) <= MAX_OUTPUT:
        return text

    skipped = len(text) - KEEP_HEAD - KEEP_TAIL
    head = text[:KEEP_HEAD]
    tail = text[-KEEP_TAIL:]
    return f"{head}\n\n... [{skipped} characters truncated] ...\n\n{tail}"


@dataclass
class CommandResult:
    """Result of command execution."""

    command: str
    stdout: str
    stderr: str
    exit_code: Optional[int]
    timed_out: bool = False
    stalled_out: bool = False
    duration_ms: int = 0
    max_timeout: float = DEFAULT_EXEC_TIMEOUT
    stall_timeout: float = DEFAULT_STALL_TIMEOUT

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    def format_output(self) -> str:
        """Render the result the way the model sees it as a tool result."""
        output = self.stdout
        if self.stderr:
            output += ("\n--- stderr ---\n" if output else "") + self.stderr
        output = truncate_output(output)

        if self.timed_out:
            if self.stalled_out:
                output += (
                    f"\n\n⚠ Command stalled: no output for {self.stall_timeout:g}s. "
                    "Process was terminated."
                )
            else:
                output += (
                    f"\n\n⚠ Command timed out after {self.max_timeout:g}s. "
                    "Process was terminated."
                )

        if self.exit_code is not None and self.exit_code != 0:
            output += f"\nExit code: {self.exit_code}"

        return output or f"Command completed with exit code {self.exit_code or 0}"


class CommandExecutor:
    """Runs shell commands and enforces stall and max-runtime limits.

    Non-zero exits, stalls and timeouts are reported in the CommandResult;
    only a failure to spawn raises (CommandSpawnError).
    """

    def __init__(
        self,
        cwd: Optional[Path] = None,
        max_timeout: float = DEFAULT_EXEC_TIMEOUT,
        stall_timeout: float = DEFAULT_STALL_TIMEOUT,
        kill_grace: float = DEFAULT_KILL_GRACE,
    ):
        """Initialize executor.

        Args:
            cwd: Default working directory for commands
            max_timeout: Absolute runtime cap in seconds
            stall_timeout: Seconds without output before the command is killed
            kill_grace: Seconds between SIGTERM and SIGKILL
        """
        self.cwd = cwd
        self.max_timeout = max_timeout
        self.stall_timeout = stall_timeout
        self.kill_grace = kill_grace

    async def run(
        self,
        command: str,
        cwd: Optional[Path] = None,
        max_timeout: Optional[float] = None,
        stall_timeout: Optional[float] = None,
        on_output: Optional[OutputCallback] = None,
    ) -> CommandResult:
        """Run a shell command.

        Args:
            command: Command line passed to ``sh -c``
            cwd: Working directory override
            max_timeout: Runtime cap override (seconds)
            stall_timeout: Stall threshold override (seconds)
            on_output: Receives ANSI-stripped output batches every 500 ms

        Returns:
            CommandResult with captured output and flags
        """
        return await self.run_args(
            ["sh", "-c", command],
            cwd=cwd,
            max_timeout=max_timeout,
            stall_timeout=stall_timeout,
            on_output=on_output,
            display=command,
        )

    async def run_args(
        self,
        argv: Sequence[str],
        cwd: Optional[Path] = None,
        max_timeout: Optional[float] = None,
        stall_timeout: Optional[float] = None,
        on_output: Optional[OutputCallback] = None,
        display: Optional[str] = None,
    ) -> CommandResult:
        """Run an argument vector without a shell.

        Used for git and bwrap invocations where quoting must not matter.
        """
        max_timeout = max_timeout if max_timeout is not None else self.max_timeout
        stall_timeout = stall_timeout if stall_timeout is not None else self.stall_timeout
        workdir = cwd or self.cwd
        command = display or " ".join(argv)

        env = {**os.environ, **NO_COLOR_ENV}

        start_time = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(workdir) if workdir else None,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            raise CommandSpawnError(f"Failed to start '{command}': {e}") from e

        logger.debug("Started pid %s: %s", process.pid, command)

        run = _RunningCommand(process, on_output)
        readers = asyncio.gather(
            run.pump(process.stdout, run.stdout_parts),
            run.pump(process.stderr, run.stderr_parts),
        )
        flusher = asyncio.create_task(run.flush_periodically())
        watchdog = asyncio.create_task(
            run.watch(start_time, max_timeout, stall_timeout)
        )
        exited = asyncio.create_task(process.wait())

        timed_out = False
        stalled_out = False
        try:
            done, _ = await asyncio.wait(
                {exited, watchdog}, return_when=asyncio.FIRST_COMPLETED
            )
            if exited not in done:
                violation = watchdog.result()
                timed_out = True
                stalled_out = violation == "stall"
                logger.info("Terminating %s command: %s", violation, command)
                await self._terminate(process)

            await exited
            try:
                await asyncio.wait_for(readers, timeout=self.kill_grace)
            except asyncio.TimeoutError:
                # A detached grandchild still holds the pipes open
                readers.cancel()
        except BaseException:
            if process.returncode is None:
                self._signal(process, signal.SIGKILL)
            readers.cancel()
            raise
        finally:
            watchdog.cancel()
            flusher.cancel()
            if not exited.done():
                exited.cancel()
            run.flush()

        duration_ms = int((time.monotonic() - start_time) * 1000)
        exit_code = None if timed_out else process.returncode

        return CommandResult(
            command=command,
            stdout=truncate_output(strip_ansi("".join(run.stdout_parts))),
            stderr=truncate_output(strip_ansi("".join(run.stderr_parts))),
            exit_code=exit_code,
            timed_out=timed_out,
            stalled_out=stalled_out,
            duration_ms=duration_ms,
            max_timeout=max_timeout,
            stall_timeout=stall_timeout,
        )

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """SIGTERM the process group, then SIGKILL after the grace window."""
        self._signal(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), timeout=self.kill_grace)
        except asyncio.TimeoutError:
            logger.warning("pid %s ignored SIGTERM, sending SIGKILL", process.pid)
            self._signal(process, signal.SIGKILL)
            await process.wait()

    @staticmethod
    def _signal(process: asyncio.subprocess.Process, sig: int) -> None:
        try:
            os.killpg(os.getpgid(process.pid), sig)
        except (ProcessLookupError, PermissionError):
            try:
                process.send_signal(sig)
            except ProcessLookupError:
                pass


class _RunningCommand:
    """Output bookkeeping for one spawned process."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        on_output: Optional[OutputCallback],
    ):
        self.process = process
        self.on_output = on_output
        self.stdout_parts: list[str] = []
        self.stderr_parts: list[str] = []
        self.pending: list[str] = []
        self.last_output = time.monotonic()

    async def pump(self, stream: asyncio.StreamReader, parts: list[str]) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await stream.read(READ_CHUNK)
            if not data:
                break
            text = decoder.decode(data)
            parts.append(text)
            self.pending.append(text)
            self.last_output = time.monotonic()
        tail = decoder.decode(b"", final=True)
        if tail:
            parts.append(tail)
            self.pending.append(tail)

    async def flush_periodically(self) -> None:
        while True:
            await asyncio.sleep(OUTPUT_FLUSH_INTERVAL)
            self.flush()

    def flush(self) -> None:
        if not self.pending or not self.on_output:
            self.pending.clear()
            return
        chunk = strip_ansi("".join(self.pending))
        self.pending.clear()
        try:
            self.on_output(chunk)
        except Exception:
            logger.exception("Output callback failed")

    async def watch(self, start_time: float, max_timeout: float, stall_timeout: float) -> str:
        """Return "timeout" or "stall" once a limit is exceeded."""
        while True:
            await asyncio.sleep(STALL_CHECK_INTERVAL)
            now = time.monotonic()
            if now - start_time > max_timeout:
                return "timeout"
            if now - self.last_output > stall_timeout:
                return "stall"

"""Spawn a backend CLI, feed it the prompt and drain its event stream.

Usage::

    proc = BackendProcess("claude", args, prompt, parser, timeout=180)
    await proc.start()
    async for event in proc.events():
        ...
    outcome = await proc.wait()

The prompt is written to stdin in full and stdin is closed; backends read
the whole prompt before answering.  stdout is split on newlines and each
complete line goes through the backend's :class:`~llm.streams.StreamParser`.
The wall-clock timeout kills the process.
"""
import asyncio
import codecs
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Callable, Dict, List, Optional

from core.errors import GenerationTimeout, LaunchFailure
from core.logging import logger
from llm.streams import EventKind, StreamEvent, StreamParser
from llm.types import Usage

__all__ = ["BackendProcess", "ProcessOutcome", "run_backend"]

_READ_SIZE = 64 * 1024
# Upper bound on waiting for a killed process to be reaped
KILL_GRACE_SEC = 5.0


@dataclass
class ProcessOutcome:
    """Everything observed while a backend process ran."""
    text: str = ""
    write_content: Optional[str] = None
    exit_code: Optional[int] = None
    stderr: str = ""
    usage: Optional[Usage] = None
    cost: Optional[float] = None
    status: Optional[str] = None
    finish_reason: Optional[str] = None
    duration: float = 0.0
    tools: List[str] = field(default_factory=list)

    def apply(self, event: StreamEvent) -> None:
        """Fold one event into the accumulated state."""
        if event.kind is EventKind.TEXT_DELTA:
            self.text += event.text
        elif event.kind is EventKind.FULL_TEXT:
            # a complete turn replaces what streamed before it
            self.text = event.text
        elif event.kind is EventKind.TOOL_INVOCATION:
            self.tools.append(event.name or "tool")
            if event.content:
                self.write_content = event.content
        elif event.kind is EventKind.USAGE_UPDATE:
            self.usage = Usage(event.input_tokens, event.output_tokens)
        elif event.kind is EventKind.COST_UPDATE:
            self.cost = event.amount
        elif event.kind is EventKind.TERMINAL:
            self.status = event.status
            self.finish_reason = event.finish_reason

    def describe_failure(self) -> str:
        return self.stderr.strip() or f"CLI exited with code {self.exit_code}"


class BackendProcess:
    """A single backend invocation."""

    def __init__(
        self,
        command: str,
        args: List[str],
        prompt: str,
        parser: StreamParser,
        timeout: float,
        cwd: Optional[Path] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> None:
        self.command = command
        self.args = list(args)
        self.prompt = prompt
        self.parser = parser
        self.timeout = timeout
        self.cwd = cwd
        self.env = {**os.environ, **(env or {}), "NO_COLOR": "1"}

        self.outcome = ProcessOutcome()
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._events: "asyncio.Queue[Optional[StreamEvent]]" = asyncio.Queue()
        self._runner: Optional[asyncio.Task] = None
        self._started_at = 0.0

    # ------------------------------------------------------------------
    async def start(self) -> None:
        """Spawn the process and start draining it in the background."""
        if self._runner is not None:
            raise RuntimeError("BackendProcess already started")
        self._started_at = time.monotonic()
        try:
            self._proc = await asyncio.create_subprocess_exec(
                self.command,
                *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.cwd) if self.cwd else None,
                env=self.env,
            )
        except OSError as e:
            raise LaunchFailure(f"Failed to start '{self.command}': {e}") from e

        logger.debug(f"Spawned {self.command} (pid {self._proc.pid}) with {len(self.prompt)} char prompt")
        self._runner = asyncio.create_task(self._run())

    async def events(self) -> AsyncIterator[StreamEvent]:
        """Yield stream events in emission order until the process ends."""
        if self._runner is None:
            raise RuntimeError("BackendProcess not started")
        while True:
            event = await self._events.get()
            if event is None:
                return
            yield event

    async def wait(self) -> ProcessOutcome:
        """Wait for exit. Raises GenerationTimeout if the budget ran out."""
        if self._runner is None:
            raise RuntimeError("BackendProcess not started")
        return await self._runner

    # ------------------------------------------------------------------
    async def _run(self) -> ProcessOutcome:
        proc = self._proc
        try:
            await asyncio.wait_for(self._communicate(proc), timeout=self.timeout)
        except asyncio.TimeoutError:
            await self._kill(proc)
            self.outcome.exit_code = proc.returncode
            self.outcome.duration = time.monotonic() - self._started_at
            logger.warning(f"{self.command} timed out after {self.timeout:.0f}s, process killed")
            raise GenerationTimeout(f"{self.command} timed out after {self.timeout:.0f}s") from None
        except BaseException:
            await self._kill(proc)
            raise
        finally:
            self._events.put_nowait(None)

        self.outcome.exit_code = proc.returncode
        self.outcome.duration = time.monotonic() - self._started_at
        logger.debug(
            f"{self.command} exited with code {proc.returncode} after {self.outcome.duration:.1f}s "
            f"({len(self.outcome.text)} chars streamed)"
        )
        return self.outcome

    async def _communicate(self, proc: asyncio.subprocess.Process) -> None:
        await asyncio.gather(
            self._feed_prompt(proc),
            self._drain_stdout(proc),
            self._drain_stderr(proc),
        )
        await proc.wait()

    async def _feed_prompt(self, proc: asyncio.subprocess.Process) -> None:
        try:
            proc.stdin.write(self.prompt.encode("utf-8"))
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            # backend exited before reading; its stderr tells why
            logger.debug(f"{self.command} closed stdin early: {e}")
        finally:
            proc.stdin.close()

    async def _drain_stdout(self, proc: asyncio.subprocess.Process) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        buffer = ""
        while True:
            chunk = await proc.stdout.read(_READ_SIZE)
            if not chunk:
                break
            buffer += decoder.decode(chunk)
            *lines, buffer = buffer.split("\n")
            for line in lines:
                self._handle_line(line)
        buffer += decoder.decode(b"", final=True)
        self._handle_line(buffer)

    async def _drain_stderr(self, proc: asyncio.subprocess.Process) -> None:
        data = await proc.stderr.read()
        self.outcome.stderr = data.decode("utf-8", errors="replace")

    def _handle_line(self, line: str) -> None:
        if not line.strip():
            return
        for event in self.parser.parse_line(line):
            self.outcome.apply(event)
            self._events.put_nowait(event)

    @staticmethod
    async def _kill(proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        try:
            proc.kill()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=KILL_GRACE_SEC)
        except asyncio.TimeoutError:
            logger.error(f"Process {proc.pid} did not exit {KILL_GRACE_SEC}s after SIGKILL")


async def run_backend(
    command: str,
    args: List[str],
    prompt: str,
    parser: StreamParser,
    timeout: float,
    cwd: Optional[Path] = None,
    on_event: Optional[Callable[[StreamEvent], None]] = None,
) -> ProcessOutcome:
    """Run a backend to completion, handing each event to ``on_event``."""
    proc = BackendProcess(command, args, prompt, parser, timeout, cwd=cwd)
    await proc.start()
    async for event in proc.events():
        if on_event is not None:
            on_event(event)
    return await proc.wait()

"""Line-based console loop.

States: AWAITING_INPUT → EVALUATING_TASK → AWAITING_INPUT, with
AWAITING_INPUT → TERMINATED on end of input or the exit keyword, and any
state → TERMINATED when the cancellation token fires.

Task failures are reported and the loop keeps going; cancellation ends the
loop without printing anything for the abandoned task.
"""

from __future__ import annotations

import asyncio
import io
import logging
import os
import stat
import sys
import threading
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Protocol, TextIO

import typer

from browser_agent.cancellation import CancellationToken
from browser_agent.config import EXIT_COMMAND
from browser_agent.errors import (
    CancellationError,
    InvocationError,
    ModelError,
    ProtocolError,
)

logger = logging.getLogger(__name__)

PROMPT = "prompt> "
FAREWELL = "Goodbye!"
NO_RESPONSE = "[no response]"

TaskRunner = Callable[[str], Awaitable[str]]


class ConsoleState(StrEnum):
    AWAITING_INPUT = "awaiting_input"
    EVALUATING_TASK = "evaluating_task"
    TERMINATED = "terminated"


class LineReader(Protocol):
    """Async source of operator lines. Returns None at end of input."""

    async def readline(self) -> str | None: ...


class StdinReader:
    """Reads stdin without blocking the event loop.

    Pipes and sockets are wrapped in an asyncio StreamReader, so a pending
    read is cancellable; `close()` puts the descriptor back in blocking mode.
    Terminals, regular files and streams without a real file descriptor are
    read by a daemon thread that queues lines for the loop, and their
    blocking mode is never touched.
    """

    def __init__(self, stream: TextIO | None = None) -> None:
        self.stream = stream if stream is not None else sys.stdin
        self._reader: asyncio.StreamReader | None = None
        self._transport: asyncio.ReadTransport | None = None
        self._lines: asyncio.Queue[str | None] | None = None
        self._use_thread = not _is_pipe_like(self.stream)

    async def readline(self) -> str | None:
        if self._use_thread:
            return await self._queued_line()

        if self._reader is None:
            self._reader = asyncio.StreamReader()
            protocol = asyncio.StreamReaderProtocol(self._reader)
            self._transport, _ = await asyncio.get_running_loop().connect_read_pipe(
                lambda: protocol, self.stream
            )

        data = await self._reader.readline()
        if not data:
            return None
        return data.decode("utf-8", errors="replace")

    def close(self) -> None:
        """Stop reading a pipe and restore its blocking mode."""
        if self._transport is None:
            return
        fd = self.stream.fileno()
        self._transport.close()
        self._transport = None
        try:
            os.set_blocking(fd, True)
        except OSError as exc:
            logger.debug(f"Could not restore blocking mode on stdin: {exc}")

    async def _queued_line(self) -> str | None:
        if self._lines is None:
            self._lines = asyncio.Queue()
            threading.Thread(
                target=self._pump,
                args=(asyncio.get_running_loop(), self._lines),
                name="stdin-reader",
                daemon=True,
            ).start()
        line = await self._lines.get()
        if line is None:
            self._lines.put_nowait(None)
        return line

    def _pump(self, loop: asyncio.AbstractEventLoop, lines: asyncio.Queue[str | None]) -> None:
        while True:
            try:
                line = self.stream.readline() or None
            except (OSError, ValueError) as exc:
                logger.debug(f"Reading stdin failed, treating as end of input: {exc}")
                line = None
            try:
                loop.call_soon_threadsafe(lines.put_nowait, line)
            except RuntimeError:
                return
            if line is None:
                return


def _is_pipe_like(stream: TextIO) -> bool:
    try:
        mode = os.fstat(stream.fileno()).st_mode
    except (AttributeError, OSError, ValueError, io.UnsupportedOperation):
        return False
    return stat.S_ISFIFO(mode) or stat.S_ISSOCK(mode)


def _echo(text: str = "", nl: bool = True) -> None:
    typer.echo(text, nl=nl)


class ConsoleLoop:
    """Feeds operator lines to the agent session one task at a time.

    Args:
        run_task: Evaluates one task and returns the final text
        cancel: Process-wide cancellation token
        reader: Line source (defaults to stdin)
        write: Output function with typer.echo's signature
    """

    def __init__(
        self,
        run_task: TaskRunner,
        *,
        cancel: CancellationToken,
        reader: LineReader | None = None,
        write: Callable[..., None] = _echo,
        exit_command: str = EXIT_COMMAND,
    ) -> None:
        self.run_task = run_task
        self.cancel = cancel
        self.reader = reader if reader is not None else StdinReader()
        self.write = write
        self.exit_command = exit_command
        self.state = ConsoleState.AWAITING_INPUT

    def is_exit_command(self, line: str) -> bool:
        """Exact, case-insensitive match on the trimmed line."""
        return line.strip().casefold() == self.exit_command.casefold()

    async def run(self) -> ConsoleState:
        """Run until end of input, the exit keyword, or cancellation."""
        logger.info(
            f"Ready. Type natural-language tasks (or '{self.exit_command}' to quit). "
            "The agent will call browser tools as needed."
        )
        try:
            while self.state is not ConsoleState.TERMINATED:
                await self.step()
        except CancellationError:
            logger.info("Cancellation requested. Shutting down.")
            self.state = ConsoleState.TERMINATED
        return self.state

    async def step(self) -> None:
        """Read one line and handle it."""
        self.write(PROMPT, nl=False)
        line = await self.cancel.guard(self.reader.readline())

        if line is None:
            self.write()
            logger.info("End of input. Shutting down.")
            self.state = ConsoleState.TERMINATED
            return

        if self.is_exit_command(line):
            logger.info("Exit requested.")
            self.write(FAREWELL)
            self.state = ConsoleState.TERMINATED
            return

        task = line.strip()
        if not task:
            return

        self.state = ConsoleState.EVALUATING_TASK
        try:
            text = await self.run_task(task)
        except (ModelError, InvocationError, ProtocolError) as exc:
            logger.error(f"Agent run failed. Fix the issue and try again. {exc}")
            self.write(f"Error: {exc}")
        else:
            self.write(text if text.strip() else NO_RESPONSE)
        finally:
            if self.state is ConsoleState.EVALUATING_TASK:
                self.state = ConsoleState.AWAITING_INPUT

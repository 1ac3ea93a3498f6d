"""Stdio transport for the tool server (MCP framing over stdin/stdout).

This module owns the tool server subprocess and speaks JSON-RPC 2.0 to it,
one JSON message per line, as the Model Context Protocol stdio transport
does. It provides:

- launch + initialize handshake (atomic: a failed start tears the process down)
- tool discovery (`tools/list`, with cursor pagination)
- tool invocation (`tools/call`), correlated by request id
- graceful shutdown: close stdin, then SIGTERM, then SIGKILL

A background task reads stdout and resolves pending requests by id, so
responses may arrive in any order and interleave with notifications. When
the stream closes, every pending request fails with
`InvocationError(PROCESS_EXITED)` and so does every later call.

Example:
    async with await StdioTransport.start("npx", ["@playwright/mcp@latest"]) as transport:
        descriptors = await transport.list_capabilities()
        result = await transport.invoke("browser_navigate", {"url": "https://example.com"})
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections import deque
from collections.abc import Sequence
from types import TracebackType
from typing import Any

from browser_agent import __version__
from browser_agent.cancellation import CancellationToken
from browser_agent.discovery import (
    CapabilityDescriptor,
    CapabilityResult,
    argument_problem,
    parse_call_result,
    parse_tool_list,
)
from browser_agent.errors import (
    CancellationError,
    InvocationCause,
    InvocationError,
    LaunchError,
    ProtocolError,
)

logger = logging.getLogger(__name__)

MCP_PROTOCOL_VERSION = "2025-06-18"
CLIENT_NAME = "browser-agent"

# Page snapshots can be large; the asyncio default of 64 KiB per line is not enough.
STREAM_LIMIT = 16 * 1024 * 1024

METHOD_NOT_FOUND = -32601


class _ServerGone(Exception):
    """The tool server closed its output stream or stdin is unusable."""


class _RemoteError(Exception):
    """The tool server answered with a JSON-RPC error."""

    def __init__(self, payload: Any) -> None:
        if isinstance(payload, dict):
            self.code = payload.get("code")
            message = str(payload.get("message", payload))
        else:
            self.code = None
            message = str(payload)
        super().__init__(message)


class _MalformedResponse(Exception):
    """A response carried neither a result nor an error."""


class StdioTransport:
    """JSON-RPC client for a tool server subprocess.

    Construct with `StdioTransport.start()`, which launches the process and
    performs the handshake. The constructor itself only wires an existing
    process (or a test double with the same stream attributes).
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        *,
        name: str = "tool-server",
        startup_timeout: float = 60.0,
        shutdown_grace: float = 5.0,
    ) -> None:
        self.process = process
        self.name = name
        self.startup_timeout = startup_timeout
        self.shutdown_grace = shutdown_grace
        self.next_id = 1
        self.server_info: dict[str, Any] = {}
        self._pending: dict[int, asyncio.Future[dict[str, Any]]] = {}
        self._write_lock = asyncio.Lock()
        self._descriptors: dict[str, CapabilityDescriptor] | None = None
        self._stderr_tail: deque[str] = deque(maxlen=20)
        self._reader_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._stream_closed = False
        self._closed = False

    @classmethod
    async def start(
        cls,
        command: str,
        arguments: Sequence[str] = (),
        *,
        name: str = "tool-server",
        startup_timeout: float = 60.0,
        shutdown_grace: float = 5.0,
    ) -> StdioTransport:
        """Launch the tool server and perform the initialize handshake.

        Raises:
            LaunchError: If the executable cannot be started or exits during startup
            ProtocolError: If the handshake response is malformed or late
        """
        logger.info(f"Starting tool server '{name}': {command} {' '.join(arguments)}")

        try:
            process = await asyncio.create_subprocess_exec(
                command,
                *arguments,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except FileNotFoundError as exc:
            raise LaunchError(f"Tool server command not found: {command}") from exc
        except OSError as exc:
            raise LaunchError(f"Could not start tool server '{name}' ({command}): {exc}") from exc

        logger.info(f"Tool server '{name}' started (PID: {process.pid})")

        transport = cls(
            process,
            name=name,
            startup_timeout=startup_timeout,
            shutdown_grace=shutdown_grace,
        )
        transport.attach()
        try:
            await transport.initialize()
        except BaseException:
            await transport.close()
            raise
        return transport

    @property
    def is_alive(self) -> bool:
        """Whether the process is running and its output stream is open."""
        return self.process.returncode is None and not self._stream_closed

    @property
    def stderr_tail(self) -> tuple[str, ...]:
        """The most recent lines the tool server wrote to stderr."""
        return tuple(self._stderr_tail)

    def attach(self) -> None:
        """Start the background readers for stdout and stderr."""
        if self._reader_task is None:
            self._reader_task = asyncio.create_task(
                self._read_stdout(), name=f"{self.name}-stdout"
            )
        if self._stderr_task is None and self.process.stderr is not None:
            self._stderr_task = asyncio.create_task(
                self._read_stderr(), name=f"{self.name}-stderr"
            )

    async def initialize(self) -> None:
        """Perform the MCP initialize handshake.

        Raises:
            LaunchError: If the process exits before answering
            ProtocolError: If the answer is an error, malformed, or late
        """
        try:
            result = await self._request(
                "initialize",
                {
                    "protocolVersion": MCP_PROTOCOL_VERSION,
                    "capabilities": {},
                    "clientInfo": {"name": CLIENT_NAME, "version": __version__},
                },
                timeout=self.startup_timeout,
            )
        except _ServerGone as exc:
            await self._settle_stderr()
            raise LaunchError(
                f"Tool server '{self.name}' exited during startup{self._stderr_hint()}"
            ) from exc
        except TimeoutError as exc:
            raise ProtocolError(
                f"Tool server '{self.name}' did not answer initialize within "
                f"{self.startup_timeout:.0f}s"
            ) from exc
        except (_RemoteError, _MalformedResponse) as exc:
            raise ProtocolError(f"Tool server '{self.name}' rejected initialize: {exc}") from exc

        if not isinstance(result, dict):
            raise ProtocolError(f"Tool server '{self.name}' sent a malformed initialize result")

        server_info = result.get("serverInfo")
        self.server_info = server_info if isinstance(server_info, dict) else {}
        logger.debug(f"Server capabilities: {result.get('capabilities')}")

        try:
            await self._send_notification("notifications/initialized")
        except _ServerGone as exc:
            raise LaunchError(
                f"Tool server '{self.name}' exited during startup{self._stderr_hint()}"
            ) from exc

        logger.info(
            f"Tool server '{self.name}' initialized "
            f"({self.server_info.get('name', 'unknown')} {self.server_info.get('version', '')})".rstrip()
        )

    async def list_capabilities(self) -> tuple[CapabilityDescriptor, ...]:
        """Discover the tools the server offers.

        Follows `nextCursor` pagination. Each page must arrive within the
        startup timeout.

        Raises:
            ProtocolError: On a malformed, missing, duplicated or late response
        """
        descriptors: list[CapabilityDescriptor] = []
        cursor: str | None = None
        while True:
            params = {"cursor": cursor} if cursor else {}
            try:
                result = await self._request(
                    "tools/list", params, timeout=self.startup_timeout
                )
            except TimeoutError as exc:
                raise ProtocolError(
                    f"Tool server '{self.name}' did not answer tools/list within "
                    f"{self.startup_timeout:.0f}s"
                ) from exc
            except (_ServerGone, _RemoteError, _MalformedResponse) as exc:
                raise ProtocolError(f"Tool discovery failed: {exc}") from exc

            descriptors.extend(parse_tool_list(result))
            next_cursor = result.get("nextCursor")
            if not next_cursor:
                break
            cursor = str(next_cursor)

        by_name: dict[str, CapabilityDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.name in by_name:
                raise ProtocolError(f"Tool server advertised '{descriptor.name}' twice")
            by_name[descriptor.name] = descriptor

        self._descriptors = by_name
        logger.info(f"Discovered {len(descriptors)} tools from '{self.name}'")
        logger.debug(f"Tools: {', '.join(by_name)}")
        return tuple(descriptors)

    async def invoke(
        self,
        name: str,
        arguments: dict[str, Any],
        *,
        cancel: CancellationToken | None = None,
    ) -> CapabilityResult:
        """Call a tool and wait for its result.

        Raises:
            InvocationError: If the name is unknown, the arguments are invalid,
                the server answers with an error, or the server is gone
            CancellationError: If `cancel` fires while waiting
        """
        if self._descriptors is not None:
            descriptor = self._descriptors.get(name)
            if descriptor is None:
                raise InvocationError(
                    name, InvocationCause.UNKNOWN_CAPABILITY, "not advertised by the tool server"
                )
            problem = argument_problem(descriptor, arguments)
            if problem:
                raise InvocationError(name, InvocationCause.INVALID_ARGUMENTS, problem)
        elif not isinstance(arguments, dict):
            raise InvocationError(
                name, InvocationCause.INVALID_ARGUMENTS, "arguments must be an object"
            )

        logger.info(f"🔧 TOOL: {name}({_preview(arguments)})")

        try:
            result = await self._request(
                "tools/call", {"name": name, "arguments": arguments}, cancel=cancel
            )
        except _ServerGone as exc:
            raise InvocationError(name, InvocationCause.PROCESS_EXITED, str(exc)) from exc
        except _RemoteError as exc:
            raise InvocationError(name, InvocationCause.REMOTE_ERROR, str(exc)) from exc
        except _MalformedResponse as exc:
            raise InvocationError(name, InvocationCause.MALFORMED_RESULT, str(exc)) from exc

        try:
            outcome = parse_call_result(result)
        except ValueError as exc:
            raise InvocationError(name, InvocationCause.MALFORMED_RESULT, str(exc)) from exc

        if outcome.success:
            logger.info(f"✓ {name} returned {len(outcome.content)} content block(s)")
        else:
            logger.warning(f"✗ {name} reported an error: {outcome.text[:200]}")
        return outcome

    async def close(self) -> None:
        """Shut the tool server down. Safe to call more than once.

        Closing stdin is the graceful signal for stdio servers. If the
        process is still running after the grace period it is terminated,
        and killed if it ignores that too.
        """
        if self._closed:
            return
        self._closed = True

        process = self.process
        if process.returncode is None:
            logger.info(f"Shutting down tool server '{self.name}'...")
            stdin = process.stdin
            if stdin is not None and not stdin.is_closing():
                stdin.close()
                with contextlib.suppress(ConnectionError):
                    await stdin.wait_closed()

            if not await self._wait_exit(self.shutdown_grace):
                logger.warning(
                    f"Tool server '{self.name}' did not stop within "
                    f"{self.shutdown_grace:.0f}s, terminating"
                )
                with contextlib.suppress(ProcessLookupError):
                    process.terminate()
                if not await self._wait_exit(self.shutdown_grace):
                    logger.warning(f"Tool server '{self.name}' ignored SIGTERM, killing")
                    with contextlib.suppress(ProcessLookupError):
                        process.kill()
                    await process.wait()

        self._fail_pending("transport closed")
        for task in (self._reader_task, self._stderr_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        logger.info(f"Tool server '{self.name}' stopped (exit code {process.returncode})")

    async def __aenter__(self) -> StdioTransport:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def _wait_exit(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self.process.wait(), timeout=timeout)
        except TimeoutError:
            return False
        return True

    async def _request(
        self,
        method: str,
        params: dict[str, Any] | None,
        *,
        timeout: float | None = None,
        cancel: CancellationToken | None = None,
    ) -> Any:
        """Send a request and wait for the response with the matching id.

        Returns:
            The response's `result` value
        """
        request_id = self.next_id
        self.next_id += 1

        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        message: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            message["params"] = params

        try:
            await self._send_message(message)
            async with asyncio.timeout(timeout):
                if cancel is not None:
                    response = await cancel.guard(future)
                else:
                    response = await future
        except (asyncio.CancelledError, CancellationError):
            await self._abandon(request_id, "request cancelled by client")
            raise
        except TimeoutError:
            await self._abandon(request_id, "request timed out")
            raise
        finally:
            self._pending.pop(request_id, None)

        if "error" in response:
            raise _RemoteError(response["error"])
        if "result" not in response:
            raise _MalformedResponse(f"response id={request_id} has neither result nor error")
        return response["result"]

    async def _send_notification(self, method: str, params: dict[str, Any] | None = None) -> None:
        message: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        await self._send_message(message)

    async def _send_message(self, message: dict[str, Any]) -> None:
        stdin = self.process.stdin
        if self._stream_closed or stdin is None or stdin.is_closing():
            raise _ServerGone(f"tool server '{self.name}' is not running{self._exit_hint()}")

        data = json.dumps(message, separators=(",", ":"), ensure_ascii=False) + "\n"
        logger.debug(f"→ {message.get('method', 'response')} (id={message.get('id', 'N/A')})")

        async with self._write_lock:
            try:
                stdin.write(data.encode("utf-8"))
                await stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as exc:
                raise _ServerGone(f"tool server '{self.name}' closed stdin: {exc}") from exc

    async def _abandon(self, request_id: int, reason: str) -> None:
        """Forget a pending request and tell the server to stop working on it."""
        self._pending.pop(request_id, None)
        if not self.is_alive:
            return
        try:
            await self._send_notification(
                "notifications/cancelled", {"requestId": request_id, "reason": reason}
            )
        except _ServerGone:
            logger.debug(f"Could not send cancellation for id={request_id}")

    async def _read_stdout(self) -> None:
        stdout = self.process.stdout
        if stdout is None:
            self._on_stream_closed()
            return
        try:
            while True:
                line = await stdout.readline()
                if not line:
                    break
                text = line.decode("utf-8", errors="replace").strip()
                if not text:
                    continue
                try:
                    message = json.loads(text)
                except json.JSONDecodeError:
                    logger.warning(f"Ignoring non-JSON output from '{self.name}': {text[:200]!r}")
                    continue
                if not isinstance(message, dict):
                    logger.warning(f"Ignoring non-object message from '{self.name}'")
                    continue
                await self._dispatch_incoming(message)
        except (ConnectionError, ValueError) as exc:
            logger.warning(f"Lost stdout of tool server '{self.name}': {exc}")
        finally:
            self._on_stream_closed()

    async def _dispatch_incoming(self, message: dict[str, Any]) -> None:
        method = message.get("method")
        if isinstance(method, str):
            if "id" in message:
                await self._answer_server_request(message["id"], method)
            else:
                logger.debug(f"← notification {method}")
            return

        request_id = message.get("id")
        future = self._pending.pop(request_id, None) if isinstance(request_id, int) else None
        if future is None:
            logger.debug(f"Dropping response for unknown request id={request_id!r}")
            return
        logger.debug(f"← response (id={request_id})")
        if not future.done():
            future.set_result(message)

    async def _answer_server_request(self, request_id: Any, method: str) -> None:
        response: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id}
        if method == "ping":
            response["result"] = {}
        else:
            logger.debug(f"Rejecting server request {method}")
            response["error"] = {"code": METHOD_NOT_FOUND, "message": f"Method not found: {method}"}
        try:
            await self._send_message(response)
        except _ServerGone:
            logger.debug(f"Could not answer server request {method}")

    async def _read_stderr(self) -> None:
        stderr = self.process.stderr
        if stderr is None:
            return
        with contextlib.suppress(ConnectionError, ValueError):
            while True:
                line = await stderr.readline()
                if not line:
                    return
                text = line.decode("utf-8", errors="replace").rstrip()
                if text:
                    self._stderr_tail.append(text)
                    logger.debug(f"[{self.name}] {text}")

    def _on_stream_closed(self) -> None:
        if not self._stream_closed:
            self._stream_closed = True
            if not self._closed:
                logger.warning(f"Tool server '{self.name}' closed its output{self._exit_hint()}")
        self._fail_pending(f"tool server '{self.name}' exited{self._exit_hint()}")

    def _fail_pending(self, detail: str) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(_ServerGone(detail))

    def _exit_hint(self) -> str:
        returncode = self.process.returncode
        return f" (exit code {returncode})" if returncode is not None else ""

    async def _settle_stderr(self, timeout: float = 1.0) -> None:
        """Give the stderr reader a moment to collect a dying server's last words."""
        if self._stderr_task is not None and not self._stderr_task.done():
            await asyncio.wait({self._stderr_task}, timeout=timeout)

    def _stderr_hint(self) -> str:
        if not self._stderr_tail:
            return ""
        return ": " + " | ".join(self._stderr_tail)


def _preview(arguments: Any, limit: int = 200) -> str:
    text = json.dumps(arguments, ensure_ascii=False, default=str)
    return text if len(text) <= limit else f"{text[:limit]}..."

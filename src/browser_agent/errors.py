"""Error kinds raised across the browser agent.

Startup failures (ConfigurationError, LaunchError, ProtocolError during
discovery) are fatal. Task-scoped failures (InvocationError, ModelError,
ProtocolError mid-session) fail only the current task. CancellationError is
not a fault: it ends the console loop with a clean shutdown.
"""

from __future__ import annotations

from enum import StrEnum


class BrowserAgentError(Exception):
    """Base exception for browser agent errors."""

    pass


class ConfigurationError(BrowserAgentError):
    """Required configuration is missing or invalid."""

    pass


class LaunchError(BrowserAgentError):
    """The tool server process could not be started or died during handshake."""

    pass


class ProtocolError(BrowserAgentError):
    """The tool server sent a malformed, missing or late response."""

    pass


class InvocationCause(StrEnum):
    """Why a tool invocation failed."""

    UNKNOWN_CAPABILITY = "unknown_capability"
    INVALID_ARGUMENTS = "invalid_arguments"
    REMOTE_ERROR = "remote_error"
    PROCESS_EXITED = "process_exited"
    MALFORMED_RESULT = "malformed_result"


class InvocationError(BrowserAgentError):
    """A tool call failed or the tool server is gone.

    >>> error = InvocationError("browser_click", InvocationCause.PROCESS_EXITED, "exit code 1")
    >>> error.cause
    <InvocationCause.PROCESS_EXITED: 'process_exited'>
    >>> str(error)
    "Tool 'browser_click' failed (process_exited): exit code 1"
    """

    def __init__(self, name: str, cause: InvocationCause, detail: str = "") -> None:
        self.name = name
        self.cause = cause
        self.detail = detail
        message = f"Tool '{name}' failed ({cause})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class UnknownCapabilityError(InvocationError):
    """The model asked for a tool that was never discovered."""

    def __init__(self, name: str) -> None:
        super().__init__(name, InvocationCause.UNKNOWN_CAPABILITY, "no such tool")


class ModelErrorReason(StrEnum):
    """Why a model run failed."""

    BACKEND_FAILURE = "backend_failure"
    TOOL_LOOP_EXCEEDED = "tool_loop_exceeded"
    UNEXPECTED_BEHAVIOR = "unexpected_behavior"


class ModelError(BrowserAgentError):
    """The model backend failed or exceeded the tool-calling bound."""

    def __init__(self, reason: ModelErrorReason, detail: str = "") -> None:
        self.reason = reason
        self.detail = detail
        message = f"Model run failed ({reason})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class CancellationError(BrowserAgentError):
    """The operator interrupted the session."""

    pass

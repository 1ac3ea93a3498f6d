"""Browser agent: natural-language browser automation over a stdio tool server.

This package provides:
- Stdio JSON-RPC transport for an MCP tool server subprocess (Playwright by default)
- Frozen tool catalog bridged into Pydantic AI tools
- Azure OpenAI model gateway with a bounded tool-calling loop
- Cancellable console loop and Typer CLI
"""

__version__ = "0.1.0"

from browser_agent.cancellation import CancellationToken  # noqa: E402
from browser_agent.catalog import ToolCatalog  # noqa: E402
from browser_agent.config import AgentConfig, ToolServerConfig, build_config  # noqa: E402
from browser_agent.console import ConsoleLoop, ConsoleState  # noqa: E402
from browser_agent.errors import (  # noqa: E402
    BrowserAgentError,
    CancellationError,
    ConfigurationError,
    InvocationCause,
    InvocationError,
    LaunchError,
    ModelError,
    ModelErrorReason,
    ProtocolError,
    UnknownCapabilityError,
)
from browser_agent.gateway import AgentHandle, ModelGateway, create_model  # noqa: E402
from browser_agent.session import AgentSession, open_session  # noqa: E402
from browser_agent.transport import StdioTransport  # noqa: E402

__all__ = [
    # Transport and catalog
    "StdioTransport",
    "ToolCatalog",
    # Model
    "AgentHandle",
    "ModelGateway",
    "create_model",
    # Session and console
    "AgentSession",
    "open_session",
    "ConsoleLoop",
    "ConsoleState",
    "CancellationToken",
    # Configuration
    "AgentConfig",
    "ToolServerConfig",
    "build_config",
    # Errors
    "BrowserAgentError",
    "CancellationError",
    "ConfigurationError",
    "InvocationCause",
    "InvocationError",
    "LaunchError",
    "ModelError",
    "ModelErrorReason",
    "ProtocolError",
    "UnknownCapabilityError",
]

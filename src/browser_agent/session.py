"""Agent session: one tool server, one catalog, one agent, one task at a time.

`open_session()` is the single owner of the transport and the model client.
It yields a ready AgentSession and closes both on every exit path, including
cancellation and startup failures after launch.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass

from pydantic_ai.models import Model

from browser_agent.cancellation import CancellationToken
from browser_agent.catalog import ToolCatalog
from browser_agent.config import AgentConfig
from browser_agent.gateway import AgentHandle, ModelGateway, create_model
from browser_agent.transport import StdioTransport

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AgentSession:
    """Immutable session state for the life of the program.

    Each operator line is evaluated as an independent task: no conversation
    history is carried from one task to the next.
    """

    transport: StdioTransport
    catalog: ToolCatalog
    gateway: ModelGateway
    handle: AgentHandle
    cancel: CancellationToken

    @property
    def instructions(self) -> str:
        return self.handle.instructions

    async def run_task(self, task: str) -> str:
        """Evaluate one operator task and return the model's final text."""
        return await self.gateway.run(self.handle, task, cancel=self.cancel)


@asynccontextmanager
async def open_session(
    config: AgentConfig,
    *,
    cancel: CancellationToken,
    model: Model | str | None = None,
) -> AsyncIterator[AgentSession]:
    """Start the tool server, discover tools, and build the agent.

    Args:
        config: Resolved agent configuration
        cancel: Process-wide cancellation token
        model: Model override (tests pass a FunctionModel); defaults to Azure OpenAI

    Raises:
        LaunchError: If the tool server cannot be started
        ProtocolError: If the handshake or discovery fails
        CancellationError: If `cancel` fires during startup
    """
    server = config.tool_server
    async with AsyncExitStack() as resources:
        if model is None:
            model = create_model(config, resources)

        transport = await cancel.guard(
            StdioTransport.start(
                server.command,
                server.arguments,
                name=server.name,
                startup_timeout=server.startup_timeout,
                shutdown_grace=server.shutdown_grace,
            )
        )
        await resources.enter_async_context(transport)

        catalog = await cancel.guard(ToolCatalog.build(transport))
        logger.info(
            f"Connected to tool server '{server.name}' ({server.command_line}) "
            f"and discovered {len(catalog.tools)} tools."
        )

        gateway = ModelGateway(
            model,
            max_tool_iterations=config.max_tool_iterations,
            tool_retries=config.tool_retries,
        )
        handle = gateway.create_agent(config.instructions, catalog)
        yield AgentSession(
            transport=transport,
            catalog=catalog,
            gateway=gateway,
            handle=handle,
            cancel=cancel,
        )

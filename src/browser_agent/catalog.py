"""Frozen tool catalog bridging discovered capabilities to Pydantic AI.

The catalog is built from exactly one discovery call and never changes
afterwards. It is the only place the model's tool calls reach the
transport: `as_model_tools()` turns every descriptor into a Pydantic AI
tool whose body forwards to `dispatch()`.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any, Protocol

from pydantic_ai import FunctionToolset, ModelRetry, Tool

from browser_agent.cancellation import CancellationToken
from browser_agent.discovery import CapabilityDescriptor, CapabilityResult
from browser_agent.errors import InvocationCause, InvocationError, UnknownCapabilityError

logger = logging.getLogger(__name__)

# Failures the model can fix by calling differently; everything else fails the task.
RETRYABLE_CAUSES = frozenset(
    {
        InvocationCause.UNKNOWN_CAPABILITY,
        InvocationCause.INVALID_ARGUMENTS,
        InvocationCause.REMOTE_ERROR,
    }
)


class CapabilityTransport(Protocol):
    """The part of the transport the catalog depends on."""

    async def list_capabilities(self) -> tuple[CapabilityDescriptor, ...]: ...

    async def invoke(
        self,
        name: str,
        arguments: dict[str, Any],
        *,
        cancel: CancellationToken | None = None,
    ) -> CapabilityResult: ...


@dataclass(frozen=True)
class ToolCatalog:
    """Immutable catalog of the tools discovered at startup.

    >>> catalog = ToolCatalog(transport=None, tools=(  # type: ignore[arg-type]
    ...     CapabilityDescriptor(name="browser_click", description="Click", parameters={}),
    ... ))
    >>> catalog.names
    ('browser_click',)
    >>> catalog.by_name("browser_type") is None
    True
    """

    transport: CapabilityTransport
    tools: tuple[CapabilityDescriptor, ...]
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False, compare=False)

    @classmethod
    async def build(cls, transport: CapabilityTransport) -> ToolCatalog:
        """Discover the tools once and freeze them.

        Raises:
            ProtocolError: If discovery fails
        """
        tools = await transport.list_capabilities()
        return cls(transport=transport, tools=tuple(tools))

    @property
    def names(self) -> tuple[str, ...]:
        """Tool names in discovery order."""
        return tuple(t.name for t in self.tools)

    def by_name(self, name: str) -> CapabilityDescriptor | None:
        """Look up a descriptor by name."""
        return next((t for t in self.tools if t.name == name), None)

    async def dispatch(
        self,
        name: str,
        arguments: dict[str, Any],
        *,
        cancel: CancellationToken | None = None,
    ) -> CapabilityResult:
        """Invoke a discovered tool.

        Calls are serialised: when the model asks for several tools in one
        response they run one after the other, in the order issued.

        Raises:
            UnknownCapabilityError: If `name` was not discovered (the transport is not touched)
            InvocationError: If the call itself fails
            CancellationError: If `cancel` fires while waiting
        """
        if self.by_name(name) is None:
            logger.warning(f"Model requested unknown tool '{name}'")
            raise UnknownCapabilityError(name)

        async with self._lock:
            return await self.transport.invoke(name, arguments, cancel=cancel)

    def as_model_tools(self, max_retries: int = 1) -> FunctionToolset[Any]:
        """Build the Pydantic AI toolset for the catalog. No I/O happens here.

        Args:
            max_retries: Retries the model gets per tool after a `ModelRetry`

        >>> catalog = ToolCatalog(transport=None, tools=(  # type: ignore[arg-type]
        ...     CapabilityDescriptor(name="browser_click", description="Click", parameters={}),
        ... ))
        >>> sorted(catalog.as_model_tools().tools)
        ['browser_click']
        """
        return FunctionToolset(
            tools=[self._as_tool(descriptor) for descriptor in self.tools],
            max_retries=max_retries,
        )

    def _as_tool(self, descriptor: CapabilityDescriptor) -> Tool[Any]:
        return Tool.from_schema(
            function=self._bridge(descriptor.name),
            name=descriptor.name,
            description=descriptor.description or descriptor.title or descriptor.name,
            json_schema=descriptor.parameters or {"type": "object", "properties": {}},
        )

    def _bridge(self, name: str) -> Callable[..., Coroutine[Any, Any, str]]:
        """Create the function Pydantic AI calls for tool `name`."""

        async def bridge(**kwargs: Any) -> str:
            try:
                result = await self.dispatch(name, kwargs)
            except InvocationError as exc:
                if exc.cause in RETRYABLE_CAUSES:
                    raise ModelRetry(str(exc)) from exc
                raise
            if not result.success:
                return f"Tool error: {result.text or 'no details provided'}"
            return result.text

        bridge.__name__ = name
        return bridge

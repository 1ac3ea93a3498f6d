"""Tests for the frozen tool catalog and its Pydantic AI bridge."""

import asyncio
from dataclasses import FrozenInstanceError

import pytest
from pydantic_ai import ModelRetry

import browser_agent
from browser_agent.catalog import ToolCatalog
from browser_agent.discovery import CapabilityResult
from browser_agent.errors import (
    InvocationCause,
    InvocationError,
    UnknownCapabilityError,
)

from tests.helpers import FakeTransport, descriptor


async def test_build_discovers_once():
    """Test build() makes exactly one discovery call and keeps order."""
    transport = FakeTransport(tools=[descriptor("navigate", ("url",)), descriptor("extractText")])

    catalog = await ToolCatalog.build(transport)

    assert transport.list_calls == 1
    assert catalog.names == ("navigate", "extractText")
    assert catalog.by_name("navigate").required == ("url",)


async def test_catalog_is_frozen():
    """Test the tool set cannot be replaced after construction."""
    catalog = await ToolCatalog.build(FakeTransport(tools=[descriptor("navigate")]))

    with pytest.raises(FrozenInstanceError):
        catalog.tools = ()  # type: ignore[misc]


async def test_dispatch_unknown_name_never_reaches_transport():
    """Test undiscovered names fail with UNKNOWN_CAPABILITY without any I/O."""
    transport = FakeTransport(tools=[descriptor("navigate")])
    catalog = await ToolCatalog.build(transport)

    with pytest.raises(UnknownCapabilityError) as exc_info:
        await catalog.dispatch("teleport", {})

    assert exc_info.value.cause is InvocationCause.UNKNOWN_CAPABILITY
    assert transport.calls == []


def test_unknown_capability_error_is_exported():
    """Test the package root exports UnknownCapabilityError with the other errors."""
    assert browser_agent.UnknownCapabilityError is UnknownCapabilityError
    assert "UnknownCapabilityError" in browser_agent.__all__
    assert issubclass(browser_agent.UnknownCapabilityError, browser_agent.InvocationError)


async def test_dispatch_forwards_discovered_name():
    """Test discovered names reach the transport with their arguments."""
    transport = FakeTransport(tools=[descriptor("navigate", ("url",))])
    catalog = await ToolCatalog.build(transport)

    result = await catalog.dispatch("navigate", {"url": "https://example.com"})

    assert result.success
    assert transport.calls == [("navigate", {"url": "https://example.com"})]


async def test_dispatch_serialises_concurrent_calls():
    """Test concurrent dispatches run one at a time in issue order."""
    transport = FakeTransport(tools=[descriptor("a"), descriptor("b")], delay=0.01)
    catalog = await ToolCatalog.build(transport)

    await asyncio.gather(catalog.dispatch("a", {}), catalog.dispatch("b", {}))

    assert transport.max_active == 1
    assert [name for name, _ in transport.calls] == ["a", "b"]


async def test_as_model_tools_mirrors_descriptors():
    """Test every descriptor becomes a Pydantic AI tool with its schema; no I/O happens."""
    transport = FakeTransport(tools=[descriptor("navigate", ("url",)), descriptor("extractText")])
    catalog = await ToolCatalog.build(transport)

    toolset = catalog.as_model_tools()

    assert sorted(toolset.tools) == ["extractText", "navigate"]
    navigate = toolset.tools["navigate"]
    assert navigate.description == "navigate tool"
    assert navigate.function_schema.json_schema["required"] == ["url"]
    assert transport.calls == []


async def test_bridge_returns_text():
    """Test the bridge returns the rendered tool content."""
    transport = FakeTransport(
        tools=[descriptor("extractText")],
        outcomes={
            "extractText": CapabilityResult(
                success=True, content=({"type": "text", "text": "Example Domain"},)
            )
        },
    )
    catalog = await ToolCatalog.build(transport)

    bridge = catalog.as_model_tools().tools["extractText"].function

    assert await bridge() == "Example Domain"


async def test_bridge_reports_tool_failure_as_text():
    """Test isError results go back to the model as text, not exceptions."""
    transport = FakeTransport(
        tools=[descriptor("click")],
        outcomes={
            "click": CapabilityResult(
                success=False, content=({"type": "text", "text": "element not found"},)
            ),
        },
    )
    catalog = await ToolCatalog.build(transport)

    bridge = catalog.as_model_tools().tools["click"].function

    assert await bridge() == "Tool error: element not found"


@pytest.mark.parametrize(
    ("cause", "retry"),
    [
        (InvocationCause.INVALID_ARGUMENTS, True),
        (InvocationCause.REMOTE_ERROR, True),
        (InvocationCause.PROCESS_EXITED, False),
        (InvocationCause.MALFORMED_RESULT, False),
    ],
)
async def test_bridge_retry_policy(cause, retry):
    """Test fixable failures ask the model to retry; the rest fail the task."""
    error = InvocationError("click", cause, "boom")
    transport = FakeTransport(tools=[descriptor("click")], outcomes={"click": error})
    catalog = await ToolCatalog.build(transport)

    bridge = catalog.as_model_tools().tools["click"].function

    expected = ModelRetry if retry else InvocationError
    with pytest.raises(expected):
        await bridge(selector="#go")

"""Shared fakes for catalog, gateway and session tests (no unittest.mock)."""

import asyncio
from pathlib import Path

from browser_agent.discovery import CapabilityDescriptor, CapabilityResult

FAKE_SERVER = Path(__file__).parent / "fixtures" / "fake_tool_server.py"


def descriptor(name: str, required: tuple[str, ...] = ()) -> CapabilityDescriptor:
    """Build a descriptor whose schema requires `required` string arguments."""
    return CapabilityDescriptor(
        name=name,
        description=f"{name} tool",
        parameters={
            "type": "object",
            "properties": {key: {"type": "string"} for key in required},
            "required": list(required),
        },
    )


def text_result(text: str, success: bool = True) -> CapabilityResult:
    return CapabilityResult(success=success, content=({"type": "text", "text": text},))


class FakeTransport:
    """Records calls; answers from a dict of name -> result or exception.

    Args:
        tools: Descriptors returned by list_capabilities()
        outcomes: Result (or exception to raise) per tool name; default "ok"
        delay: Seconds each invoke() sleeps before answering
    """

    def __init__(self, tools=(), outcomes=None, delay: float = 0.0):
        self.tools = tuple(tools)
        self.outcomes = outcomes or {}
        self.delay = delay
        self.list_calls = 0
        self.calls: list[tuple[str, dict]] = []
        self.active = 0
        self.max_active = 0

    async def list_capabilities(self):
        self.list_calls += 1
        return self.tools

    async def invoke(self, name, arguments, *, cancel=None):
        self.calls.append((name, arguments))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            outcome = self.outcomes.get(name, text_result("ok"))
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        finally:
            self.active -= 1

"""Capability types for tools discovered from the tool server.

This module defines the value objects exchanged with the tool server: the
descriptor built from a `tools/list` response and the result of a
`tools/call` request. Both are immutable. Parsing rejects
shapes the client cannot use and tolerates fields it does not know.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from browser_agent.errors import ProtocolError

EMPTY_OBJECT_SCHEMA: dict[str, Any] = {"type": "object", "properties": {}}


@dataclass(frozen=True)
class CapabilityDescriptor:
    """Descriptor for a single tool advertised by the tool server.

    >>> descriptor = CapabilityDescriptor(
    ...     name="browser_navigate",
    ...     description="Navigate to a URL",
    ...     parameters={
    ...         "type": "object",
    ...         "properties": {"url": {"type": "string"}},
    ...         "required": ["url"],
    ...     },
    ... )
    >>> descriptor.name
    'browser_navigate'
    >>> descriptor.required
    ('url',)
    """

    name: str
    """Unique tool identifier (e.g. 'browser_navigate')."""

    description: str
    """Human-readable description shown to the model."""

    parameters: dict[str, Any]
    """JSON Schema describing the tool arguments."""

    title: str | None = None
    """Optional display title."""

    @property
    def required(self) -> tuple[str, ...]:
        """Argument names the schema marks as required."""
        required = self.parameters.get("required", ())
        if not isinstance(required, list | tuple):
            return ()
        return tuple(str(item) for item in required)


@dataclass(frozen=True)
class CapabilityResult:
    """Outcome of one tool invocation.

    `success` is False when the server reported an application-level
    failure (`isError: true`). The model still sees the content so it can
    react to it.

    >>> result = CapabilityResult(
    ...     success=True,
    ...     content=({"type": "text", "text": "Example Domain"},),
    ... )
    >>> result.text
    'Example Domain'
    """

    success: bool
    content: tuple[dict[str, Any], ...] = ()
    structured: dict[str, Any] | None = None

    @property
    def text(self) -> str:
        """Render the content blocks as plain text for the model."""
        parts = [_render_block(block) for block in self.content]
        parts = [part for part in parts if part]
        if not parts and self.structured is not None:
            return json.dumps(self.structured, ensure_ascii=False)
        return "\n".join(parts)


def _render_block(block: dict[str, Any]) -> str:
    block_type = block.get("type")
    if block_type == "text":
        return str(block.get("text", ""))
    if block_type in ("image", "audio"):
        mime_type = block.get("mimeType", "application/octet-stream")
        size = len(str(block.get("data", "")))
        return f"[{block_type}: {mime_type}, {size} base64 chars]"
    if block_type == "resource":
        resource = block.get("resource")
        if isinstance(resource, dict):
            if "text" in resource:
                return str(resource["text"])
            return f"[resource: {resource.get('uri', 'unknown')}]"
    if block_type == "resource_link":
        return f"[resource: {block.get('uri', 'unknown')}]"
    return json.dumps(block, ensure_ascii=False)


def parse_tool_list(data: Any) -> tuple[CapabilityDescriptor, ...]:
    """Parse the descriptors from one `tools/list` result page.

    >>> page = {
    ...     "tools": [
    ...         {
    ...             "name": "browser_click",
    ...             "description": "Click an element",
    ...             "inputSchema": {"type": "object", "properties": {}},
    ...         }
    ...     ]
    ... }
    >>> [d.name for d in parse_tool_list(page)]
    ['browser_click']

    Raises:
        ProtocolError: If the page or any entry is malformed
    """
    if not isinstance(data, dict):
        raise ProtocolError(f"tools/list result must be an object, got {type(data).__name__}")

    tools_data = data.get("tools")
    if not isinstance(tools_data, list):
        raise ProtocolError("tools/list result has no 'tools' array")

    descriptors = []
    for index, entry in enumerate(tools_data):
        if not isinstance(entry, dict):
            raise ProtocolError(f"tools/list entry {index} is not an object")
        name = entry.get("name")
        if not isinstance(name, str) or not name:
            raise ProtocolError(f"tools/list entry {index} has no name")
        schema = entry.get("inputSchema", EMPTY_OBJECT_SCHEMA)
        if not isinstance(schema, dict):
            raise ProtocolError(f"Tool '{name}' has a non-object inputSchema")
        description = entry.get("description") or ""
        title = entry.get("title")
        descriptors.append(
            CapabilityDescriptor(
                name=name,
                description=str(description),
                parameters=schema,
                title=title if isinstance(title, str) else None,
            )
        )
    return tuple(descriptors)


def parse_call_result(data: Any) -> CapabilityResult:
    """Parse a `tools/call` result.

    >>> parse_call_result({"content": [], "isError": True}).success
    False

    Raises:
        ValueError: If the result does not have the expected shape
    """
    if not isinstance(data, dict):
        raise ValueError(f"tools/call result must be an object, got {type(data).__name__}")

    content = data.get("content", [])
    if not isinstance(content, list):
        raise ValueError("tools/call result 'content' must be an array")

    structured = data.get("structuredContent")
    return CapabilityResult(
        success=not bool(data.get("isError", False)),
        content=tuple(block for block in content if isinstance(block, dict)),
        structured=structured if isinstance(structured, dict) else None,
    )


def argument_problem(descriptor: CapabilityDescriptor, arguments: Any) -> str | None:
    """Describe why `arguments` cannot be sent for `descriptor`, or None.

    Only the structural part of the schema is checked here: the payload must
    be an object and carry every required property. Value-level validation
    is left to the tool server, which reports it as an error response.

    >>> descriptor = CapabilityDescriptor(
    ...     name="browser_navigate",
    ...     description="",
    ...     parameters={"type": "object", "required": ["url"]},
    ... )
    >>> argument_problem(descriptor, {"url": "https://example.com"}) is None
    True
    >>> argument_problem(descriptor, {})
    'missing required argument(s): url'
    """
    if not isinstance(arguments, dict):
        return f"arguments must be an object, got {type(arguments).__name__}"

    missing = [name for name in descriptor.required if name not in arguments]
    if missing:
        return f"missing required argument(s): {', '.join(missing)}"
    return None

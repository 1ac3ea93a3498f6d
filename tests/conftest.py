"""Pytest configuration and fixtures."""

import logging
import sys
from collections.abc import Callable, Iterator

import pytest

from browser_agent.config import AgentConfig, ToolServerConfig

from tests.helpers import FAKE_SERVER


@pytest.fixture
def server_arguments() -> Callable[..., tuple[str, ...]]:
    """Factory for the fake tool server's launch arguments.

    The command is always the running interpreter, so tests never depend on
    Node or a browser being installed.
    """

    def _arguments(*flags: str) -> tuple[str, ...]:
        return (str(FAKE_SERVER), *flags)

    return _arguments


@pytest.fixture
def tool_server_config(server_arguments) -> Callable[..., ToolServerConfig]:
    """Factory for a ToolServerConfig that launches the fake tool server."""

    def _config(*flags: str, **overrides) -> ToolServerConfig:
        values = {
            "name": "fake",
            "command": sys.executable,
            "arguments": server_arguments(*flags),
            "startup_timeout": 10.0,
            "shutdown_grace": 2.0,
        }
        values.update(overrides)
        return ToolServerConfig(**values)

    return _config


@pytest.fixture
def agent_config(tool_server_config) -> Callable[..., AgentConfig]:
    """Factory for an AgentConfig wired to the fake tool server."""

    def _config(*flags: str, **overrides) -> AgentConfig:
        values = {
            "endpoint": "https://example.openai.azure.com/",
            "api_key": "test-key",
            "tool_server": tool_server_config(*flags),
        }
        values.update(overrides)
        return AgentConfig(**values)

    return _config


@pytest.fixture
def clean_root_logger() -> Iterator[None]:
    """Restore root logger handlers and level after a test that configures logging."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)

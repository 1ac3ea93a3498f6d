"""Agent configuration resolved from command line, environment and file.

Precedence is command line > environment > settings file > built-in default.
The settings file is an optional JSON object (default `appsettings.json` in
the working directory) using the same keys as the environment variables.
Blank values count as absent at every layer.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from browser_agent.errors import ConfigurationError

logger = logging.getLogger(__name__)

EXIT_COMMAND = "exit"

DEFAULT_SETTINGS_FILE = Path("appsettings.json")
SETTINGS_FILE_ENV = "BROWSER_AGENT_CONFIG_FILE"

ENDPOINT = "AZURE_OPENAI_ENDPOINT"
DEPLOYMENT = "AZURE_OPENAI_DEPLOYMENT_NAME"
API_KEY = "AZURE_OPENAI_API_KEY"
API_VERSION = "AZURE_OPENAI_API_VERSION"
INSTRUCTIONS = "AGENT_INSTRUCTIONS"
MCP_NAME = "PLAYWRIGHT_MCP_NAME"
MCP_COMMAND = "PLAYWRIGHT_MCP_COMMAND"
MCP_ARGS = "PLAYWRIGHT_MCP_ARGS"
MAX_TOOL_ITERATIONS = "AGENT_MAX_TOOL_ITERATIONS"
TOOL_RETRIES = "AGENT_TOOL_RETRIES"
STARTUP_TIMEOUT = "MCP_STARTUP_TIMEOUT"
SHUTDOWN_GRACE = "MCP_SHUTDOWN_GRACE"

DEFAULT_DEPLOYMENT = "gpt-4o"
DEFAULT_API_VERSION = "2024-10-21"
DEFAULT_MCP_NAME = "playwright"
DEFAULT_MCP_COMMAND = "npx"
DEFAULT_MCP_ARGS = ("@playwright/mcp@latest",)

DEFAULT_INSTRUCTIONS = """\
You are a browser operations specialist. Use the Playwright MCP tools to inspect pages, \
fill forms, and report factual findings before responding."""


@dataclass(frozen=True)
class ToolServerConfig:
    """How to launch the tool server subprocess.

    >>> config = ToolServerConfig()
    >>> config.command_line
    'npx @playwright/mcp@latest'
    """

    name: str = DEFAULT_MCP_NAME
    command: str = DEFAULT_MCP_COMMAND
    arguments: tuple[str, ...] = DEFAULT_MCP_ARGS
    startup_timeout: float = 60.0
    shutdown_grace: float = 5.0

    @property
    def command_line(self) -> str:
        """The launch command as one display string."""
        return " ".join((self.command, *self.arguments))


@dataclass(frozen=True)
class AgentConfig:
    """Configuration for the browser agent.

    Frozen dataclass for immutable configuration. Only `endpoint` has no
    default; `api_key=None` means ambient Azure credentials are used.
    """

    endpoint: str
    deployment: str = DEFAULT_DEPLOYMENT
    api_key: str | None = None
    api_version: str = DEFAULT_API_VERSION
    instructions: str = DEFAULT_INSTRUCTIONS
    tool_server: ToolServerConfig = field(default_factory=ToolServerConfig)
    max_tool_iterations: int = 20
    tool_retries: int = 3


def parse_arguments(value: str | list[Any] | tuple[Any, ...]) -> tuple[str, ...]:
    """Split launch arguments on whitespace, dropping empty tokens.

    >>> parse_arguments("  @playwright/mcp@latest   --headless ")
    ('@playwright/mcp@latest', '--headless')
    >>> parse_arguments(["--browser", "firefox", ""])
    ('--browser', 'firefox')
    """
    if isinstance(value, str):
        return tuple(token for token in value.split() if token)
    return tuple(str(token).strip() for token in value if str(token).strip())


def load_settings_file(path: Path) -> dict[str, Any]:
    """Read a JSON settings file, or return {} if it is missing or unusable."""
    path = path.expanduser()
    if not path.is_file():
        return {}
    try:
        parsed = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.debug(f"Ignoring unreadable settings file {path}: {exc}")
        return {}
    if not isinstance(parsed, dict):
        logger.debug(f"Ignoring settings file {path}: top level is not an object")
        return {}
    logger.debug(f"Loaded settings from {path}")
    return parsed


def resolve_setting(
    key: str,
    overrides: Mapping[str, Any],
    environ: Mapping[str, str],
    file_settings: Mapping[str, Any],
) -> Any:
    """Return the first non-blank value for `key` by precedence, or None.

    >>> resolve_setting("K", {"K": "flag"}, {"K": "env"}, {"K": "file"})
    'flag'
    >>> resolve_setting("K", {"K": " "}, {"K": "env"}, {"K": "file"})
    'env'
    >>> resolve_setting("K", {}, {}, {"K": "file"})
    'file'
    >>> resolve_setting("K", {}, {}, {}) is None
    True
    """
    for layer in (overrides, environ, file_settings):
        value = layer.get(key)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value.strip() if isinstance(value, str) else value
    return None


def _to_positive_int(value: Any, *, default: int) -> int:
    if isinstance(value, bool):
        return default
    try:
        parsed = int(str(value).strip()) if value is not None else default
    except ValueError:
        logger.warning(f"Ignoring invalid integer setting {value!r}, using {default}")
        return default
    return parsed if parsed > 0 else default


def _to_positive_float(value: Any, *, default: float) -> float:
    if isinstance(value, bool) or value is None:
        return default
    try:
        parsed = float(str(value).strip())
    except ValueError:
        logger.warning(f"Ignoring invalid number setting {value!r}, using {default}")
        return default
    return parsed if parsed > 0 else default


def resolve_settings_path(
    config_file: Path | None, environ: Mapping[str, str]
) -> Path:
    """Settings file path: explicit option > BROWSER_AGENT_CONFIG_FILE > default."""
    if config_file is not None:
        return config_file
    env_path = environ.get(SETTINGS_FILE_ENV, "").strip()
    return Path(env_path) if env_path else DEFAULT_SETTINGS_FILE


def build_config(
    overrides: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
    config_file: Path | None = None,
) -> AgentConfig:
    """Merge all configuration layers into an AgentConfig.

    Args:
        overrides: Command-line values keyed by setting name (None = not given)
        environ: Environment mapping (defaults to os.environ)
        config_file: Explicit settings file path

    Raises:
        ConfigurationError: If the model endpoint is not configured
    """
    overrides = overrides or {}
    environ = os.environ if environ is None else environ
    file_settings = load_settings_file(resolve_settings_path(config_file, environ))

    def setting(key: str) -> Any:
        return resolve_setting(key, overrides, environ, file_settings)

    endpoint = setting(ENDPOINT)
    if not endpoint:
        raise ConfigurationError(f"Set {ENDPOINT} to your Azure OpenAI endpoint.")

    raw_args = setting(MCP_ARGS)
    arguments = parse_arguments(raw_args) if raw_args else DEFAULT_MCP_ARGS

    tool_server = ToolServerConfig(
        name=str(setting(MCP_NAME) or DEFAULT_MCP_NAME),
        command=str(setting(MCP_COMMAND) or DEFAULT_MCP_COMMAND),
        arguments=arguments or DEFAULT_MCP_ARGS,
        startup_timeout=_to_positive_float(setting(STARTUP_TIMEOUT), default=60.0),
        shutdown_grace=_to_positive_float(setting(SHUTDOWN_GRACE), default=5.0),
    )

    api_key = setting(API_KEY)
    return AgentConfig(
        endpoint=str(endpoint),
        deployment=str(setting(DEPLOYMENT) or DEFAULT_DEPLOYMENT),
        api_key=str(api_key) if api_key else None,
        api_version=str(setting(API_VERSION) or DEFAULT_API_VERSION),
        instructions=str(setting(INSTRUCTIONS) or DEFAULT_INSTRUCTIONS),
        tool_server=tool_server,
        max_tool_iterations=_to_positive_int(setting(MAX_TOOL_ITERATIONS), default=20),
        tool_retries=_to_positive_int(setting(TOOL_RETRIES), default=3),
    )

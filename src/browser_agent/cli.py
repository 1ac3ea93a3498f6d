"""Typer-based CLI for the browser agent.

There are no subcommands: the program resolves its configuration, launches
the tool server, and starts the console loop. Ctrl+C fires the session's
cancellation token; the tool server is always shut down before exit.
"""

import asyncio
import logging
import signal
import sys
from collections.abc import Callable
from logging.handlers import RotatingFileHandler
from pathlib import Path

import typer
from pydantic_ai.models import Model

from browser_agent import __version__
from browser_agent.cancellation import CancellationToken
from browser_agent.config import (
    API_KEY,
    API_VERSION,
    DEPLOYMENT,
    ENDPOINT,
    INSTRUCTIONS,
    MAX_TOOL_ITERATIONS,
    MCP_ARGS,
    MCP_COMMAND,
    MCP_NAME,
    SHUTDOWN_GRACE,
    STARTUP_TIMEOUT,
    TOOL_RETRIES,
    AgentConfig,
    build_config,
)
from browser_agent.console import ConsoleLoop, LineReader, StdinReader
from browser_agent.errors import (
    CancellationError,
    ConfigurationError,
    LaunchError,
    ProtocolError,
)
from browser_agent.session import open_session

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="browser-agent",
    help="Natural-language browser automation through a tool server and Azure OpenAI",
    add_completion=False,
)


def setup_logging(log_dir: Path, log_level: str) -> None:
    """Configure logging to a rotating file and single-line stderr output.

    Args:
        log_dir: Directory for log files (created if missing)
        log_level: Logging level (debug, info, warning, error, critical)
    """
    log_dir = log_dir.expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level.upper())

    # Clear existing handlers to prevent duplicates
    root_logger.handlers.clear()

    file_handler = RotatingFileHandler(
        log_dir / "browser-agent.log",
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=3,
    )
    file_handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"),
    )
    root_logger.addHandler(file_handler)

    # stdout belongs to the console conversation
    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(
        logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        ),
    )
    root_logger.addHandler(stderr_handler)

    # Request-level chatter from the HTTP stack drowns out the agent's own log
    for noisy in ("httpx", "httpcore", "openai", "azure"):
        logging.getLogger(noisy).setLevel(max(root_logger.level, logging.WARNING))


def install_interrupt_handler(
    loop: asyncio.AbstractEventLoop, cancel: CancellationToken
) -> Callable[[], None]:
    """Route SIGINT to the cancellation token. Returns a function that undoes it."""
    try:
        loop.add_signal_handler(signal.SIGINT, cancel.cancel, "operator interrupt")
    except (NotImplementedError, RuntimeError, ValueError):
        pass
    else:
        return lambda: loop.remove_signal_handler(signal.SIGINT)

    # Windows event loops have no add_signal_handler
    previous = signal.getsignal(signal.SIGINT)

    def handler(signum: int, frame: object) -> None:
        loop.call_soon_threadsafe(cancel.cancel, "operator interrupt")

    try:
        signal.signal(signal.SIGINT, handler)
    except ValueError:
        logger.debug("Not in the main thread; Ctrl+C handling left unchanged")
        return lambda: None
    return lambda: signal.signal(signal.SIGINT, previous)


async def run_agent_console(
    config: AgentConfig,
    *,
    cancel: CancellationToken | None = None,
    model: Model | str | None = None,
    reader: LineReader | None = None,
) -> int:
    """Run the agent console until exit, end of input, or cancellation.

    Args:
        config: Resolved configuration
        cancel: Cancellation token (created and wired to SIGINT if omitted)
        model: Model override; defaults to the configured Azure deployment
        reader: Operator line source; defaults to stdin, which is closed on return

    Returns:
        Process exit code: 0 on normal termination, 1 on startup failure
    """
    if cancel is None:
        cancel = CancellationToken()
    stdin_reader = StdinReader() if reader is None else None
    restore_interrupts = install_interrupt_handler(asyncio.get_running_loop(), cancel)
    try:
        async with open_session(config, cancel=cancel, model=model) as session:
            console = ConsoleLoop(session.run_task, cancel=cancel, reader=reader or stdin_reader)
            await console.run()
    except CancellationError:
        logger.info("Cancellation requested. Shutting down.")
    except (LaunchError, ProtocolError) as exc:
        logger.error(f"Startup failed: {exc}")
        typer.secho(f"Startup failed: {exc}", fg=typer.colors.RED, err=True)
        return 1
    except Exception as exc:
        logger.exception("Unhandled exception while running the agent.")
        typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
        return 1
    finally:
        restore_interrupts()
        if stdin_reader is not None:
            stdin_reader.close()
    return 0


@app.command()
def main(
    endpoint: str | None = typer.Option(
        None, "--endpoint", help=f"Azure OpenAI endpoint URL (overrides {ENDPOINT})"
    ),
    deployment: str | None = typer.Option(
        None, "--deployment", help=f"Model deployment name (overrides {DEPLOYMENT})"
    ),
    api_key: str | None = typer.Option(
        None, "--api-key", help=f"API key (overrides {API_KEY}); ambient credentials if unset"
    ),
    api_version: str | None = typer.Option(
        None, "--api-version", help=f"Azure OpenAI API version (overrides {API_VERSION})"
    ),
    instructions: str | None = typer.Option(
        None, "--instructions", help=f"System instructions (overrides {INSTRUCTIONS})"
    ),
    mcp_name: str | None = typer.Option(
        None, "--mcp-name", help=f"Tool server display name (overrides {MCP_NAME})"
    ),
    mcp_command: str | None = typer.Option(
        None, "--mcp-command", help=f"Tool server executable (overrides {MCP_COMMAND})"
    ),
    mcp_args: str | None = typer.Option(
        None, "--mcp-args", help=f"Tool server arguments, space separated (overrides {MCP_ARGS})"
    ),
    max_tool_iterations: int | None = typer.Option(
        None,
        "--max-tool-iterations",
        help=f"Tool-calling rounds per task before giving up (overrides {MAX_TOOL_ITERATIONS})",
    ),
    tool_retries: int | None = typer.Option(
        None, "--tool-retries", help=f"Retries per tool after a fixable failure (overrides {TOOL_RETRIES})"
    ),
    startup_timeout: float | None = typer.Option(
        None, "--startup-timeout", help=f"Seconds to wait for handshake and discovery (overrides {STARTUP_TIMEOUT})"
    ),
    shutdown_grace: float | None = typer.Option(
        None, "--shutdown-grace", help=f"Seconds to wait at each shutdown step (overrides {SHUTDOWN_GRACE})"
    ),
    config_file: Path | None = typer.Option(
        None, "--config-file", help="JSON settings file (default: appsettings.json)"
    ),
    log_dir: Path = typer.Option(
        Path("~/.browser-agent/logs"),
        "--log-dir",
        help="Directory for log files",
    ),
    log_level: str = typer.Option(
        "info",
        "--log-level",
        help="Logging level (debug, info, warning, error, critical)",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        help="Print version and exit",
    ),
) -> None:
    """Start the interactive browser agent console.

    Type a task per line; the agent calls browser tools as needed and prints
    its answer. Type 'exit' or press Ctrl+D to quit; Ctrl+C cancels.
    """
    if version:
        typer.echo(f"browser-agent {__version__}")
        raise typer.Exit(0)

    setup_logging(log_dir, log_level)

    overrides = {
        ENDPOINT: endpoint,
        DEPLOYMENT: deployment,
        API_KEY: api_key,
        API_VERSION: api_version,
        INSTRUCTIONS: instructions,
        MCP_NAME: mcp_name,
        MCP_COMMAND: mcp_command,
        MCP_ARGS: mcp_args,
        MAX_TOOL_ITERATIONS: max_tool_iterations,
        TOOL_RETRIES: tool_retries,
        STARTUP_TIMEOUT: startup_timeout,
        SHUTDOWN_GRACE: shutdown_grace,
    }
    try:
        config = build_config(overrides, config_file=config_file)
    except ConfigurationError as exc:
        typer.secho(f"Configuration error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    server = config.tool_server
    typer.echo(f"Using Azure OpenAI deployment '{config.deployment}' at '{config.endpoint}'.\n")
    typer.echo(f"Using tool server '{server.name}' ({server.command_line}).\n")

    exit_code = asyncio.run(run_agent_console(config))
    raise typer.Exit(exit_code)


if __name__ == "__main__":
    app()

"""Tests for the Typer CLI."""

import logging
import sys

import pytest
from pydantic_ai.messages import ModelResponse, TextPart
from pydantic_ai.models.function import FunctionModel
from typer.testing import CliRunner

from browser_agent import __version__
from browser_agent.cli import app, run_agent_console, setup_logging
from browser_agent.config import SETTINGS_FILE_ENV
from browser_agent.console import FAREWELL, PROMPT

from tests.helpers import FAKE_SERVER

runner = CliRunner()

SETTING_KEYS = (
    "AZURE_OPENAI_ENDPOINT",
    "AZURE_OPENAI_DEPLOYMENT_NAME",
    "AZURE_OPENAI_API_KEY",
    "AZURE_OPENAI_API_VERSION",
    "AGENT_INSTRUCTIONS",
    "PLAYWRIGHT_MCP_NAME",
    "PLAYWRIGHT_MCP_COMMAND",
    "PLAYWRIGHT_MCP_ARGS",
    "AGENT_MAX_TOOL_ITERATIONS",
    "AGENT_TOOL_RETRIES",
    "MCP_STARTUP_TIMEOUT",
    "MCP_SHUTDOWN_GRACE",
)


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Isolate tests from the developer's environment and settings file."""
    for key in SETTING_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv(SETTINGS_FILE_ENV, str(tmp_path / "no-settings.json"))


@pytest.fixture
def base_args(tmp_path):
    """Arguments for a run against the fake tool server with an offline model client."""
    return [
        "--endpoint",
        "https://example.openai.azure.com/",
        "--api-key",
        "test-key",
        "--mcp-name",
        "fake",
        "--mcp-command",
        sys.executable,
        "--mcp-args",
        str(FAKE_SERVER),
        "--log-dir",
        str(tmp_path / "logs"),
    ]


def test_version():
    """Test --version prints the version and exits."""
    result = runner.invoke(app, ["--version"])

    assert result.exit_code == 0
    assert f"browser-agent {__version__}" in result.output


def test_help_lists_options():
    """Test help text mentions the configuration options."""
    result = runner.invoke(app, ["--help"])

    assert result.exit_code == 0
    assert "--endpoint" in result.output
    assert "--mcp-command" in result.output


def test_missing_endpoint_exits_with_error(clean_env, clean_root_logger, tmp_path):
    """Test a missing endpoint is reported before anything is launched."""
    result = runner.invoke(app, ["--log-dir", str(tmp_path / "logs")])

    assert result.exit_code == 1
    assert "AZURE_OPENAI_ENDPOINT" in result.output
    assert "Using tool server" not in result.output


def test_bad_launch_command_exits_before_prompt(clean_env, clean_root_logger, base_args):
    """Test an unlaunchable tool server fails startup with exit code 1 and no prompt."""
    args = base_args + ["--mcp-command", "definitely-not-a-real-command-4242"]

    result = runner.invoke(app, args, input="open example.com\n")

    assert result.exit_code == 1
    assert "not found" in result.output
    assert PROMPT not in result.output


def test_startup_banner_and_exit(clean_env, clean_root_logger, base_args):
    """Test the startup lines, a blank line, and the exit keyword end with code 0."""
    result = runner.invoke(app, base_args, input="\nexit\n")

    assert result.exit_code == 0, result.output
    assert "Using Azure OpenAI deployment 'gpt-4o' at 'https://example.openai.azure.com/'." in result.output
    assert f"Using tool server 'fake' ({sys.executable} {FAKE_SERVER})." in result.output
    assert result.output.count(PROMPT) == 2
    assert FAREWELL in result.output


def test_end_of_input_exits_cleanly(clean_env, clean_root_logger, base_args):
    """Test end of input terminates the console with code 0."""
    result = runner.invoke(app, base_args, input="")

    assert result.exit_code == 0, result.output
    assert FAREWELL not in result.output


def test_setup_logging_writes_log_file(clean_root_logger, tmp_path):
    """Test logging goes to the rotating file in the log directory."""
    setup_logging(tmp_path / "logs", "debug")
    logging.getLogger("browser_agent.test").info("hello from the test")
    for handler in logging.getLogger().handlers:
        handler.flush()

    log_file = tmp_path / "logs" / "browser-agent.log"
    assert "hello from the test" in log_file.read_text(encoding="utf-8")
    assert logging.getLogger().level == logging.DEBUG


class ScriptedReader:
    def __init__(self, lines):
        self.lines = list(lines)

    async def readline(self):
        return self.lines.pop(0) if self.lines else None


async def test_run_agent_console_answers_tasks(agent_config, capsys):
    """Test the console prints the model's answer for a task, then exits."""
    model = FunctionModel(lambda messages, info: ModelResponse(parts=[TextPart("All done.")]))

    code = await run_agent_console(
        agent_config(), model=model, reader=ScriptedReader(["open example.com\n", "exit\n"])
    )

    output = capsys.readouterr().out
    assert code == 0
    assert "All done." in output
    assert FAREWELL in output


async def test_run_agent_console_reports_launch_failure(agent_config, capsys):
    """Test a startup failure returns exit code 1 with the reason on stderr."""
    code = await run_agent_console(
        agent_config("--crash-on-start"),
        model=FunctionModel(lambda messages, info: ModelResponse(parts=[TextPart("unused")])),
        reader=ScriptedReader([]),
    )

    captured = capsys.readouterr()
    assert code == 1
    assert "Startup failed" in captured.err
    assert PROMPT not in captured.out


class RecordingStdinReader(ScriptedReader):
    instances: list["RecordingStdinReader"] = []

    def __init__(self):
        super().__init__(["exit\n"])
        self.closed = False
        RecordingStdinReader.instances.append(self)

    def close(self):
        self.closed = True


async def test_run_agent_console_closes_stdin_reader(agent_config, monkeypatch, capsys):
    """Test the stdin reader the console creates is closed before returning."""
    RecordingStdinReader.instances.clear()
    monkeypatch.setattr("browser_agent.cli.StdinReader", RecordingStdinReader)
    model = FunctionModel(lambda messages, info: ModelResponse(parts=[TextPart("unused")]))

    code = await run_agent_console(agent_config(), model=model)

    (reader,) = RecordingStdinReader.instances
    assert code == 0
    assert reader.closed
    assert FAREWELL in capsys.readouterr().out

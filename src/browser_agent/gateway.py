"""Model gateway: Pydantic AI agent construction and bounded runs.

Provides create_model() for the Azure OpenAI chat deployment and
ModelGateway, which binds instructions and the discovered tools into an
AgentHandle once and runs one task at a time against it.

Pydantic AI drives the tool-calling loop itself: each tool call the model
emits goes through the catalog bridge and the result is appended to the
conversation before the next model request. The gateway bounds that loop
with a request limit and translates failures into ModelError.
"""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack
from dataclasses import dataclass
from typing import Any

from pydantic_ai import Agent
from pydantic_ai.exceptions import UnexpectedModelBehavior, UsageLimitExceeded
from pydantic_ai.messages import ModelMessage
from pydantic_ai.models import Model
from pydantic_ai.usage import UsageLimits

from browser_agent.cancellation import CancellationToken
from browser_agent.catalog import ToolCatalog
from browser_agent.config import AgentConfig
from browser_agent.errors import BrowserAgentError, ModelError, ModelErrorReason

logger = logging.getLogger(__name__)

COGNITIVE_SERVICES_SCOPE = "https://cognitiveservices.azure.com/.default"


def create_model(config: AgentConfig, resources: AsyncExitStack) -> Model:
    """Create the Azure OpenAI chat model for the configured deployment.

    Uses the API key when one is configured. Otherwise a bearer-token
    provider backed by `DefaultAzureCredential` is used, so environment,
    managed identity and developer logins all work without a key.

    The HTTP client (and credential, if any) are closed when `resources`
    unwinds: the client first, then the credential it borrows tokens from.
    """
    from openai import AsyncAzureOpenAI
    from pydantic_ai.models.openai import OpenAIChatModel
    from pydantic_ai.providers.azure import AzureProvider

    if config.api_key:
        logger.info("Authenticating to Azure OpenAI with an API key")
        client = AsyncAzureOpenAI(
            azure_endpoint=config.endpoint,
            api_version=config.api_version,
            api_key=config.api_key,
        )
    else:
        from azure.identity.aio import DefaultAzureCredential, get_bearer_token_provider

        logger.info("Authenticating to Azure OpenAI with ambient Azure credentials")
        credential = DefaultAzureCredential()
        resources.push_async_callback(credential.close)
        client = AsyncAzureOpenAI(
            azure_endpoint=config.endpoint,
            api_version=config.api_version,
            azure_ad_token_provider=get_bearer_token_provider(
                credential, COGNITIVE_SERVICES_SCOPE
            ),
        )
    resources.push_async_callback(client.close)

    return OpenAIChatModel(config.deployment, provider=AzureProvider(openai_client=client))


@dataclass(frozen=True)
class AgentHandle:
    """A Pydantic AI agent bound to fixed instructions and tools."""

    agent: Agent[None, str]
    instructions: str
    tool_names: tuple[str, ...]


class ModelGateway:
    """Runs tasks against the model with the discovered tools.

    Args:
        model: Pydantic AI model instance (or known model name)
        max_tool_iterations: Tool-calling rounds allowed per task before giving up
        tool_retries: Retries the model gets per tool after a retryable failure
    """

    def __init__(
        self,
        model: Model | str,
        *,
        max_tool_iterations: int = 20,
        tool_retries: int = 3,
    ) -> None:
        self.model = model
        self.max_tool_iterations = max_tool_iterations
        self.tool_retries = tool_retries

    def create_agent(self, instructions: str, catalog: ToolCatalog) -> AgentHandle:
        """Bind instructions and the catalog's tools into an agent handle."""
        agent = Agent(
            self.model,
            output_type=str,
            instructions=instructions,
            toolsets=[catalog.as_model_tools(max_retries=self.tool_retries)],
            retries=self.tool_retries,
        )
        logger.info(f"Agent created with {len(catalog.tools)} tools")
        return AgentHandle(agent=agent, instructions=instructions, tool_names=catalog.names)

    @property
    def usage_limits(self) -> UsageLimits:
        """Request bound: one request per tool round plus the final answer."""
        return UsageLimits(request_limit=self.max_tool_iterations + 1)

    async def run(
        self,
        handle: AgentHandle,
        task: str,
        *,
        cancel: CancellationToken,
        message_history: list[ModelMessage] | None = None,
    ) -> str:
        """Evaluate one task to final text.

        Returns:
            The model's final text (may be empty)

        Raises:
            ModelError: If the backend fails or the tool loop bound is exceeded
            InvocationError: If a tool call fails in a way the model cannot fix
            CancellationError: If `cancel` fires; partial state is discarded
        """
        logger.info(f"Running task: {task[:200]}")
        try:
            result = await cancel.guard(
                handle.agent.run(
                    task,
                    message_history=message_history,
                    usage_limits=self.usage_limits,
                )
            )
            usage = result.usage()
            logger.info(
                f"Agent run successful, response length: {len(result.output)} chars, "
                f"requests: {usage.requests}, total tokens: {usage.total_tokens}"
            )
        except BrowserAgentError:
            raise
        except UsageLimitExceeded as exc:
            logger.error(f"Usage limit exceeded: {exc}")
            raise ModelError(
                ModelErrorReason.TOOL_LOOP_EXCEEDED,
                f"no final answer after {self.max_tool_iterations} tool-calling rounds",
            ) from exc
        except UnexpectedModelBehavior as exc:
            logger.error(f"Unexpected model behavior: {exc}")
            raise ModelError(ModelErrorReason.UNEXPECTED_BEHAVIOR, str(exc)) from exc
        except ExceptionGroup as group:
            inner = _first_agent_error(group)
            if inner is not None:
                raise inner from group
            logger.exception("Agent run failed")
            raise ModelError(ModelErrorReason.BACKEND_FAILURE, str(group)) from group
        except Exception as exc:
            logger.exception("Agent run failed")
            raise ModelError(ModelErrorReason.BACKEND_FAILURE, str(exc)) from exc

        return result.output


def _first_agent_error(group: BaseExceptionGroup[Any]) -> BrowserAgentError | None:
    """Find the first BrowserAgentError inside a (possibly nested) exception group."""
    for exc in group.exceptions:
        if isinstance(exc, BrowserAgentError):
            return exc
        if isinstance(exc, BaseExceptionGroup):
            inner = _first_agent_error(exc)
            if inner is not None:
                return inner
    return None

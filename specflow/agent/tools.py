"""Closed tool registry for agents.

Every tool is a ``Tool`` variant tagged with a ``ToolName``; its input is
validated against a pydantic model before the handler runs. The registry
dispatches by tag only.

Dispatch turns model mistakes into data the model can react to:
unknown tool names, malformed JSON arguments, schema violations and
domain ValidationError/NotFoundError come back as
``{"error": True, "message": ...}``. ExternalServiceError and unexpected
exceptions propagate and fail the enclosing step.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from specflow.errors import NotFoundError, ValidationError
from specflow.schemas import tool_error
from specflow.tools.sandbox import run_cli_query


logger = logging.getLogger(__name__)


class ToolName(str, Enum):
    """All tools an agent may be given."""
    WEB_SEARCH = "web_search"
    CREATE_SANDBOX = "create_sandbox"
    CLOSE_SANDBOX = "close_sandbox"
    CLI_QUERY = "cli_query"
    DRAFT_SPEC = "draft_spec"
    UPDATE_SPEC = "update_spec"
    FINALIZE_SPEC = "finalize_spec"
    UPDATE_TITLE = "update_title"
    OPEN_PULL_REQUEST = "open_pull_request"
    REPORT_COMPLETION = "report_completion"


ToolHandler = Callable[[Any], Awaitable[Any]]


@dataclass(frozen=True)
class Tool:
    """A named tool: description, input model and async handler."""
    name: ToolName
    description: str
    input_model: type[BaseModel]
    handler: ToolHandler

    def schema(self) -> dict[str, Any]:
        """OpenAI function-calling definition."""
        parameters = self.input_model.model_json_schema()
        parameters.pop("title", None)
        return {
            "type": "function",
            "function": {
                "name": self.name.value,
                "description": self.description,
                "parameters": parameters,
            },
        }


class ToolRegistry:
    """A fixed set of tools, dispatched by name."""

    def __init__(self, tools: Iterable[Tool]):
        self._tools: dict[ToolName, Tool] = {}
        for tool in tools:
            if tool.name in self._tools:
                raise ValueError(f"Duplicate tool: {tool.name.value}")
            self._tools[tool.name] = tool

    @property
    def names(self) -> list[str]:
        return [name.value for name in self._tools]

    def get(self, name: str) -> Tool | None:
        try:
            return self._tools.get(ToolName(name))
        except ValueError:
            return None

    def schemas(self) -> list[dict[str, Any]]:
        return [tool.schema() for tool in self._tools.values()]

    async def dispatch(self, name: str, arguments: str | dict[str, Any] | None) -> Any:
        """Validate ``arguments`` for tool ``name`` and run its handler."""
        tool = self.get(name)
        if tool is None:
            logger.warning(f"[tools] Unknown tool requested: {name}")
            return tool_error(f"Unknown tool '{name}'. Available tools: {', '.join(self.names)}")

        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments or "{}")
            except json.JSONDecodeError as e:
                return tool_error(f"Arguments for '{name}' are not valid JSON: {e}")
        if not isinstance(arguments, dict):
            return tool_error(f"Arguments for '{name}' must be a JSON object")

        try:
            params = tool.input_model.model_validate(arguments)
        except PydanticValidationError as e:
            details = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'input'}: {err['msg']}" for err in e.errors()
            )
            return tool_error(f"Invalid input for '{name}': {details}")

        logger.info(f"[tools] Dispatching {name}")
        try:
            return await tool.handler(params)
        except (ValidationError, NotFoundError) as e:
            logger.info(f"[tools] {name} rejected input: {e}")
            return tool_error(str(e))


# =============================================================================
# Shared tools
# =============================================================================

class CreateSandboxInput(BaseModel):
    repo: str = Field(
        ...,
        description="Repository name. Not in owner/repo format, just the repo name without the owner.",
    )


class CloseSandboxInput(BaseModel):
    sandbox_id: str = Field(..., description="ID of the sandbox to close.")


class CliQueryInput(BaseModel):
    query: str = Field(..., description="Natural language instructions to be passed to the CLI AI.")
    sandbox_id: str = Field(
        ...,
        description="ID of the sandbox to use. If you do not have one, use the create_sandbox tool first.",
    )


class WebSearchInput(BaseModel):
    query: str = Field(..., min_length=1, description="Search query")
    num_results: int = Field(default=5, ge=1, le=10)


class ReportCompletionInput(BaseModel):
    summary: str = Field(..., description="One-sentence description of what was accomplished")
    code: int | None = Field(default=None)


def report_completion_tool(on_complete: Callable[[ReportCompletionInput], Awaitable[None]] | None = None) -> Tool:
    """Terminal tool; agents stop after a turn that calls it."""

    async def handler(params: ReportCompletionInput) -> dict[str, Any]:
        if on_complete is not None:
            await on_complete(params)
        return {"acknowledged": True}

    return Tool(
        name=ToolName.REPORT_COMPLETION,
        description=(
            "Call this exactly once when the task is complete. The summary should be a concise, "
            "one-sentence description of what you accomplished."
        ),
        input_model=ReportCompletionInput,
        handler=handler,
    )


def close_sandbox_tool(sandbox: Any) -> Tool:
    async def handler(params: CloseSandboxInput) -> dict[str, Any]:
        return await sandbox.stop(params.sandbox_id)

    return Tool(
        name=ToolName.CLOSE_SANDBOX,
        description=(
            "Closes the sandbox with the given sandbox_id. Call this when you are done with the "
            "sandbox, before reporting completion."
        ),
        input_model=CloseSandboxInput,
        handler=handler,
    )


def cli_query_tool(sandbox: Any, cwd: str | None = None) -> Tool:
    async def handler(params: CliQueryInput) -> dict[str, Any]:
        return await run_cli_query(sandbox, params.sandbox_id, params.query, cwd=cwd)

    return Tool(
        name=ToolName.CLI_QUERY,
        description=(
            "Interact with an AI deployed in the CLI of the sandbox. Phrase the query as natural "
            "language, in full sentences, with as much detail as possible."
        ),
        input_model=CliQueryInput,
        handler=handler,
    )


def web_search_tool(search: Any) -> Tool:
    async def handler(params: WebSearchInput) -> dict[str, Any]:
        return await search.search(params.query, num_results=params.num_results)

    return Tool(
        name=ToolName.WEB_SEARCH,
        description="Search the web for documentation, libraries and other up-to-date information.",
        input_model=WebSearchInput,
        handler=handler,
    )

"""Planner workflow: negotiates a change with the user and drafts its spec.

plan(thread_id, messages):
1. begin_planning step: the thread enters ``planning``
2. durable agent with search, sandbox, spec and title tools, until it
   calls ``report_completion`` or yields the floor to the user
3. save_transcript step: the assistant reply is appended to the thread

``finalize_spec`` hands the latest draft over to the worker workflow.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from specflow.agent import worker
from specflow.agent.durable import DurableAgent, has_tool_call
from specflow.agent.prompts import (
    PLANNER_CLI_ROLES,
    THREAD_CONTEXT_MESSAGE,
    format_cli_agent_config,
    format_draft_spec_prompt,
    format_planner_system_prompt,
)
from specflow.agent.tools import (
    CreateSandboxInput,
    Tool,
    ToolName,
    ToolRegistry,
    cli_query_tool,
    close_sandbox_tool,
    report_completion_tool,
    web_search_tool,
)
from specflow.database.repository import Repository
from specflow.errors import NotFoundError, ValidationError
from specflow.schemas import JobStatus, LLMMessage, ThreadState, to_model_messages, tool_error
from specflow.tools.git_ops import repo_clone_url
from specflow.tools.sandbox import install_cli_agent
from specflow.workflow.engine import WorkflowContext, WorkflowEngine, current_step_key

if TYPE_CHECKING:
    from specflow.container import Container


logger = logging.getLogger(__name__)

WORKFLOW_NAME = "plan"

HEADING_RE = re.compile(r"^#+\s*")


def spec_title(content: str, thread_title: str | None) -> str:
    """Title of a drafted spec: its first heading, else derived from the thread."""
    first_line = content.split("\n", 1)[0]
    if first_line.startswith("#"):
        heading = HEADING_RE.sub("", first_line).strip()
        if heading:
            return heading
    if thread_title:
        return f"Draft Spec for {thread_title}"
    return "Draft Spec"


# =============================================================================
# Steps
# =============================================================================

async def begin_planning(repository: Repository, thread_id: str) -> dict[str, Any]:
    thread = await repository.update_thread_state(thread_id, ThreadState.PLANNING)
    if thread is None:
        raise NotFoundError("Thread", thread_id)
    return {"thread_id": thread.id, "title": thread.title, "state": thread.state}


async def save_transcript(repository: Repository, thread_id: str, message: dict[str, Any]) -> dict[str, Any]:
    """Append the assistant reply to the thread's chat (once per message id)."""
    thread = await repository.get_thread(thread_id)
    if thread is None:
        raise NotFoundError("Thread", thread_id)

    chat = list(thread.chat or [])
    if chat and chat[-1].get("id") == message["id"]:
        return {"thread_id": thread_id, "messages": len(chat)}

    chat.append(message)
    await repository.save_thread(thread_id, chat=chat)
    return {"thread_id": thread_id, "messages": len(chat)}


# =============================================================================
# Tools
# =============================================================================

class DraftSpecInput(BaseModel):
    thread_id: str = Field(..., description="ID of the thread for which to draft the spec")
    repo: str = Field(..., description="Target repository for the spec, in all lowercase")


class UpdateSpecInput(BaseModel):
    spec_id: str = Field(..., description="ID of the existing spec to update")
    title: str | None = Field(default=None, description="New title for the spec")
    repo: str | None = Field(default=None, description="Target repository for the spec, in all lowercase")
    content: str | None = Field(default=None, description="Full replacement for the spec content")


class FinalizeSpecInput(BaseModel):
    thread_id: str = Field(..., description="ID of the thread whose spec should be finalized")


class UpdateTitleInput(BaseModel):
    thread_id: str = Field(..., description="ID of the thread to rename")
    title: str = Field(
        ...,
        min_length=3,
        max_length=120,
        description="A concise, human-friendly title that summarizes the thread",
    )


def _spec_view(spec: Any) -> dict[str, Any]:
    return {"spec_id": spec.id, "title": spec.title, "content": spec.content, "repo": spec.repo}


def build_planner_tools(services: Container) -> ToolRegistry:
    settings = services.settings
    repository = services.repository
    sandbox = services.sandbox

    def check_repo(repo: str) -> None:
        if settings.repos and repo not in settings.repos:
            raise ValidationError(f"Unknown repository '{repo}'. Accessible repositories: {', '.join(settings.repos)}")

    async def create_sandbox(params: CreateSandboxInput) -> dict[str, Any]:
        check_repo(params.repo)
        created = await sandbox.create(
            source_url=repo_clone_url(settings.github_owner, params.repo),
            username="x-access-token",
            password=settings.github_token,
            idempotency_key=current_step_key(),
        )
        sandbox_id = created["sandbox_id"]
        config = format_cli_agent_config(
            model=settings.planner_model,
            api_key=settings.llm_api_key,
            api_base=settings.llm_base_url,
            roles=PLANNER_CLI_ROLES,
        )
        result = await install_cli_agent(sandbox, sandbox_id, config)
        if not result.ok:
            return tool_error(f"Sandbox {sandbox_id} setup failed: {result.error_message}")
        return {"sandbox_id": sandbox_id}

    async def draft_spec(params: DraftSpecInput) -> dict[str, Any]:
        check_repo(params.repo)
        thread = await repository.get_thread(params.thread_id)
        if thread is None:
            raise NotFoundError("Thread", params.thread_id)

        response = await services.llm.chat_completion(
            messages=[LLMMessage(role="user", content=format_draft_spec_prompt(thread.chat))],
            model=settings.planner_model,
            temperature=0.3,
        )
        content = (response.content or "").strip()
        if not content:
            return tool_error("The model returned an empty spec")

        spec = await repository.create_draft_spec(
            params.thread_id,
            title=spec_title(content, thread.title),
            content=content,
            repo=params.repo,
        )
        logger.info(f"[planner] Drafted spec {spec.id} v{spec.version} for thread {params.thread_id}")
        return _spec_view(spec)

    async def update_spec(params: UpdateSpecInput) -> dict[str, Any]:
        if params.repo is not None:
            check_repo(params.repo)
        spec = await repository.get_spec(params.spec_id)
        if spec is None:
            raise NotFoundError("Spec", params.spec_id)
        if await repository.get_jobs_for_spec(spec.id):
            raise ValidationError(f"Spec {spec.id} is finalized and can no longer be edited")
        spec = await repository.update_draft_spec(
            spec.id, title=params.title, content=params.content, repo=params.repo
        )
        return _spec_view(spec)

    async def finalize_spec(params: FinalizeSpecInput) -> dict[str, Any]:
        key = current_step_key()
        job = await repository.get_job_by_idempotency_key(key) if key else None

        if job is None:
            if await repository.get_thread(params.thread_id) is None:
                raise NotFoundError("Thread", params.thread_id)
            spec = await repository.get_latest_draft_spec(params.thread_id)
            if spec is None:
                return tool_error("No draft spec found to finalize")
            job = await repository.create_job(spec.id, status=JobStatus.QUEUED, idempotency_key=key)
            logger.info(f"[planner] Finalized spec {spec.id} as job {job.id}")

        # Runs on retries too: a previous attempt may have stopped after creating the job
        await repository.update_thread_state(params.thread_id, ThreadState.WORKING)
        run = await services.engine.start(
            worker.WORKFLOW_NAME,
            {"job_id": job.id},
            run_id=worker.worker_run_id(job.id),
        )
        return {"job_id": job.id, "spec_id": job.spec_id, "run_id": run.run_id}

    async def update_title(params: UpdateTitleInput) -> dict[str, Any]:
        title = params.title.strip()
        if not title:
            raise ValidationError("Title cannot be empty")
        thread = await repository.rename_thread(params.thread_id, title)
        if thread is None:
            raise NotFoundError("Thread", params.thread_id)
        return {"id": thread.id, "title": thread.title, "updated_at": thread.updated_at.isoformat()}

    tools: list[Tool] = []
    if settings.exa_api_key and services.search is not None:
        tools.append(web_search_tool(services.search))
    tools.extend(
        [
            Tool(
                name=ToolName.CREATE_SANDBOX,
                description=(
                    "Creates a sandbox with the given repository cloned and a CLI AI agent installed. "
                    "Call before exploring a codebase with cli_query."
                ),
                input_model=CreateSandboxInput,
                handler=create_sandbox,
            ),
            close_sandbox_tool(sandbox),
            cli_query_tool(sandbox),
            Tool(
                name=ToolName.DRAFT_SPEC,
                description="Create a draft design spec for a thread based on the conversation so far.",
                input_model=DraftSpecInput,
                handler=draft_spec,
            ),
            Tool(
                name=ToolName.UPDATE_SPEC,
                description="Update a draft spec. Provided content fully replaces the existing content.",
                input_model=UpdateSpecInput,
                handler=update_spec,
            ),
            Tool(
                name=ToolName.FINALIZE_SPEC,
                description="Finalize the latest draft spec for a thread and queue an implementation job.",
                input_model=FinalizeSpecInput,
                handler=finalize_spec,
            ),
            Tool(
                name=ToolName.UPDATE_TITLE,
                description=(
                    "Update the title of a conversation thread. Use this sparingly, when the overall "
                    "topic or goal changes significantly."
                ),
                input_model=UpdateTitleInput,
                handler=update_title,
            ),
            report_completion_tool(),
        ]
    )
    return ToolRegistry(tools)


# =============================================================================
# Workflow
# =============================================================================

async def plan(ctx: WorkflowContext, thread_id: str, messages: list[dict[str, Any]]) -> dict[str, Any]:
    services: Container = ctx.services

    await ctx.step("begin_planning", begin_planning, {"repository": services.repository, "thread_id": thread_id})

    model_messages = [LLMMessage(role="system", content=THREAD_CONTEXT_MESSAGE.format(thread_id=thread_id))]
    model_messages.extend(to_model_messages(messages))

    agent = DurableAgent(
        llm=services.llm,
        model=services.settings.planner_model,
        system=format_planner_system_prompt(services.settings.repos),
        tools=build_planner_tools(services),
        max_turns=services.settings.agent_max_turns,
    )
    result = await agent.stream(
        ctx,
        messages=[m.model_dump(exclude_none=True) for m in model_messages],
        stop_when=has_tool_call(ToolName.REPORT_COMPLETION),
    )

    await ctx.step(
        "save_transcript",
        save_transcript,
        {
            "repository": services.repository,
            "thread_id": thread_id,
            "message": {"id": f"msg-{ctx.run_id}", "role": "assistant", "parts": result["parts"]},
        },
    )

    return {"thread_id": thread_id, "halt_reason": result["halt_reason"], "turns": result["turns"]}


def register(engine: WorkflowEngine) -> None:
    engine.register(WORKFLOW_NAME, plan)

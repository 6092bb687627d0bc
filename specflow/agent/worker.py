"""Worker workflow: applies a finalized spec in a sandbox and opens a PR.

handle_job(job_id):
1. prepare_job step: load Job and Spec, move the Job to ``apply``, resolve
   the feature branch and persist it on the Spec and the Job
2. durable agent with sandbox, CLI agent and GitHub tools, until it calls
   ``report_completion``

If the run fails for any reason the Job is marked ``failed`` with the
error message.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from specflow.agent.durable import DurableAgent, has_tool_call
from specflow.agent.prompts import (
    PULL_REQUEST_TITLE,
    WORKER_CLI_ROLES,
    WORKER_SYSTEM_PROMPT,
    format_cli_agent_config,
    format_worker_job_message,
)
from specflow.agent.tools import (
    CreateSandboxInput,
    ReportCompletionInput,
    Tool,
    ToolName,
    ToolRegistry,
    cli_query_tool,
    close_sandbox_tool,
    report_completion_tool,
)
from specflow.database.models import Spec
from specflow.database.repository import Repository
from specflow.errors import AgentIncompleteError, ExternalServiceError, NotFoundError, ValidationError
from specflow.schemas import TERMINAL_JOB_STATUSES, HaltReason, JobStatus, SpecType, tool_error
from specflow.tools.git_ops import clone_repo, configure_git, ensure_branch, repo_clone_url
from specflow.tools.sandbox import install_cli_agent
from specflow.workflow.engine import WorkflowContext, WorkflowEngine, current_step_key

if TYPE_CHECKING:
    from specflow.container import Container


logger = logging.getLogger(__name__)

WORKFLOW_NAME = "handle_job"
REPO_DIR = "repo"


def derive_feature_branch(spec_id: str) -> str:
    """Deterministic feature branch for a spec."""
    return f"feat/autogen-{spec_id[:8]}"


def resolve_branch(spec: Spec) -> str:
    """Update specs keep their existing branch; everything else derives one."""
    if spec.type == SpecType.UPDATE.value and spec.branch:
        return spec.branch
    return derive_feature_branch(spec.id)


def worker_run_id(job_id: str) -> str:
    """Run id of the worker run started for a job by finalize."""
    return f"job-{job_id}"


# =============================================================================
# Steps
# =============================================================================

async def prepare_job(repository: Repository, job_id: str) -> dict[str, Any]:
    """Load the job and its spec, enter ``apply`` and pin the branch.

    Lookups happen before any write, so a missing Job or Spec leaves the
    database untouched. Re-running recomputes the same branch.
    """
    logger.info(f"[worker] Processing job {job_id}")

    job = await repository.get_job(job_id)
    if job is None:
        raise NotFoundError("Job", job_id)

    spec = await repository.get_spec(job.spec_id)
    if spec is None:
        raise NotFoundError("Spec", job.spec_id)

    branch = resolve_branch(spec)
    job = await repository.update_job(job.id, status=JobStatus.APPLY, branch=branch, restart=True)
    spec = await repository.update_spec(spec.id, branch=branch)

    return {
        "job": job.model_dump(mode="json"),
        "spec": spec.model_dump(mode="json"),
    }


async def mark_job_failed(services: Container, args: dict[str, Any], error: BaseException) -> None:
    """Failure hook: record the error on the job unless it already finished."""
    job_id = args.get("job_id")
    job = await services.repository.get_job(job_id) if job_id else None
    if job is None:
        return
    if JobStatus(job.status) in TERMINAL_JOB_STATUSES:
        return
    await services.repository.update_job(job.id, status=JobStatus.FAILED, error=str(error))
    logger.info(f"[worker] Job {job.id} marked failed: {error}")


# =============================================================================
# Tools
# =============================================================================

class OpenPullRequestInput(BaseModel):
    title: str = Field(..., min_length=3, max_length=200, description="Short PR title")
    body: str = Field(default="", description="Markdown description of the change")


def build_worker_tools(services: Container, job: dict[str, Any], spec: dict[str, Any]) -> ToolRegistry:
    settings = services.settings
    repository = services.repository
    sandbox = services.sandbox
    branch = spec["branch"]

    async def create_sandbox(params: CreateSandboxInput) -> dict[str, Any]:
        if params.repo != spec["repo"]:
            raise ValidationError(f"This job targets '{spec['repo']}', not '{params.repo}'")

        created = await sandbox.create(idempotency_key=current_step_key())
        sandbox_id = created["sandbox_id"]

        config = format_cli_agent_config(
            model=settings.codegen_model,
            api_key=settings.llm_api_key,
            api_base=settings.llm_base_url,
            roles=WORKER_CLI_ROLES,
        )
        steps = (
            lambda: install_cli_agent(sandbox, sandbox_id, config),
            lambda: configure_git(
                sandbox, sandbox_id, settings.git_user_name, settings.git_user_email, settings.github_token
            ),
            lambda: clone_repo(sandbox, sandbox_id, repo_clone_url(settings.github_owner, params.repo), REPO_DIR),
            lambda: ensure_branch(sandbox, sandbox_id, REPO_DIR, branch),
        )
        for run in steps:
            result = await run()
            if not result.ok:
                return tool_error(f"Sandbox {sandbox_id} setup failed ({result.error_code}): {result.error_message}")

        return {"sandbox_id": sandbox_id, "branch": branch, "path": REPO_DIR}

    async def open_pull_request(params: OpenPullRequestInput) -> dict[str, Any]:
        if services.github is None:
            raise ExternalServiceError("github", "GitHub is not configured")
        pr = await services.github.create_pull_request(
            repo=spec["repo"],
            head=branch,
            title=PULL_REQUEST_TITLE.format(branch=branch, title=params.title),
            body=params.body,
        )
        await repository.update_job(job["id"], status=JobStatus.PR_OPEN, pr_url=pr["url"])
        return pr

    async def complete_job(params: ReportCompletionInput) -> None:
        await repository.update_job(job["id"], status=JobStatus.COMPLETE)
        logger.info(f"[worker] Job {job['id']} complete: {params.summary}")

    return ToolRegistry(
        [
            Tool(
                name=ToolName.CREATE_SANDBOX,
                description=(
                    "Creates a sandbox for the job: clones the repository, checks out the implementation "
                    "branch and installs the CLI AI agent. Call once before any other sandbox operation."
                ),
                input_model=CreateSandboxInput,
                handler=create_sandbox,
            ),
            cli_query_tool(sandbox, cwd=REPO_DIR),
            close_sandbox_tool(sandbox),
            Tool(
                name=ToolName.OPEN_PULL_REQUEST,
                description=(
                    "Opens a pull request from the implementation branch. Reuses the open PR for the "
                    "branch if there already is one."
                ),
                input_model=OpenPullRequestInput,
                handler=open_pull_request,
            ),
            report_completion_tool(complete_job),
        ]
    )


# =============================================================================
# Workflow
# =============================================================================

async def handle_job(ctx: WorkflowContext, job_id: str) -> dict[str, Any]:
    services: Container = ctx.services

    prepared = await ctx.step(
        "prepare_job",
        prepare_job,
        {"repository": services.repository, "job_id": job_id},
    )
    job, spec = prepared["job"], prepared["spec"]

    agent = DurableAgent(
        llm=services.llm,
        model=services.settings.codegen_model,
        system=WORKER_SYSTEM_PROMPT,
        tools=build_worker_tools(services, job, spec),
        max_turns=services.settings.agent_max_turns,
    )
    message = format_worker_job_message(
        repo=spec["repo"],
        spec_type=spec["type"],
        branch=spec["branch"],
        content=spec["content"],
    )
    result = await agent.stream(
        ctx,
        messages=[{"role": "user", "content": message}],
        stop_when=has_tool_call(ToolName.REPORT_COMPLETION),
    )

    if result["halt_reason"] != HaltReason.STOP_CONDITION.value:
        raise AgentIncompleteError(result["halt_reason"])

    return {
        "job_id": job_id,
        "branch": spec["branch"],
        "halt_reason": result["halt_reason"],
        "turns": result["turns"],
    }


def register(engine: WorkflowEngine) -> None:
    engine.register(WORKFLOW_NAME, handle_job, on_failure=mark_job_failed)

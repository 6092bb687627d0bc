"""FastAPI routes for the Specflow API.

Endpoints:
- GET    /health                   - Health check
- POST   /chat                     - Send chat messages, stream the planner's reply
- GET    /threads                  - List threads
- GET    /thread/{id}              - Get a thread with its transcript
- PUT    /thread/{id}              - Rename a thread
- DELETE /thread/{id}              - Delete a thread
- GET    /thread/{id}/stream       - Reattach to a thread's output stream
- PUT    /job/{id}                 - Re-trigger the worker for a job
- POST   /webhook/github           - PR review feedback → update spec + job
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator

from fastapi import APIRouter, Depends, Query, Request, Response, status
from fastapi.responses import JSONResponse, StreamingResponse

from specflow.agent import planner, worker
from specflow.container import Container
from specflow.errors import InvalidTransitionError, NotFoundError, ValidationError
from specflow.schemas import (
    ChatRequest,
    JobTriggerResponse,
    RenameThreadRequest,
    ThreadResponse,
    ThreadState,
    ThreadSummary,
    WebhookResponse,
)
from specflow.tools.github import parse_feedback, verify_signature


logger = logging.getLogger(__name__)
router = APIRouter()

UI_STREAM_HEADERS = {
    "x-vercel-ai-ui-message-stream": "v1",
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
}


def get_container(request: Request) -> Container:
    return request.app.state.container


async def sse(chunks: AsyncIterator[dict[str, Any]]) -> AsyncIterator[str]:
    """Encode UI message chunks as server-sent events."""
    async for chunk in chunks:
        yield f"data: {json.dumps(chunk)}\n\n"
    yield "data: [DONE]\n\n"


def ui_stream_response(run_id: str, chunks: AsyncIterator[dict[str, Any]], **headers: str) -> StreamingResponse:
    return StreamingResponse(
        sse(chunks),
        media_type="text/event-stream",
        headers={**UI_STREAM_HEADERS, "x-workflow-run-id": run_id, **headers},
    )


# =============================================================================
# Health Check
# =============================================================================

@router.get("/health")
async def health(deep: bool = False, container: Container = Depends(get_container)) -> dict:
    """Health check endpoint. ``deep`` also probes the model gateway."""
    result = {
        "status": "ok",
        "version": container.settings.app_version,
        "environment": container.settings.environment,
        "workflows": container.engine.workflows,
    }
    if deep:
        llm_ok = await container.llm.health_check()
        result["llm"] = llm_ok
        if not llm_ok:
            result["status"] = "degraded"
    return result


# =============================================================================
# Chat
# =============================================================================

@router.post("/chat")
async def chat(body: ChatRequest, container: Container = Depends(get_container)) -> StreamingResponse:
    """Start a planner run for a thread and stream its output.

    Without ``threadId`` (or with an unknown one) a new thread is created.
    """
    repository = container.repository

    thread = await repository.get_thread(body.thread_id) if body.thread_id else None
    if thread is None:
        thread = await repository.create_thread("New Thread", chat=body.messages, thread_id=body.thread_id)
        logger.info(f"[chat] Created thread {thread.id}")
    else:
        await repository.save_thread(thread.id, chat=body.messages)

    run = await container.engine.start(
        planner.WORKFLOW_NAME,
        {"thread_id": thread.id, "messages": body.messages},
    )
    await repository.save_thread(thread.id, stream_id=run.run_id)
    logger.info(f"[chat] Thread {thread.id} planning in run {run.run_id}")

    return ui_stream_response(run.run_id, run.readable(), **{"x-thread-id": thread.id})


# =============================================================================
# Threads
# =============================================================================

@router.get("/threads", response_model=list[ThreadSummary])
async def list_threads(container: Container = Depends(get_container)) -> list[ThreadSummary]:
    """List threads, most recently updated first."""
    threads = await container.repository.get_threads()
    return [ThreadSummary.model_validate(thread) for thread in threads]


@router.get("/thread/{thread_id}", response_model=ThreadResponse)
async def get_thread(thread_id: str, container: Container = Depends(get_container)) -> ThreadResponse:
    thread = await container.repository.get_thread(thread_id)
    if thread is None:
        raise NotFoundError("Thread", thread_id)
    return ThreadResponse.model_validate(thread)


@router.put("/thread/{thread_id}", response_model=ThreadResponse)
async def rename_thread(
    thread_id: str,
    body: RenameThreadRequest,
    container: Container = Depends(get_container),
) -> ThreadResponse:
    title = body.title.strip()
    if not title:
        raise ValidationError("Title cannot be empty")
    thread = await container.repository.rename_thread(thread_id, title)
    if thread is None:
        raise NotFoundError("Thread", thread_id)
    return ThreadResponse.model_validate(thread)


@router.delete("/thread/{thread_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_thread(thread_id: str, container: Container = Depends(get_container)) -> Response:
    if not await container.repository.delete_thread(thread_id):
        raise NotFoundError("Thread", thread_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/thread/{thread_id}/stream")
async def stream_thread(
    thread_id: str,
    start_index: int = Query(default=0, alias="startIndex"),
    container: Container = Depends(get_container),
) -> StreamingResponse:
    """Reattach to the output of a thread's current run.

    ``thread_id`` may also be a run id. A negative ``startIndex`` counts back
    from the end of what has been emitted so far.
    """
    thread = await container.repository.get_thread(thread_id)
    run_id = thread.stream_id if thread is not None else thread_id
    if not run_id:
        raise NotFoundError("Stream", thread_id)

    chunks = await container.runs.readable(run_id, start_index)
    return ui_stream_response(run_id, chunks)


# =============================================================================
# Jobs
# =============================================================================

@router.put("/job/{job_id}", response_model=JobTriggerResponse)
async def trigger_job(job_id: str, container: Container = Depends(get_container)) -> JobTriggerResponse:
    """Start a fresh worker run for an existing job."""
    job = await container.repository.get_job(job_id)
    if job is None:
        raise NotFoundError("Job", job_id)
    run = await container.engine.start(worker.WORKFLOW_NAME, {"job_id": job.id})
    logger.info(f"[job] Re-triggered job {job.id} in run {run.run_id}")
    return JobTriggerResponse(job_id=job.id, run_id=run.run_id)


# =============================================================================
# Webhooks
# =============================================================================

@router.post("/webhook/github", status_code=status.HTTP_202_ACCEPTED, response_model=WebhookResponse)
async def github_webhook(request: Request, container: Container = Depends(get_container)) -> Any:
    """Turn PR review feedback into an update spec and a worker job."""
    body = await request.body()
    event = request.headers.get("x-github-event")
    logger.info(f"[webhook] Incoming GitHub event: {event}")

    secret = container.settings.github_webhook_secret
    if secret:
        if not verify_signature(secret, body, request.headers.get("x-hub-signature-256")):
            logger.warning("[webhook] Invalid signature")
            return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content={"detail": "Invalid signature"})
    else:
        logger.warning("[webhook] No webhook secret configured, skipping verification")

    try:
        payload = json.loads(body or b"{}")
    except json.JSONDecodeError:
        raise ValidationError("Webhook payload is not valid JSON")

    feedback = parse_feedback(event, payload)
    if feedback is None:
        return WebhookResponse(status="ignored")

    repository = container.repository
    parent = await repository.find_spec_by_branch(feedback.repo, feedback.branch)
    thread_id = parent.thread_id if parent is not None else None

    spec = await repository.create_update_spec(
        title=feedback.title,
        content=feedback.content,
        branch=feedback.branch,
        repo=feedback.repo,
        thread_id=thread_id,
    )
    if thread_id:
        try:
            await repository.update_thread_state(thread_id, ThreadState.WAITING_FOR_FEEDBACK)
        except InvalidTransitionError as e:
            logger.warning(f"[webhook] Thread {thread_id} kept its state: {e}")

    job = await repository.create_job(spec.id)
    run = await container.engine.start(
        worker.WORKFLOW_NAME,
        {"job_id": job.id},
        run_id=worker.worker_run_id(job.id),
    )
    logger.info(f"[webhook] PR {feedback.repo}#{feedback.pr_number}: spec {spec.id}, job {job.id}")

    return WebhookResponse(status="accepted", spec_id=spec.id, job_id=job.id, run_id=run.run_id)

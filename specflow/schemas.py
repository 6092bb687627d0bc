"""Pydantic schemas for all pipeline I/O contracts.

These schemas define the strict contracts between:
- API endpoints and clients
- LLM model inputs/outputs
- Tool calls and results
- Domain state machines (Thread, Job, Spec)
"""

from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from specflow.errors import InvalidTransitionError


# =============================================================================
# Enums
# =============================================================================

class ThreadState(str, Enum):
    """Lifecycle of a conversation thread."""
    PLANNING = "planning"
    WORKING = "working"
    WAITING_FOR_FEEDBACK = "waiting_for_feedback"
    ARCHIVED = "archived"


class JobStatus(str, Enum):
    """Status of a worker job."""
    QUEUED = "queued"
    PLANNING = "planning"
    CODEGEN = "codegen"
    APPLY = "apply"
    TEST = "test"
    PR_OPEN = "pr_open"
    COMPLETE = "complete"
    FAILED = "failed"


class SpecType(str, Enum):
    """Spec variants."""
    INITIAL = "initial"
    UPDATE = "update"


class RunStatus(str, Enum):
    """Status of a workflow run as seen by callers."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class HaltReason(str, Enum):
    """Why a durable agent loop stopped."""
    STOP_CONDITION = "stop_condition"
    NO_TOOL_CALLS = "no_tool_calls"
    MAX_TURNS = "max_turns"


# =============================================================================
# State machines
# =============================================================================

THREAD_TRANSITIONS: dict[ThreadState, set[ThreadState]] = {
    ThreadState.PLANNING: {ThreadState.WORKING, ThreadState.ARCHIVED},
    ThreadState.WORKING: {ThreadState.PLANNING, ThreadState.WAITING_FOR_FEEDBACK, ThreadState.ARCHIVED},
    ThreadState.WAITING_FOR_FEEDBACK: {ThreadState.WORKING, ThreadState.PLANNING, ThreadState.ARCHIVED},
    ThreadState.ARCHIVED: set(),
}

JOB_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.QUEUED: {JobStatus.PLANNING, JobStatus.CODEGEN, JobStatus.APPLY, JobStatus.FAILED},
    JobStatus.PLANNING: {JobStatus.CODEGEN, JobStatus.APPLY, JobStatus.FAILED},
    JobStatus.CODEGEN: {JobStatus.APPLY, JobStatus.TEST, JobStatus.FAILED},
    JobStatus.APPLY: {JobStatus.CODEGEN, JobStatus.TEST, JobStatus.PR_OPEN, JobStatus.COMPLETE, JobStatus.FAILED},
    JobStatus.TEST: {JobStatus.APPLY, JobStatus.PR_OPEN, JobStatus.COMPLETE, JobStatus.FAILED},
    JobStatus.PR_OPEN: {JobStatus.COMPLETE, JobStatus.FAILED},
    JobStatus.COMPLETE: set(),
    JobStatus.FAILED: set(),
}

TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETE, JobStatus.FAILED})


def check_thread_transition(current: ThreadState | str, target: ThreadState | str) -> None:
    """Raise if a thread cannot move from ``current`` to ``target``.

    Staying in the same state is always allowed.
    """
    current, target = ThreadState(current), ThreadState(target)
    if current != target and target not in THREAD_TRANSITIONS[current]:
        raise InvalidTransitionError("Thread", current.value, target.value)


def check_job_transition(current: JobStatus | str, target: JobStatus | str) -> None:
    """Raise if a job cannot move from ``current`` to ``target``."""
    current, target = JobStatus(current), JobStatus(target)
    if current != target and target not in JOB_TRANSITIONS[current]:
        raise InvalidTransitionError("Job", current.value, target.value)


# =============================================================================
# Tool Schemas
# =============================================================================

class ToolResult(BaseModel):
    """Standard response from a sandbox or git tool call."""
    ok: bool = Field(..., description="Whether the tool call succeeded")
    data: Any | None = Field(default=None, description="Tool-specific response data")
    error_code: str | None = Field(default=None, description="Error code if failed")
    error_message: str | None = Field(default=None, description="Human-readable error message")
    retryable: bool = Field(default=False, description="Whether the error is retryable")
    latency_ms: int | None = Field(default=None, description="Time taken in milliseconds")


def tool_error(message: str) -> dict[str, Any]:
    """Structured tool failure returned to the model instead of raising."""
    return {"error": True, "message": message}


# =============================================================================
# LLM Schemas
# =============================================================================

class ToolCall(BaseModel):
    """A single tool invocation requested by the model."""
    id: str
    name: str
    arguments: str = Field(default="{}", description="Raw JSON arguments as produced by the model")

    def to_openai(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


class LLMMessage(BaseModel):
    """A single message in an LLM conversation."""
    role: Literal["system", "user", "assistant", "tool"] = Field(...)
    content: str | None = Field(default=None)
    name: str | None = Field(default=None, description="Name for tool messages")
    tool_calls: list[dict[str, Any]] | None = Field(default=None)
    tool_call_id: str | None = Field(default=None)


class LLMResponse(BaseModel):
    """Non-streaming response from an LLM provider."""
    content: str | None = None
    tool_calls: list[ToolCall] = Field(default_factory=list)
    model: str
    usage: dict[str, int] = Field(default_factory=dict)
    finish_reason: str | None = None


class StreamEvent(BaseModel):
    """One event of a streaming completion."""
    type: Literal["text-delta", "tool-call", "finish"]
    delta: str | None = None
    tool_call: ToolCall | None = None
    finish_reason: str | None = None


def to_model_messages(messages: list[dict[str, Any]]) -> list[LLMMessage]:
    """Convert UI messages (``parts``) or plain ``{role, content}`` dicts to model messages.

    Only text parts are carried over; tool parts from previous turns are
    flattened into a short textual note so the model keeps the context.
    """
    converted: list[LLMMessage] = []
    for message in messages:
        role = message.get("role", "user")
        if role not in ("system", "user", "assistant"):
            continue
        if "parts" in message:
            chunks: list[str] = []
            for part in message.get("parts") or []:
                part_type = part.get("type", "")
                if part_type == "text":
                    chunks.append(part.get("text", ""))
                elif part_type.startswith("tool-"):
                    output = json.dumps(part.get("output"), default=str)
                    chunks.append(f"[{part_type[5:]} -> {output}]")
            content = "\n".join(c for c in chunks if c)
        else:
            content = message.get("content")
            if not isinstance(content, str):
                content = json.dumps(content, default=str)
        converted.append(LLMMessage(role=role, content=content))
    return converted


# =============================================================================
# API Request/Response Schemas
# =============================================================================

class ChatRequest(BaseModel):
    """Body of POST /api/chat."""
    model_config = ConfigDict(populate_by_name=True)

    thread_id: str | None = Field(default=None, alias="threadId")
    messages: list[dict[str, Any]] = Field(..., min_length=1)


class RenameThreadRequest(BaseModel):
    """Body of PUT /api/thread/{id}."""
    title: str


class ThreadSummary(BaseModel):
    """Thread as listed by GET /api/threads."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    state: ThreadState
    created_at: datetime = Field(serialization_alias="createdAt")
    updated_at: datetime = Field(serialization_alias="updatedAt")


class ThreadResponse(ThreadSummary):
    """Thread with its transcript."""
    chat: list[dict[str, Any]] = Field(default_factory=list)
    stream_id: str | None = Field(default=None, serialization_alias="streamId")


class JobTriggerResponse(BaseModel):
    """Response of PUT /api/job/{id}."""
    job_id: str
    run_id: str


class WebhookResponse(BaseModel):
    """Response of POST /api/webhook/github."""
    status: Literal["accepted", "ignored"]
    spec_id: str | None = None
    job_id: str | None = None
    run_id: str | None = None

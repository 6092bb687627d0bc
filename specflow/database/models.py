"""SQLModel database tables.

Tables:
- Thread: conversation container with transcript and lifecycle state
- Spec: versioned design document produced by the planner
- Job: one worker execution request for a Spec
- WorkflowRun: durable run record (status, lease, result)
- StepCheckpoint: recorded output of each completed step
- StreamRecord / StreamChunk: resumable output streams
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel

from specflow.schemas import JobStatus, RunStatus, SpecType, ThreadState


# Every timestamp column stores timezone-aware UTC
TIMESTAMP = DateTime(timezone=True)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


# =============================================================================
# Domain Models
# =============================================================================

class Thread(SQLModel, table=True):
    """A conversation between a user and the planner."""

    __tablename__ = "threads"

    id: str = Field(default_factory=new_id, primary_key=True)
    title: str = Field(default="New Thread")
    chat: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    state: str = Field(default=ThreadState.PLANNING.value, index=True)
    stream_id: str | None = Field(default=None, description="Run id of the current output stream")
    created_at: datetime = Field(default_factory=utcnow, sa_type=TIMESTAMP)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=TIMESTAMP, index=True)


class Spec(SQLModel, table=True):
    """A versioned implementation spec."""

    __tablename__ = "specs"
    __table_args__ = (
        Index("ix_specs_thread_created", "thread_id", "created_at"),
    )

    id: str = Field(default_factory=new_id, primary_key=True)
    thread_id: str | None = Field(default=None, foreign_key="threads.id", index=True)
    title: str
    content: str = Field(sa_column=Column(Text, nullable=False))
    repo: str
    type: str = Field(default=SpecType.INITIAL.value)
    version: int = Field(default=1)
    branch: str | None = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=TIMESTAMP)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=TIMESTAMP)


class Job(SQLModel, table=True):
    """One worker execution of a Spec."""

    __tablename__ = "jobs"

    id: str = Field(default_factory=new_id, primary_key=True)
    spec_id: str = Field(foreign_key="specs.id", index=True)
    status: str = Field(default=JobStatus.QUEUED.value, index=True)
    branch: str | None = Field(default=None)
    pr_url: str | None = Field(default=None)
    error: str | None = Field(default=None, sa_column=Column(Text))
    idempotency_key: str | None = Field(default=None, unique=True, description="Step key that created the job")
    created_at: datetime = Field(default_factory=utcnow, sa_type=TIMESTAMP)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=TIMESTAMP)


# =============================================================================
# Workflow Engine Models
# =============================================================================

class WorkflowRun(SQLModel, table=True):
    """A durable workflow execution."""

    __tablename__ = "workflow_runs"

    id: int | None = Field(default=None, primary_key=True)
    run_id: str = Field(unique=True, index=True, description="Opaque run identifier, stable across resumes")
    workflow_name: str = Field(index=True)
    args: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))

    status: str = Field(default=RunStatus.PENDING.value, index=True)
    result: Any | None = Field(default=None, sa_column=Column(JSON))
    error_message: str | None = Field(default=None, sa_column=Column(Text))

    # Ownership
    lease_owner: str | None = Field(default=None)
    lease_expires_at: datetime | None = Field(default=None, sa_type=TIMESTAMP)

    # Timestamps
    created_at: datetime = Field(default_factory=utcnow, sa_type=TIMESTAMP)
    started_at: datetime | None = Field(default=None, sa_type=TIMESTAMP)
    ended_at: datetime | None = Field(default=None, sa_type=TIMESTAMP)


class StepCheckpoint(SQLModel, table=True):
    """Recorded output of a completed step; replayed instead of re-executed."""

    __tablename__ = "step_checkpoints"
    __table_args__ = (
        UniqueConstraint("run_id", "sequence", name="uq_step_checkpoints_run_sequence"),
    )

    id: int | None = Field(default=None, primary_key=True)
    run_id: str = Field(foreign_key="workflow_runs.run_id", index=True)
    sequence: int = Field(description="Order in which the workflow issued the step")
    step_name: str
    output: Any | None = Field(default=None, sa_column=Column(JSON))
    stream_position: int = Field(default=0, description="Writer position after the step finished")
    latency_ms: int | None = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow, sa_type=TIMESTAMP)


class StreamRecord(SQLModel, table=True):
    """A resumable output stream."""

    __tablename__ = "stream_records"

    stream_id: str = Field(primary_key=True)
    closed: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utcnow, sa_type=TIMESTAMP)
    closed_at: datetime | None = Field(default=None, sa_type=TIMESTAMP)


class StreamChunk(SQLModel, table=True):
    """One chunk of a resumable output stream."""

    __tablename__ = "stream_chunks"
    __table_args__ = (
        UniqueConstraint("stream_id", "position", name="uq_stream_chunks_stream_position"),
    )

    id: int | None = Field(default=None, primary_key=True)
    stream_id: str = Field(foreign_key="stream_records.stream_id", index=True)
    position: int = Field(description="Zero-based offset within the stream")
    payload: dict[str, Any] = Field(sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=utcnow, sa_type=TIMESTAMP)

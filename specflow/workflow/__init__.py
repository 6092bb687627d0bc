"""Durable workflow engine, resumable output streams and run lookup."""

from specflow.workflow.engine import Run, WorkflowContext, WorkflowEngine, current_step_key
from specflow.workflow.registry import RunRegistry
from specflow.workflow.stream import StreamStore, StreamWriter

__all__ = [
    "Run",
    "RunRegistry",
    "StreamStore",
    "StreamWriter",
    "WorkflowContext",
    "WorkflowEngine",
    "current_step_key",
]

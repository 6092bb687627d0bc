"""Run lookup by id, independent of the process that started the run."""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator

from specflow.errors import NotFoundError
from specflow.workflow.engine import Run, WorkflowEngine


logger = logging.getLogger(__name__)


class RunRegistry:
    """Resolves run ids to run handles and their output streams.

    Run records and stream chunks are persisted, so a handle obtained here
    can replay output of runs started by another (possibly dead) process.
    """

    def __init__(self, engine: WorkflowEngine):
        self.engine = engine

    async def get_run(self, run_id: str) -> Run:
        record = await self.engine.get_run_record(run_id)
        if record is None:
            raise NotFoundError("Run", run_id)
        return Run(run_id=record.run_id, workflow_name=record.workflow_name, engine=self.engine)

    async def readable(self, run_id: str, start_index: int = 0) -> AsyncIterator[dict[str, Any]]:
        """Chunks of a run's output from ``start_index``, tailing until it closes."""
        run = await self.get_run(run_id)
        logger.info(f"[{run_id}] Reader attached at index {start_index}")
        return run.readable(start_index)

"""Durable workflow engine.

A workflow is an ``async def`` taking a ``WorkflowContext`` plus plain-data
keyword arguments. Its body is ordinary control flow; durability
boundaries are explicit calls to ``ctx.step(name, fn, args)``:

    async def handle_job(ctx: WorkflowContext, job_id: str):
        prepared = await ctx.step("prepare_job", prepare_job, {"job_id": job_id})
        ...

Execution model:
- Each step output is checkpointed as JSON keyed by (run_id, sequence).
- On resume the body is re-executed from the top; steps with a checkpoint
  return the recorded output instead of running again, and the first step
  without one executes for real.
- Stream writes go through a positional writer so replayed output is not
  duplicated (see ``specflow.workflow.stream``).
- A run is owned through a lease renewed by a heartbeat; ``recover()``
  picks up runs whose owner disappeared.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, AsyncIterator, Awaitable, Callable
from uuid import uuid4

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import col, select

from specflow.database.models import StepCheckpoint, StreamRecord, WorkflowRun, utcnow
from specflow.database.session import Database
from specflow.errors import (
    LeaseLostError,
    ResumeInconsistencyError,
    RunFailedError,
    SpecflowError,
    StepError,
)
from specflow.schemas import RunStatus
from specflow.workflow.stream import StreamStore, StreamWriter


logger = logging.getLogger(__name__)

WorkflowFn = Callable[..., Awaitable[Any]]
FailureHook = Callable[[Any, dict[str, Any], BaseException], Awaitable[None]]

ACTIVE_STATUSES = (RunStatus.PENDING.value, RunStatus.RUNNING.value)
TERMINAL_STATUSES = (RunStatus.COMPLETED.value, RunStatus.FAILED.value)

_current_step_key: ContextVar[str | None] = ContextVar("current_step_key", default=None)


def current_step_key() -> str | None:
    """Stable key of the executing step, ``"<run_id>:<sequence>"``.

    Identical across re-executions of the same step, so steps with external
    side effects use it as an idempotency key.
    """
    return _current_step_key.get()


def _to_plain(value: Any) -> Any:
    return json.loads(json.dumps(value))


@dataclass
class WorkflowDefinition:
    """A registered workflow function."""
    name: str
    fn: WorkflowFn
    on_failure: FailureHook | None = None


@dataclass
class Run:
    """Handle to a workflow run, valid in any process."""
    run_id: str
    workflow_name: str
    engine: WorkflowEngine = field(repr=False)

    async def status(self) -> RunStatus:
        record = await self.engine.get_run_record(self.run_id)
        return RunStatus(record.status) if record else RunStatus.FAILED

    def readable(self, start_index: int = 0) -> AsyncIterator[dict[str, Any]]:
        """Output chunks from ``start_index``, followed by live chunks."""
        return self.engine.streams.subscribe(self.run_id, start_index)

    async def result(self, timeout: float | None = None) -> Any:
        """Wait for the run to finish; raises RunFailedError if it failed."""
        record = await self.engine.wait(self.run_id, timeout=timeout)
        if record.status == RunStatus.FAILED.value:
            raise RunFailedError(self.run_id, record.error_message or "unknown error")
        return record.result


class WorkflowContext:
    """Capabilities handed to a workflow body: steps and output writes."""

    def __init__(
        self,
        engine: WorkflowEngine,
        run_id: str,
        checkpoints: dict[int, StepCheckpoint],
        writer: StreamWriter,
    ):
        self.engine = engine
        self.run_id = run_id
        self.writer = writer
        self._checkpoints = checkpoints
        self._sequence = 0

    @property
    def services(self) -> Any:
        return self.engine.services

    async def step(
        self,
        name: str,
        fn: Callable[..., Awaitable[Any]],
        args: dict[str, Any] | None = None,
    ) -> Any:
        """Run ``fn(**args)`` once per run and checkpoint its JSON output.

        Domain errors (SpecflowError) propagate unchanged; anything else is
        wrapped in StepError. Failed steps are not checkpointed and run
        again when the workflow is resumed.
        """
        sequence = self._sequence
        self._sequence += 1

        checkpoint = self._checkpoints.get(sequence)
        if checkpoint is not None:
            if checkpoint.step_name != name:
                raise ResumeInconsistencyError(self.run_id, sequence, name, checkpoint.step_name)
            self.writer.seek(checkpoint.stream_position)
            logger.info(f"[{self.run_id}] Replayed step #{sequence} {name}")
            return checkpoint.output

        logger.info(f"[{self.run_id}] Executing step #{sequence} {name}")
        start = time.perf_counter()
        token = _current_step_key.set(f"{self.run_id}:{sequence}")
        try:
            output = await fn(**(args or {}))
        except SpecflowError:
            raise
        except Exception as e:
            logger.error(f"[{self.run_id}] Step #{sequence} {name} failed: {e}")
            raise StepError(name, str(e)) from e
        finally:
            _current_step_key.reset(token)

        try:
            output = _to_plain(output)
        except (TypeError, ValueError) as e:
            raise StepError(name, f"output is not JSON-serializable: {e}") from e

        latency_ms = int((time.perf_counter() - start) * 1000)
        await self.engine._record_step(
            self.run_id,
            sequence=sequence,
            step_name=name,
            output=output,
            stream_position=self.writer.position,
            latency_ms=latency_ms,
        )
        logger.info(f"[{self.run_id}] Step #{sequence} {name} completed in {latency_ms}ms")
        return output

    async def write(self, chunk: dict[str, Any]) -> int:
        """Append a chunk to the run's output stream."""
        return await self.writer.write(chunk)


class WorkflowEngine:
    """Starts, executes, resumes and recovers durable workflow runs."""

    def __init__(
        self,
        database: Database,
        streams: StreamStore,
        *,
        services: Any = None,
        lease_seconds: float = 60.0,
        worker_id: str | None = None,
    ):
        self.database = database
        self.streams = streams
        self.services = services
        self.lease_seconds = lease_seconds
        self.worker_id = worker_id or f"worker-{uuid4().hex[:12]}"
        self._workflows: dict[str, WorkflowDefinition] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._sweeper: asyncio.Task | None = None

    # =========================================================================
    # Registration
    # =========================================================================

    def register(self, name: str, fn: WorkflowFn, on_failure: FailureHook | None = None) -> None:
        self._workflows[name] = WorkflowDefinition(name=name, fn=fn, on_failure=on_failure)

    @property
    def workflows(self) -> list[str]:
        return sorted(self._workflows)

    # =========================================================================
    # Public API
    # =========================================================================

    async def start(
        self,
        workflow_name: str,
        args: dict[str, Any] | None = None,
        run_id: str | None = None,
    ) -> Run:
        """Queue a run and return its handle immediately.

        Without ``run_id`` every call creates an independent run. With an
        explicit ``run_id`` that already exists the existing run is returned
        and nothing new is queued.
        """
        if workflow_name not in self._workflows:
            raise ValueError(f"Unknown workflow: {workflow_name}")

        run_id = run_id or str(uuid4())
        args = _to_plain(args or {})

        existing = await self.get_run_record(run_id)
        if existing is not None:
            logger.info(f"[{run_id}] Run already exists ({existing.status}), reusing")
            return Run(run_id=run_id, workflow_name=existing.workflow_name, engine=self)

        try:
            async with self.database.session() as db:
                db.add(WorkflowRun(run_id=run_id, workflow_name=workflow_name, args=args))
                db.add(StreamRecord(stream_id=run_id))
        except IntegrityError:
            logger.info(f"[{run_id}] Run created concurrently, reusing")
            return Run(run_id=run_id, workflow_name=workflow_name, engine=self)

        logger.info(f"[{run_id}] Started workflow {workflow_name}")
        self._schedule(run_id)
        return Run(run_id=run_id, workflow_name=workflow_name, engine=self)

    async def get_run_record(self, run_id: str) -> WorkflowRun | None:
        async with self.database.session() as db:
            result = await db.execute(select(WorkflowRun).where(col(WorkflowRun.run_id) == run_id))
            return result.scalars().first()

    async def get_checkpoints(self, run_id: str) -> list[StepCheckpoint]:
        async with self.database.session() as db:
            result = await db.execute(
                select(StepCheckpoint)
                .where(col(StepCheckpoint.run_id) == run_id)
                .order_by(col(StepCheckpoint.sequence))
            )
            return list(result.scalars().all())

    async def resume(self, run_id: str) -> Run | None:
        """Schedule an unfinished run in this process; None if unknown or finished."""
        record = await self.get_run_record(run_id)
        if record is None or record.status not in ACTIVE_STATUSES:
            return None
        await self.streams.reopen(run_id)
        self._schedule(run_id)
        return Run(run_id=run_id, workflow_name=record.workflow_name, engine=self)

    async def recover(self) -> list[str]:
        """Resume every unfinished run whose lease is free or expired."""
        now = utcnow()
        async with self.database.session() as db:
            result = await db.execute(
                select(WorkflowRun.run_id)
                .where(col(WorkflowRun.status).in_(ACTIVE_STATUSES))
                .where(
                    or_(
                        col(WorkflowRun.lease_owner).is_(None),
                        col(WorkflowRun.lease_expires_at) < now,
                    )
                )
                .order_by(col(WorkflowRun.created_at))
            )
            run_ids = [run_id for run_id in result.scalars().all() if run_id not in self._tasks]

        for run_id in run_ids:
            logger.info(f"[{run_id}] Recovering unfinished run")
            self._schedule(run_id)
        return run_ids

    def start_recovery(self, interval: float) -> None:
        """Keep recovering runs whose owner stopped renewing its lease."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep(interval), name="workflow:recovery")

    async def _sweep(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.recover()
            except SQLAlchemyError as e:
                logger.warning(f"Recovery sweep failed: {e}")

    async def wait(self, run_id: str, timeout: float | None = None, poll_interval: float = 0.2) -> WorkflowRun:
        """Wait until a run reaches a terminal status."""

        async def _poll() -> WorkflowRun:
            task = self._tasks.get(run_id)
            if task is not None:
                await asyncio.shield(task)
            while True:
                record = await self.get_run_record(run_id)
                if record is None:
                    raise RunFailedError(run_id, "run does not exist")
                if record.status in TERMINAL_STATUSES:
                    return record
                await asyncio.sleep(poll_interval)

        return await asyncio.wait_for(_poll(), timeout=timeout)

    async def shutdown(self) -> None:
        """Stop local executions; their runs stay resumable."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            await asyncio.gather(self._sweeper, return_exceptions=True)
            self._sweeper = None
        tasks = dict(self._tasks)
        for task in tasks.values():
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks.values(), return_exceptions=True)
        for run_id in tasks:
            await self._release(run_id)
        if tasks:
            logger.info(f"Suspended {len(tasks)} run(s) for recovery")

    # =========================================================================
    # Execution
    # =========================================================================

    def _schedule(self, run_id: str) -> None:
        if run_id in self._tasks:
            return
        task = asyncio.create_task(self._execute(run_id), name=f"workflow:{run_id}")
        self._tasks[run_id] = task

        def _done(finished: asyncio.Task) -> None:
            self._tasks.pop(run_id, None)
            if not finished.cancelled() and finished.exception() is not None:
                logger.error(f"[{run_id}] Executor crashed: {finished.exception()}")

        task.add_done_callback(_done)

    async def _execute(self, run_id: str) -> None:
        if not await self._claim(run_id):
            logger.info(f"[{run_id}] Run is owned by another executor or already finished")
            return

        heartbeat = asyncio.create_task(self._heartbeat(run_id))
        try:
            record = await self.get_run_record(run_id)
            definition = self._workflows.get(record.workflow_name)
            if definition is None:
                await self._finish(run_id, RunStatus.FAILED, error=f"Unknown workflow: {record.workflow_name}")
                await self.streams.close(run_id)
                return

            checkpoints = {cp.sequence: cp for cp in await self.get_checkpoints(run_id)}
            ctx = WorkflowContext(self, run_id, checkpoints, self.streams.writer(run_id))
            logger.info(
                f"[{run_id}] Running {definition.name} ({len(checkpoints)} checkpointed steps)"
            )

            try:
                result = await definition.fn(ctx, **record.args)
            except LeaseLostError as e:
                logger.warning(f"[{run_id}] Lost lease, stopping local execution: {e}")
                return
            except Exception as e:
                logger.error(f"[{run_id}] Workflow {definition.name} failed: {e}")
                if definition.on_failure is not None:
                    try:
                        await definition.on_failure(self.services, record.args, e)
                    except Exception:
                        logger.exception(f"[{run_id}] Failure hook of {definition.name} raised")
                await self._finish(run_id, RunStatus.FAILED, error=str(e))
                await self.streams.close(run_id)
                return

            await self._finish(run_id, RunStatus.COMPLETED, result=_to_plain(result))
            await self.streams.close(run_id)
            logger.info(f"[{run_id}] Workflow {definition.name} completed")
        finally:
            heartbeat.cancel()

    # =========================================================================
    # Persistence helpers
    # =========================================================================

    def _lease_deadline(self):
        return utcnow() + timedelta(seconds=self.lease_seconds)

    async def _claim(self, run_id: str) -> bool:
        now = utcnow()
        async with self.database.session() as db:
            result = await db.execute(
                update(WorkflowRun)
                .where(col(WorkflowRun.run_id) == run_id)
                .where(col(WorkflowRun.status).in_(ACTIVE_STATUSES))
                .where(
                    or_(
                        col(WorkflowRun.lease_owner).is_(None),
                        col(WorkflowRun.lease_owner) == self.worker_id,
                        col(WorkflowRun.lease_expires_at) < now,
                    )
                )
                .values(
                    lease_owner=self.worker_id,
                    lease_expires_at=self._lease_deadline(),
                    status=RunStatus.RUNNING.value,
                    started_at=func.coalesce(WorkflowRun.started_at, now),
                )
            )
            return result.rowcount == 1

    async def _renew(self, db, run_id: str) -> bool:
        result = await db.execute(
            update(WorkflowRun)
            .where(col(WorkflowRun.run_id) == run_id)
            .where(col(WorkflowRun.lease_owner) == self.worker_id)
            .values(lease_expires_at=self._lease_deadline())
        )
        return result.rowcount == 1

    async def _heartbeat(self, run_id: str) -> None:
        interval = max(self.lease_seconds / 3, 0.05)
        while True:
            await asyncio.sleep(interval)
            async with self.database.session() as db:
                if not await self._renew(db, run_id):
                    logger.warning(f"[{run_id}] Lease renewal failed")
                    return

    async def _release(self, run_id: str) -> None:
        async with self.database.session() as db:
            await db.execute(
                update(WorkflowRun)
                .where(col(WorkflowRun.run_id) == run_id)
                .where(col(WorkflowRun.lease_owner) == self.worker_id)
                .values(lease_owner=None, lease_expires_at=None)
            )

    async def _record_step(
        self,
        run_id: str,
        *,
        sequence: int,
        step_name: str,
        output: Any,
        stream_position: int,
        latency_ms: int,
    ) -> None:
        try:
            async with self.database.session() as db:
                if not await self._renew(db, run_id):
                    raise LeaseLostError(f"run {run_id} is no longer owned by {self.worker_id}")
                db.add(
                    StepCheckpoint(
                        run_id=run_id,
                        sequence=sequence,
                        step_name=step_name,
                        output=output,
                        stream_position=stream_position,
                        latency_ms=latency_ms,
                    )
                )
        except IntegrityError as e:
            raise LeaseLostError(f"step #{sequence} of run {run_id} was recorded by another executor") from e

    async def _finish(
        self,
        run_id: str,
        status: RunStatus,
        result: Any = None,
        error: str | None = None,
    ) -> None:
        async with self.database.session() as db:
            await db.execute(
                update(WorkflowRun)
                .where(col(WorkflowRun.run_id) == run_id)
                .where(col(WorkflowRun.lease_owner) == self.worker_id)
                .values(
                    status=status.value,
                    result=result,
                    error_message=error,
                    ended_at=utcnow(),
                    lease_owner=None,
                    lease_expires_at=None,
                )
            )

"""Durable engine: checkpoints, replay after a crash, leases and failures."""

from __future__ import annotations

import asyncio
from datetime import datetime

import pytest
from sqlalchemy import DateTime

from specflow.database.models import (
    Job,
    Spec,
    StepCheckpoint,
    StreamChunk,
    StreamRecord,
    Thread,
    WorkflowRun,
    utcnow,
)
from specflow.errors import NotFoundError, RunFailedError
from specflow.schemas import RunStatus
from specflow.workflow.engine import Run, current_step_key
from specflow.workflow.registry import RunRegistry
from tests.conftest import collect, wait_until


class Provisioner:
    """A two-step workflow whose second step blocks until released."""

    def __init__(self) -> None:
        self.creates = 0
        self.keys: list[str | None] = []
        self.release = asyncio.Event()

    async def create_sandbox(self, repo: str) -> dict:
        self.creates += 1
        self.keys.append(current_step_key())
        return {"sandbox_id": f"sbx-{repo}"}

    async def run_agent(self) -> str:
        await self.release.wait()
        return "done"

    async def workflow(self, ctx, repo: str) -> dict:
        sandbox = await ctx.step("create_sandbox", self.create_sandbox, {"repo": repo})
        await ctx.write({"type": "data-sandbox", "data": sandbox})
        outcome = await ctx.step("run_agent", self.run_agent)
        return {"sandbox_id": sandbox["sandbox_id"], "outcome": outcome}


async def has_checkpoints(engine, run_id: str, count: int) -> bool:
    return len(await engine.get_checkpoints(run_id)) >= count


async def test_run_completes_and_checkpoints_each_step(make_engine):
    flow = Provisioner()
    flow.release.set()
    engine = make_engine("worker-a")
    engine.register("provision", flow.workflow)

    run = await engine.start("provision", {"repo": "webapp"})
    assert await run.result(timeout=10) == {"sandbox_id": "sbx-webapp", "outcome": "done"}
    assert await run.status() == RunStatus.COMPLETED

    checkpoints = await engine.get_checkpoints(run.run_id)
    assert [(cp.sequence, cp.step_name) for cp in checkpoints] == [(0, "create_sandbox"), (1, "run_agent")]
    assert flow.keys == [f"{run.run_id}:0"]


async def test_crash_after_step_resumes_without_repeating_it(make_engine):
    flow = Provisioner()
    first = make_engine("worker-a")
    first.register("provision", flow.workflow)

    run = await first.start("provision", {"repo": "webapp"})
    await wait_until(lambda: has_checkpoints(first, run.run_id, 1))

    # The process dies while the second step is in flight
    await first.shutdown()
    record = await first.get_run_record(run.run_id)
    assert record.status == RunStatus.RUNNING.value
    assert record.lease_owner is None

    flow.release.set()
    second = make_engine("worker-b")
    second.register("provision", flow.workflow)
    assert await second.recover() == [run.run_id]

    record = await second.wait(run.run_id, timeout=10)
    assert record.status == RunStatus.COMPLETED.value
    assert record.result == {"sandbox_id": "sbx-webapp", "outcome": "done"}
    assert flow.creates == 1

    # The write issued between the steps was not duplicated by the replay
    chunks = await collect(run.readable())
    assert chunks == [{"type": "data-sandbox", "data": {"sandbox_id": "sbx-webapp"}}]


async def test_recover_skips_runs_with_a_live_lease(make_engine):
    flow = Provisioner()
    owner = make_engine("worker-a")
    owner.register("provision", flow.workflow)
    run = await owner.start("provision", {"repo": "webapp"})
    await wait_until(lambda: has_checkpoints(owner, run.run_id, 1))

    other = make_engine("worker-b")
    other.register("provision", flow.workflow)
    assert await other.recover() == []

    flow.release.set()
    record = await owner.wait(run.run_id, timeout=10)
    assert record.status == RunStatus.COMPLETED.value
    assert flow.creates == 1


async def test_recovery_sweep_resumes_runs_of_a_dead_executor(make_engine):
    flow = Provisioner()
    first = make_engine("worker-a", lease_seconds=0.5)
    first.register("provision", flow.workflow)
    run = await first.start("provision", {"repo": "webapp"})
    await wait_until(lambda: has_checkpoints(first, run.run_id, 1))

    # The executor dies without releasing its lease
    first._tasks[run.run_id].cancel()
    await asyncio.sleep(0.05)
    flow.release.set()

    second = make_engine("worker-b")
    second.register("provision", flow.workflow)
    second.start_recovery(interval=0.1)

    record = await second.wait(run.run_id, timeout=10)
    assert record.status == RunStatus.COMPLETED.value
    assert record.result == {"sandbox_id": "sbx-webapp", "outcome": "done"}
    assert flow.creates == 1


async def test_changed_workflow_body_fails_resume(make_engine):
    flow = Provisioner()
    first = make_engine("worker-a")
    first.register("provision", flow.workflow)
    run = await first.start("provision", {"repo": "webapp"})
    await wait_until(lambda: has_checkpoints(first, run.run_id, 1))
    await first.shutdown()

    async def clone_repo(repo: str) -> dict:
        return {"path": repo}

    async def reordered(ctx, repo: str) -> dict:
        return await ctx.step("clone_repo", clone_repo, {"repo": repo})

    second = make_engine("worker-b")
    second.register("provision", reordered)
    await second.recover()

    resumed = Run(run_id=run.run_id, workflow_name="provision", engine=second)
    with pytest.raises(RunFailedError) as exc:
        await resumed.result(timeout=10)
    assert "recorded by 'create_sandbox'" in str(exc.value)


async def test_explicit_run_id_is_create_if_not_exists(make_engine):
    calls = []

    async def echo(value: int) -> int:
        calls.append(value)
        return value

    async def workflow(ctx, value: int) -> int:
        return await ctx.step("echo", echo, {"value": value})

    engine = make_engine("worker-a")
    engine.register("echo", workflow)

    first = await engine.start("echo", {"value": 1}, run_id="job-123")
    second = await engine.start("echo", {"value": 2}, run_id="job-123")
    assert first.run_id == second.run_id == "job-123"
    assert await second.result(timeout=10) == 1
    assert calls == [1]

    independent = await engine.start("echo", {"value": 3})
    assert independent.run_id != "job-123"
    assert await independent.result(timeout=10) == 3


async def test_unknown_workflow_is_rejected(make_engine):
    engine = make_engine("worker-a")
    with pytest.raises(ValueError):
        await engine.start("missing", {})


async def test_step_failure_fails_run_and_calls_hook(make_engine):
    hook_calls = []

    async def explode() -> None:
        raise RuntimeError("kaboom")

    async def workflow(ctx, job_id: str) -> None:
        await ctx.step("explode", explode)

    async def on_failure(services, args, error) -> None:
        hook_calls.append((args, str(error)))

    engine = make_engine("worker-a")
    engine.register("fragile", workflow, on_failure=on_failure)
    run = await engine.start("fragile", {"job_id": "j1"})

    with pytest.raises(RunFailedError, match="Step 'explode' failed: kaboom"):
        await run.result(timeout=10)
    assert hook_calls == [({"job_id": "j1"}, "Step 'explode' failed: kaboom")]
    assert await engine.get_checkpoints(run.run_id) == []
    assert await collect(run.readable()) == []


async def test_step_outputs_are_normalised_to_json(make_engine):
    async def pair() -> tuple:
        return (1, 2)

    async def timestamp() -> datetime:
        return datetime(2024, 1, 1)

    async def workflow(ctx) -> dict:
        value = await ctx.step("pair", pair)
        return {"value": value, "is_list": isinstance(value, list)}

    async def broken(ctx) -> None:
        await ctx.step("timestamp", timestamp)

    engine = make_engine("worker-a")
    engine.register("pairs", workflow)
    engine.register("broken", broken)

    assert await (await engine.start("pairs")).result(timeout=10) == {"value": [1, 2], "is_list": True}
    with pytest.raises(RunFailedError, match="not JSON-serializable"):
        await (await engine.start("broken")).result(timeout=10)


async def test_run_registry_resolves_runs_by_id(make_engine):
    async def workflow(ctx) -> str:
        await ctx.write({"type": "start", "messageId": "msg-1"})
        await ctx.write({"type": "finish"})
        return "ok"

    engine = make_engine("worker-a")
    engine.register("tiny", workflow)
    runs = RunRegistry(engine)

    run = await engine.start("tiny")
    await run.result(timeout=10)

    found = await runs.get_run(run.run_id)
    assert found.workflow_name == "tiny"
    assert await collect(await runs.readable(run.run_id, -1)) == [{"type": "finish"}]
    with pytest.raises(NotFoundError):
        await runs.get_run("nope")


def test_timestamps_are_timezone_aware():
    assert utcnow().tzinfo is not None
    for table in (Thread, Spec, Job, WorkflowRun, StepCheckpoint, StreamRecord, StreamChunk):
        for column in table.__table__.columns:
            if isinstance(column.type, DateTime):
                assert column.type.timezone, f"{table.__tablename__}.{column.name}"

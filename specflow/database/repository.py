"""Persistence operations for threads, specs and jobs.

Every operation is a single-row read or write keyed by id and returns the
row, or ``None`` when the row does not exist. Callers decide whether a
missing row is an error.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import func, update
from sqlmodel import col, select

from specflow.database.models import Job, Spec, Thread, utcnow
from specflow.database.session import Database
from specflow.schemas import (
    JobStatus,
    SpecType,
    ThreadState,
    check_job_transition,
    check_thread_transition,
)


logger = logging.getLogger(__name__)


class Repository:
    """Thread/Spec/Job storage on top of a ``Database`` handle."""

    def __init__(self, database: Database):
        self.database = database

    # =========================================================================
    # Threads
    # =========================================================================

    async def create_thread(
        self,
        title: str,
        chat: list[dict[str, Any]],
        thread_id: str | None = None,
    ) -> Thread:
        thread = Thread(title=title, chat=chat)
        if thread_id:
            thread.id = thread_id
        async with self.database.session() as db:
            db.add(thread)
        return thread

    async def get_thread(self, thread_id: str) -> Thread | None:
        async with self.database.session() as db:
            return await db.get(Thread, thread_id)

    async def get_threads(self) -> list[Thread]:
        """All threads, most recently updated first."""
        async with self.database.session() as db:
            result = await db.execute(select(Thread).order_by(col(Thread.updated_at).desc()))
            return list(result.scalars().all())

    async def save_thread(
        self,
        thread_id: str,
        stream_id: str | None = None,
        chat: list[dict[str, Any]] | None = None,
    ) -> Thread | None:
        """Update the stream pointer and/or transcript of a thread."""
        async with self.database.session() as db:
            thread = await db.get(Thread, thread_id)
            if thread is None:
                return None
            if stream_id is not None:
                thread.stream_id = stream_id
            if chat is not None:
                thread.chat = list(chat)
            thread.updated_at = utcnow()
            db.add(thread)
            return thread

    async def rename_thread(self, thread_id: str, title: str) -> Thread | None:
        async with self.database.session() as db:
            thread = await db.get(Thread, thread_id)
            if thread is None:
                return None
            thread.title = title
            thread.updated_at = utcnow()
            db.add(thread)
            return thread

    async def update_thread_state(self, thread_id: str, state: ThreadState) -> Thread | None:
        """Move a thread to ``state``; raises InvalidTransitionError on illegal moves."""
        async with self.database.session() as db:
            thread = await db.get(Thread, thread_id)
            if thread is None:
                return None
            check_thread_transition(thread.state, state)
            if thread.state != state.value:
                logger.info(f"[thread:{thread_id}] {thread.state} -> {state.value}")
            thread.state = state.value
            thread.updated_at = utcnow()
            db.add(thread)
            return thread

    async def delete_thread(self, thread_id: str) -> bool:
        """Delete a thread; its specs are kept and detached."""
        async with self.database.session() as db:
            thread = await db.get(Thread, thread_id)
            if thread is None:
                return False
            await db.execute(
                update(Spec).where(col(Spec.thread_id) == thread_id).values(thread_id=None)
            )
            await db.delete(thread)
            return True

    # =========================================================================
    # Jobs
    # =========================================================================

    async def create_job(
        self,
        spec_id: str,
        status: JobStatus = JobStatus.QUEUED,
        idempotency_key: str | None = None,
    ) -> Job:
        job = Job(spec_id=spec_id, status=status.value, idempotency_key=idempotency_key)
        async with self.database.session() as db:
            db.add(job)
        return job

    async def get_job(self, job_id: str) -> Job | None:
        async with self.database.session() as db:
            return await db.get(Job, job_id)

    async def get_job_by_idempotency_key(self, key: str) -> Job | None:
        async with self.database.session() as db:
            result = await db.execute(select(Job).where(col(Job.idempotency_key) == key))
            return result.scalars().first()

    async def get_jobs_for_spec(self, spec_id: str) -> list[Job]:
        """Jobs of a spec, newest first."""
        async with self.database.session() as db:
            result = await db.execute(
                select(Job).where(col(Job.spec_id) == spec_id).order_by(col(Job.created_at).desc())
            )
            return list(result.scalars().all())

    async def update_job(
        self,
        job_id: str,
        *,
        status: JobStatus | None = None,
        branch: str | None = None,
        pr_url: str | None = None,
        error: str | None = None,
        restart: bool = False,
    ) -> Job | None:
        """Update a job.

        Status changes are validated against the job state machine unless
        ``restart`` is set, which is how a fresh worker run re-enters a job
        regardless of where a previous run left it.
        """
        async with self.database.session() as db:
            job = await db.get(Job, job_id)
            if job is None:
                return None
            if status is not None:
                if not restart:
                    check_job_transition(job.status, status)
                job.status = status.value
            if branch is not None:
                job.branch = branch
            if pr_url is not None:
                job.pr_url = pr_url
            if error is not None:
                job.error = error
            elif restart:
                job.error = None
            job.updated_at = utcnow()
            db.add(job)
            return job

    # =========================================================================
    # Specs
    # =========================================================================

    async def get_spec(self, spec_id: str) -> Spec | None:
        async with self.database.session() as db:
            return await db.get(Spec, spec_id)

    async def update_spec(
        self,
        spec_id: str,
        *,
        title: str | None = None,
        branch: str | None = None,
        content: str | None = None,
        repo: str | None = None,
    ) -> Spec | None:
        async with self.database.session() as db:
            spec = await db.get(Spec, spec_id)
            if spec is None:
                return None
            if title is not None:
                spec.title = title
            if branch is not None:
                spec.branch = branch
            if content is not None:
                spec.content = content
            if repo is not None:
                spec.repo = repo
            spec.updated_at = utcnow()
            db.add(spec)
            return spec

    async def update_draft_spec(
        self,
        spec_id: str,
        *,
        title: str | None = None,
        content: str | None = None,
        repo: str | None = None,
    ) -> Spec | None:
        return await self.update_spec(spec_id, title=title, content=content, repo=repo)

    async def _next_version(self, db, thread_id: str | None) -> int:
        if thread_id is None:
            return 1
        result = await db.execute(
            select(func.max(Spec.version)).where(col(Spec.thread_id) == thread_id)
        )
        return (result.scalar() or 0) + 1

    async def create_draft_spec(self, thread_id: str, title: str, content: str, repo: str) -> Spec:
        async with self.database.session() as db:
            spec = Spec(
                thread_id=thread_id,
                title=title,
                content=content,
                repo=repo,
                type=SpecType.INITIAL.value,
                version=await self._next_version(db, thread_id),
            )
            db.add(spec)
        return spec

    async def create_update_spec(
        self,
        title: str,
        content: str,
        branch: str,
        repo: str,
        thread_id: str | None = None,
    ) -> Spec:
        """Create an UPDATE-type spec (version is latest + 1 within its thread)."""
        async with self.database.session() as db:
            spec = Spec(
                thread_id=thread_id,
                title=title,
                content=content,
                repo=repo,
                type=SpecType.UPDATE.value,
                branch=branch,
                version=await self._next_version(db, thread_id),
            )
            db.add(spec)
        return spec

    async def get_latest_draft_spec(self, thread_id: str) -> Spec | None:
        """The thread's most recent spec, unless a job already references it."""
        async with self.database.session() as db:
            result = await db.execute(
                select(Spec)
                .where(col(Spec.thread_id) == thread_id)
                .order_by(col(Spec.created_at).desc(), col(Spec.version).desc())
            )
            spec = result.scalars().first()
            if spec is None:
                return None
            job = await db.execute(select(Job.id).where(col(Job.spec_id) == spec.id))
            if job.first() is not None:
                return None
            return spec

    async def find_spec_by_branch(self, repo: str, branch: str) -> Spec | None:
        """Most recent spec that targets ``branch`` in ``repo``."""
        async with self.database.session() as db:
            result = await db.execute(
                select(Spec)
                .where(col(Spec.repo) == repo)
                .where(col(Spec.branch) == branch)
                .order_by(col(Spec.created_at).desc())
            )
            return result.scalars().first()

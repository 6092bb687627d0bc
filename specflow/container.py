"""Service container.

Builds every collaborator from explicit settings and owns their lifetime.
Workflows receive the container as ``ctx.services``; the API keeps it on
``app.state.container``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from specflow.agent import planner, worker
from specflow.config import Settings
from specflow.database.repository import Repository
from specflow.database.session import Database
from specflow.llm.router import ModelRouter
from specflow.tools.github import GitHubClient
from specflow.tools.sandbox import SandboxClient
from specflow.tools.search import SearchClient
from specflow.workflow.engine import WorkflowEngine
from specflow.workflow.registry import RunRegistry
from specflow.workflow.stream import StreamStore


logger = logging.getLogger(__name__)


@dataclass
class Container:
    """All long-lived services of one process."""
    settings: Settings
    database: Database
    repository: Repository
    streams: StreamStore
    engine: WorkflowEngine
    runs: RunRegistry
    llm: Any
    sandbox: Any
    github: Any = None
    search: Any = None

    @classmethod
    def build(
        cls,
        settings: Settings,
        *,
        llm: Any = None,
        sandbox: Any = None,
        github: Any = None,
        search: Any = None,
    ) -> Container:
        """Wire the services; collaborators may be injected (e.g. in tests)."""
        database = Database(settings)
        streams = StreamStore(database, poll_interval=settings.stream_poll_interval_seconds)
        engine = WorkflowEngine(database, streams, lease_seconds=settings.workflow_lease_seconds)

        if github is None and settings.github_token:
            github = GitHubClient(settings)
        if search is None and settings.exa_api_key:
            search = SearchClient(settings)

        container = cls(
            settings=settings,
            database=database,
            repository=Repository(database),
            streams=streams,
            engine=engine,
            runs=RunRegistry(engine),
            llm=llm or ModelRouter(settings),
            sandbox=sandbox or SandboxClient(settings),
            github=github,
            search=search,
        )
        engine.services = container
        planner.register(engine)
        worker.register(engine)
        return container

    async def start(self, create_tables: bool = True, recover: bool = True) -> None:
        """Connect the database and resume runs left unfinished by a previous process."""
        await self.database.connect(create_tables=create_tables)
        if recover:
            recovered = await self.engine.recover()
            if recovered:
                logger.info(f"Recovered {len(recovered)} unfinished run(s)")
            if self.settings.workflow_recovery_interval_seconds > 0:
                self.engine.start_recovery(self.settings.workflow_recovery_interval_seconds)

    async def close(self) -> None:
        await self.engine.shutdown()
        for service in (self.llm, self.sandbox, self.github, self.search):
            close = getattr(service, "close", None)
            if close is not None:
                await close()
        await self.database.dispose()

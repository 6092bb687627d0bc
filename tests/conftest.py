"""Shared fixtures: a temporary SQLite database and scripted collaborators."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable

import httpx
import pytest

from specflow.api.main import create_app
from specflow.config import Settings
from specflow.container import Container
from specflow.database.session import Database
from specflow.llm.base import LLMAdapter
from specflow.schemas import LLMMessage, LLMResponse, StreamEvent, ToolCall, ToolResult
from specflow.workflow.engine import WorkflowEngine
from specflow.workflow.stream import StreamStore


PLANNER_MODEL = "test/planner"
CODEGEN_MODEL = "test/codegen"


async def wait_until(predicate: Callable[[], Awaitable[bool]], timeout: float = 10.0) -> None:
    """Poll an async predicate until it holds."""

    async def _poll() -> None:
        while not await predicate():
            await asyncio.sleep(0.02)

    await asyncio.wait_for(_poll(), timeout=timeout)


async def collect(chunks: AsyncIterator[dict[str, Any]], timeout: float = 10.0) -> list[dict[str, Any]]:
    async def _drain() -> list[dict[str, Any]]:
        return [chunk async for chunk in chunks]

    return await asyncio.wait_for(_drain(), timeout=timeout)


# =============================================================================
# Scripted collaborators
# =============================================================================

@dataclass
class Turn:
    """One scripted model turn."""
    text: str = ""
    tool_calls: list[tuple[str, Any]] = field(default_factory=list)


class FakeLLM(LLMAdapter):
    """Plays back scripted turns per model; unscripted turns just answer with text."""

    def __init__(self) -> None:
        self.scripts: dict[str, list[Turn]] = {}
        self.repeat: dict[str, Turn] = {}
        self.calls: dict[str, int] = {}
        self.draft = "# Dark mode\n\nAdd a dark theme toggle to the settings page."
        self._next_id = 0

    @property
    def provider_name(self) -> str:
        return "fake"

    def script(self, model: str, *turns: Turn) -> None:
        self.scripts.setdefault(model, []).extend(turns)

    def _next_turn(self, model: str) -> Turn:
        self.calls[model] = self.calls.get(model, 0) + 1
        queue = self.scripts.get(model) or []
        if queue:
            return queue.pop(0)
        return self.repeat.get(model) or Turn(text="Done.")

    async def chat_completion(
        self,
        messages: list[LLMMessage],
        model: str,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        tools: list[dict[str, Any]] | None = None,
        response_format: dict[str, str] | None = None,
    ) -> LLMResponse:
        return LLMResponse(content=self.draft, model=model, finish_reason="stop")

    async def stream_completion(
        self,
        messages: list[LLMMessage],
        model: str,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        tools: list[dict[str, Any]] | None = None,
        response_format: dict[str, str] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        turn = self._next_turn(model)
        if turn.text:
            yield StreamEvent(type="text-delta", delta=turn.text)
        for name, arguments in turn.tool_calls:
            self._next_id += 1
            raw = arguments if isinstance(arguments, str) else json.dumps(arguments)
            yield StreamEvent(
                type="tool-call",
                tool_call=ToolCall(id=f"call_{self._next_id}", name=name, arguments=raw),
            )
        yield StreamEvent(type="finish", finish_reason="tool_calls" if turn.tool_calls else "stop")

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        pass


class FakeSandbox:
    """Records every sandbox call; commands succeed unless listed in ``failing``."""

    def __init__(self) -> None:
        self.creates: list[dict[str, Any]] = []
        self.commands: list[tuple[str, list[str], str | None]] = []
        self.files: list[dict[str, str]] = []
        self.stopped: list[str] = []
        self.failing = {"test"}
        self._sandboxes: dict[str, str] = {}

    async def create(self, source_url=None, username=None, password=None, idempotency_key=None):
        self.creates.append({"source_url": source_url, "idempotency_key": idempotency_key})
        if idempotency_key not in self._sandboxes:
            self._sandboxes[idempotency_key] = f"sbx-{len(self._sandboxes) + 1}"
        return {"sandbox_id": self._sandboxes[idempotency_key], "status": "running"}

    async def stop(self, sandbox_id):
        self.stopped.append(sandbox_id)
        return {"sandbox_id": sandbox_id, "status": "stopped"}

    async def run_command(self, sandbox_id, cmd, args=None, cwd=None, sudo=False, env=None):
        self.commands.append((cmd, list(args or []), cwd))
        exit_code = 1 if cmd in self.failing else 0
        stdout = "Implemented the change." if cmd == "cn" else ""
        return ToolResult(
            ok=exit_code == 0,
            data={"stdout": stdout, "stderr": "", "exit_code": exit_code, "command": cmd},
            error_code="COMMAND_FAILED" if exit_code else None,
            error_message=f"exit code {exit_code}" if exit_code else None,
        )

    async def write_files(self, sandbox_id, files):
        self.files.extend(files)

    async def mkdir(self, sandbox_id, path):
        return await self.run_command(sandbox_id, "mkdir", ["-p", path])

    async def close(self) -> None:
        pass


class FakeGitHub:
    def __init__(self) -> None:
        self.pull_requests: list[dict[str, Any]] = []

    async def create_pull_request(self, repo, head, title, body="", base=None):
        self.pull_requests.append({"repo": repo, "head": head, "title": title, "body": body})
        return {"number": 7, "url": f"https://github.com/acme/{repo}/pull/7", "created": True}

    async def close(self) -> None:
        pass


class FakeSearch:
    def __init__(self) -> None:
        self.queries: list[str] = []

    async def search(self, query, num_results=5, max_characters=2000):
        self.queries.append(query)
        return {"query": query, "results": [{"title": "Result", "url": "https://example.com", "text": "..."}]}

    async def close(self) -> None:
        pass


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'specflow.db'}",
        planner_model=PLANNER_MODEL,
        codegen_model=CODEGEN_MODEL,
        github_token="ghp_test",
        github_owner="acme",
        github_webhook_secret="",
        exa_api_key="",
        repos=["webapp"],
        agent_max_turns=8,
        workflow_lease_seconds=2.0,
        stream_poll_interval_seconds=0.05,
    )


@pytest.fixture
async def database(settings) -> AsyncIterator[Database]:
    database = Database(settings)
    await database.connect(create_tables=True)
    yield database
    await database.dispose()


@pytest.fixture
def streams(database, settings) -> StreamStore:
    return StreamStore(database, poll_interval=settings.stream_poll_interval_seconds)


@pytest.fixture
async def make_engine(database, streams) -> AsyncIterator[Callable[..., WorkflowEngine]]:
    """Engines sharing one database, as separate processes would."""
    engines: list[WorkflowEngine] = []

    def _make(worker_id: str, lease_seconds: float = 2.0) -> WorkflowEngine:
        engine = WorkflowEngine(database, streams, lease_seconds=lease_seconds, worker_id=worker_id)
        engines.append(engine)
        return engine

    yield _make
    for engine in engines:
        await engine.shutdown()


@pytest.fixture
def llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def sandbox() -> FakeSandbox:
    return FakeSandbox()


@pytest.fixture
def github() -> FakeGitHub:
    return FakeGitHub()


@pytest.fixture
async def container(settings, llm, sandbox, github) -> AsyncIterator[Container]:
    container = Container.build(settings, llm=llm, sandbox=sandbox, github=github)
    await container.start()
    yield container
    await container.close()


@pytest.fixture
async def client(container) -> AsyncIterator[httpx.AsyncClient]:
    app = create_app(container)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client

"""Durable agent loop: halting, streamed output and tool errors."""

from __future__ import annotations

import asyncio

import pytest

from specflow.agent.durable import DurableAgent, has_tool_call
from specflow.agent.tools import ToolName, ToolRegistry, report_completion_tool, web_search_tool
from specflow.schemas import HaltReason, RunStatus, StreamEvent
from tests.conftest import FakeLLM, FakeSearch, Turn, collect, wait_until


MODEL = "test/agent"


@pytest.fixture
def search() -> FakeSearch:
    return FakeSearch()


@pytest.fixture
def agent_engine(make_engine, llm, search):
    """An engine with one workflow running a search-and-report agent."""

    def _build(max_turns: int = 10, worker_id: str = "worker-a", agent_llm=None, agent_search=None):
        registry = ToolRegistry([web_search_tool(agent_search or search), report_completion_tool()])

        async def research(ctx, prompt: str) -> dict:
            agent = DurableAgent(
                llm=agent_llm or llm,
                model=MODEL,
                system="You research things.",
                tools=registry,
                max_turns=max_turns,
            )
            return await agent.stream(
                ctx,
                messages=[{"role": "user", "content": prompt}],
                stop_when=has_tool_call(ToolName.REPORT_COMPLETION),
            )

        engine = make_engine(worker_id)
        engine.register("research", research)
        return engine

    return _build


def search_call(query: str) -> tuple[str, dict]:
    return ("web_search", {"query": query})


async def test_terminal_tool_on_turn_three_stops_the_loop(agent_engine, llm, search):
    engine = agent_engine()
    llm.script(
        MODEL,
        Turn(tool_calls=[search_call("sqlite wal"), search_call("sqlite locking")]),
        Turn(text="Looking deeper.", tool_calls=[search_call("busy timeout")]),
        Turn(text="Found it.", tool_calls=[("report_completion", {"summary": "Researched sqlite"})]),
    )
    # Without the stop condition the model would keep searching forever
    llm.repeat[MODEL] = Turn(tool_calls=[search_call("more")])

    run = await engine.start("research", {"prompt": "How does sqlite locking work?"})
    result = await run.result(timeout=15)

    assert result["halt_reason"] == HaltReason.STOP_CONDITION.value
    assert result["turns"] == 3
    assert llm.calls[MODEL] == 3
    assert search.queries == ["sqlite wal", "sqlite locking", "busy timeout"]


async def test_max_turns_bounds_a_model_that_never_stops(agent_engine, llm):
    engine = agent_engine(max_turns=4)
    llm.repeat[MODEL] = Turn(tool_calls=[search_call("again")])

    run = await engine.start("research", {"prompt": "Loop"})
    result = await run.result(timeout=15)

    assert result["halt_reason"] == HaltReason.MAX_TURNS.value
    assert result["turns"] == 4
    assert llm.calls[MODEL] == 4


async def test_text_only_turn_yields_the_floor(agent_engine, llm):
    engine = agent_engine()
    llm.script(MODEL, Turn(text="Which repository should I look at?"))

    run = await engine.start("research", {"prompt": "Help me"})
    result = await run.result(timeout=15)

    assert result["halt_reason"] == HaltReason.NO_TOOL_CALLS.value
    assert result["turns"] == 1
    assert result["parts"] == [{"type": "text", "text": "Which repository should I look at?"}]

    chunks = await collect(run.readable())
    assert [chunk["type"] for chunk in chunks] == [
        "start",
        "start-step",
        "text-start",
        "text-delta",
        "text-end",
        "finish-step",
        "finish",
    ]
    assert chunks[0]["messageId"] == f"msg-{run.run_id}"


async def test_tool_calls_are_streamed_and_recorded_as_parts(agent_engine, llm):
    engine = agent_engine()
    llm.script(
        MODEL,
        Turn(tool_calls=[search_call("fastapi lifespan")]),
        Turn(tool_calls=[("report_completion", {"summary": "done"})]),
    )

    run = await engine.start("research", {"prompt": "Lifespan?"})
    result = await run.result(timeout=15)

    search_part = result["parts"][0]
    assert search_part["type"] == "tool-web_search"
    assert search_part["state"] == "output-available"
    assert search_part["input"] == {"query": "fastapi lifespan"}
    assert search_part["output"]["query"] == "fastapi lifespan"

    chunks = await collect(run.readable())
    inputs = [c for c in chunks if c["type"] == "tool-input-available"]
    outputs = [c for c in chunks if c["type"] == "tool-output-available"]
    assert [c["toolName"] for c in inputs] == ["web_search", "report_completion"]
    assert [c["toolCallId"] for c in outputs] == [c["toolCallId"] for c in inputs]
    assert outputs[1]["output"] == {"acknowledged": True}

    checkpoints = await engine.get_checkpoints(run.run_id)
    assert [cp.step_name for cp in checkpoints] == [
        "model:1",
        "tool:web_search",
        "model:2",
        "tool:report_completion",
    ]


async def test_model_mistakes_come_back_as_tool_errors(agent_engine, llm, search):
    engine = agent_engine()
    llm.script(
        MODEL,
        Turn(tool_calls=[("delete_repository", {"repo": "webapp"}), ("web_search", "{not json")]),
        Turn(tool_calls=[("web_search", {"num_results": 3})]),
        Turn(tool_calls=[("report_completion", {"summary": "gave up"})]),
    )

    run = await engine.start("research", {"prompt": "Do things"})
    result = await run.result(timeout=15)

    assert result["halt_reason"] == HaltReason.STOP_CONDITION.value
    outputs = [part["output"] for part in result["parts"] if part["type"].startswith("tool-")]
    assert outputs[0]["error"] is True
    assert "Unknown tool 'delete_repository'" in outputs[0]["message"]
    assert outputs[1]["error"] is True
    assert "not valid JSON" in outputs[1]["message"]
    assert outputs[2]["error"] is True
    assert "query" in outputs[2]["message"]
    assert search.queries == []

    tool_messages = [m for m in result["messages"] if m["role"] == "tool"]
    assert len(tool_messages) == 4


# =============================================================================
# Resuming after a crash
# =============================================================================

class BlockingSearch(FakeSearch):
    """Hangs on the query ``block`` until released."""

    def __init__(self) -> None:
        super().__init__()
        self.release = asyncio.Event()

    async def search(self, query, num_results=5, max_characters=2000):
        result = await super().search(query, num_results, max_characters)
        if query == "block":
            await self.release.wait()
        return result


class StallingLLM(FakeLLM):
    """Streams the start of a first answer, then hangs until cancelled."""

    def __init__(self) -> None:
        super().__init__()
        self.attempts = 0

    async def stream_completion(self, messages, model, **kwargs):
        self.attempts += 1
        if self.attempts == 1:
            yield StreamEvent(type="text-delta", delta="Partial ")
            await asyncio.Event().wait()
        async for event in super().stream_completion(messages, model, **kwargs):
            yield event


async def test_resumed_agent_does_not_repeat_finished_tool_calls(agent_engine, llm):
    search = BlockingSearch()
    llm.script(
        MODEL,
        Turn(tool_calls=[search_call("first"), search_call("block")]),
        Turn(tool_calls=[("report_completion", {"summary": "done"})]),
    )
    first = agent_engine(worker_id="worker-a", agent_search=search)
    run = await first.start("research", {"prompt": "Search twice"})

    async def second_search_in_flight() -> bool:
        return search.queries == ["first", "block"]

    await wait_until(second_search_in_flight)
    await first.shutdown()

    search.release.set()
    second = agent_engine(worker_id="worker-b", agent_search=search)
    assert await second.recover() == [run.run_id]
    record = await second.wait(run.run_id, timeout=15)

    assert record.status == RunStatus.COMPLETED.value
    assert record.result["halt_reason"] == HaltReason.STOP_CONDITION.value
    # Only the interrupted call runs again; the finished model turn is replayed
    assert search.queries == ["first", "block", "block"]
    assert llm.calls[MODEL] == 2

    chunks = await collect(run.readable())
    outputs = [c["toolCallId"] for c in chunks if c["type"] == "tool-output-available"]
    assert len(outputs) == len(set(outputs)) == 3


async def test_interrupted_model_turn_does_not_splice_text(agent_engine):
    model = StallingLLM()
    model.script(MODEL, Turn(text="Complete answer."))
    first = agent_engine(worker_id="worker-a", agent_llm=model)
    run = await first.start("research", {"prompt": "Explain"})

    async def partial_text_published() -> bool:
        return await first.streams.length(run.run_id) >= 4

    await wait_until(partial_text_published)
    await first.shutdown()

    second = agent_engine(worker_id="worker-b", agent_llm=model)
    await second.recover()
    record = await second.wait(run.run_id, timeout=15)
    assert record.result["parts"] == [{"type": "text", "text": "Complete answer."}]

    chunks = await collect(run.readable())
    assert chunks == [
        {"type": "start", "messageId": f"msg-{run.run_id}"},
        {"type": "start-step"},
        {"type": "text-start", "id": "text-1"},
        {"type": "text-delta", "id": "text-1", "delta": "Partial "},
        {"type": "text-end", "id": "text-1"},
        {"type": "text-start", "id": "text-1-4"},
        {"type": "text-delta", "id": "text-1-4", "delta": "Complete answer."},
        {"type": "text-end", "id": "text-1-4"},
        {"type": "finish-step"},
        {"type": "finish"},
    ]

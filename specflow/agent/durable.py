"""Durable agent: a model + tool-calling loop running inside a workflow.

Graph structure:
START → model ──(tool calls)──→ tools ──(continue)──→ model
          │                       │
          └─(no tool calls)→ END  └─(stop condition / max turns)→ END

Every model turn is the step ``model:<turn>`` and every tool call the step
``tool:<name>``, so a resumed run replays completed turns and tool calls
from their checkpoints and never repeats their side effects.

Output is written to the run's stream as UI message chunks: ``start``,
``start-step``, ``text-start``/``text-delta``/``text-end``,
``tool-input-available``, ``tool-output-available``, ``finish-step`` and
``finish``.
"""

from __future__ import annotations

import json
import logging
import operator
from typing import Annotated, Any, Callable, TypedDict

from langgraph.graph import END, StateGraph

from specflow.agent.tools import ToolName, ToolRegistry
from specflow.schemas import HaltReason, LLMMessage, ToolCall
from specflow.workflow.engine import WorkflowContext


logger = logging.getLogger(__name__)

StopCondition = Callable[[list[dict[str, Any]]], bool]


def has_tool_call(name: ToolName) -> StopCondition:
    """Stop condition: the turn called tool ``name``."""

    def predicate(tool_calls: list[dict[str, Any]]) -> bool:
        return any(call.get("name") == name.value for call in tool_calls)

    return predicate


# =============================================================================
# State Definition
# =============================================================================

class AgentState(TypedDict):
    """State carried between graph nodes.

    Attributes:
        messages: Model conversation (plain dicts), appended per node
        parts: UI message parts of the assistant's reply, appended per node
        turn: Number of completed model turns
        tool_calls: Tool calls requested by the latest model turn
        halt_reason: Set when the loop must stop
    """
    messages: Annotated[list[dict[str, Any]], operator.add]
    parts: Annotated[list[dict[str, Any]], operator.add]
    turn: int
    tool_calls: list[dict[str, Any]]
    halt_reason: str | None


def _parse_arguments(raw: str) -> Any:
    try:
        return json.loads(raw or "{}")
    except json.JSONDecodeError:
        return raw


def _open_text_ids(chunks: list[dict[str, Any]]) -> list[str]:
    """Text blocks started in ``chunks`` and never ended."""
    open_ids: list[str] = []
    for chunk in chunks:
        if chunk.get("type") == "text-start":
            open_ids.append(chunk["id"])
        elif chunk.get("type") == "text-end" and chunk.get("id") in open_ids:
            open_ids.remove(chunk["id"])
    return open_ids


class DurableAgent:
    """Runs a model/tool loop as steps of the calling workflow."""

    def __init__(
        self,
        llm: Any,
        model: str,
        system: str,
        tools: ToolRegistry,
        max_turns: int = 40,
        temperature: float = 0.7,
    ):
        self.llm = llm
        self.model = model
        self.system = system
        self.tools = tools
        self.max_turns = max_turns
        self.temperature = temperature

    async def stream(
        self,
        ctx: WorkflowContext,
        messages: list[dict[str, Any]],
        stop_when: StopCondition,
    ) -> dict[str, Any]:
        """Run the loop until it halts, streaming output to ``ctx``.

        Returns ``halt_reason``, ``turns``, the assistant UI ``parts`` and
        the full model ``messages``.
        """
        graph = self._build_graph(ctx, stop_when).compile()

        await ctx.write({"type": "start", "messageId": f"msg-{ctx.run_id}"})
        state = await graph.ainvoke(
            {
                "messages": list(messages),
                "parts": [],
                "turn": 0,
                "tool_calls": [],
                "halt_reason": None,
            },
            config={"recursion_limit": self.max_turns * 2 + 5},
        )
        await ctx.write({"type": "finish"})

        logger.info(f"[{ctx.run_id}] Agent halted after {state['turn']} turn(s): {state['halt_reason']}")
        return {
            "halt_reason": state["halt_reason"],
            "turns": state["turn"],
            "parts": state["parts"],
            "messages": state["messages"],
        }

    # =========================================================================
    # Graph
    # =========================================================================

    def _build_graph(self, ctx: WorkflowContext, stop_when: StopCondition) -> StateGraph:
        graph = StateGraph(AgentState)

        async def model_node(state: AgentState) -> dict[str, Any]:
            turn = state["turn"] + 1
            output = await ctx.step(
                f"model:{turn}",
                self._generate,
                {"ctx": ctx, "messages": state["messages"], "turn": turn},
            )

            tool_calls = output["tool_calls"]
            message: dict[str, Any] = {"role": "assistant", "content": output["text"] or None}
            if tool_calls:
                message["tool_calls"] = [ToolCall(**call).to_openai() for call in tool_calls]

            parts = [{"type": "text", "text": output["text"]}] if output["text"] else []
            update: dict[str, Any] = {
                "messages": [message],
                "parts": parts,
                "turn": turn,
                "tool_calls": tool_calls,
                "halt_reason": None,
            }
            if not tool_calls:
                await ctx.write({"type": "finish-step"})
                update["halt_reason"] = HaltReason.NO_TOOL_CALLS.value
            return update

        async def tools_node(state: AgentState) -> dict[str, Any]:
            messages: list[dict[str, Any]] = []
            parts: list[dict[str, Any]] = []
            for call in state["tool_calls"]:
                output = await ctx.step(
                    f"tool:{call['name']}",
                    self._execute_tool,
                    {"ctx": ctx, "call": call},
                )
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": call["id"],
                        "name": call["name"],
                        "content": json.dumps(output),
                    }
                )
                parts.append(
                    {
                        "type": f"tool-{call['name']}",
                        "toolCallId": call["id"],
                        "state": "output-available",
                        "input": _parse_arguments(call["arguments"]),
                        "output": output,
                    }
                )
            await ctx.write({"type": "finish-step"})

            halt_reason = None
            if stop_when(state["tool_calls"]):
                halt_reason = HaltReason.STOP_CONDITION.value
            elif state["turn"] >= self.max_turns:
                halt_reason = HaltReason.MAX_TURNS.value
            return {"messages": messages, "parts": parts, "halt_reason": halt_reason}

        def route_after_model(state: AgentState) -> str:
            return END if state["halt_reason"] else "tools"

        def route_after_tools(state: AgentState) -> str:
            return END if state["halt_reason"] else "model"

        graph.add_node("model", model_node)
        graph.add_node("tools", tools_node)
        graph.set_entry_point("model")
        graph.add_conditional_edges("model", route_after_model, {"tools": "tools", END: END})
        graph.add_conditional_edges("tools", route_after_tools, {"model": "model", END: END})
        return graph

    # =========================================================================
    # Steps
    # =========================================================================

    async def _generate(
        self,
        ctx: WorkflowContext,
        messages: list[dict[str, Any]],
        turn: int,
    ) -> dict[str, Any]:
        """One streamed model turn; returns its text and tool calls.

        A turn re-executed after a crash may find part of its earlier attempt
        already published. That text block is closed and the new attempt's
        text gets its own id, so readers never see two attempts spliced.
        """
        published = await ctx.writer.ahead()
        text_id = f"text-{turn}"
        if published:
            text_id = f"text-{turn}-{ctx.writer.position + len(published)}"

        await ctx.write({"type": "start-step"})
        for stale_id in _open_text_ids(published):
            await ctx.write({"type": "text-end", "id": stale_id})
        text_parts: list[str] = []
        tool_calls: list[dict[str, Any]] = []
        finish_reason = None

        conversation = [LLMMessage(role="system", content=self.system)]
        conversation.extend(LLMMessage(**message) for message in messages)

        async for event in self.llm.stream_completion(
            messages=conversation,
            model=self.model,
            temperature=self.temperature,
            tools=self.tools.schemas(),
        ):
            if event.type == "text-delta" and event.delta:
                if not text_parts:
                    await ctx.write({"type": "text-start", "id": text_id})
                text_parts.append(event.delta)
                await ctx.write({"type": "text-delta", "id": text_id, "delta": event.delta})
            elif event.type == "tool-call" and event.tool_call is not None:
                call = event.tool_call
                tool_calls.append(call.model_dump())
                await ctx.write(
                    {
                        "type": "tool-input-available",
                        "toolCallId": call.id,
                        "toolName": call.name,
                        "input": _parse_arguments(call.arguments),
                    }
                )
            elif event.type == "finish":
                finish_reason = event.finish_reason

        if text_parts:
            await ctx.write({"type": "text-end", "id": text_id})

        logger.info(
            f"[{ctx.run_id}] Turn {turn}: {len(tool_calls)} tool call(s), finish={finish_reason}"
        )
        return {"text": "".join(text_parts), "tool_calls": tool_calls, "finish_reason": finish_reason}

    async def _execute_tool(self, ctx: WorkflowContext, call: dict[str, Any]) -> Any:
        output = await self.tools.dispatch(call["name"], call["arguments"])
        await ctx.write(
            {
                "type": "tool-output-available",
                "toolCallId": call["id"],
                "output": output,
            }
        )
        return output

"""Dispatcher behavior: ordering, per-node failure isolation, planner joins."""

from __future__ import annotations

import asyncio
import time

import pytest

from flowstudio.service.errors import ToolExecutionError
from flowstudio.service.graph import Graph
from flowstudio.service.llm import PlanResult, StubChatBackend
from flowstudio.service.planner import InlinePlannerLauncher, PlannerStep
from flowstudio.service.tools import CalcArgs, ToolSpec, build_default_registry
from flowstudio.service.workflow import GraphExecutor, RunContext
from flowstudio.storage.memory import MemoryEventChannel


class SlowBackend:
    """Chat backend that never answers within the test timeout."""

    async def plan(self, messages, tools):
        await asyncio.sleep(10)
        return PlanResult()

    async def stream(self, messages):
        yield ""

    async def close(self):
        return None


class ExplodingBackend:
    async def plan(self, messages, tools):
        raise RuntimeError("model backend unavailable")

    async def stream(self, messages):
        yield ""

    async def close(self):
        return None


def _build(backend=None, registry=None, *, planner_timeout=2.0, **executor_kwargs):
    channel = MemoryEventChannel()
    registry = registry or build_default_registry()
    backend = backend or StubChatBackend(answer="All good")
    step = PlannerStep(channel, backend, registry)
    launcher = InlinePlannerLauncher(step, timeout_seconds=planner_timeout)
    executor_kwargs.setdefault("tool_backoff_ms", 0)
    executor = GraphExecutor(channel, registry, launcher, **executor_kwargs)
    return channel, executor


async def _drain(channel, session_id):
    events = []
    while True:
        batch = await channel.dequeue_batch(session_id, 100)
        if not batch:
            return events
        events.extend(batch)


def _scenario_graph():
    return Graph.model_validate(
        {
            "nodes": [
                {"id": "input", "type": "input", "data": {"label": "Input", "subtitle": "query"}},
                {"id": "planner", "data": {"label": "LLM", "subtitle": "planner"}},
                {"id": "router", "data": {"label": "Router", "subtitle": ""}},
                {"id": "toolA", "data": {"label": "Calc", "tool": "calc", "params": {"expression": "2+3*4"}}},
                {"id": "toolB", "data": {"label": "Weather", "tool": "weather", "params": {"city": "Delhi"}}},
                {"id": "output", "type": "output", "data": {"label": "Output"}},
            ],
            "edges": [
                {"source": "input", "target": "planner"},
                {"source": "planner", "target": "router"},
                {"source": "router", "target": "toolA"},
                {"source": "router", "target": "toolB"},
                {"source": "toolA", "target": "output"},
                {"source": "toolB", "target": "output"},
            ],
        }
    )


@pytest.mark.asyncio
async def test_six_node_scenario_event_sequence():
    channel, executor = _build()
    session_id = await channel.create_session()
    try:
        result = await executor.run(session_id, _scenario_graph(), {"query": "Weather in Delhi?"})
    finally:
        executor.shutdown()

    events = await _drain(channel, session_id)
    enters = [e.node for e in events if e.type == "node_enter"]
    assert enters == ["input", "planner", "router", "toolA", "toolB", "output"]
    assert result.visit_order == enters

    def index_of(pred):
        return next(i for i, e in enumerate(events) if pred(e))

    planning = index_of(lambda e: e.node == "planner" and e.patch == {"status": "planning"})
    tool_a_done = index_of(lambda e: e.node == "toolA" and (e.patch or {}).get("status") == "done")
    tool_b_done = index_of(lambda e: e.node == "toolB" and (e.patch or {}).get("status") == "done")
    assert planning < tool_a_done
    assert planning < tool_b_done

    done_events = [e for e in events if e.type == "done"]
    assert len(done_events) == 1
    assert events[-1].type == "done"

    assert result.final_states["toolA"] == {"status": "done", "result": {"result": 14}}
    assert result.final_states["toolB"] == {
        "status": "done",
        "result": {"tempC": 32, "condition": "Cloudy"},
    }
    assert result.final_states["router"] == {"status": "skipped"}
    assert result.final_states["input"] == {"status": "skipped"}
    assert result.final_states["planner"] == {"status": "done", "answer": "All good"}
    assert result.metrics["visited"] == 6
    assert result.metrics["skipped"] == 3
    assert result.metrics["errors"] == 0


@pytest.mark.asyncio
async def test_node_enter_messages_use_label_and_subtitle():
    channel, executor = _build()
    session_id = await channel.create_session()
    await executor.run(session_id, _scenario_graph())
    executor.shutdown()

    events = await _drain(channel, session_id)
    messages = {e.node: e.message for e in events if e.type == "node_enter"}
    assert messages["input"] == "Input query"
    assert messages["router"] == "Router "


@pytest.mark.asyncio
async def test_planner_streams_growing_partials():
    channel, executor = _build(StubChatBackend(answer="one two three"))
    session_id = await channel.create_session()
    await executor.run(session_id, _scenario_graph())
    executor.shutdown()

    events = await _drain(channel, session_id)
    partials = [
        e.patch["partial"]
        for e in events
        if e.node == "planner" and (e.patch or {}).get("status") == "generating"
    ]
    assert partials == ["one ", "one two ", "one two three"]


@pytest.mark.asyncio
async def test_failing_tool_does_not_block_downstream_nodes():
    channel, executor = _build()
    graph = Graph.model_validate(
        {
            "nodes": [
                {"id": "bad", "kind": "tool", "toolName": "calc", "params": {"expression": "1; 2"}},
                {"id": "after", "kind": "plain"},
                {"id": "independent", "kind": "tool", "toolName": "weather", "params": {"city": "Mumbai"}},
            ],
            "edges": [{"source": "bad", "target": "after"}],
        }
    )
    session_id = await channel.create_session()
    result = await executor.run(session_id, graph)
    executor.shutdown()

    assert result.final_states["bad"]["status"] == "error"
    assert "invalid chars" in result.final_states["bad"]["error"]
    assert result.final_states["after"] == {"status": "skipped"}
    assert result.final_states["independent"]["status"] == "done"
    events = await _drain(channel, session_id)
    assert events[-1].type == "done"
    assert events[-1].metrics["errors"] == 1


@pytest.mark.asyncio
async def test_oversized_calc_result_is_an_error_and_stream_finishes():
    channel, executor = _build()
    graph = Graph.model_validate(
        {
            "nodes": [
                {
                    "id": "big",
                    "kind": "tool",
                    "toolName": "calc",
                    "params": {"expression": "10**999*10**999*10**999*10**999*10**999"},
                },
                {"id": "nested", "kind": "tool", "toolName": "calc", "params": {"expression": "((9**999)**999)**999"}},
            ],
        }
    )
    session_id = await channel.create_session()
    started = time.monotonic()
    result = await executor.run(session_id, graph)
    executor.shutdown()

    assert time.monotonic() - started < 5
    assert result.final_states["big"] == {"status": "error", "error": "result too large"}
    assert result.final_states["nested"] == {"status": "error", "error": "result too large"}
    frames = [event.to_json() for event in await _drain(channel, session_id)]
    assert '"type": "done"' in frames[-1]


@pytest.mark.asyncio
async def test_unknown_tool_node_reports_missing_tool():
    channel, executor = _build()
    graph = Graph.model_validate({"nodes": [{"id": "t", "kind": "tool", "toolName": "teleport"}]})
    session_id = await channel.create_session()
    result = await executor.run(session_id, graph)
    executor.shutdown()

    assert result.final_states["t"] == {"status": "error", "error": "Unknown tool teleport"}


@pytest.mark.asyncio
async def test_transient_tool_failure_is_retried():
    calls = {"count": 0}

    def flaky(params):
        calls["count"] += 1
        if calls["count"] == 1:
            raise ConnectionError("upstream reset")
        return {"ok": True}

    registry = build_default_registry()
    registry.register(ToolSpec("flaky", "", CalcArgs, flaky))
    channel, executor = _build(registry=registry, tool_max_retries=1)
    graph = Graph.model_validate({"nodes": [{"id": "f", "toolName": "flaky"}]})
    session_id = await channel.create_session()
    result = await executor.run(session_id, graph)
    executor.shutdown()

    assert calls["count"] == 2
    assert result.final_states["f"] == {"status": "done", "result": {"ok": True}}


@pytest.mark.asyncio
async def test_tool_execution_errors_are_not_retried():
    calls = {"count": 0}

    def broken(params):
        calls["count"] += 1
        raise ToolExecutionError("broken", "bad input")

    registry = build_default_registry()
    registry.register(ToolSpec("broken", "", CalcArgs, broken))
    channel, executor = _build(registry=registry, tool_max_retries=3)
    graph = Graph.model_validate({"nodes": [{"id": "b", "toolName": "broken"}]})
    session_id = await channel.create_session()
    result = await executor.run(session_id, graph)
    executor.shutdown()

    assert calls["count"] == 1
    assert result.final_states["b"] == {"status": "error", "error": "bad input"}


@pytest.mark.asyncio
async def test_tool_timeout_becomes_error_patch():
    def sleepy(params):
        time.sleep(0.3)
        return 1

    registry = build_default_registry()
    registry.register(ToolSpec("sleepy", "", CalcArgs, sleepy))
    channel, executor = _build(registry=registry, tool_timeout_seconds=0.05, tool_max_retries=0)
    graph = Graph.model_validate({"nodes": [{"id": "s", "toolName": "sleepy"}]})
    session_id = await channel.create_session()
    result = await executor.run(session_id, graph)
    executor.shutdown(wait=False)

    assert result.final_states["s"]["status"] == "error"
    assert "timed out" in result.final_states["s"]["error"]


@pytest.mark.asyncio
async def test_planner_timeout_is_reported_and_done_stays_last():
    channel, executor = _build(SlowBackend(), planner_timeout=0.05)
    session_id = await channel.create_session()
    started = time.monotonic()
    result = await executor.run(session_id, _scenario_graph())
    executor.shutdown()

    assert time.monotonic() - started < 5
    assert result.final_states["planner"]["status"] == "error"
    assert "timed out" in result.final_states["planner"]["error"]
    events = await _drain(channel, session_id)
    assert [e.type for e in events].count("done") == 1
    assert events[-1].type == "done"


@pytest.mark.asyncio
async def test_planner_failure_becomes_error_patch():
    channel, executor = _build(ExplodingBackend())
    session_id = await channel.create_session()
    result = await executor.run(session_id, _scenario_graph())
    executor.shutdown()

    assert result.final_states["planner"] == {
        "status": "error",
        "error": "model backend unavailable",
    }
    assert result.final_states["toolA"]["status"] == "done"


@pytest.mark.asyncio
async def test_cycle_emits_structural_error_before_done():
    channel, executor = _build()
    graph = Graph.model_validate(
        {
            "nodes": [{"id": n} for n in ["a", "b", "c", "x", "y"]],
            "edges": [
                {"source": "a", "target": "b"},
                {"source": "b", "target": "c"},
                {"source": "x", "target": "y"},
                {"source": "y", "target": "x"},
            ],
        }
    )
    session_id = await channel.create_session()
    result = await executor.run(session_id, graph)
    executor.shutdown()

    assert result.visit_order == ["a", "b", "c"]
    assert result.unreachable == ["x", "y"]
    assert "x" not in result.final_states
    events = await _drain(channel, session_id)
    assert [e.type for e in events[-2:]] == ["error", "done"]
    assert events[-2].detail == {"code": "graph_cycle", "nodes": ["x", "y"]}
    assert events[-1].metrics["unreachable"] == 2


@pytest.mark.asyncio
async def test_transcript_uses_input_query_and_tool_results():
    backend = StubChatBackend(answer="ok")
    channel, executor = _build(backend)
    graph = Graph.model_validate(
        {
            "nodes": [
                {"id": "in", "kind": "input"},
                {"id": "calc", "kind": "tool", "toolName": "calc", "params": {"expression": "6*7"}},
                {"id": "llm", "kind": "llm"},
                {"id": "wx", "kind": "tool", "toolName": "weather"},
            ],
            "edges": [
                {"source": "in", "target": "llm"},
                {"source": "calc", "target": "llm"},
                {"source": "llm", "target": "wx"},
            ],
        }
    )
    session_id = await channel.create_session()
    await executor.run(session_id, graph, {"query": "What is six times seven?"})
    executor.shutdown()

    messages = backend.plans[0]
    assert messages[0] == {
        "role": "system",
        "content": "You are a helpful planner that may call tools if needed.",
    }
    assert {"role": "system", "content": 'Tool calc result: {"result": 42}'} in messages
    assert messages[-1] == {"role": "user", "content": "What is six times seven?"}


@pytest.mark.asyncio
async def test_planner_without_input_uses_default_prompt():
    backend = StubChatBackend(answer="ok")
    channel, executor = _build(backend)
    graph = Graph.model_validate({"nodes": [{"id": "llm", "kind": "llm"}]})
    session_id = await channel.create_session()
    await executor.run(session_id, graph)
    executor.shutdown()

    assert backend.plans[0][-1] == {
        "role": "user",
        "content": "Plan the next steps and call tools if needed.",
    }


@pytest.mark.asyncio
async def test_planner_tool_path_runs_requested_tools():
    backend = StubChatBackend(
        tool_calls=[{"id": "c1", "name": "calc", "args": {"expression": "6*7"}}],
        answer="It is 42",
    )
    channel, executor = _build(backend)
    graph = Graph.model_validate(
        {
            "nodes": [
                {"id": "llm", "kind": "llm"},
                {"id": "calc", "kind": "tool", "toolName": "calc"},
            ],
            "edges": [{"source": "llm", "target": "calc"}],
        }
    )
    session_id = await channel.create_session()
    result = await executor.run(session_id, graph)
    executor.shutdown()

    events = await _drain(channel, session_id)
    statuses = [e.patch["status"] for e in events if e.node == "llm" and e.patch]
    assert statuses[:3] == ["planning", "tool_calling", "tool_results"]
    assert statuses[-1] == "done"
    assert set(statuses[3:-1]) == {"answering"}
    results = next(e.patch for e in events if e.node == "llm" and e.patch["status"] == "tool_results")
    assert results["toolResults"] == [{"name": "calc", "result": {"result": 42}}]
    assert result.final_states["llm"] == {"status": "done", "answer": "It is 42"}


@pytest.mark.asyncio
async def test_run_for_unknown_session_still_returns_final_states():
    channel, executor = _build()
    result = await executor.run("no-such-session", _scenario_graph())
    executor.shutdown()

    assert result.final_states["toolA"]["status"] == "done"
    assert await channel.dequeue_batch("no-such-session", 10) == []


@pytest.mark.asyncio
async def test_run_context_drops_patches_after_terminal_state():
    channel = MemoryEventChannel()
    session_id = await channel.create_session()
    graph = Graph.model_validate({"nodes": [{"id": "n"}]})
    ctx = RunContext(session_id, channel, graph)

    assert await ctx.patch("n", {"status": "planning"})
    assert await ctx.patch("n", {"status": "done", "answer": "x"})
    assert not await ctx.patch("n", {"status": "generating", "partial": "late"})

    events = await channel.dequeue_batch(session_id, 10)
    assert [e.patch["status"] for e in events] == ["planning", "done"]
    assert ctx.final_states() == {"n": {"status": "done", "answer": "x"}}

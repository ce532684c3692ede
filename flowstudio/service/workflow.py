from __future__ import annotations

import asyncio
import concurrent.futures
import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from flowstudio.config import MAX_TOOL_RETRIES, MAX_TOOL_TIMEOUT_SECONDS, MAX_TOOL_WORKERS
from flowstudio.logging import get_logger, log_run_trace, sanitize_error_message
from flowstudio.service.errors import (
    ExternalStepFailure,
    ExternalStepTimeout,
    GraphCycle,
    ToolExecutionError,
    UnknownTool,
)
from flowstudio.service.graph import (
    KIND_INPUT,
    KIND_LLM,
    KIND_TOOL,
    Graph,
    NodeConfig,
    compute_order,
)
from flowstudio.service.planner import PatchEmitter, PlannerOutcome, build_planner_messages
from flowstudio.service.state import NodeRuntimeState, NodeStatus
from flowstudio.service.tools import ToolRegistry
from flowstudio.storage.common import EventChannel
from flowstudio.storage.models import Event

DEFAULT_TOOL_TIMEOUT_SECONDS = 15.0
DEFAULT_TOOL_MAX_RETRIES = 1
DEFAULT_BACKOFF_MS = 200  # quadruples each retry


class PlannerLauncher(Protocol):
    mode: str

    async def launch(
        self,
        session_id: str,
        node_id: str,
        messages: List[dict],
        tools: List[str],
        emit: Optional[PatchEmitter] = None,
    ) -> PlannerOutcome: ...

    async def close(self) -> None: ...


@dataclass
class RunResult:
    final_states: Dict[str, Dict[str, Any]]
    visit_order: List[str]
    unreachable: List[str]
    metrics: Dict[str, Any] = field(default_factory=dict)


class RunContext:
    """Per-run state owned by the dispatcher.

    Every patch for a node goes through `patch()`, which applies the node state
    machine before publishing. Patches the machine rejects are logged and
    never reach the channel.
    """

    def __init__(self, session_id: str, channel: EventChannel, graph: Graph) -> None:
        self.session_id = session_id
        self.channel = channel
        self.logger = get_logger(__name__)
        self.states: Dict[str, NodeRuntimeState] = {
            node.id: NodeRuntimeState(node_id=node.id, data=dict(node.state))
            for node in graph.nodes
        }
        self.trace: List[Dict[str, Any]] = []

    async def publish(self, event: Event) -> None:
        try:
            await self.channel.enqueue(self.session_id, event)
        except Exception as exc:
            # Writes are best-effort; the run continues without an observer
            self.logger.warning(
                "event_publish_failed",
                session_id=self.session_id,
                event_type=event.type,
                node_id=event.node,
                error=str(exc),
            )

    async def enter(self, node: NodeConfig) -> None:
        await self.publish(Event.node_enter(node.id, node.display_message))

    async def patch(self, node_id: str, patch: Dict[str, Any]) -> bool:
        state = self.states[node_id]
        previous = state.status
        if not state.apply(patch):
            self.logger.warning(
                "node_patch_dropped",
                session_id=self.session_id,
                node_id=node_id,
                current_status=previous.value,
                patch_status=patch.get("status"),
            )
            return False
        if state.status != previous:
            self.trace.append({"node": node_id, "status": state.status.value})
        await self.publish(Event.state_patch(node_id, patch))
        return True

    async def emit(self, node_id: str, patch: Dict[str, Any]) -> None:
        await self.patch(node_id, patch)

    def record(self, node_id: str, patch: Dict[str, Any]) -> bool:
        """Apply a patch that was already published elsewhere."""
        state = self.states[node_id]
        applied = state.apply(patch)
        if applied:
            self.trace.append({"node": node_id, "status": state.status.value})
        return applied

    def final_states(self) -> Dict[str, Dict[str, Any]]:
        return {
            node_id: dict(state.last_patch)
            for node_id, state in self.states.items()
            if state.last_patch is not None
        }


class GraphExecutor:
    """Visits a graph in topological order and publishes node lifecycle events."""

    def __init__(
        self,
        channel: EventChannel,
        registry: ToolRegistry,
        launcher: PlannerLauncher,
        *,
        tool_timeout_seconds: float = DEFAULT_TOOL_TIMEOUT_SECONDS,
        tool_max_retries: int = DEFAULT_TOOL_MAX_RETRIES,
        tool_backoff_ms: int = DEFAULT_BACKOFF_MS,
        tool_workers: int = 8,
        tool_executor: Optional[concurrent.futures.Executor] = None,
    ) -> None:
        self.channel = channel
        self.registry = registry
        self.launcher = launcher
        self.logger = get_logger(__name__)
        self.tool_timeout_seconds = min(max(0.01, tool_timeout_seconds), MAX_TOOL_TIMEOUT_SECONDS)
        self.tool_max_retries = min(max(0, tool_max_retries), MAX_TOOL_RETRIES)
        self.tool_backoff_ms = max(0, tool_backoff_ms)
        self._owns_executor = tool_executor is None
        self._tool_executor = tool_executor or concurrent.futures.ThreadPoolExecutor(
            max_workers=min(max(1, tool_workers), MAX_TOOL_WORKERS),
            thread_name_prefix="flow-tool",
        )
        self._executor_shutdown = False

    @property
    def tool_executor(self) -> concurrent.futures.Executor:
        return self._tool_executor

    def shutdown(self, wait: bool = True) -> None:
        """Release the tool thread pool if this executor created it."""
        if self._executor_shutdown or not self._owns_executor:
            return
        self._executor_shutdown = True
        try:
            self._tool_executor.shutdown(wait=wait, cancel_futures=not wait)
            self.logger.info("graph_executor_shutdown", wait=wait)
        except Exception as exc:
            self.logger.warning("graph_executor_shutdown_error", error=str(exc))

    async def run(
        self,
        session_id: str,
        graph: Graph,
        input: Optional[Dict[str, Any]] = None,
    ) -> RunResult:
        """Execute `graph` for `session_id`.

        Node failures are published as `error` patches and never abort the
        run. Planner steps run concurrently with the rest of the visit and are
        joined before the single session `done` event is published.
        """
        started = time.monotonic()
        plan = compute_order(graph)
        nodes = graph.node_map()
        ctx = RunContext(session_id, self.channel, graph)
        if input:
            for node in graph.nodes:
                if node.kind == KIND_INPUT:
                    ctx.states[node.id].data.update(input)

        self.logger.info(
            "graph_run_started",
            session_id=session_id,
            nodes=len(graph.nodes),
            edges=len(graph.edges),
            unreachable=len(plan.unreachable),
        )

        planner_tasks: Dict[str, asyncio.Task] = {}
        try:
            for node_id in plan.visit_order:
                node = nodes[node_id]
                await ctx.enter(node)
                try:
                    await self._dispatch(ctx, graph, node, planner_tasks)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    self.logger.error(
                        "node_dispatch_failed",
                        session_id=session_id,
                        node_id=node_id,
                        error=str(exc),
                        exc_info=True,
                    )
                    await ctx.patch(
                        node_id,
                        {"status": "error", "error": sanitize_error_message(str(exc))},
                    )

            usage = await self._join_planners(ctx, planner_tasks)
        except asyncio.CancelledError:
            for task in planner_tasks.values():
                task.cancel()
            self.logger.warning("graph_run_cancelled", session_id=session_id)
            raise

        if plan.has_cycle:
            cycle = GraphCycle(list(plan.unreachable))
            self.logger.warning(
                "graph_cycle_detected", session_id=session_id, nodes=cycle.nodes
            )
            await ctx.publish(
                Event.error(
                    cycle.message,
                    detail={"code": "graph_cycle", "nodes": cycle.nodes},
                )
            )

        metrics = self._metrics(ctx, plan.visit_order, plan.unreachable, usage, started)
        await ctx.publish(Event.done(metrics))
        log_run_trace(ctx.trace, self.logger)
        self.logger.info("graph_run_completed", session_id=session_id, **metrics)
        return RunResult(
            final_states=ctx.final_states(),
            visit_order=list(plan.visit_order),
            unreachable=list(plan.unreachable),
            metrics=metrics,
        )

    async def _dispatch(
        self,
        ctx: RunContext,
        graph: Graph,
        node: NodeConfig,
        planner_tasks: Dict[str, asyncio.Task],
    ) -> None:
        if node.kind == KIND_TOOL:
            await self._run_tool_node(ctx, node)
        elif node.kind == KIND_LLM:
            planner_tasks[node.id] = await self._start_planner(ctx, graph, node)
        else:
            await ctx.patch(node.id, {"status": "skipped"})

    # ------------------------------------------------------------------
    # Tool nodes
    # ------------------------------------------------------------------

    async def _run_tool_node(self, ctx: RunContext, node: NodeConfig) -> None:
        tool = node.tool_name or ""
        if tool not in self.registry:
            unknown = UnknownTool(tool)
            self.logger.warning(
                "tool_node_unknown_tool", session_id=ctx.session_id, node_id=node.id, tool=tool
            )
            await ctx.patch(node.id, {"status": "error", "error": unknown.message})
            return

        await ctx.patch(node.id, {"status": "running", "tool": tool})
        try:
            result = await self._invoke_with_retry(ctx, node)
        except ToolExecutionError as exc:
            self.logger.info(
                "tool_node_failed",
                session_id=ctx.session_id,
                node_id=node.id,
                tool=tool,
                error=exc.message,
            )
            await ctx.patch(
                node.id, {"status": "error", "error": sanitize_error_message(exc.message)}
            )
            return
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.logger.error(
                "tool_node_retries_exhausted",
                session_id=ctx.session_id,
                node_id=node.id,
                tool=tool,
                error=str(exc),
            )
            await ctx.patch(
                node.id,
                {"status": "error", "error": sanitize_error_message(str(exc) or type(exc).__name__)},
            )
            return
        await ctx.patch(node.id, {"status": "done", "result": result})

    async def _invoke_with_retry(self, ctx: RunContext, node: NodeConfig) -> Any:
        tool = node.tool_name or ""
        loop = asyncio.get_running_loop()
        attempt = 0
        while True:
            try:
                result = await asyncio.wait_for(
                    loop.run_in_executor(
                        self._tool_executor, self.registry.invoke, tool, dict(node.params)
                    ),
                    timeout=self.tool_timeout_seconds,
                )
                if attempt > 0:
                    self.logger.info(
                        "tool_node_recovered", node_id=node.id, tool=tool, attempts=attempt + 1
                    )
                return result
            except (ToolExecutionError, asyncio.CancelledError):
                raise
            except asyncio.TimeoutError:
                last_error: Exception = TimeoutError(
                    f"tool {tool} timed out after {self.tool_timeout_seconds:g}s"
                )
            except Exception as exc:
                last_error = exc

            attempt += 1
            self.logger.warning(
                "tool_node_retry",
                session_id=ctx.session_id,
                node_id=node.id,
                tool=tool,
                attempt=attempt,
                max_retries=self.tool_max_retries,
                error=str(last_error),
            )
            if attempt > self.tool_max_retries:
                raise last_error

            backoff_ms = self.tool_backoff_ms * (4 ** (attempt - 1))
            if backoff_ms > 0:
                self.logger.info(
                    "tool_node_backoff", node_id=node.id, attempt=attempt, backoff_ms=backoff_ms
                )
                await asyncio.sleep(backoff_ms / 1000.0)

    # ------------------------------------------------------------------
    # Planner nodes
    # ------------------------------------------------------------------

    def _gather_transcript(
        self, ctx: RunContext, graph: Graph, node: NodeConfig
    ) -> List[dict]:
        nodes = graph.node_map()
        user_messages: List[str] = []
        context: List[str] = []
        for pred_id in graph.predecessors(node.id):
            pred = nodes[pred_id]
            data = ctx.states[pred_id].data
            if pred.kind == KIND_INPUT and data.get("query"):
                user_messages.append(str(data["query"]))
            elif pred.kind == KIND_TOOL and "result" in data:
                context.append(
                    f"Tool {pred.tool_name} result: {json.dumps(data['result'], default=str)}"
                )
        own_query = ctx.states[node.id].data.get("query")
        if not user_messages and own_query:
            user_messages.append(str(own_query))
        return build_planner_messages(user_messages, context)

    def _neighbor_tools(self, graph: Graph, node: NodeConfig) -> List[str]:
        nodes = graph.node_map()
        tools: List[str] = []
        for neighbor_id in graph.neighbors(node.id):
            neighbor = nodes[neighbor_id]
            if neighbor.kind == KIND_TOOL and neighbor.tool_name and neighbor.tool_name not in tools:
                tools.append(neighbor.tool_name)
        return tools

    async def _start_planner(
        self, ctx: RunContext, graph: Graph, node: NodeConfig
    ) -> asyncio.Task:
        await ctx.patch(node.id, {"status": "planning"})
        messages = self._gather_transcript(ctx, graph, node)
        tools = self._neighbor_tools(graph, node)
        self.logger.info(
            "planner_step_fired",
            session_id=ctx.session_id,
            node_id=node.id,
            mode=self.launcher.mode,
            tools=tools,
        )
        task = asyncio.create_task(
            self._drive_planner(ctx, node.id, messages, tools),
            name=f"planner:{ctx.session_id}:{node.id}",
        )
        # Let the request go out before the next node is visited
        await asyncio.sleep(0)
        return task

    async def _drive_planner(
        self, ctx: RunContext, node_id: str, messages: List[dict], tools: List[str]
    ) -> Dict[str, int]:
        try:
            outcome = await self.launcher.launch(
                ctx.session_id, node_id, messages, tools, emit=ctx.emit
            )
        except asyncio.CancelledError:
            raise
        except ExternalStepTimeout as exc:
            self.logger.warning(
                "planner_timeout",
                session_id=ctx.session_id,
                node_id=node_id,
                timeout_seconds=exc.timeout_seconds,
            )
            await ctx.patch(node_id, {"status": "error", "error": str(exc)})
            return {}
        except Exception as exc:
            message = exc.message if isinstance(exc, ExternalStepFailure) else str(exc)
            self.logger.warning(
                "planner_failed",
                session_id=ctx.session_id,
                node_id=node_id,
                error_type=type(exc).__name__,
                error=message,
            )
            await ctx.patch(
                node_id, {"status": "error", "error": sanitize_error_message(message)}
            )
            return {}
        if not ctx.states[node_id].finished:
            ctx.record(node_id, outcome.terminal_patch())
        return outcome.usage

    async def _join_planners(
        self, ctx: RunContext, planner_tasks: Dict[str, asyncio.Task]
    ) -> Dict[str, int]:
        usage: Dict[str, int] = {}
        if not planner_tasks:
            return usage
        results = await asyncio.gather(*planner_tasks.values(), return_exceptions=True)
        for node_id, result in zip(planner_tasks, results):
            if isinstance(result, BaseException):
                self.logger.error(
                    "planner_task_crashed",
                    session_id=ctx.session_id,
                    node_id=node_id,
                    error=str(result),
                )
                if not ctx.states[node_id].finished:
                    await ctx.patch(
                        node_id,
                        {"status": "error", "error": sanitize_error_message(str(result))},
                    )
                continue
            for key, value in (result or {}).items():
                usage[key] = usage.get(key, 0) + int(value)
        return usage

    def _metrics(
        self,
        ctx: RunContext,
        visit_order: tuple,
        unreachable: tuple,
        usage: Dict[str, int],
        started: float,
    ) -> Dict[str, Any]:
        statuses = [state.status for state in ctx.states.values()]
        return {
            "tokens": usage.get("total_tokens", 0),
            "cost": 0,
            "nodes": len(ctx.states),
            "visited": len(visit_order),
            "errors": sum(1 for s in statuses if s == NodeStatus.ERROR),
            "skipped": sum(1 for s in statuses if s == NodeStatus.SKIPPED),
            "unreachable": len(unreachable),
            "elapsed_ms": int((time.monotonic() - started) * 1000),
        }

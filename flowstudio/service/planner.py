"""Long-running planner step.

The step plans with the chat backend, optionally runs the requested tools,
then streams the answer. All progress is published as `state_patch` events
for the planner node; callers only learn the outcome summary.
"""

from __future__ import annotations

import asyncio
import json
from concurrent.futures import Executor
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from flowstudio.logging import get_logger, sanitize_error_message
from flowstudio.service.errors import (
    ExternalStepFailure,
    ExternalStepTimeout,
    ToolExecutionError,
    UnknownTool,
)
from flowstudio.service.llm import ChatBackend
from flowstudio.service.tools import ToolRegistry
from flowstudio.storage.common import EventChannel
from flowstudio.storage.models import Event

logger = get_logger(__name__)

PLANNER_SYSTEM_PROMPT = "You are a helpful planner that may call tools if needed."
DEFAULT_PLANNER_PROMPT = "Plan the next steps and call tools if needed."

# emit(node_id, patch)
PatchEmitter = Callable[[str, Dict[str, Any]], Awaitable[None]]


@dataclass
class PlannerOutcome:
    ok: bool
    answer: str = ""
    error: Optional[str] = None
    usage: Dict[str, int] = field(default_factory=dict)

    def terminal_patch(self) -> Dict[str, Any]:
        if self.ok:
            return {"status": "done", "answer": self.answer}
        return {"status": "error", "error": self.error or "planner failed"}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"ok": self.ok, "answer": self.answer, "usage": self.usage}
        if self.error is not None:
            payload["error"] = self.error
        return payload

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "PlannerOutcome":
        return cls(
            ok=bool(payload.get("ok")),
            answer=str(payload.get("answer") or ""),
            error=payload.get("error"),
            usage=dict(payload.get("usage") or {}),
        )


def _merge_usage(total: Dict[str, int], usage: Optional[Dict[str, Any]]) -> None:
    for key, value in (usage or {}).items():
        if isinstance(value, (int, float)):
            total[key] = total.get(key, 0) + int(value)


class PlannerStep:
    def __init__(
        self,
        channel: EventChannel,
        backend: ChatBackend,
        registry: ToolRegistry,
        *,
        tool_executor: Optional[Executor] = None,
    ) -> None:
        self.channel = channel
        self.backend = backend
        self.registry = registry
        self.tool_executor = tool_executor

    def _channel_emitter(self, session_id: str) -> PatchEmitter:
        async def _emit(node_id: str, patch: Dict[str, Any]) -> None:
            await self.channel.enqueue(session_id, Event.state_patch(node_id, patch))

        return _emit

    async def run(
        self,
        session_id: str,
        node_id: str,
        messages: List[dict],
        tools: Optional[List[str]] = None,
        emit: Optional[PatchEmitter] = None,
    ) -> PlannerOutcome:
        """Run one planner step to completion.

        Never raises except on cancellation: every failure becomes an `error`
        patch for `node_id` and a failed outcome.
        """
        emit = emit or self._channel_emitter(session_id)
        usage: Dict[str, int] = {}
        try:
            answer = await self._run(node_id, list(messages), tools, emit, usage)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            message = sanitize_error_message(str(exc) or type(exc).__name__)
            logger.warning(
                "planner_step_failed",
                session_id=session_id,
                node_id=node_id,
                error_type=type(exc).__name__,
                error=message,
            )
            try:
                await emit(node_id, {"status": "error", "error": message})
            except Exception as emit_exc:
                logger.error(
                    "planner_error_emit_failed",
                    session_id=session_id,
                    node_id=node_id,
                    error=str(emit_exc),
                )
            return PlannerOutcome(ok=False, error=message, usage=usage)
        logger.info(
            "planner_step_completed",
            session_id=session_id,
            node_id=node_id,
            answer_chars=len(answer),
            tokens=usage.get("total_tokens", 0),
        )
        return PlannerOutcome(ok=True, answer=answer, usage=usage)

    async def _run(
        self,
        node_id: str,
        messages: List[dict],
        tools: Optional[List[str]],
        emit: PatchEmitter,
        usage: Dict[str, int],
    ) -> str:
        plan = await self.backend.plan(messages, self.registry.openai_tools(tools))
        _merge_usage(usage, plan.usage)
        assistant_plan: Dict[str, Any] = {"role": "assistant", "content": plan.content or ""}

        if plan.tool_calls:
            await emit(node_id, {"status": "tool_calling", "toolCalls": plan.tool_calls})
            tool_results = []
            for call in plan.tool_calls:
                result = await self._invoke_tool(call["name"], call.get("args") or {})
                tool_results.append({"name": call["name"], "result": result})
            await emit(node_id, {"status": "tool_results", "toolResults": tool_results})

            assistant_plan["tool_calls"] = [
                {
                    "id": call["id"],
                    "type": "function",
                    "function": {"name": call["name"], "arguments": json.dumps(call.get("args") or {})},
                }
                for call in plan.tool_calls
            ]
            tool_messages = [
                {
                    "role": "tool",
                    "tool_call_id": call["id"],
                    "name": item["name"],
                    "content": json.dumps(item["result"], default=str),
                }
                for call, item in zip(plan.tool_calls, tool_results)
            ]
            transcript = [*messages, assistant_plan, *tool_messages]
            status = "answering"
        else:
            transcript = [*messages, assistant_plan] if plan.content else messages
            status = "generating"

        chunks: List[str] = []
        async for token in self.backend.stream(transcript):
            if not token:
                continue
            chunks.append(token)
            await emit(node_id, {"status": status, "partial": "".join(chunks)})

        answer = "".join(chunks)
        await emit(node_id, {"status": "done", "answer": answer})
        return answer

    async def _invoke_tool(self, name: str, args: Dict[str, Any]) -> Any:
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(self.tool_executor, self.registry.invoke, name, args)
        if isinstance(result, UnknownTool):
            return result.to_result()
        return result


def build_planner_messages(
    user_messages: List[str], context: List[str]
) -> List[dict]:
    """Transcript handed to the planner: system prompt, tool context, user turns."""
    messages: List[dict] = [{"role": "system", "content": PLANNER_SYSTEM_PROMPT}]
    for item in context:
        messages.append({"role": "system", "content": item})
    if not user_messages:
        user_messages = [DEFAULT_PLANNER_PROMPT]
    for text in user_messages:
        messages.append({"role": "user", "content": text})
    return messages


class InlinePlannerLauncher:
    """Runs the planner step as a task of the current event loop."""

    mode = "inline"

    def __init__(self, step: PlannerStep, *, timeout_seconds: float) -> None:
        self.step = step
        self.timeout_seconds = timeout_seconds

    async def launch(
        self,
        session_id: str,
        node_id: str,
        messages: List[dict],
        tools: List[str],
        emit: Optional[PatchEmitter] = None,
    ) -> PlannerOutcome:
        try:
            return await asyncio.wait_for(
                self.step.run(session_id, node_id, messages, tools, emit=emit),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise ExternalStepTimeout(node_id, self.timeout_seconds) from exc

    async def close(self) -> None:
        return None


class HttpPlannerLauncher:
    """Fires the planner step at the service's own `/v1/llm` endpoint.

    Patches are published by the serving process, so `emit` is not used.
    """

    mode = "http"

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._client

    async def launch(
        self,
        session_id: str,
        node_id: str,
        messages: List[dict],
        tools: List[str],
        emit: Optional[PatchEmitter] = None,
    ) -> PlannerOutcome:
        payload = {
            "session_id": session_id,
            "node_id": node_id,
            "messages": messages,
            "tools": tools,
        }
        try:
            response = await self._get_client().post(
                f"{self.base_url}/v1/llm", json=payload, timeout=self.timeout_seconds
            )
        except httpx.TimeoutException as exc:
            raise ExternalStepTimeout(node_id, self.timeout_seconds) from exc
        except httpx.HTTPError as exc:
            raise ExternalStepFailure(node_id, f"planner request failed: {exc}") from exc
        if response.status_code >= 400:
            raise ExternalStepFailure(
                node_id, f"planner request failed with status {response.status_code}"
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise ExternalStepFailure(node_id, "planner returned invalid JSON") from exc
        return PlannerOutcome.from_dict(body.get("data") or {})

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

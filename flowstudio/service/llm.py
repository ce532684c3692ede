from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

from openai import AsyncOpenAI

from flowstudio.config import Settings
from flowstudio.logging import get_logger

logger = get_logger(__name__)


@dataclass
class PlanResult:
    """Non-streaming planner reply: assistant text plus requested tool calls."""

    content: str = ""
    tool_calls: List[Dict[str, Any]] = field(default_factory=list)
    usage: Dict[str, int] = field(default_factory=dict)


class ChatBackend(Protocol):
    async def plan(
        self, messages: List[dict], tools: List[dict]
    ) -> PlanResult: ...

    def stream(self, messages: List[dict]) -> AsyncIterator[str]: ...

    async def close(self) -> None: ...


def _parse_arguments(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("tool_call_arguments_invalid", raw=str(raw)[:200])
        return {}
    return parsed if isinstance(parsed, dict) else {}


class OpenAIChatBackend:
    """OpenAI-compatible chat completions client."""

    def __init__(
        self,
        model: str,
        *,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        temperature: float = 0.7,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.model = model
        self.temperature = temperature
        self.client = client or AsyncOpenAI(api_key=api_key, base_url=base_url)

    async def plan(self, messages: List[dict], tools: List[dict]) -> PlanResult:
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
        }
        if tools:
            kwargs["tools"] = tools
        completion = await self.client.chat.completions.create(**kwargs)
        choices = getattr(completion, "choices", None) or []
        first_choice = next(iter(choices), None)
        if not first_choice:
            logger.warning("planner_completion_empty", model=self.model)
            return PlanResult()
        message = first_choice.message
        calls = []
        for call in getattr(message, "tool_calls", None) or []:
            calls.append(
                {
                    "id": call.id,
                    "name": call.function.name,
                    "args": _parse_arguments(call.function.arguments),
                }
            )
        usage = getattr(completion, "usage", None)
        return PlanResult(
            content=message.content or "",
            tool_calls=calls,
            usage={
                "prompt_tokens": getattr(usage, "prompt_tokens", 0) or 0,
                "completion_tokens": getattr(usage, "completion_tokens", 0) or 0,
                "total_tokens": getattr(usage, "total_tokens", 0) or 0,
            },
        )

    async def stream(self, messages: List[dict]) -> AsyncIterator[str]:
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=self.temperature,
            stream=True,
        )
        async for chunk in response:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta
            if delta is not None and delta.content:
                yield delta.content

    async def close(self) -> None:
        await self.client.close()


class StubChatBackend:
    """Deterministic backend used when no API key is configured and in tests.

    Configured `tool_calls` are returned by `plan()` when their tool was
    offered (or the call sets `force`). Without an `answer` the last user
    message is echoed. The answer streams one word at a time.
    """

    def __init__(
        self,
        *,
        tool_calls: Optional[List[Dict[str, Any]]] = None,
        answer: Optional[str] = None,
    ) -> None:
        self.tool_calls = list(tool_calls or [])
        self.answer = answer
        self.plans: List[List[dict]] = []
        self.streams: List[List[dict]] = []

    async def plan(self, messages: List[dict], tools: List[dict]) -> PlanResult:
        self.plans.append(list(messages))
        offered = {t.get("function", {}).get("name") for t in tools}
        calls = [
            {"id": call.get("id") or f"call_{idx}", "name": call["name"], "args": dict(call.get("args") or {})}
            for idx, call in enumerate(self.tool_calls)
            if not offered or call["name"] in offered or call.get("force")
        ]
        prompt_tokens = sum(len(str(m.get("content", "")).split()) for m in messages)
        return PlanResult(
            content="",
            tool_calls=calls,
            usage={"prompt_tokens": prompt_tokens, "completion_tokens": 0, "total_tokens": prompt_tokens},
        )

    async def stream(self, messages: List[dict]) -> AsyncIterator[str]:
        self.streams.append(list(messages))
        text = self.answer
        if text is None:
            user = next(
                (m.get("content", "") for m in reversed(messages) if m.get("role") == "user"),
                "",
            )
            text = f"[stub] {user}".strip()
        words = text.split(" ")
        for idx, word in enumerate(words):
            yield word if idx == len(words) - 1 else f"{word} "

    async def close(self) -> None:
        return None


def build_chat_backend(settings: Settings) -> ChatBackend:
    if settings.openai_api_key or settings.openai_base_url:
        logger.info(
            "chat_backend_selected",
            backend="openai",
            model=settings.model_name,
            base_url=settings.openai_base_url,
        )
        return OpenAIChatBackend(
            settings.model_name,
            # Local OpenAI-compatible servers accept any key
            api_key=settings.openai_api_key or "sk-anything",
            base_url=settings.openai_base_url,
            temperature=settings.llm_temperature,
        )
    logger.info("chat_backend_selected", backend="stub", model=settings.model_name)
    return StubChatBackend()

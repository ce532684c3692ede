from __future__ import annotations

import asyncio
import concurrent.futures
import threading
from typing import Any, Dict, Optional, Set
from urllib.parse import urlparse, urlunparse

from flowstudio.config import PlannerMode, Settings, get_settings, reset_settings_cache
from flowstudio.logging import get_logger
from flowstudio.service.graph import Graph
from flowstudio.service.llm import build_chat_backend
from flowstudio.service.planner import HttpPlannerLauncher, InlinePlannerLauncher, PlannerStep
from flowstudio.service.stream import EventStreamer
from flowstudio.service.tools import build_default_registry
from flowstudio.service.workflow import GraphExecutor, RunResult
from flowstudio.storage.common import EventChannel
from flowstudio.storage.memory import MemoryEventChannel
from flowstudio.storage.redis_cache import RedisEventChannel

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


def _build_event_channel(settings: Settings) -> EventChannel:
    redis_error: Exception | None = None
    if settings.redis_url:
        try:
            channel = RedisEventChannel(
                settings.redis_url, ttl_seconds=settings.session_ttl_seconds
            )
            channel.verify_connection()
            logger.info(
                "event_channel_selected",
                backend=channel.backend,
                redis_url=_mask_url_password(settings.redis_url),
            )
            return channel
        except Exception as exc:
            redis_error = exc
            if not settings.test_mode and not settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is configured for the event channel but unreachable; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from exc
            fallback_mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "event_channel_fallback",
                redis_url=_mask_url_password(settings.redis_url),
                error=str(redis_error),
                mode=fallback_mode,
                message=(
                    f"Running without Redis under {fallback_mode}; event queues are "
                    "process-local and lost on restart."
                ),
            )
    channel = MemoryEventChannel(ttl_seconds=settings.session_ttl_seconds)
    logger.info("event_channel_selected", backend=channel.backend)
    return channel


class Runtime:
    """Holds the service instances shared by the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            planner_mode=self.settings.planner_mode.value,
            test_mode=self.settings.test_mode,
        )
        self.channel = _build_event_channel(self.settings)
        self.registry = build_default_registry()
        self.tool_executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=self.settings.tool_workers, thread_name_prefix="flow-tool"
        )
        self.chat_backend = build_chat_backend(self.settings)
        self.planner_step = PlannerStep(
            self.channel,
            self.chat_backend,
            self.registry,
            tool_executor=self.tool_executor,
        )
        if self.settings.planner_mode == PlannerMode.HTTP:
            self.planner_launcher = HttpPlannerLauncher(
                self.settings.app_base_url,
                timeout_seconds=self.settings.planner_timeout_seconds,
            )
        else:
            self.planner_launcher = InlinePlannerLauncher(
                self.planner_step,
                timeout_seconds=self.settings.planner_timeout_seconds,
            )
        self.executor = GraphExecutor(
            self.channel,
            self.registry,
            self.planner_launcher,
            tool_timeout_seconds=self.settings.tool_timeout_seconds,
            tool_max_retries=self.settings.tool_max_retries,
            tool_backoff_ms=self.settings.tool_backoff_ms,
            tool_executor=self.tool_executor,
        )
        self.streamer = EventStreamer(
            self.channel,
            poll_interval_ms=self.settings.stream_poll_interval_ms,
            keepalive_seconds=self.settings.stream_keepalive_seconds,
            batch_size=self.settings.stream_batch_size,
            max_idle_seconds=self.settings.stream_max_idle_seconds,
        )
        self._background_runs: Set[asyncio.Task] = set()
        self._closed = False
        logger.info(
            "runtime_initialized",
            event_channel=self.channel.backend,
            planner_mode=self.planner_launcher.mode,
            tools=self.registry.names(),
        )

    def start_background_run(
        self, session_id: str, graph: Graph, input: Optional[Dict[str, Any]] = None
    ) -> asyncio.Task:
        """Schedule a run on the current loop and keep a reference until it ends."""
        task = asyncio.create_task(
            self._background_run(session_id, graph, input), name=f"run:{session_id}"
        )
        self._background_runs.add(task)
        task.add_done_callback(self._background_runs.discard)
        return task

    async def _background_run(
        self, session_id: str, graph: Graph, input: Optional[Dict[str, Any]]
    ) -> Optional[RunResult]:
        try:
            return await self.executor.run(session_id, graph, input)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(
                "background_run_failed",
                session_id=session_id,
                error=str(exc),
                exc_info=True,
            )
            return None

    @property
    def pending_runs(self) -> int:
        return len(self._background_runs)

    async def drain(self, timeout: float) -> None:
        if not self._background_runs:
            return
        pending = list(self._background_runs)
        logger.info("runtime_draining_runs", pending=len(pending), timeout=timeout)
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.warning("runtime_runs_cancelled", cancelled=len(still_running))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.drain(self.settings.planner_timeout_seconds)
        await self.planner_launcher.close()
        await self.chat_backend.close()
        await self.channel.close()
        self.tool_executor.shutdown(wait=False, cancel_futures=True)
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None:
            # Tests never leave runs in flight; the pool is the only resource to free
            runtime.tool_executor.shutdown(wait=False, cancel_futures=True)
        runtime = Runtime(settings)
        return runtime

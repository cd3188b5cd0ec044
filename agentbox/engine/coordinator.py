"""Relay & persistence for one agent run.

The coordinator sits between the decoded event stream and its two
consumers: the live subscriber (if any) and the session log on disk.
Every event is accumulated, forwarded with a sequence number, and
periodically flushed so a crash mid-run still leaves a readable partial
record. ``finish()`` writes the terminal state exactly once.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterable, Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from agentbox.shared.models.session_log import LogStatus, SessionLog
from agentbox.shared.services.log_store import SessionLogStore
from agentbox.shared.services.thread_registry import ThreadRegistry

from .config import EngineConfig
from .events import (
    AgentEvent,
    AssistantEvent,
    ResultEvent,
    SystemEvent,
    interrupted_result,
)

logger = logging.getLogger(__name__)

_PREVIEW_CHARS = 150


@dataclass(frozen=True)
class RelayFrame:
    """One event as delivered to a live subscriber."""
    id: int
    event_type: str
    data: dict[str, Any]

    def to_sse(self) -> bytes:
        payload = json.dumps(self.data, ensure_ascii=False)
        return f"id: {self.id}\nevent: {self.event_type}\ndata: {payload}\n\n".encode("utf-8")


Subscriber = Callable[[RelayFrame], Awaitable[None]]


@dataclass
class RunOutcome:
    log: SessionLog
    exit_code: int
    status: LogStatus
    token: str | None = None
    persisted: bool = True
    interrupted: bool = False

    @property
    def event_count(self) -> int:
        return len(self.log.events or [])


class RunCoordinator:
    """Accumulate, relay and persist the events of one run."""

    def __init__(
        self,
        config: EngineConfig,
        log_store: SessionLogStore,
        thread_registry: ThreadRegistry,
        log: SessionLog,
        *,
        thread_id: str | None = None,
        subscriber: Subscriber | None = None,
    ) -> None:
        self._config = config
        self._log_store = log_store
        self._threads = thread_registry
        self._log = log
        self._thread_id = thread_id
        self._subscriber = subscriber
        self._started = time.monotonic()

        self._events: list[dict[str, Any]] = []
        self._texts: list[str] = []
        self._seq = 0
        self._last_result: ResultEvent | None = None
        self.token: str | None = None

        self._chars_since_flush = 0
        self._events_since_flush = 0
        self._flush_task: asyncio.Task | None = None
        self._finished = False

    @property
    def project(self) -> str:
        return self._log.project

    @property
    def log_id(self) -> str:
        return self._log.id

    @property
    def assistant_text(self) -> str:
        return "\n\n".join(self._texts)

    @property
    def events(self) -> list[dict[str, Any]]:
        return list(self._events)

    @property
    def subscribed(self) -> bool:
        return self._subscriber is not None

    # ── Per-event path ──

    async def consume(self, events: AsyncIterable[AgentEvent]) -> None:
        async for event in events:
            await self.handle(event)

    async def handle(self, event: AgentEvent) -> None:
        data = event.to_dict()
        self._events.append(data)
        self._events_since_flush += 1

        if isinstance(event, AssistantEvent):
            for text in event.texts:
                self._texts.append(text)
                self._chars_since_flush += len(text)
        elif isinstance(event, ResultEvent):
            self._last_result = event
        elif isinstance(event, SystemEvent) and event.resumption_token:
            await self._capture_token(event.resumption_token)

        self._log_event(event)

        self._seq += 1
        await self._forward(RelayFrame(self._seq, event.event_type, data))
        self._maybe_flush()

    async def _capture_token(self, token: str) -> None:
        self.token = token
        if self._thread_id is None:
            return
        try:
            await asyncio.to_thread(
                self._threads.set_token, self.project, self._thread_id, token,
            )
        except OSError as exc:
            logger.warning(
                "Could not store resumption token on thread %s: %s",
                self._thread_id, exc,
            )

    async def _forward(self, frame: RelayFrame) -> None:
        if self._subscriber is None:
            return
        try:
            await self._subscriber(frame)
        except Exception as exc:
            logger.warning(
                "Live subscriber for %s/%s failed (%s); detaching, run continues",
                self.project, self.log_id, exc,
            )
            self._subscriber = None

    def _log_event(self, event: AgentEvent) -> None:
        if isinstance(event, SystemEvent):
            if event.subtype == "init":
                logger.info(
                    "[%s] session started (model=%s, session=%s)",
                    self.project, event.model or "?", event.session_id or "?",
                )
        elif isinstance(event, AssistantEvent):
            for text in event.texts:
                preview = text[:_PREVIEW_CHARS].replace("\n", " ")
                suffix = "..." if len(text) > _PREVIEW_CHARS else ""
                logger.info("[%s] response: %s%s", self.project, preview, suffix)
            for tool in event.tool_uses:
                logger.info("[%s] tool: %s", self.project, tool.name)
        elif isinstance(event, ResultEvent):
            cost = f"${event.total_cost_usd:.4f}" if event.total_cost_usd is not None else "?"
            logger.info(
                "[%s] result: %s (turns=%s, cost=%s)",
                self.project,
                "error" if event.is_error else "success",
                event.num_turns if event.num_turns is not None else "?",
                cost,
            )

    # ── Persistence ──

    def _maybe_flush(self) -> None:
        if (
            self._chars_since_flush < self._config.flush_char_threshold
            and self._events_since_flush < self._config.flush_event_threshold
        ):
            return
        if self._flush_task is not None and not self._flush_task.done():
            return
        self._chars_since_flush = 0
        self._events_since_flush = 0
        self._flush_task = asyncio.create_task(
            self._flush(self.assistant_text, list(self._events))
        )

    async def _flush(self, text: str, events: list[dict[str, Any]]) -> None:
        try:
            ok = await asyncio.to_thread(
                self._log_store.flush_progress, self.project, self.log_id, text, events,
            )
        except Exception:
            logger.warning(
                "Progress flush for %s/%s raised", self.project, self.log_id, exc_info=True,
            )
            return
        if not ok:
            logger.warning("Progress flush for %s/%s was not written", self.project, self.log_id)

    async def finish(self, interrupted: bool = False) -> RunOutcome:
        """Synthesize a terminal event if needed and write the final record."""
        if self._finished:
            raise RuntimeError(f"run {self.log_id} already finished")
        self._finished = True

        if interrupted and self._last_result is None:
            await self.handle(interrupted_result())

        if self._flush_task is not None:
            await asyncio.shield(self._flush_task)
            self._flush_task = None

        result = self._last_result
        exit_code = 0 if result is not None and not result.is_error else 1
        status = LogStatus.COMPLETED if exit_code == 0 else LogStatus.ERROR
        response = json.dumps(result.to_dict(), ensure_ascii=False) if result is not None else ""
        duration = int((time.monotonic() - self._started) * 1000)

        final = await asyncio.shield(asyncio.to_thread(
            self._log_store.finalize,
            self.project,
            self.log_id,
            status=status,
            response=response,
            exit_code=exit_code,
            duration=duration,
            assistant_text=self.assistant_text,
            events=list(self._events),
        ))
        persisted = final is not None
        if not persisted:
            logger.warning(
                "Final write of %s/%s failed; the record on disk is stale",
                self.project, self.log_id,
            )
            final = SessionLog(
                id=self.log_id,
                project=self.project,
                prompt=self._log.prompt,
                timestamp=self._log.timestamp,
                response=response,
                assistant_text=self.assistant_text,
                events=list(self._events),
                exit_code=exit_code,
                duration=duration,
                status=status,
            )

        logger.info(
            "Run %s/%s finished: status=%s exit=%d events=%d duration=%dms",
            self.project, self.log_id, status.value, exit_code, len(self._events), duration,
        )
        return RunOutcome(
            log=final,
            exit_code=exit_code,
            status=status,
            token=self.token,
            persisted=persisted,
            interrupted=interrupted,
        )

"""Top-level agent engine.

Wires together the ProcessSupervisor, SessionLogStore, ThreadRegistry
and one RunCoordinator per run. Single entry point for running a prompt
against a project.

Usage:
    engine = AgentEngine(EngineConfig.from_env())
    outcome = await engine.run(RunRequest(project="demo", prompt="list files"))
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from agentbox.shared.models.session_log import LogStatus, SessionLog
from agentbox.shared.services.log_store import SessionLogStore
from agentbox.shared.services.thread_registry import ThreadRegistry

from .config import EngineConfig
from .coordinator import RunCoordinator, RunOutcome, Subscriber
from .decoder import decode_stream
from .errors import SetupError, ThreadNotFoundError
from .events import interrupted_result
from .supervisor import (
    AgentProcess,
    ContainerRuntime,
    ProcessSupervisor,
    RunOptions,
    validate_project,
)

logger = logging.getLogger(__name__)


@dataclass
class RunRequest:
    project: str
    prompt: str
    model: str | None = None
    timeout: float | None = None  # seconds
    cpus: int | None = None
    memory: str | None = None
    resume: str | None = None
    thread_id: str | None = None

    @classmethod
    def from_body(cls, body: Any) -> RunRequest:
        """Parse an HTTP request body.

        Raises ValueError (or InvalidProjectError) with a user-facing message.

        ``timeout`` arrives in milliseconds and ``sessionId`` carries the
        resumption token.
        """
        if not isinstance(body, dict):
            raise ValueError("request body must be a JSON object")
        prompt = body.get("prompt")
        if not isinstance(prompt, str) or not prompt:
            raise ValueError("prompt is required")
        project = body.get("project")
        if not isinstance(project, str):
            raise ValueError("project is required")
        validate_project(project)

        def opt(key: str, kind: type | tuple[type, ...]) -> Any:
            value = body.get(key)
            if value is None:
                return None
            if not isinstance(value, kind) or isinstance(value, bool):
                raise ValueError(f"{key} has the wrong type")
            return value

        timeout_ms = opt("timeout", (int, float))
        cpus = opt("cpus", (int, float))
        return cls(
            project=project,
            prompt=prompt,
            model=opt("model", str),
            timeout=timeout_ms / 1000.0 if timeout_ms is not None else None,
            cpus=int(cpus) if cpus is not None else None,
            memory=opt("memory", str),
            resume=opt("sessionId", str),
            thread_id=opt("threadId", str),
        )

    def options(self, resume: str | None) -> RunOptions:
        return RunOptions(
            model=self.model,
            resume=resume,
            timeout=self.timeout,
            cpus=self.cpus,
            memory=self.memory,
        )


class AgentEngine:
    """Runs prompts in containers and records every run."""

    def __init__(
        self,
        config: EngineConfig | None = None,
        supervisor: ProcessSupervisor | None = None,
    ) -> None:
        self._config = config or EngineConfig.from_env()
        self._supervisor = supervisor or ProcessSupervisor(
            self._config, ContainerRuntime(self._config),
        )
        self.log_store = SessionLogStore(self._config.logs_dir)
        self.threads = ThreadRegistry(self._config.logs_dir, self.log_store)
        self._active: dict[tuple[str, str], AgentProcess] = {}

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def runtime(self) -> ContainerRuntime:
        return self._supervisor.runtime

    # ── Projects ──

    def list_projects(self) -> list[str]:
        workspace = Path(self._config.workspace_dir)
        if not workspace.is_dir():
            return []
        return sorted(
            p.name for p in workspace.iterdir()
            if p.is_dir() and not p.name.startswith(".")
        )

    def create_project(self, name: str) -> Path:
        validate_project(name)
        path = Path(self._config.workspace_dir) / name
        path.mkdir(parents=True, exist_ok=True)
        return path

    # ── Runs ──

    def active_runs(self) -> list[tuple[str, str]]:
        return list(self._active)

    async def run(
        self,
        request: RunRequest,
        subscriber: Subscriber | None = None,
    ) -> RunOutcome:
        """Run one prompt to completion.

        Setup problems raise a SetupError before anything is streamed.
        Everything after the process starts is reported on the outcome.
        """
        project = validate_project(request.project)
        self.create_project(project)

        resume = request.resume
        if request.thread_id is not None:
            thread = await asyncio.to_thread(
                self.threads.get_thread, project, request.thread_id,
            )
            if thread is None:
                raise ThreadNotFoundError(project, request.thread_id)
            if resume is None:
                resume = thread.session_id

        token = await self._supervisor.prepare()

        log = await asyncio.to_thread(self.log_store.create_pending, project, request.prompt)
        if request.thread_id is not None:
            await asyncio.to_thread(
                self.threads.append_log, project, request.thread_id, log.id,
            )

        coordinator = RunCoordinator(
            self._config,
            self.log_store,
            self.threads,
            log,
            thread_id=request.thread_id,
            subscriber=subscriber,
        )

        try:
            process = await self._supervisor.start(
                project, request.prompt, request.options(resume), token=token,
            )
        except SetupError as exc:
            await asyncio.to_thread(
                self.log_store.finalize,
                project,
                log.id,
                status=LogStatus.ERROR,
                response=str(exc),
                exit_code=1,
                duration=0,
            )
            raise

        key = (project, log.id)
        self._active[key] = process
        try:
            await asyncio.gather(
                coordinator.consume(decode_stream(process.stdout_chunks())),
                process.drain_stderr(),
            )
        except BaseException:
            process.cancel("aborted")
            raise
        finally:
            rc = await process.wait()
            logger.debug("Agent process for %s/%s exited with %s", project, log.id, rc)
            outcome = await coordinator.finish(interrupted=process.interrupted)
            self._active.pop(key, None)
        return outcome

    async def run_once(self, request: RunRequest) -> dict[str, Any]:
        """Run without a live subscriber and return the one-shot summary."""
        outcome = await self.run(request)
        log = outcome.log
        return {
            "id": log.id,
            "project": log.project,
            "prompt": log.prompt,
            "response": log.response,
            "exitCode": outcome.exit_code,
            "duration": log.duration,
            "timestamp": log.timestamp,
        }

    def cancel(self, project: str, log_id: str) -> bool:
        process = self._active.get((project, log_id))
        if process is None:
            return False
        return process.cancel("cancelled")

    # ── Recovery ──

    def recover_abandoned(self, project: str) -> list[str]:
        """Mark records a previous server left pending/streaming as errors."""
        recovered: list[str] = []
        for log in self.log_store.list_abandoned(project):
            if (project, log.id) in self._active:
                continue
            marker = interrupted_result().to_dict()
            events = list(log.events or [])
            events.append(marker)
            final = self.log_store.finalize(
                project,
                log.id,
                status=LogStatus.ERROR,
                response=json.dumps(marker, ensure_ascii=False),
                exit_code=1,
                duration=log.duration,
                events=events,
            )
            if final is not None:
                recovered.append(log.id)
        if recovered:
            logger.info(
                "Recovered %d abandoned session log(s) in %s: %s",
                len(recovered), project, ", ".join(recovered),
            )
        return recovered

    def recover_all(self) -> dict[str, list[str]]:
        logs_dir = Path(self._config.logs_dir)
        if not logs_dir.is_dir():
            return {}
        result: dict[str, list[str]] = {}
        for project_dir in sorted(p for p in logs_dir.iterdir() if p.is_dir()):
            recovered = self.recover_abandoned(project_dir.name)
            if recovered:
                result[project_dir.name] = recovered
        return result

    def get_log(self, project: str, log_id: str) -> SessionLog | None:
        validate_project(project)
        return self.log_store.get(project, log_id)

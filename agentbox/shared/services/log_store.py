"""Session log persistence: one JSON file per prompt/response exchange.

Storage layout:
    <logs_dir>/<project>/<log_id>.json
    <logs_dir>/<project>/threads.json   (owned by ThreadRegistry)

Log ids are derived from the creation time (``2026-01-02T03-04-05-678Z``)
and are unique and strictly increasing within a project: a second log in
the same millisecond, or after the clock stepped back, gets a numeric
suffix on the previous id.

Write operations report failure through their return value (False /
None) after logging it. The coordinator decides which failures matter.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any

from agentbox.shared.models.session_log import (
    LogStatus,
    SessionLog,
    can_transition,
    utcnow_iso,
)
from agentbox.shared.services.durable_write import (
    atomic_write_json,
    create_json_exclusive,
    read_json,
)

logger = logging.getLogger(__name__)

THREADS_FILENAME = "threads.json"


def timestamp_to_id(timestamp: str) -> str:
    return timestamp.replace(":", "-").replace(".", "-")


class SessionLogStore:
    """Create, flush, finalize and read SessionLog records."""

    def __init__(self, logs_dir: Path) -> None:
        self._logs_dir = Path(logs_dir)
        self._lock = threading.Lock()
        # project -> (base id, suffix counter) of the newest id handed out
        self._last_ids: dict[str, tuple[str, int]] = {}

    @property
    def logs_dir(self) -> Path:
        return self._logs_dir

    def project_dir(self, project: str) -> Path:
        return self._logs_dir / project

    def _path(self, project: str, log_id: str) -> Path:
        return self.project_dir(project) / f"{log_id}.json"

    def _seed_last_id(self, project: str) -> tuple[str, int]:
        existing = self.list_ids(project)
        if not existing:
            return ("", 0)
        newest = existing[-1]
        base, _, suffix = newest.rpartition("Z-")
        if base and suffix.isdigit():
            return (base + "Z", int(suffix))
        return (newest, 0)

    def _next_id(self, project: str, timestamp: str) -> str:
        candidate = timestamp_to_id(timestamp)
        last = self._last_ids.get(project)
        if last is None:
            last = self._seed_last_id(project)
        last_base, last_n = last
        if candidate > last_base:
            base, n = candidate, 0
        else:
            base, n = last_base, last_n + 1
        self._last_ids[project] = (base, n)
        return base if n == 0 else f"{base}-{n:03d}"

    # ── Write path ──

    def create_pending(self, project: str, prompt: str) -> SessionLog:
        """Persist a new ``pending`` record before the agent starts.

        Raises OSError if the record cannot be written.
        """
        timestamp = utcnow_iso()
        with self._lock:
            while True:
                log = SessionLog(
                    id=self._next_id(project, timestamp),
                    project=project,
                    prompt=prompt,
                    timestamp=timestamp,
                )
                if create_json_exclusive(self._path(project, log.id), log.to_dict()):
                    break
                logger.debug("Log id %s already taken, bumping", log.id)
        logger.info("Created session log %s/%s", project, log.id)
        return log

    def flush_progress(
        self,
        project: str,
        log_id: str,
        assistant_text: str,
        events: list[dict[str, Any]],
    ) -> bool:
        """Write a partial snapshot and mark the record ``streaming``.

        Returns False when the record is missing, already terminal, ahead of
        this snapshot, or the write fails.
        """
        path = self._path(project, log_id)
        try:
            with self._lock:
                log = self._load(path)
                if log is None:
                    logger.warning("Progress flush: log %s/%s not found", project, log_id)
                    return False
                if not can_transition(log.status, LogStatus.STREAMING):
                    logger.warning(
                        "Progress flush: log %s/%s is already %s",
                        project, log_id, log.status.value,
                    )
                    return False
                if log.events is not None and len(log.events) > len(events):
                    return False
                log.assistant_text = assistant_text
                log.events = list(events)
                log.status = LogStatus.STREAMING
                atomic_write_json(path, log.to_dict())
        except OSError as exc:
            logger.warning("Progress flush for %s/%s failed: %s", project, log_id, exc)
            return False
        logger.debug(
            "Flushed %s/%s (events=%d, text=%d chars)",
            project, log_id, len(events), len(assistant_text),
        )
        return True

    def finalize(
        self,
        project: str,
        log_id: str,
        *,
        status: LogStatus,
        response: str,
        exit_code: int,
        duration: int,
        assistant_text: str | None = None,
        events: list[dict[str, Any]] | None = None,
    ) -> SessionLog | None:
        """Write the terminal state of a record. Returns None on failure."""
        if not status.is_terminal:
            raise ValueError(f"finalize() needs a terminal status, got {status.value}")
        path = self._path(project, log_id)
        try:
            with self._lock:
                log = self._load(path)
                if log is None:
                    logger.warning("Finalize: log %s/%s not found", project, log_id)
                    return None
                if not can_transition(log.status, status):
                    logger.warning(
                        "Finalize: log %s/%s is already %s",
                        project, log_id, log.status.value,
                    )
                    return None
                log.status = status
                log.response = response
                log.exit_code = exit_code
                log.duration = duration
                if assistant_text is not None:
                    log.assistant_text = assistant_text
                if events is not None:
                    log.events = list(events)
                atomic_write_json(path, log.to_dict())
        except OSError as exc:
            logger.warning("Finalize for %s/%s failed: %s", project, log_id, exc)
            return None
        logger.info(
            "Finalized session log %s/%s status=%s exit=%d duration=%dms",
            project, log_id, status.value, exit_code, duration,
        )
        return log

    # ── Read path ──

    def _load(self, path: Path) -> SessionLog | None:
        data = read_json(path)
        if not isinstance(data, dict):
            return None
        try:
            return SessionLog.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Malformed session log %s: %s", path, exc)
            return None

    def get(self, project: str, log_id: str) -> SessionLog | None:
        return self._load(self._path(project, log_id))

    def list_ids(self, project: str) -> list[str]:
        """Log ids for *project*, oldest first."""
        project_dir = self.project_dir(project)
        if not project_dir.is_dir():
            return []
        return sorted(
            p.stem for p in project_dir.glob("*.json")
            if p.name != THREADS_FILENAME and not p.name.startswith(".")
        )

    def list_abandoned(self, project: str) -> list[SessionLog]:
        """Records left ``pending``/``streaming`` by a run that never finished."""
        abandoned: list[SessionLog] = []
        for log_id in self.list_ids(project):
            log = self.get(project, log_id)
            if log is not None and log.is_abandoned:
                abandoned.append(log)
        return abandoned

"""Thread registry: named conversations backed by threads.json.

A thread groups the session logs of one conversation in order and keeps
the agent's latest resumption token so the next prompt can resume it.
The whole collection is rewritten atomically on every change.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agentbox.shared.models.session_log import SessionLog, ThreadMeta, utcnow_iso
from agentbox.shared.services.durable_write import atomic_write_json, read_json
from agentbox.shared.services.log_store import THREADS_FILENAME, SessionLogStore

logger = logging.getLogger(__name__)


@dataclass
class ThreadDetail:
    thread: ThreadMeta
    logs: list[SessionLog] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = self.thread.to_dict()
        data["logs"] = [log.to_dict() for log in self.logs]
        return data


class ThreadRegistry:
    """CRUD over ``<logs_dir>/<project>/threads.json``.

    Read-modify-write cycles are serialized within this process. Two
    processes writing the same project concurrently: last write wins.
    """

    def __init__(self, logs_dir: Path, log_store: SessionLogStore | None = None) -> None:
        self._logs_dir = Path(logs_dir)
        self._log_store = log_store or SessionLogStore(self._logs_dir)
        self._lock = threading.Lock()

    def _path(self, project: str) -> Path:
        return self._logs_dir / project / THREADS_FILENAME

    def _load(self, project: str) -> list[ThreadMeta]:
        data = read_json(self._path(project))
        if not isinstance(data, list):
            return []
        threads: list[ThreadMeta] = []
        for item in data:
            if not isinstance(item, dict) or "id" not in item:
                continue
            threads.append(ThreadMeta.from_dict(item))
        return threads

    def _save(self, project: str, threads: list[ThreadMeta]) -> None:
        atomic_write_json(self._path(project), [t.to_dict() for t in threads])

    def list_threads(self, project: str) -> list[ThreadMeta]:
        """All threads, most recently updated first."""
        threads = self._load(project)
        threads.sort(key=lambda t: t.updated_at, reverse=True)
        return threads

    def get_thread(self, project: str, thread_id: str) -> ThreadMeta | None:
        for thread in self._load(project):
            if thread.id == thread_id:
                return thread
        return None

    def create_thread(self, project: str, title: str) -> ThreadMeta:
        with self._lock:
            threads = self._load(project)
            taken = {t.id for t in threads}
            stamp = int(time.time() * 1000)
            while f"thr_{stamp}" in taken:
                stamp += 1
            now = utcnow_iso()
            thread = ThreadMeta(
                id=f"thr_{stamp}",
                title=title,
                created_at=now,
                updated_at=now,
            )
            threads.append(thread)
            self._save(project, threads)
        logger.info("Created thread %s/%s (%r)", project, thread.id, title)
        return thread

    def _update(
        self, project: str, thread_id: str, mutate: Callable[[ThreadMeta], None],
    ) -> ThreadMeta | None:
        with self._lock:
            threads = self._load(project)
            for thread in threads:
                if thread.id == thread_id:
                    mutate(thread)
                    thread.updated_at = utcnow_iso()
                    self._save(project, threads)
                    return thread
        logger.warning("Thread %s/%s not found", project, thread_id)
        return None

    def append_log(self, project: str, thread_id: str, log_id: str) -> ThreadMeta | None:
        def mutate(thread: ThreadMeta) -> None:
            if log_id not in thread.log_ids:
                thread.log_ids.append(log_id)

        return self._update(project, thread_id, mutate)

    def set_token(self, project: str, thread_id: str, token: str) -> ThreadMeta | None:
        def mutate(thread: ThreadMeta) -> None:
            thread.session_id = token

        result = self._update(project, thread_id, mutate)
        if result is not None:
            logger.info("Thread %s/%s resumption token updated", project, thread_id)
        return result

    def rename_thread(self, project: str, thread_id: str, title: str) -> ThreadMeta | None:
        def mutate(thread: ThreadMeta) -> None:
            thread.title = title

        return self._update(project, thread_id, mutate)

    def get_thread_detail(self, project: str, thread_id: str) -> ThreadDetail | None:
        """The thread plus its logs in order. Unreadable logs are left out."""
        thread = self.get_thread(project, thread_id)
        if thread is None:
            return None
        logs: list[SessionLog] = []
        for log_id in thread.log_ids:
            log = self._log_store.get(project, log_id)
            if log is not None:
                logs.append(log)
        return ThreadDetail(thread=thread, logs=logs)

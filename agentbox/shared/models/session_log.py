"""Persisted records: one SessionLog per prompt, ThreadMeta per conversation.

Both serialize to the camelCase JSON shapes the HTTP clients read.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow_iso() -> str:
    """ISO-8601 UTC timestamp with millisecond precision and a Z suffix."""
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


class LogStatus(str, Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (LogStatus.COMPLETED, LogStatus.ERROR)


# Legal lifecycle moves. A run that ends before its first flush goes
# straight from pending to a terminal status.
_TRANSITIONS: dict[LogStatus, set[LogStatus]] = {
    LogStatus.PENDING: {LogStatus.STREAMING, LogStatus.COMPLETED, LogStatus.ERROR},
    LogStatus.STREAMING: {LogStatus.STREAMING, LogStatus.COMPLETED, LogStatus.ERROR},
    LogStatus.COMPLETED: set(),
    LogStatus.ERROR: set(),
}


def can_transition(current: LogStatus, new: LogStatus) -> bool:
    return new in _TRANSITIONS[current]


@dataclass
class SessionLog:
    """Durable record of one prompt and the agent run it started."""

    id: str
    project: str
    prompt: str
    timestamp: str
    response: str = ""
    assistant_text: str | None = None
    events: list[dict[str, Any]] | None = None
    exit_code: int = 0
    duration: int = 0  # milliseconds
    status: LogStatus = LogStatus.PENDING

    @property
    def is_abandoned(self) -> bool:
        """True for a non-terminal record no live run owns anymore."""
        return not self.status.is_terminal

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "project": self.project,
            "prompt": self.prompt,
            "response": self.response,
            "exitCode": self.exit_code,
            "duration": self.duration,
            "timestamp": self.timestamp,
            "status": self.status.value,
        }
        if self.assistant_text is not None:
            data["assistantText"] = self.assistant_text
        if self.events is not None:
            data["events"] = self.events
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionLog:
        events = data.get("events")
        return cls(
            id=str(data["id"]),
            project=str(data.get("project", "")),
            prompt=str(data.get("prompt", "")),
            timestamp=str(data.get("timestamp", "")),
            response=str(data.get("response") or ""),
            assistant_text=data.get("assistantText"),
            events=list(events) if isinstance(events, list) else None,
            exit_code=int(data.get("exitCode", 0)),
            duration=int(data.get("duration", 0)),
            status=LogStatus(data.get("status", LogStatus.PENDING.value)),
        )


@dataclass
class ThreadMeta:
    """A conversation: ordered log ids plus the agent's resumption token."""

    id: str
    title: str
    created_at: str
    updated_at: str
    # Opaque resumption token; serialized as "sessionId".
    session_id: str | None = None
    log_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "sessionId": self.session_id,
            "logIds": list(self.log_ids),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ThreadMeta:
        log_ids = data.get("logIds")
        session_id = data.get("sessionId")
        return cls(
            id=str(data["id"]),
            title=str(data.get("title", "")),
            created_at=str(data.get("createdAt", "")),
            updated_at=str(data.get("updatedAt", "")),
            session_id=session_id if isinstance(session_id, str) else None,
            log_ids=[str(x) for x in log_ids] if isinstance(log_ids, list) else [],
        )

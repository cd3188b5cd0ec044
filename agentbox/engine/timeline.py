"""Timeline projection: raw events into display groups.

A timeline is the ordered list of human prompts (UserTurn) and agent
events of a conversation. ``project_timeline`` folds it into groups a
client can render directly: consecutive tool calls share one ToolGroup
and tool results attach to the call they answer.

The projection is pure. Group ids are sequential (``msg-1``, ``msg-2``,
...) so projecting the persisted events of a run yields exactly the
groups a live client built while watching it.
"""
from __future__ import annotations

import json
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any, Union

from agentbox.shared.models.session_log import SessionLog

from .events import (
    AgentEvent,
    AssistantEvent,
    ResultEvent,
    SystemEvent,
    UserEvent,
    dict_to_event,
)


@dataclass(frozen=True)
class UserTurn:
    text: str


TimelineEntry = Union[UserTurn, AgentEvent]


@dataclass
class UserGroup:
    id: str
    text: str
    kind: str = "user"

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "kind": self.kind, "text": self.text}


@dataclass
class TextGroup:
    id: str
    text: str
    kind: str = "assistant-text"

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "kind": self.kind, "text": self.text}


@dataclass
class ToolCall:
    id: str
    name: str
    input: Any = None
    result: dict[str, Any] | None = None

    @property
    def resolved(self) -> bool:
        return self.result is not None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"id": self.id, "name": self.name, "input": self.input}
        if self.result is not None:
            data["result"] = self.result
        return data


@dataclass
class ToolGroup:
    id: str
    tools: list[ToolCall] = field(default_factory=list)
    kind: str = "tool-group"

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "kind": self.kind, "tools": [t.to_dict() for t in self.tools]}


@dataclass
class SystemGroup:
    id: str
    event: dict[str, Any]
    kind: str = "system"

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "kind": self.kind, "event": self.event}


@dataclass
class ResultGroup:
    id: str
    event: dict[str, Any]
    kind: str = "result"

    @property
    def is_error(self) -> bool:
        return bool(self.event.get("is_error"))

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "kind": self.kind, "event": self.event}


DisplayGroup = Union[UserGroup, TextGroup, ToolGroup, SystemGroup, ResultGroup]


def project_timeline(entries: Iterable[TimelineEntry]) -> list[DisplayGroup]:
    groups: list[DisplayGroup] = []
    open_tools: ToolGroup | None = None
    counter = 0

    def next_id() -> str:
        nonlocal counter
        counter += 1
        return f"msg-{counter}"

    def close_tools() -> None:
        nonlocal open_tools
        if open_tools is not None:
            groups.append(open_tools)
            open_tools = None

    for entry in entries:
        if isinstance(entry, UserTurn):
            close_tools()
            groups.append(UserGroup(id=next_id(), text=entry.text))
        elif isinstance(entry, SystemEvent):
            close_tools()
            groups.append(SystemGroup(id=next_id(), event=entry.to_dict()))
        elif isinstance(entry, ResultEvent):
            close_tools()
            groups.append(ResultGroup(id=next_id(), event=entry.to_dict()))
        elif isinstance(entry, AssistantEvent):
            calls = [
                ToolCall(id=next_id(), name=tool.name, input=tool.input)
                for tool in entry.tool_uses
            ]
            texts = entry.texts
            if texts:
                close_tools()
                groups.append(TextGroup(id=next_id(), text="\n\n".join(texts)))
            if calls:
                if open_tools is None:
                    open_tools = ToolGroup(id=next_id())
                open_tools.tools.extend(calls)
        elif isinstance(entry, UserEvent):
            if open_tools is None:
                continue
            for call in open_tools.tools:
                if not call.resolved:
                    call.result = entry.to_dict()
                    break
        # Anything else is not displayed.

    close_tools()
    return groups


def entries_from_events(events: Sequence[dict[str, Any]]) -> list[TimelineEntry]:
    return [dict_to_event(e) for e in events if isinstance(e, dict)]


def timeline_from_logs(logs: Iterable[SessionLog]) -> list[TimelineEntry]:
    """Rebuild a thread's timeline from its persisted logs.

    Logs carrying their event list replay it verbatim. Older records only
    have the joined assistant text and the result JSON in ``response``.
    """
    entries: list[TimelineEntry] = []
    for log in logs:
        entries.append(UserTurn(log.prompt))
        if log.events:
            entries.extend(entries_from_events(log.events))
            continue
        if log.assistant_text:
            entries.append(dict_to_event({
                "type": "assistant",
                "message": {"content": [{"type": "text", "text": log.assistant_text}]},
            }))
        if log.response:
            try:
                parsed = json.loads(log.response)
            except ValueError:
                continue
            if isinstance(parsed, dict) and parsed.get("type") == "result":
                entries.append(dict_to_event(parsed))
    return entries

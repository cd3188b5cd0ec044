from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import patch

from agentbox.shared.models.session_log import LogStatus
from agentbox.shared.services.log_store import SessionLogStore
from agentbox.shared.services.thread_registry import ThreadRegistry


def _registry(tmp_path: Path) -> tuple[ThreadRegistry, SessionLogStore]:
    store = SessionLogStore(tmp_path)
    return ThreadRegistry(tmp_path, store), store


def test_create_thread_defaults(tmp_path: Path) -> None:
    registry, _ = _registry(tmp_path)
    thread = registry.create_thread("demo", "First chat")
    assert thread.id.startswith("thr_")
    assert thread.title == "First chat"
    assert thread.session_id is None
    assert thread.log_ids == []

    stored = json.loads((tmp_path / "demo" / "threads.json").read_text())
    assert stored[0]["id"] == thread.id
    assert stored[0]["sessionId"] is None
    assert stored[0]["logIds"] == []


def test_thread_ids_unique_within_same_millisecond(tmp_path: Path) -> None:
    registry, _ = _registry(tmp_path)
    with patch("agentbox.shared.services.thread_registry.time.time", return_value=1700000000.0):
        a = registry.create_thread("demo", "a")
        b = registry.create_thread("demo", "b")
    assert a.id == "thr_1700000000000"
    assert b.id == "thr_1700000000001"


def test_list_threads_most_recent_first(tmp_path: Path) -> None:
    registry, _ = _registry(tmp_path)
    stamps = iter([
        "2026-01-01T00:00:00.000Z",
        "2026-01-01T00:00:01.000Z",
        "2026-01-01T00:00:02.000Z",
    ])
    with patch("agentbox.shared.services.thread_registry.utcnow_iso", side_effect=lambda: next(stamps)):
        older = registry.create_thread("demo", "older")
        newer = registry.create_thread("demo", "newer")
        registry.append_log("demo", older.id, "log-1")

    assert [t.id for t in registry.list_threads("demo")] == [older.id, newer.id]


def test_append_log_and_token(tmp_path: Path) -> None:
    registry, _ = _registry(tmp_path)
    thread = registry.create_thread("demo", "t")
    registry.append_log("demo", thread.id, "log-1")
    registry.append_log("demo", thread.id, "log-2")
    registry.append_log("demo", thread.id, "log-2")
    registry.set_token("demo", thread.id, "sess-9")

    again = registry.get_thread("demo", thread.id)
    assert again.log_ids == ["log-1", "log-2"]
    assert again.session_id == "sess-9"


def test_unknown_thread_is_noop(tmp_path: Path) -> None:
    registry, _ = _registry(tmp_path)
    registry.create_thread("demo", "t")
    before = (tmp_path / "demo" / "threads.json").read_text()

    assert registry.get_thread("demo", "thr_missing") is None
    assert registry.append_log("demo", "thr_missing", "x") is None
    assert registry.set_token("demo", "thr_missing", "x") is None
    assert registry.rename_thread("demo", "thr_missing", "x") is None
    assert (tmp_path / "demo" / "threads.json").read_text() == before


def test_rename_thread(tmp_path: Path) -> None:
    registry, _ = _registry(tmp_path)
    thread = registry.create_thread("demo", "old")
    renamed = registry.rename_thread("demo", thread.id, "new")
    assert renamed.title == "new"
    assert registry.get_thread("demo", thread.id).title == "new"


def test_thread_detail_omits_missing_logs(tmp_path: Path) -> None:
    registry, store = _registry(tmp_path)
    thread = registry.create_thread("demo", "t")
    first = store.create_pending("demo", "one")
    store.finalize("demo", first.id, status=LogStatus.COMPLETED, response="", exit_code=0, duration=5)
    registry.append_log("demo", thread.id, first.id)
    registry.append_log("demo", thread.id, "2020-01-01T00-00-00-000Z")

    detail = registry.get_thread_detail("demo", thread.id)
    assert [log.id for log in detail.logs] == [first.id]
    payload = detail.to_dict()
    assert payload["logIds"] == [first.id, "2020-01-01T00-00-00-000Z"]
    assert payload["logs"][0]["prompt"] == "one"

    assert registry.get_thread_detail("demo", "thr_missing") is None


def test_corrupt_collection_reads_as_empty(tmp_path: Path) -> None:
    registry, _ = _registry(tmp_path)
    (tmp_path / "demo").mkdir()
    (tmp_path / "demo" / "threads.json").write_text("{oops")
    assert registry.list_threads("demo") == []


def test_null_fields_in_stored_thread_are_tolerated(tmp_path: Path) -> None:
    registry, _ = _registry(tmp_path)
    (tmp_path / "demo").mkdir()
    (tmp_path / "demo" / "threads.json").write_text(json.dumps([
        {"id": "thr_1", "title": "old", "sessionId": None, "logIds": None,
         "createdAt": "2026-01-01T00:00:00.000Z", "updatedAt": "2026-01-01T00:00:00.000Z"},
    ]))

    thread = registry.get_thread("demo", "thr_1")
    assert thread.log_ids == []
    assert thread.session_id is None

    updated = registry.set_token("demo", "thr_1", "sess-9")
    assert updated.session_id == "sess-9"
    assert registry.append_log("demo", "thr_1", "log-1").log_ids == ["log-1"]

import json
import os

from fieldrelay.core.audit import generate_request_id, log_event
from fieldrelay.core.logging_config import get_audit_log_path

def _records(path: str) -> list[dict]:
    with open(path, "r", encoding="utf-8") as f:
        return [json.loads(line) for line in f if line.strip()]

def test_generate_request_id() -> None:
    rid = generate_request_id()
    assert len(rid) == 12
    assert rid != generate_request_id()

def test_log_event_writes_jsonl(tmp_path) -> None:
    data_dir = str(tmp_path / "data")
    log_event(data_dir, "task.created", {"task_id": "wt-1"}, request_id="abc123")
    log_event(data_dir, "task.started", {"task_id": "wt-1"})
    records = _records(os.path.join(data_dir, "audit.jsonl"))
    assert [r["type"] for r in records] == ["task.created", "task.started"]
    assert records[0]["payload"] == {"task_id": "wt-1"}
    assert records[0]["request_id"] == "abc123"
    assert "request_id" not in records[1]
    assert "ts" in records[0]

def test_log_event_mirrors_to_central_log(tmp_path) -> None:
    log_event(str(tmp_path / "data"), "task.completed", {"task_id": "wt-2"})
    records = _records(get_audit_log_path())
    assert records[-1]["type"] == "task.completed"

def test_log_event_survives_unwritable_mirror(tmp_path, monkeypatch) -> None:
    blocked = tmp_path / "blocked"
    blocked.mkdir()
    monkeypatch.setattr("fieldrelay.core.audit.get_audit_log_path", lambda: str(blocked))
    data_dir = str(tmp_path / "data")
    log_event(data_dir, "task.created", {"task_id": "wt-3"})
    assert _records(os.path.join(data_dir, "audit.jsonl"))[0]["type"] == "task.created"

"""Append-only lifecycle events (``task.created``, ``task.started``, ...)."""
from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
import os
import uuid
from typing import Any, Dict, Optional

from fieldrelay.core.logging_config import append_to_file, get_audit_log_path

logger = logging.getLogger("fieldrelay.audit")

AUDIT_FILENAME = "audit.jsonl"


def generate_request_id() -> str:
    """Short id tying one inbound request to the events it produced."""
    return uuid.uuid4().hex[:12]


def log_event(
    data_dir: str,
    event_type: str,
    payload: Dict[str, Any],
    request_id: Optional[str] = None,
) -> None:
    """Write one event to ``data_dir/audit.jsonl`` and mirror it into the log directory."""
    os.makedirs(data_dir, exist_ok=True)
    path = os.path.join(data_dir, AUDIT_FILENAME)
    record: Dict[str, Any] = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "type": event_type,
        "payload": payload,
    }
    if request_id:
        record["request_id"] = request_id
    line = json.dumps(record, default=str)
    with open(path, "a", encoding="utf-8") as handle:
        handle.write(line + "\n")

    central = get_audit_log_path()
    if os.path.abspath(central) == os.path.abspath(path):
        return
    try:
        append_to_file(central, line)
    except OSError as exc:
        logger.debug("Audit mirror to %s failed: %s", central, exc)

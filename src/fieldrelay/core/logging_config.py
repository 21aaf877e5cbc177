"""Centralized logging configuration for fieldrelay.

Sets up Python's logging system to write to both stdout and rotating
log files in the configured log directory. Also provides dedicated
JSONL loggers for inbound PM-tool deliveries and worker conversation.

Log directory structure::

    ~/.fieldrelay/logs/
    ├── fieldrelay.log         # All Python logger output (rotating)
    ├── deliveries.log         # Every PM-tool webhook delivery (JSONL)
    ├── conversation.log       # Every worker message / button press (JSONL)
    └── audit.jsonl            # Structured audit events (mirror)
"""
from __future__ import annotations

import glob
import json
import logging
import logging.handlers
import os
import time
from pathlib import Path
from typing import Any, Optional

# Module-level log directory, set by setup_logging()
_log_dir: Optional[str] = None

delivery_logger = logging.getLogger("fieldrelay._deliveries")
conversation_logger = logging.getLogger("fieldrelay._conversation")


def get_log_dir() -> str:
    """Return the configured log directory, falling back to default."""
    if _log_dir:
        return _log_dir
    default = str(Path(os.path.expanduser("~")) / ".fieldrelay" / "logs")
    return os.getenv("FIELDRELAY_LOG_DIR", default)


def clear_logs(log_dir: str) -> None:
    """Remove ``*.log`` and ``*.jsonl`` files from the log directory.

    Called **before** any handlers are attached so there are no
    open-file conflicts.
    """
    if not os.path.isdir(log_dir):
        return
    for pattern in ("*.log", "*.jsonl"):
        for path in glob.glob(os.path.join(log_dir, pattern)):
            try:
                os.remove(path)
            except OSError:
                pass


def setup_logging(log_dir: str, log_level: str = "info", *, clear_on_launch: bool = False) -> None:
    """Configure the logging system with both stdout and file handlers.

    This should be called once at application startup.
    """
    global _log_dir
    _log_dir = log_dir

    if clear_on_launch:
        clear_logs(log_dir)

    os.makedirs(log_dir, exist_ok=True)

    level = getattr(logging, log_level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)

    # Clear any existing handlers (avoid duplicate output on re-init)
    root.handlers.clear()

    fmt = logging.Formatter(
        "%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    stdout_handler = logging.StreamHandler()
    stdout_handler.setLevel(level)
    stdout_handler.setFormatter(fmt)
    root.addHandler(stdout_handler)

    file_handler = logging.handlers.RotatingFileHandler(
        os.path.join(log_dir, "fieldrelay.log"),
        maxBytes=10 * 1024 * 1024,  # 10 MB
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(fmt)
    root.addHandler(file_handler)

    _setup_jsonl_logger(delivery_logger, os.path.join(log_dir, "deliveries.log"))
    _setup_jsonl_logger(conversation_logger, os.path.join(log_dir, "conversation.log"))

    logging.getLogger("fieldrelay").info(
        "Logging initialized: log_dir=%s, level=%s", log_dir, log_level
    )


def _setup_jsonl_logger(logger_instance: logging.Logger, path: str) -> None:
    """Configure a logger to write raw JSONL messages to a rotating file."""
    logger_instance.setLevel(logging.INFO)
    logger_instance.propagate = False
    logger_instance.handlers.clear()

    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    # Raw formatter: message is already JSON
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger_instance.addHandler(handler)


# ── Structured logging helpers ───────────────────────────────


def _ts() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def log_delivery(
    connect_id: str,
    platform: str,
    outcome: str,
    external_task_id: str | None = None,
    task_id: str | None = None,
    payload_preview: Any = None,
) -> None:
    """Log one PM-tool webhook delivery to the deliveries log."""
    record: dict[str, Any] = {
        "ts": _ts(),
        "connect_id": connect_id,
        "platform": platform,
        "outcome": outcome,
    }
    if external_task_id:
        record["external_task_id"] = external_task_id
    if task_id:
        record["task_id"] = task_id
    if payload_preview is not None:
        preview = json.dumps(payload_preview, default=str)
        record["payload_preview"] = preview[:500]
    try:
        delivery_logger.info(json.dumps(record, default=str))
    except Exception:  # noqa: BLE001
        pass


def log_conversation(
    chat_id: str,
    kind: str,
    text: str = "",
    task_id: str | None = None,
    outcome: str = "",
) -> None:
    """Log one worker input (text, button, photo, location)."""
    record: dict[str, Any] = {
        "ts": _ts(),
        "chat_id": chat_id,
        "kind": kind,
        "text": text[:2000],
    }
    if task_id:
        record["task_id"] = task_id
    if outcome:
        record["outcome"] = outcome
    try:
        conversation_logger.info(json.dumps(record, default=str))
    except Exception:  # noqa: BLE001
        pass


def get_audit_log_path() -> str:
    """Return the path to the centralized audit JSONL log."""
    return os.path.join(get_log_dir(), "audit.jsonl")


def append_to_file(path: str, line: str) -> None:
    """Append a line to a log file, flushing immediately. Raises ``OSError``."""
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "a", encoding="utf-8") as f:
        f.write(f"{line}\n")
        f.flush()

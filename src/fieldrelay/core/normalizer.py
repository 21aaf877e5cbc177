"""Turn PM-tool webhook payloads into a canonical :class:`TaskData`.

Each supported platform has one extraction rule that reads its own
envelope. When that rule does not recognize the payload (or the
platform has no rule) a generic rule probes common field names. The
public entry point :func:`normalize` never raises: a payload that yields
neither an id nor a title normalizes to ``None``.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import time
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger("fieldrelay.normalizer")

DEFAULT_TITLE = "Task"

CLICKUP_PRIORITY_CODES = {1: "urgent", 2: "high", 3: "medium", 4: "low"}


@dataclass
class TaskData:
    external_task_id: str
    title: str
    priority: str = "medium"
    external_user_id: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    due_date: Any = None  # raw value; see parse_due_date()
    board_id: Optional[str] = None
    destination: Optional[Dict[str, float]] = None


# ── Helpers ──────────────────────────────────────────────────

def _str_or_none(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _first(body: dict, *keys: str) -> Any:
    for key in keys:
        value = body.get(key)
        if value not in (None, ""):
            return value
    return None


def _dig(body: Any, *path: str) -> Any:
    current = body
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def _coords(lat: Any, lng: Any) -> Optional[Dict[str, float]]:
    try:
        return {"lat": float(lat), "lng": float(lng)}
    except (TypeError, ValueError):
        return None


def _location_value(value: Any) -> tuple[Optional[str], Optional[Dict[str, float]]]:
    """Split a location field into display text and coordinates."""
    if isinstance(value, dict):
        return _str_or_none(value.get("address")), _coords(value.get("lat"), value.get("lng"))
    return _str_or_none(value), None


def map_priority(priority: Any) -> str:
    """Textual heuristic used by every platform except ClickUp."""
    if priority is None or priority == "":
        return "medium"
    p = str(priority).lower()
    if "urgent" in p or "critical" in p or p == "1":
        return "urgent"
    if "high" in p or p == "2":
        return "high"
    if "low" in p or p == "4":
        return "low"
    return "medium"


def map_clickup_priority(priority_id: Any) -> str:
    try:
        code = int(priority_id)
    except (TypeError, ValueError):
        return "medium"
    return CLICKUP_PRIORITY_CODES.get(code, "medium")


def parse_due_date(value: Any) -> Optional[datetime]:
    """Parse an ISO date/datetime string or epoch milliseconds; ``None`` if unusable."""
    if value in (None, ""):
        return None
    if isinstance(value, dict):
        # monday.com date columns: {"date": "2024-05-01", "time": "14:00:00"}
        date_part = value.get("date")
        if not date_part:
            return None
        value = f"{date_part}T{value['time']}" if value.get("time") else date_part
    if isinstance(value, (int, float)) or (isinstance(value, str) and value.isdigit()):
        try:
            return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.debug("Unparseable due date: %r", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ── Platform rules ───────────────────────────────────────────

def _parse_monday(body: dict) -> Optional[TaskData]:
    event = body.get("event")
    if not isinstance(event, dict):
        return None
    pulse = _first(event, "pulseId", "itemId")
    if pulse is None:
        return None
    columns = event.get("columnValues") or {}
    location, destination = _location_value(_dig(columns, "location", "value"))
    return TaskData(
        external_task_id=str(pulse),
        external_user_id=_str_or_none(event.get("userId")),
        title=_first(event, "pulseName", "itemName") or DEFAULT_TITLE,
        description=_str_or_none(_dig(columns, "text", "value")),
        location=location,
        destination=destination,
        due_date=_dig(columns, "date", "value"),
        priority=map_priority(_dig(columns, "priority", "label")),
        board_id=_str_or_none(event.get("boardId")),
    )


def _parse_asana(body: dict) -> Optional[TaskData]:
    events = body.get("events")
    if not isinstance(events, list) or not events:
        return None
    resource = _dig(events[0], "resource")
    if not isinstance(resource, dict) or not resource.get("gid"):
        return None
    return TaskData(
        external_task_id=str(resource["gid"]),
        external_user_id=_str_or_none(_dig(resource, "assignee", "gid")),
        title=resource.get("name") or DEFAULT_TITLE,
        description=_str_or_none(resource.get("notes")),
        due_date=resource.get("due_on"),
        priority=map_priority(resource.get("priority")),
        board_id=_str_or_none(_dig(resource, "project", "gid")),
    )


def _parse_clickup(body: dict) -> Optional[TaskData]:
    if not body.get("task_id"):
        return None
    assignees = body.get("assignees") or []
    first_assignee = assignees[0] if assignees and isinstance(assignees[0], dict) else {}
    location = None
    for custom in body.get("custom_fields") or []:
        if isinstance(custom, dict) and "location" in str(custom.get("name", "")).lower():
            location = _str_or_none(custom.get("value"))
            break
    priority = body.get("priority")
    return TaskData(
        external_task_id=str(body["task_id"]),
        external_user_id=_str_or_none(first_assignee.get("id")),
        title=body.get("name") or DEFAULT_TITLE,
        description=_str_or_none(body.get("description")),
        location=location,
        due_date=body.get("due_date"),
        priority=map_clickup_priority(priority.get("id") if isinstance(priority, dict) else priority),
        board_id=_str_or_none(_dig(body, "list", "id")),
    )


def _parse_trello(body: dict) -> Optional[TaskData]:
    card = _dig(body, "action", "data", "card")
    if not isinstance(card, dict) or not card.get("id"):
        return None
    return TaskData(
        external_task_id=str(card["id"]),
        external_user_id=_str_or_none(_dig(body, "action", "memberCreator", "id")),
        title=card.get("name") or DEFAULT_TITLE,
        description=_str_or_none(card.get("desc")),
        due_date=card.get("due"),
        priority="medium",
        board_id=_str_or_none(_dig(body, "action", "data", "board", "id")),
    )


def _parse_generic(body: dict) -> Optional[TaskData]:
    external_id = _first(body, "task_id", "id", "item_id")
    title = _first(body, "title", "name", "task_name")
    if external_id is None and title is None:
        return None
    if external_id is None:
        external_id = f"generic-{int(time.time() * 1000)}"
    location, destination = _location_value(_first(body, "location", "address"))
    if destination is None and body.get("lat") is not None:
        destination = _coords(body.get("lat"), body.get("lng"))
    return TaskData(
        external_task_id=str(external_id),
        external_user_id=_str_or_none(_first(body, "assignee_id", "user_id", "assigned_to")),
        title=str(title) if title is not None else DEFAULT_TITLE,
        description=_str_or_none(_first(body, "description", "notes", "body")),
        location=location,
        destination=destination,
        due_date=_first(body, "due_date", "due", "deadline"),
        priority=map_priority(body.get("priority")),
        board_id=_str_or_none(_first(body, "board_id", "project_id", "list_id")),
    )


PLATFORM_PARSERS: Dict[str, Callable[[dict], Optional[TaskData]]] = {
    "monday": _parse_monday,
    "asana": _parse_asana,
    "clickup": _parse_clickup,
    "trello": _parse_trello,
}


def normalize(platform: str, payload: Any) -> Optional[TaskData]:
    """Normalize *payload* from *platform*; ``None`` when nothing recognizable is found."""
    if not isinstance(payload, dict):
        return None
    parser = PLATFORM_PARSERS.get(platform)
    try:
        if parser is not None:
            data = parser(payload)
            if data is not None:
                return data
            logger.debug("%s rule did not match; trying generic fields", platform)
        return _parse_generic(payload)
    except Exception as exc:  # noqa: BLE001
        logger.warning("Failed to normalize %s payload: %s", platform, exc)
        return None

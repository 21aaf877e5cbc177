"""Worker location snapshots and the dispatcher-facing tracking views."""
from __future__ import annotations

from datetime import datetime, timezone
import math
from typing import Any, Dict, Iterable, List, Optional

from fieldrelay.core.models import GeoPoint, Integration, TaskStatus, WorkerTask

EARTH_RADIUS_METERS = 6371000
MAX_HISTORY_POINTS = 500
MAX_TRACKED_TASKS = 50

# Units shown on the tracking view unless completed ones are requested
IN_PROGRESS_STATUSES = frozenset({
    TaskStatus.STARTED,
    TaskStatus.AWAITING_PROBLEM_DESCRIPTION,
    TaskStatus.PROBLEM_REPORTED,
})


def haversine_meters(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_METERS * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def record_location(task: WorkerTask, point: GeoPoint) -> float:
    """Move the task's current position to *point*; returns meters added."""
    tracking = task.location_tracking
    if not tracking.enabled:
        tracking.enabled = True
        tracking.started_at = point.timestamp
        tracking.stopped_at = None
    added = 0.0
    if tracking.current_location is not None:
        prev = tracking.current_location
        added = haversine_meters(prev.lat, prev.lng, point.lat, point.lng)
        tracking.total_distance_meters += added
    tracking.current_location = point
    tracking.history.append(point)
    if len(tracking.history) > MAX_HISTORY_POINTS:
        tracking.history = tracking.history[-MAX_HISTORY_POINTS:]
    return added


def stop_tracking(task: WorkerTask, now: Optional[datetime] = None) -> None:
    tracking = task.location_tracking
    if tracking.enabled:
        tracking.enabled = False
        tracking.stopped_at = now or datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _km(meters: float) -> str:
    return f"{(meters or 0) / 1000:.2f}"


def _destination(task: WorkerTask) -> Optional[Dict[str, Any]]:
    coords = task.destination_coords
    if not coords:
        return None
    return {"lat": coords.get("lat"), "lng": coords.get("lng"), "address": task.location}


def tracking_summary(
    integration: Integration,
    tasks: Iterable[WorkerTask],
    include_completed: bool = False,
) -> Dict[str, Any]:
    """Tracking overview for an integration's tasks that have reported a location."""
    workers = {w.chat_id: w for w in integration.workers}
    located = [
        t for t in tasks
        if t.location_tracking.current_location is not None
        and (include_completed or t.status in IN_PROGRESS_STATUSES)
    ]
    located.sort(key=lambda t: t.updated_at, reverse=True)

    rows: List[Dict[str, Any]] = []
    for task in located[:MAX_TRACKED_TASKS]:
        tracking = task.location_tracking
        loc = tracking.current_location
        worker = workers.get(task.worker_chat_id)
        rows.append({
            "task_id": task.task_id,
            "external_task_id": task.external_task_id,
            "title": task.title,
            "status": task.status.value,
            "worker": {
                "chat_id": task.worker_chat_id,
                "name": worker.external_name if worker and worker.external_name else "Unknown",
                "external_id": worker.external_id if worker else None,
            },
            "tracking": {
                "active": tracking.enabled,
                "started_at": _iso(tracking.started_at),
            },
            "location": {
                "lat": loc.lat,
                "lng": loc.lng,
                "speed": loc.speed,
                "heading": loc.heading,
                "updated_at": _iso(loc.timestamp),
            } if loc else None,
            "destination": _destination(task),
            "distance_traveled_km": _km(tracking.total_distance_meters),
            "task_started_at": _iso(task.started_at),
            "task_completed_at": _iso(task.completed_at),
        })

    return {
        "integration": {"name": integration.name, "platform": integration.platform},
        "active_tracking_count": len([r for r in rows if r["tracking"]["active"]]),
        "tasks": rows,
    }


def location_detail(task: WorkerTask, include_history: bool = False, history_limit: int = 100) -> Dict[str, Any]:
    """Location payload for a single task."""
    tracking = task.location_tracking
    loc = tracking.current_location
    if loc is None:
        return {
            "tracking_enabled": tracking.enabled,
            "has_location": False,
            "message": "No location data available. Worker may not have shared location yet.",
        }

    detail: Dict[str, Any] = {
        "tracking_enabled": tracking.enabled,
        "has_location": True,
        "tracking_started_at": _iso(tracking.started_at),
        "tracking_stopped_at": _iso(tracking.stopped_at),
        "current_location": {
            "lat": loc.lat,
            "lng": loc.lng,
            "accuracy": loc.accuracy,
            "speed": loc.speed,
            "heading": loc.heading,
            "timestamp": _iso(loc.timestamp),
        },
        "total_distance_meters": tracking.total_distance_meters,
        "total_distance_km": _km(tracking.total_distance_meters),
        "task_status": task.status.value,
        "task_started_at": _iso(task.started_at),
        "task_completed_at": _iso(task.completed_at),
    }

    destination = _destination(task)
    if destination and destination.get("lat") is not None and destination.get("lng") is not None:
        detail["destination"] = destination
        detail["distance_to_destination_meters"] = round(haversine_meters(
            loc.lat, loc.lng, float(destination["lat"]), float(destination["lng"]),
        ))

    if include_history and tracking.history:
        limit = max(1, history_limit)
        detail["history"] = [
            {"lat": p.lat, "lng": p.lng, "timestamp": _iso(p.timestamp), "speed": p.speed}
            for p in tracking.history[-limit:]
        ]
        detail["history_count"] = len(tracking.history)
    return detail

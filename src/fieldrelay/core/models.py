"""Persistent records: integrations, worker mappings, and relayed tasks."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


PLATFORMS = {"monday", "asana", "clickup", "trello", "notion", "other"}


class TaskStatus(str, Enum):
    SENT = "sent"
    STARTED = "started"
    AWAITING_PROBLEM_DESCRIPTION = "awaiting_problem_description"
    PROBLEM_REPORTED = "problem_reported"
    COMPLETED = "completed"

    @property
    def is_active(self) -> bool:
        return self is not TaskStatus.COMPLETED


# ── Integration ──────────────────────────────────────────────

@dataclass
class WorkerMapping:
    chat_id: str
    external_id: str = ""
    external_name: str = ""
    is_active: bool = True

    def to_dict(self) -> dict:
        return {
            "chat_id": self.chat_id,
            "external_id": self.external_id,
            "external_name": self.external_name,
            "is_active": self.is_active,
        }

    @classmethod
    def from_dict(cls, d: dict) -> WorkerMapping:
        return cls(
            chat_id=str(d["chat_id"]),
            external_id=d.get("external_id", ""),
            external_name=d.get("external_name", ""),
            is_active=d.get("is_active", True),
        )


@dataclass
class IntegrationSettings:
    auto_start_on_view: bool = False
    require_photo_proof: bool = False
    notify_on_problem: bool = True
    language: str = "en"

    def to_dict(self) -> dict:
        return {
            "auto_start_on_view": self.auto_start_on_view,
            "require_photo_proof": self.require_photo_proof,
            "notify_on_problem": self.notify_on_problem,
            "language": self.language,
        }

    @classmethod
    def from_dict(cls, d: dict) -> IntegrationSettings:
        return cls(
            auto_start_on_view=d.get("auto_start_on_view", False),
            require_photo_proof=d.get("require_photo_proof", False),
            notify_on_problem=d.get("notify_on_problem", True),
            language=d.get("language", "en"),
        )


@dataclass
class IntegrationStats:
    tasks_sent: int = 0
    tasks_completed: int = 0
    avg_response_time_mins: float = 0.0

    def to_dict(self) -> dict:
        return {
            "tasks_sent": self.tasks_sent,
            "tasks_completed": self.tasks_completed,
            "avg_response_time_mins": self.avg_response_time_mins,
        }

    @classmethod
    def from_dict(cls, d: dict) -> IntegrationStats:
        return cls(
            tasks_sent=d.get("tasks_sent", 0),
            tasks_completed=d.get("tasks_completed", 0),
            avg_response_time_mins=d.get("avg_response_time_mins", 0.0),
        )


@dataclass
class Integration:
    """A bridge between one PM tool and a set of field workers."""
    integration_id: str
    connect_id: str
    name: str
    platform: str
    owner_chat_id: str
    company_name: str = ""
    is_active: bool = True
    workers: List[WorkerMapping] = field(default_factory=list)
    settings: IntegrationSettings = field(default_factory=IntegrationSettings)
    stats: IntegrationStats = field(default_factory=IntegrationStats)
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    def active_workers(self) -> List[WorkerMapping]:
        return [w for w in self.workers if w.is_active]

    def worker_by_chat_id(self, chat_id: str) -> Optional[WorkerMapping]:
        for worker in self.workers:
            if worker.chat_id == chat_id:
                return worker
        return None

    def to_dict(self) -> dict:
        return {
            "integration_id": self.integration_id,
            "connect_id": self.connect_id,
            "name": self.name,
            "platform": self.platform,
            "owner_chat_id": self.owner_chat_id,
            "company_name": self.company_name,
            "is_active": self.is_active,
            "workers": [w.to_dict() for w in self.workers],
            "settings": self.settings.to_dict(),
            "stats": self.stats.to_dict(),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, d: dict) -> Integration:
        return cls(
            integration_id=d["integration_id"],
            connect_id=d["connect_id"],
            name=d["name"],
            platform=d.get("platform", "other"),
            owner_chat_id=str(d["owner_chat_id"]),
            company_name=d.get("company_name", ""),
            is_active=d.get("is_active", True),
            workers=[WorkerMapping.from_dict(w) for w in d.get("workers", [])],
            settings=IntegrationSettings.from_dict(d.get("settings", {})),
            stats=IntegrationStats.from_dict(d.get("stats", {})),
            created_at=datetime.fromisoformat(d["created_at"]),
            updated_at=datetime.fromisoformat(d["updated_at"]),
        )


# ── WorkerTask ───────────────────────────────────────────────

@dataclass
class WorkerComment:
    message: str
    timestamp: datetime = field(default_factory=_now)

    def to_dict(self) -> dict:
        return {"message": self.message, "timestamp": self.timestamp.isoformat()}

    @classmethod
    def from_dict(cls, d: dict) -> WorkerComment:
        return cls(message=d["message"], timestamp=datetime.fromisoformat(d["timestamp"]))


@dataclass
class GeoPoint:
    lat: float
    lng: float
    timestamp: datetime = field(default_factory=_now)
    accuracy: Optional[float] = None
    speed: Optional[float] = None
    heading: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "lat": self.lat,
            "lng": self.lng,
            "timestamp": self.timestamp.isoformat(),
            "accuracy": self.accuracy,
            "speed": self.speed,
            "heading": self.heading,
        }

    @classmethod
    def from_dict(cls, d: dict) -> GeoPoint:
        return cls(
            lat=float(d["lat"]),
            lng=float(d["lng"]),
            timestamp=_parse_dt(d.get("timestamp")) or _now(),
            accuracy=d.get("accuracy"),
            speed=d.get("speed"),
            heading=d.get("heading"),
        )


@dataclass
class LocationTracking:
    enabled: bool = False
    started_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None
    current_location: Optional[GeoPoint] = None
    total_distance_meters: float = 0.0
    history: List[GeoPoint] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "enabled": self.enabled,
            "started_at": _iso(self.started_at),
            "stopped_at": _iso(self.stopped_at),
            "current_location": self.current_location.to_dict() if self.current_location else None,
            "total_distance_meters": self.total_distance_meters,
            "history": [p.to_dict() for p in self.history],
        }

    @classmethod
    def from_dict(cls, d: dict) -> LocationTracking:
        current = d.get("current_location")
        return cls(
            enabled=d.get("enabled", False),
            started_at=_parse_dt(d.get("started_at")),
            stopped_at=_parse_dt(d.get("stopped_at")),
            current_location=GeoPoint.from_dict(current) if current else None,
            total_distance_meters=d.get("total_distance_meters", 0.0),
            history=[GeoPoint.from_dict(p) for p in d.get("history", [])],
        )


@dataclass
class WorkerTask:
    """A unit of work relayed from a PM tool to one worker chat."""
    task_id: str
    integration_id: str
    external_task_id: str
    title: str
    worker_chat_id: str
    status: TaskStatus = TaskStatus.SENT
    priority: str = "medium"
    description: str = ""
    location: Optional[str] = None
    due_date: Optional[datetime] = None
    external_board_id: Optional[str] = None
    message_id: Optional[int] = None

    worker_comments: List[WorkerComment] = field(default_factory=list)
    photo_urls: List[str] = field(default_factory=list)
    problem_description: str = ""
    problem_history: List[str] = field(default_factory=list)

    location_tracking: LocationTracking = field(default_factory=LocationTracking)
    destination_coords: Optional[Dict[str, float]] = None

    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    @property
    def is_active(self) -> bool:
        return self.status.is_active

    def add_comment(self, message: str) -> WorkerComment:
        comment = WorkerComment(message=message)
        self.worker_comments.append(comment)
        self.updated_at = _now()
        return comment

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "integration_id": self.integration_id,
            "external_task_id": self.external_task_id,
            "title": self.title,
            "worker_chat_id": self.worker_chat_id,
            "status": self.status.value,
            "priority": self.priority,
            "description": self.description,
            "location": self.location,
            "due_date": _iso(self.due_date),
            "external_board_id": self.external_board_id,
            "message_id": self.message_id,
            "worker_comments": [c.to_dict() for c in self.worker_comments],
            "photo_urls": list(self.photo_urls),
            "problem_description": self.problem_description,
            "problem_history": list(self.problem_history),
            "location_tracking": self.location_tracking.to_dict(),
            "destination_coords": self.destination_coords,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, d: dict) -> WorkerTask:
        return cls(
            task_id=d["task_id"],
            integration_id=d["integration_id"],
            external_task_id=d["external_task_id"],
            title=d["title"],
            worker_chat_id=str(d["worker_chat_id"]),
            status=TaskStatus(d.get("status", "sent")),
            priority=d.get("priority", "medium"),
            description=d.get("description", ""),
            location=d.get("location"),
            due_date=_parse_dt(d.get("due_date")),
            external_board_id=d.get("external_board_id"),
            message_id=d.get("message_id"),
            worker_comments=[WorkerComment.from_dict(c) for c in d.get("worker_comments", [])],
            photo_urls=list(d.get("photo_urls", [])),
            problem_description=d.get("problem_description", ""),
            problem_history=list(d.get("problem_history", [])),
            location_tracking=LocationTracking.from_dict(d.get("location_tracking", {})),
            destination_coords=d.get("destination_coords"),
            started_at=_parse_dt(d.get("started_at")),
            completed_at=_parse_dt(d.get("completed_at")),
            created_at=datetime.fromisoformat(d["created_at"]),
            updated_at=datetime.fromisoformat(d["updated_at"]),
        )

"""JSON-file stores for integrations and relayed worker tasks.

Each store keeps its records in memory and rewrites a single JSON
document on every change (tmp file + ``os.replace``). A failed write
raises :class:`PersistenceError`; the in-memory record keeps the change.
"""
from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
import os
import secrets
import threading
import uuid
from typing import Dict, Iterable, List, Optional, Tuple

from fieldrelay.core.errors import NotFoundError, PersistenceError, ValidationError
from fieldrelay.core.models import (
    PLATFORMS,
    Integration,
    IntegrationSettings,
    TaskStatus,
    WorkerMapping,
    WorkerTask,
)

logger = logging.getLogger("fieldrelay.store")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class _JsonFileStore:
    """Shared load/save plumbing; subclasses define the collection key."""

    collection = ""

    def __init__(self, store_path: str) -> None:
        self._store_path = store_path
        self._save_lock = threading.RLock()

    def _read(self) -> list[dict]:
        if not os.path.exists(self._store_path):
            return []
        try:
            with open(self._store_path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except Exception as exc:
            logger.error("Failed to load %s from %s: %s", self.collection, self._store_path, exc)
            return []
        return raw.get(self.collection, [])

    def _write(self, items: Iterable[dict]) -> None:
        payload = {self.collection: list(items)}
        tmp_path = f"{self._store_path}.tmp"
        with self._save_lock:
            try:
                os.makedirs(os.path.dirname(self._store_path) or ".", exist_ok=True)
                with open(tmp_path, "w", encoding="utf-8") as f:
                    json.dump(payload, f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, self._store_path)
            except OSError as exc:
                logger.error("Failed to save %s to %s: %s", self.collection, self._store_path, exc)
                raise PersistenceError(f"could not save {self.collection}: {exc}") from exc


# ── Integrations ─────────────────────────────────────────────

class IntegrationStore(_JsonFileStore):
    collection = "integrations"

    def __init__(self, store_path: str, max_per_owner: int = 10) -> None:
        super().__init__(store_path)
        self.max_per_owner = max_per_owner
        self._integrations: Dict[str, Integration] = {}
        for item in self._read():
            integration = Integration.from_dict(item)
            self._integrations[integration.integration_id] = integration

    def _save(self) -> None:
        self._write(i.to_dict() for i in self._integrations.values())

    def create(
        self,
        name: str,
        platform: str,
        owner_chat_id: str,
        company_name: str = "",
        workers: Optional[List[WorkerMapping]] = None,
        settings: Optional[IntegrationSettings] = None,
    ) -> Integration:
        if not name or not platform:
            raise ValidationError("Name and platform are required")
        if platform not in PLATFORMS:
            raise ValidationError(f"Invalid platform. Must be one of: {', '.join(sorted(PLATFORMS))}")
        if len(self.list_for_owner(owner_chat_id)) >= self.max_per_owner:
            raise ValidationError(f"Maximum of {self.max_per_owner} integrations allowed")

        integration = Integration(
            integration_id=f"int-{uuid.uuid4().hex[:12]}",
            connect_id=secrets.token_hex(16),
            name=name,
            platform=platform,
            owner_chat_id=str(owner_chat_id),
            company_name=company_name,
            workers=list(workers or []),
            settings=settings or IntegrationSettings(),
        )
        self._integrations[integration.integration_id] = integration
        self._save()
        logger.info("Integration created: %s (%s, %s)", integration.integration_id, name, platform)
        return integration

    def get(self, integration_id: str) -> Optional[Integration]:
        return self._integrations.get(integration_id)

    def get_by_connect_id(self, connect_id: str, active_only: bool = True) -> Optional[Integration]:
        for integration in self._integrations.values():
            if integration.connect_id != connect_id:
                continue
            if active_only and not integration.is_active:
                return None
            return integration
        return None

    def list_for_owner(self, owner_chat_id: str) -> List[Integration]:
        owned = [i for i in self._integrations.values() if i.owner_chat_id == str(owner_chat_id)]
        return sorted(owned, key=lambda i: i.created_at, reverse=True)

    def save(self, integration: Integration) -> None:
        integration.updated_at = _now()
        self._integrations[integration.integration_id] = integration
        self._save()

    def add_worker(
        self,
        integration_id: str,
        chat_id: str,
        external_id: str = "",
        external_name: str = "",
    ) -> Tuple[Integration, bool]:
        """Add or reactivate a worker mapping. Returns ``(integration, created)``."""
        integration = self._require(integration_id)
        existing = integration.worker_by_chat_id(str(chat_id))
        if existing:
            existing.external_id = external_id or existing.external_id
            existing.external_name = external_name or existing.external_name
            existing.is_active = True
        else:
            integration.workers.append(WorkerMapping(
                chat_id=str(chat_id),
                external_id=external_id,
                external_name=external_name,
            ))
        self.save(integration)
        logger.info(
            "Worker %s %s on integration %s",
            chat_id, "updated" if existing else "added", integration_id,
        )
        return integration, existing is None

    def remove_worker(self, integration_id: str, chat_id: str) -> Integration:
        """Soft-deactivate a worker mapping; historical attribution is kept."""
        integration = self._require(integration_id)
        worker = integration.worker_by_chat_id(str(chat_id))
        if worker and worker.is_active:
            worker.is_active = False
            self.save(integration)
            logger.info("Worker %s deactivated on integration %s", chat_id, integration_id)
        return integration

    def _require(self, integration_id: str) -> Integration:
        integration = self._integrations.get(integration_id)
        if integration is None:
            raise NotFoundError(f"Integration not found: {integration_id}")
        return integration


# ── Worker tasks ─────────────────────────────────────────────

class WorkerTaskStore(_JsonFileStore):
    collection = "tasks"

    def __init__(self, store_path: str) -> None:
        super().__init__(store_path)
        self._tasks: Dict[str, WorkerTask] = {}
        self._by_external: Dict[Tuple[str, str], str] = {}
        for item in self._read():
            self._index(WorkerTask.from_dict(item))

    def _index(self, task: WorkerTask) -> None:
        self._tasks[task.task_id] = task
        self._by_external[(task.integration_id, task.external_task_id)] = task.task_id

    def _save(self) -> None:
        self._write(t.to_dict() for t in self._tasks.values())

    def create(
        self,
        integration_id: str,
        external_task_id: str,
        title: str,
        worker_chat_id: str,
        **fields,
    ) -> WorkerTask:
        key = (integration_id, external_task_id)
        task = WorkerTask(
            task_id=f"wt-{uuid.uuid4().hex[:12]}",
            integration_id=integration_id,
            external_task_id=external_task_id,
            title=title,
            worker_chat_id=str(worker_chat_id),
            **fields,
        )
        with self._save_lock:
            if key in self._by_external:
                raise ValueError(f"Task already exists for {integration_id}/{external_task_id}")
            self._index(task)
            try:
                self._save()
            except PersistenceError:
                # Unsaved tasks must not satisfy a later lookup
                del self._tasks[task.task_id]
                del self._by_external[key]
                raise
        return task

    def get(self, task_id: str) -> Optional[WorkerTask]:
        return self._tasks.get(task_id)

    def find_by_external(self, integration_id: str, external_task_id: str) -> Optional[WorkerTask]:
        task_id = self._by_external.get((integration_id, external_task_id))
        return self._tasks.get(task_id) if task_id else None

    def find_in_integration(self, integration_id: str, ref: str) -> Optional[WorkerTask]:
        """Look up by internal task id or external task id within one integration."""
        task = self._tasks.get(ref)
        if task and task.integration_id == integration_id:
            return task
        return self.find_by_external(integration_id, ref)

    def latest_active_for_chat(self, chat_id: str) -> Optional[WorkerTask]:
        candidates = [
            t for t in self._tasks.values()
            if t.worker_chat_id == str(chat_id) and t.is_active
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda t: t.created_at)

    def list_for_integration(
        self,
        integration_id: str,
        statuses: Optional[Iterable[TaskStatus]] = None,
    ) -> List[WorkerTask]:
        wanted = set(statuses) if statuses is not None else None
        return [
            t for t in self._tasks.values()
            if t.integration_id == integration_id and (wanted is None or t.status in wanted)
        ]

    def save(self, task: WorkerTask) -> None:
        task.updated_at = _now()
        self._tasks[task.task_id] = task
        self._save()

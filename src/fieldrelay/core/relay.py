"""Idempotent upsert of relayed tasks and the initial worker message."""
from __future__ import annotations

from dataclasses import dataclass
import logging
import threading
from typing import Any, Optional

from fieldrelay.core.audit import log_event
from fieldrelay.core.errors import TransportError
from fieldrelay.core.messages import format_new_task, task_keyboard
from fieldrelay.core.models import Integration, WorkerTask
from fieldrelay.core.normalizer import TaskData, parse_due_date
from fieldrelay.core.resolver import resolve
from fieldrelay.core.stats import StatsAggregator
from fieldrelay.core.store import WorkerTaskStore

logger = logging.getLogger("fieldrelay.relay")


@dataclass
class RelayResult:
    task_id: str
    sent_to: str
    updated: bool = False
    delivered: bool = False


class TaskRelay:
    def __init__(
        self,
        tasks: WorkerTaskStore,
        stats: StatsAggregator,
        transport: Any,
        data_dir: str,
    ) -> None:
        self.tasks = tasks
        self.stats = stats
        self.transport = transport
        self.data_dir = data_dir
        # Lookup and create for one external id happen as a single step
        self._upsert_lock = threading.Lock()

    def relay(
        self,
        integration: Integration,
        task_data: TaskData,
        request_id: Optional[str] = None,
    ) -> RelayResult:
        with self._upsert_lock:
            existing = self.tasks.find_by_external(integration.integration_id, task_data.external_task_id)
            if existing is not None:
                return self._update(existing, task_data, request_id)
            task = self._create(integration, task_data, request_id)
        return self._deliver(integration, task)

    def _update(self, task: WorkerTask, data: TaskData, request_id: Optional[str]) -> RelayResult:
        # Only PM-owned fields change; status and worker history stay as the worker left them.
        task.title = data.title
        task.description = data.description or ""
        task.location = data.location
        task.due_date = parse_due_date(data.due_date)
        task.priority = data.priority
        if data.destination:
            task.destination_coords = data.destination
        self.tasks.save(task)
        logger.info("Task %s updated from external %s", task.task_id, task.external_task_id)
        log_event(self.data_dir, "task.updated", {
            "task_id": task.task_id,
            "external_task_id": task.external_task_id,
        }, request_id=request_id)
        return RelayResult(task_id=task.task_id, sent_to=task.worker_chat_id, updated=True)

    def _create(self, integration: Integration, data: TaskData, request_id: Optional[str]) -> WorkerTask:
        chat_id = resolve(integration, data.external_user_id)
        task = self.tasks.create(
            integration_id=integration.integration_id,
            external_task_id=data.external_task_id,
            title=data.title,
            worker_chat_id=chat_id,
            description=data.description or "",
            location=data.location,
            due_date=parse_due_date(data.due_date),
            priority=data.priority,
            external_board_id=data.board_id,
            destination_coords=data.destination,
        )
        log_event(self.data_dir, "task.created", {
            "task_id": task.task_id,
            "integration_id": integration.integration_id,
            "external_task_id": task.external_task_id,
            "sent_to": chat_id,
        }, request_id=request_id)
        return task

    def _deliver(self, integration: Integration, task: WorkerTask) -> RelayResult:
        chat_id = task.worker_chat_id
        try:
            task.message_id = self._send(task)
        except TransportError as exc:
            logger.error("Failed to send task %s to %s: %s", task.task_id, chat_id, exc)
            return RelayResult(task_id=task.task_id, sent_to=chat_id)

        self.tasks.save(task)
        self.stats.record_sent(integration)
        logger.info("Task %s sent to %s (message %s)", task.task_id, chat_id, task.message_id)
        return RelayResult(task_id=task.task_id, sent_to=chat_id, delivered=True)

    def _send(self, task: WorkerTask) -> Optional[int]:
        if self.transport is None:
            raise TransportError("Telegram bot not configured")
        return self.transport.send_message(
            task.worker_chat_id,
            format_new_task(task),
            reply_markup=task_keyboard(task.task_id),
        )

from __future__ import annotations

import logging
from typing import Any

from fieldrelay.core.messages import format_problem_alert
from fieldrelay.core.models import Integration, WorkerTask

logger = logging.getLogger("fieldrelay.notifier")


class NotificationDispatcher:
    """Side-channel alerts to the integration owner. Never raises."""

    def __init__(self, transport: Any) -> None:
        self.transport = transport

    def notify_problem(self, integration: Integration, task: WorkerTask) -> bool:
        if not integration.settings.notify_on_problem:
            return False
        if self.transport is None:
            logger.warning("Problem alert for %s skipped: no chat transport", task.task_id)
            return False
        try:
            self.transport.send_message(integration.owner_chat_id, format_problem_alert(task))
        except Exception as exc:  # noqa: BLE001
            logger.warning("Problem alert for %s to owner %s failed: %s",
                           task.task_id, integration.owner_chat_id, exc)
            return False
        logger.info("Problem alert for %s sent to owner %s", task.task_id, integration.owner_chat_id)
        return True

from __future__ import annotations

import logging
from typing import Optional

from fieldrelay.core.models import Integration

logger = logging.getLogger("fieldrelay.resolver")


def resolve(integration: Integration, external_user_id: Optional[str] = None) -> str:
    """Pick the chat that should receive a task.

    Explicit mapping first, then the sole active worker, then the
    integration owner so that no delivery is ever dropped.
    """
    active = integration.active_workers()
    if external_user_id:
        for worker in active:
            if worker.external_id and worker.external_id == external_user_id:
                return worker.chat_id
    if len(active) == 1:
        return active[0].chat_id
    logger.info(
        "No worker match on %s (external user %s, %d active); falling back to owner",
        integration.integration_id, external_user_id or "-", len(active),
    )
    return integration.owner_chat_id

"""Per-integration counters and the rolling response-time estimate."""
from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Optional

from fieldrelay.core.models import Integration, WorkerTask
from fieldrelay.core.store import IntegrationStore

logger = logging.getLogger("fieldrelay.stats")


def rolling_average(old_avg: float, observed_minutes: float) -> float:
    # Halves toward the newest sample; not a true mean.
    return (old_avg + observed_minutes) / 2


class StatsAggregator:
    def __init__(self, integrations: IntegrationStore) -> None:
        self.integrations = integrations

    def record_sent(self, integration: Integration) -> None:
        integration.stats.tasks_sent += 1
        self.integrations.save(integration)

    def record_completed(
        self,
        integration: Integration,
        task: WorkerTask,
        now: Optional[datetime] = None,
    ) -> float:
        """Count a completion and fold its response time into the average.

        Returns the observed minutes from start to completion (0 when the
        task was never started, in which case the average is untouched).
        """
        finished = task.completed_at or now or datetime.now(timezone.utc)
        observed = 0.0
        if task.started_at:
            observed = (finished - task.started_at).total_seconds() / 60
        integration.stats.tasks_completed += 1
        if observed > 0:
            integration.stats.avg_response_time_mins = rolling_average(
                integration.stats.avg_response_time_mins, observed,
            )
        self.integrations.save(integration)
        logger.debug(
            "Integration %s: completed=%d avg=%.1fmin",
            integration.integration_id,
            integration.stats.tasks_completed,
            integration.stats.avg_response_time_mins,
        )
        return observed

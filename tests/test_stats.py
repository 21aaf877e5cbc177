from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from fieldrelay.core.models import WorkerTask
from fieldrelay.core.notifier import NotificationDispatcher
from fieldrelay.core.stats import rolling_average


def _task(started_minutes_ago=None) -> WorkerTask:
    now = datetime.now(timezone.utc)
    task = WorkerTask(task_id="wt-1", integration_id="int-1", external_task_id="9",
                      title="Fix sink", worker_chat_id="111", completed_at=now)
    if started_minutes_ago is not None:
        task.started_at = now - timedelta(minutes=started_minutes_ago)
    return task


def test_rolling_average_halves_toward_newest() -> None:
    assert rolling_average(0, 30) == 15
    assert rolling_average(15, 45) == 30

def test_record_sent_persists(stats, integrations, integration) -> None:
    stats.record_sent(integration)
    stats.record_sent(integration)
    assert integrations.get(integration.integration_id).stats.tasks_sent == 2

def test_record_completed_folds_response_time(stats, integration) -> None:
    observed = stats.record_completed(integration, _task(started_minutes_ago=20))
    assert observed == pytest.approx(20)
    assert integration.stats.tasks_completed == 1
    assert integration.stats.avg_response_time_mins == pytest.approx(10)

    stats.record_completed(integration, _task(started_minutes_ago=50))
    assert integration.stats.tasks_completed == 2
    assert integration.stats.avg_response_time_mins == pytest.approx(30)

def test_record_completed_without_start(stats, integration) -> None:
    assert stats.record_completed(integration, _task()) == 0
    assert integration.stats.tasks_completed == 1
    assert integration.stats.avg_response_time_mins == 0


class _BrokenTransport:
    def send_message(self, *args, **kwargs):
        raise RuntimeError("boom")


def test_notifier_sends_to_owner(integration, transport) -> None:
    task = _task()
    task.problem_description = "Gas smell"
    assert NotificationDispatcher(transport).notify_problem(integration, task) is True
    assert transport.sent[0]["chat_id"] == "900"
    assert "Gas smell" in transport.sent[0]["text"]

def test_notifier_never_raises(integration) -> None:
    assert NotificationDispatcher(_BrokenTransport()).notify_problem(integration, _task()) is False
    assert NotificationDispatcher(None).notify_problem(integration, _task()) is False

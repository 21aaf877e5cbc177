from __future__ import annotations

import os

import pytest

from fieldrelay.core.errors import TransportError
from fieldrelay.core.notifier import NotificationDispatcher
from fieldrelay.core.relay import TaskRelay
from fieldrelay.core.conversation import ConversationEngine
from fieldrelay.core.stats import StatsAggregator
from fieldrelay.core.store import IntegrationStore, WorkerTaskStore


class FakeTransport:
    """Records outbound chat calls instead of talking to Telegram."""

    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.edits: list[dict] = []
        self.answers: list[dict] = []
        self.fail_send = False
        self.file_urls: dict[str, str] = {}
        self._next_id = 100

    def send_message(self, chat_id, text, reply_markup=None, reply_to_message_id=None):
        if self.fail_send:
            raise TransportError("chat unreachable")
        self._next_id += 1
        self.sent.append({
            "chat_id": chat_id,
            "text": text,
            "reply_markup": reply_markup,
            "reply_to_message_id": reply_to_message_id,
            "message_id": self._next_id,
        })
        return self._next_id

    def edit_message_text(self, chat_id, message_id, text, reply_markup=None):
        self.edits.append({"chat_id": chat_id, "message_id": message_id, "text": text, "reply_markup": reply_markup})

    def answer_callback_query(self, callback_query_id, text="Updated!"):
        self.answers.append({"id": callback_query_id, "text": text})

    def file_url(self, file_id):
        return self.file_urls.get(file_id)

    def texts_to(self, chat_id: str) -> list[str]:
        return [m["text"] for m in self.sent if m["chat_id"] == chat_id]


@pytest.fixture(autouse=True)
def _isolated_log_dir(tmp_path, monkeypatch):
    monkeypatch.setenv("FIELDRELAY_LOG_DIR", str(tmp_path / "logs"))


@pytest.fixture
def data_dir(tmp_path):
    path = tmp_path / "data"
    path.mkdir()
    return str(path)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def integrations(data_dir):
    return IntegrationStore(store_path=os.path.join(data_dir, "integrations.json"))


@pytest.fixture
def tasks(data_dir):
    return WorkerTaskStore(store_path=os.path.join(data_dir, "tasks.json"))


@pytest.fixture
def stats(integrations):
    return StatsAggregator(integrations)


@pytest.fixture
def relay(tasks, stats, transport, data_dir):
    return TaskRelay(tasks=tasks, stats=stats, transport=transport, data_dir=data_dir)


@pytest.fixture
def engine(integrations, tasks, stats, transport, data_dir):
    return ConversationEngine(
        integrations=integrations,
        tasks=tasks,
        stats=stats,
        notifier=NotificationDispatcher(transport),
        transport=transport,
        data_dir=data_dir,
    )


@pytest.fixture
def integration(integrations):
    created = integrations.create(name="Plumbing crew", platform="clickup", owner_chat_id="900")
    integrations.add_worker(created.integration_id, "111", external_id="u1", external_name="Ana")
    return created

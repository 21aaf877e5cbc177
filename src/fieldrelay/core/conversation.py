"""Worker conversation state machine.

Processes Telegram updates (free text, inline-button presses, photos and
location shares) against the worker's task and drives its status::

    sent ──start──▶ started ──done──▶ completed
      │               │
      └──problem──────┴──▶ awaiting_problem_description ──text──▶ problem_reported
                                                                  │
                                            start / done ◀────────┘

Free text and photos act on the chat's most recently created active
task. Button presses act on the task id carried in the button, so an old
message's buttons still reach the task they were sent for.
"""
from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Optional

from fieldrelay.core.audit import generate_request_id, log_event
from fieldrelay.core.errors import TransportError
from fieldrelay.core.logging_config import log_conversation
from fieldrelay.core.messages import (
    COMPLETED_ACK,
    NO_ACTIVE_TASK,
    NOTE_ACK,
    PHOTO_NOT_SAVED,
    PROBLEM_ALREADY_REPORTED,
    PROBLEM_NOTED_ACK,
    PROBLEM_PROMPT,
    PROBLEM_SAVED_ACK,
    STARTED_ACK,
    format_status,
    parse_callback_data,
)
from fieldrelay.core.models import GeoPoint, TaskStatus, WorkerTask
from fieldrelay.core.notifier import NotificationDispatcher
from fieldrelay.core.stats import StatsAggregator
from fieldrelay.core.store import IntegrationStore, WorkerTaskStore
from fieldrelay.core.tracking import record_location, stop_tracking

logger = logging.getLogger("fieldrelay.conversation")

START_WORDS = {"start", "ok", "yes", "👍"}
DONE_WORDS = {"done", "complete", "finished", "✅"}
PROBLEM_WORDS = {"problem", "issue", "help", "❌"}
COMMAND_WORDS = START_WORDS | DONE_WORDS | PROBLEM_WORDS

STARTABLE = {
    TaskStatus.SENT,
    TaskStatus.STARTED,
    TaskStatus.AWAITING_PROBLEM_DESCRIPTION,
    TaskStatus.PROBLEM_REPORTED,
}

BUTTON_ACKS = {
    "started": "Task started! 🔄",
    "completed": "Completed! 🎉",
    "problem_prompted": "Please type the problem",
    "problem_already_reported": "Problem already reported",
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def classify(text: str) -> Optional[str]:
    """Map a whole message to ``start`` / ``done`` / ``problem`` or ``None``."""
    word = (text or "").strip().lower()
    if word in START_WORDS:
        return "start"
    if word in DONE_WORDS:
        return "done"
    if word in PROBLEM_WORDS:
        return "problem"
    return None


class ConversationEngine:
    def __init__(
        self,
        integrations: IntegrationStore,
        tasks: WorkerTaskStore,
        stats: StatsAggregator,
        notifier: NotificationDispatcher,
        transport: Any,
        data_dir: str,
    ) -> None:
        self.integrations = integrations
        self.tasks = tasks
        self.stats = stats
        self.notifier = notifier
        self.transport = transport
        self.data_dir = data_dir

    # ── Entry point ──────────────────────────────────────────

    def handle_update(self, update: Any) -> str:
        """Process one Telegram update and return an outcome tag.

        Never raises: the chat transport must always get a plain
        acknowledgement, otherwise it redelivers and workers see
        duplicate replies.
        """
        try:
            return self._dispatch(update)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to process chat update")
            return "error"

    def _dispatch(self, update: Any) -> str:
        if not isinstance(update, dict):
            return "ignored"
        callback = update.get("callback_query")
        if isinstance(callback, dict):
            return self.handle_button(callback)

        edited = False
        message = update.get("message")
        if not isinstance(message, dict):
            message = update.get("edited_message")
            edited = True
        if not isinstance(message, dict):
            return "ignored"
        chat_id = (message.get("chat") or {}).get("id")
        if chat_id is None:
            return "ignored"
        chat_id = str(chat_id)

        if isinstance(message.get("location"), dict):
            return self.handle_location(chat_id, message, edited=edited)
        if edited:
            return "ignored"
        if isinstance(message.get("photo"), list) and message["photo"]:
            return self.handle_photo(chat_id, message["photo"], message.get("caption"))
        text = message.get("text")
        if text:
            return self.handle_text(chat_id, text, message.get("message_id"))
        return "ignored"

    # ── Free text ────────────────────────────────────────────

    def handle_text(self, chat_id: str, text: str, message_id: Optional[int] = None) -> str:
        action = classify(text)
        task = self.tasks.latest_active_for_chat(chat_id)
        if task is None:
            if action:
                self._reply(chat_id, NO_ACTIVE_TASK, message_id)
                outcome = "no_active_task"
            else:
                outcome = "ignored"
            log_conversation(chat_id, "text", text, outcome=outcome)
            return outcome

        if action:
            outcome, ack = self._apply(task, action)
            self._edit_task_message(task, chat_id, task.message_id, outcome)
            if ack:
                self._reply(chat_id, ack, message_id)
        elif task.status is TaskStatus.AWAITING_PROBLEM_DESCRIPTION:
            outcome, notified = self._capture_problem(task, text)
            self._edit_task_message(task, chat_id, task.message_id, outcome)
            self._reply(chat_id, PROBLEM_NOTED_ACK if notified else PROBLEM_SAVED_ACK, message_id)
        else:
            task.add_comment(text)
            self.tasks.save(task)
            outcome = "comment"
            self._reply(chat_id, NOTE_ACK, message_id)

        log_conversation(chat_id, "text", text, task_id=task.task_id, outcome=outcome)
        return outcome

    # ── Button presses ───────────────────────────────────────

    def handle_button(self, callback: dict) -> str:
        callback_id = str(callback.get("id", ""))
        message = callback.get("message") or {}
        chat_id = str((message.get("chat") or {}).get("id", ""))
        pressed_message_id = message.get("message_id")

        parsed = parse_callback_data(callback.get("data", ""))
        if parsed is None:
            self._answer(callback_id, "Unknown action")
            return "unknown_action"
        action, task_id = parsed

        task = self.tasks.get(task_id)
        if task is None:
            self._answer(callback_id, "Task not found")
            log_conversation(chat_id, "button", action, task_id=task_id, outcome="task_not_found")
            return "task_not_found"
        if not task.is_active:
            self._answer(callback_id, "Task already completed")
            log_conversation(chat_id, "button", action, task_id=task_id, outcome="already_completed")
            return "already_completed"

        outcome, ack = self._apply(task, action)
        self._answer(callback_id, BUTTON_ACKS.get(outcome, "Updated!"))
        self._edit_task_message(task, chat_id or task.worker_chat_id, pressed_message_id, outcome)
        if outcome == "problem_prompted":
            self._reply(chat_id or task.worker_chat_id, PROBLEM_PROMPT)
        log_conversation(chat_id, "button", action, task_id=task_id, outcome=outcome)
        return outcome

    # ── Photos ───────────────────────────────────────────────

    def handle_photo(self, chat_id: str, photos: list, caption: Optional[str] = None) -> str:
        task = self.tasks.latest_active_for_chat(chat_id)
        if task is None:
            self._reply(chat_id, PHOTO_NOT_SAVED)
            log_conversation(chat_id, "photo", caption or "", outcome="photo_not_saved")
            return "photo_not_saved"

        variants = [p for p in photos if isinstance(p, dict) and p.get("file_id")]
        url = None
        if self.transport is not None and variants:
            best = max(
                variants,
                key=lambda p: ((p.get("width") or 0) * (p.get("height") or 0), p.get("file_size") or 0),
            )
            try:
                url = self.transport.file_url(best["file_id"])
            except TransportError as exc:
                logger.warning("Could not resolve photo for %s: %s", task.task_id, exc)
        if not url:
            self._reply(chat_id, "⚠️ Could not save the photo. Please try again.")
            log_conversation(chat_id, "photo", caption or "", task_id=task.task_id, outcome="photo_failed")
            return "photo_failed"

        task.photo_urls.append(url)
        if caption:
            task.add_comment(f"[Photo] {caption}")
        self.tasks.save(task)
        self._reply(chat_id, f"📷 Photo added to task. ({len(task.photo_urls)} total)")
        log_conversation(chat_id, "photo", caption or "", task_id=task.task_id, outcome="photo_saved")
        return "photo_saved"

    # ── Location ─────────────────────────────────────────────

    def handle_location(self, chat_id: str, message: dict, edited: bool = False) -> str:
        task = self.tasks.latest_active_for_chat(chat_id)
        if task is None:
            return "ignored"
        loc = message["location"]
        try:
            lat, lng = float(loc["latitude"]), float(loc["longitude"])
        except (KeyError, TypeError, ValueError):
            return "ignored"
        stamp = message.get("edit_date") or message.get("date")
        point = GeoPoint(
            lat=lat,
            lng=lng,
            timestamp=datetime.fromtimestamp(stamp, tz=timezone.utc) if stamp else _now(),
            accuracy=loc.get("horizontal_accuracy"),
            heading=loc.get("heading"),
        )
        first_share = task.location_tracking.current_location is None
        record_location(task, point)
        self.tasks.save(task)
        if not edited:
            if loc.get("live_period"):
                self._reply(chat_id, "📍 Live location tracking started.")
            elif first_share:
                self._reply(chat_id, "📍 Location added to task.")
        log_conversation(chat_id, "location", f"{lat},{lng}", task_id=task.task_id, outcome="location")
        return "location"

    # ── Transitions ──────────────────────────────────────────

    def _apply(self, task: WorkerTask, action: str) -> tuple[str, Optional[str]]:
        """Apply a start/done/problem command. Returns ``(outcome, worker reply)``."""
        if action == "start":
            return self._start(task), STARTED_ACK
        if action == "done":
            return self._complete(task), COMPLETED_ACK
        if task.status is TaskStatus.PROBLEM_REPORTED:
            return "problem_already_reported", PROBLEM_ALREADY_REPORTED
        return self._open_problem(task), PROBLEM_PROMPT

    def _start(self, task: WorkerTask) -> str:
        if task.status not in STARTABLE:
            return "ignored"
        task.status = TaskStatus.STARTED
        if task.started_at is None:
            task.started_at = _now()
        self.tasks.save(task)
        self._audit("task.started", task)
        return "started"

    def _complete(self, task: WorkerTask) -> str:
        now = _now()
        task.status = TaskStatus.COMPLETED
        task.completed_at = now
        stop_tracking(task, now)
        self.tasks.save(task)
        integration = self.integrations.get(task.integration_id)
        observed = 0.0
        if integration is not None:
            observed = self.stats.record_completed(integration, task)
        self._audit("task.completed", task, response_minutes=round(observed, 1))
        return "completed"

    def _open_problem(self, task: WorkerTask) -> str:
        if task.status is TaskStatus.AWAITING_PROBLEM_DESCRIPTION:
            return "problem_prompted"
        if task.problem_description:
            task.problem_history.append(task.problem_description)
            task.problem_description = ""
        task.status = TaskStatus.AWAITING_PROBLEM_DESCRIPTION
        self.tasks.save(task)
        self._audit("task.problem_opened", task)
        return "problem_prompted"

    def _capture_problem(self, task: WorkerTask, text: str) -> tuple[str, bool]:
        """Record the description; returns ``(outcome, owner notified)``."""
        task.problem_description = text
        task.status = TaskStatus.PROBLEM_REPORTED
        self.tasks.save(task)
        self._audit("task.problem_reported", task)
        integration = self.integrations.get(task.integration_id)
        notified = integration is not None and self.notifier.notify_problem(integration, task)
        return "problem_recorded", notified

    # ── Transport helpers (failures are logged, never raised) ─

    def _edit_task_message(self, task: WorkerTask, chat_id: str, message_id: Optional[int], outcome: str) -> None:
        if outcome not in {"started", "completed", "problem_recorded"}:
            return
        if not message_id or self.transport is None:
            return
        text, keyboard = format_status(task)
        try:
            self.transport.edit_message_text(chat_id, message_id, text, reply_markup=keyboard)
        except TransportError as exc:
            logger.warning("Failed to edit message %s for %s: %s", message_id, task.task_id, exc)

    def _reply(self, chat_id: str, text: str, reply_to: Optional[int] = None) -> None:
        if self.transport is None:
            logger.warning("Reply to %s dropped: no chat transport", chat_id)
            return
        try:
            self.transport.send_message(chat_id, text, reply_to_message_id=reply_to)
        except TransportError as exc:
            logger.warning("Failed to reply to %s: %s", chat_id, exc)

    def _answer(self, callback_id: str, text: str) -> None:
        if self.transport is None or not callback_id:
            return
        try:
            self.transport.answer_callback_query(callback_id, text)
        except TransportError as exc:
            logger.warning("Failed to answer callback %s: %s", callback_id, exc)

    def _audit(self, event_type: str, task: WorkerTask, **extra: Any) -> None:
        payload = {"task_id": task.task_id, "status": task.status.value, "chat_id": task.worker_chat_id}
        payload.update(extra)
        log_event(self.data_dir, event_type, payload, request_id=generate_request_id())

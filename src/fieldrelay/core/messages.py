"""Worker-facing Telegram message text and inline keyboards (HTML parse mode)."""
from __future__ import annotations

from datetime import datetime, timezone
import html
import re
from typing import Any, Optional, Tuple

from fieldrelay.core.models import TaskStatus, WorkerTask

PRIORITY_EMOJI = {
    "low": "🟢",
    "medium": "🟡",
    "high": "🟠",
    "urgent": "🔴",
}

STATUS_EMOJI = {
    TaskStatus.SENT: "📋",
    TaskStatus.STARTED: "🔄",
    TaskStatus.AWAITING_PROBLEM_DESCRIPTION: "⚠️",
    TaskStatus.PROBLEM_REPORTED: "⚠️",
    TaskStatus.COMPLETED: "✅",
}

STATUS_LABEL = {
    TaskStatus.SENT: "SENT",
    TaskStatus.STARTED: "STARTED",
    TaskStatus.AWAITING_PROBLEM_DESCRIPTION: "PROBLEM",
    TaskStatus.PROBLEM_REPORTED: "PROBLEM",
    TaskStatus.COMPLETED: "COMPLETED",
}

BUTTON_ACTIONS = ("start", "done", "problem")
CALLBACK_RE = re.compile(r"^task_(" + "|".join(BUTTON_ACTIONS) + r")_(.+)$")

SEPARATOR = "━━━━━━━━━━━━━━━━━━"

# Worker-facing replies
NO_ACTIVE_TASK = "No active task found. Wait for a new task to be assigned."
PHOTO_NOT_SAVED = "No active task found. Photo not saved."
STARTED_ACK = "✅ Task started! Reply <code>done</code> when finished."
COMPLETED_ACK = "🎉 Great job! Task marked as complete."
PROBLEM_PROMPT = "⚠️ Please describe the problem:\n\nJust type what went wrong."
PROBLEM_NOTED_ACK = (
    "📝 Problem noted. Your manager has been notified.\n\n"
    "Reply <code>start</code> to try again or wait for instructions."
)
PROBLEM_SAVED_ACK = (
    "📝 Problem saved on the task.\n\n"
    "Reply <code>start</code> to try again or wait for instructions."
)
PROBLEM_ALREADY_REPORTED = (
    "⚠️ A problem is already recorded for this task.\n\n"
    "Reply <code>start</code> to resume or <code>done</code> when finished."
)
NOTE_ACK = "📝 Note added to task."


def escape_html(text: Any) -> str:
    if not text:
        return ""
    return html.escape(str(text), quote=False)


def callback_data(action: str, task_id: str) -> str:
    return f"task_{action}_{task_id}"


def parse_callback_data(data: str) -> Optional[Tuple[str, str]]:
    """Return ``(action, task_id)`` or ``None`` for foreign callback data."""
    match = CALLBACK_RE.match(data or "")
    if not match:
        return None
    return match.group(1), match.group(2)


def task_keyboard(task_id: str) -> dict:
    return {
        "inline_keyboard": [
            [
                {"text": "✅ Start", "callback_data": callback_data("start", task_id)},
                {"text": "✓ Done", "callback_data": callback_data("done", task_id)},
            ],
            [
                {"text": "⚠️ Problem", "callback_data": callback_data("problem", task_id)},
            ],
        ],
    }


EMPTY_KEYBOARD: dict = {"inline_keyboard": []}


def format_due(due: datetime, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    if due.tzinfo is not None:
        now = now.astimezone(due.tzinfo)
    day = "Today" if due.date() == now.date() else due.strftime("%Y-%m-%d")
    return f"{day} {due.strftime('%H:%M')}"


def format_new_task(task: WorkerTask, now: Optional[datetime] = None) -> str:
    lines = ["📋 <b>New Task Assigned</b>", "", f"<b>{escape_html(task.title)}</b>"]
    if task.description:
        lines += ["", escape_html(task.description)]
    details: list[str] = []
    if task.location:
        details.append(f"📍 {escape_html(task.location)}")
    if task.due_date:
        details.append(f"⏰ Due: {format_due(task.due_date, now)}")
    details.append(f"{PRIORITY_EMOJI.get(task.priority, '⚪')} Priority: {task.priority}")
    lines += [""] + details
    lines += [
        "",
        SEPARATOR,
        "<b>Reply with:</b>",
        "• <code>start</code> - I'm on it",
        "• <code>done</code> - Completed",
        "• <code>problem</code> - I have an issue",
        "• Send a <b>photo</b> as proof",
        "• Or type any message to add a note",
    ]
    return "\n".join(lines)


def format_status(task: WorkerTask) -> Tuple[str, dict]:
    """Text and keyboard for the in-place edit of a task's message."""
    status = task.status
    lines = [
        f"{STATUS_EMOJI.get(status, '📋')} <b>{escape_html(task.title)}</b>",
        "",
        f"Status: <b>{STATUS_LABEL.get(status, status.value.upper())}</b>",
    ]
    if task.description:
        lines += ["", escape_html(task.description)]
    if status is TaskStatus.PROBLEM_REPORTED and task.problem_description:
        lines += ["", f"⚠️ Problem: {escape_html(task.problem_description)}"]
    if status is TaskStatus.COMPLETED:
        completed = task.completed_at or datetime.now(timezone.utc)
        lines += ["", f"✅ Completed at {completed.strftime('%H:%M:%S')}"]
        if task.photo_urls:
            lines.append(f"📷 {len(task.photo_urls)} photo(s) attached")
        return "\n".join(lines), EMPTY_KEYBOARD
    return "\n".join(lines), task_keyboard(task.task_id)


def format_problem_alert(task: WorkerTask) -> str:
    return (
        "⚠️ <b>Worker reported a problem</b>\n\n"
        f"Task: {escape_html(task.title)}\n"
        f"Problem: {escape_html(task.problem_description)}\n\n"
        f"Worker chat ID: {escape_html(task.worker_chat_id)}"
    )

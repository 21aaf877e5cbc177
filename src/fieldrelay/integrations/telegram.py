from __future__ import annotations

import logging
import time
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import httpx

from fieldrelay.core.errors import TransportError

logger = logging.getLogger("fieldrelay.telegram")

# Telegram API limit for a single message
_MAX_TEXT_LENGTH = 4096
_CHUNK_MARGIN = 200

ALLOWED_UPDATES = ["message", "edited_message", "callback_query"]


def _split_text(text: str, max_len: int) -> list[str]:
    if len(text) <= max_len:
        return [text]
    chunks: list[str] = []
    start = 0
    while start < len(text):
        end = min(start + max_len, len(text))
        chunks.append(text[start:end])
        start = end
    return chunks


@dataclass
class TelegramAdapter:
    token: str
    http_transport: Optional[httpx.BaseTransport] = field(default=None, repr=False)
    _polling_thread: Optional[threading.Thread] = field(default=None, init=False, repr=False)
    _stop_event: threading.Event = field(default_factory=threading.Event, init=False, repr=False)

    def _base_url(self) -> str:
        return f"https://api.telegram.org/bot{self.token}"

    def _client(self, timeout: float) -> httpx.Client:
        return httpx.Client(timeout=timeout, transport=self.http_transport)

    def _call(self, method: str, payload: dict[str, Any], timeout: float = 15.0) -> Any:
        """POST a Bot API method and return its ``result``; raise TransportError otherwise."""
        url = f"{self._base_url()}/{method}"
        try:
            with self._client(timeout) as client:
                resp = client.post(url, json=payload)
        except httpx.HTTPError as exc:
            raise TransportError(f"Telegram {method} failed: {exc}") from exc
        try:
            data = resp.json()
        except ValueError:
            data = {}
        if resp.status_code != 200 or not data.get("ok"):
            logger.error("Telegram %s failed: %s %s", method, resp.status_code, resp.text[:500])
            raise TransportError(
                f"Telegram {method} failed: {data.get('description') or resp.status_code}"
            )
        return data.get("result")

    def send_message(
        self,
        chat_id: str,
        text: str,
        reply_markup: Optional[dict] = None,
        reply_to_message_id: Optional[int] = None,
    ) -> Optional[int]:
        """Send HTML text; returns the id of the last message sent.

        Long text is split into chunks. The keyboard, if any, goes on the
        last chunk and the reply reference on the first.
        """
        if not text:
            text = "(empty message)"
        max_len = max(1, _MAX_TEXT_LENGTH - _CHUNK_MARGIN)
        chunks = _split_text(text, max_len)
        message_id: Optional[int] = None
        for idx, chunk in enumerate(chunks):
            payload: dict[str, Any] = {"chat_id": chat_id, "text": chunk, "parse_mode": "HTML"}
            if reply_to_message_id and idx == 0:
                payload["reply_to_message_id"] = reply_to_message_id
            if reply_markup is not None and idx == len(chunks) - 1:
                payload["reply_markup"] = reply_markup
            result = self._call("sendMessage", payload)
            if isinstance(result, dict):
                message_id = result.get("message_id")
        return message_id

    def edit_message_text(
        self,
        chat_id: str,
        message_id: int,
        text: str,
        reply_markup: Optional[dict] = None,
    ) -> None:
        payload: dict[str, Any] = {
            "chat_id": chat_id,
            "message_id": message_id,
            "text": text[:_MAX_TEXT_LENGTH],
            "parse_mode": "HTML",
        }
        if reply_markup is not None:
            payload["reply_markup"] = reply_markup
        self._call("editMessageText", payload)

    def answer_callback_query(self, callback_query_id: str, text: str = "Updated!") -> None:
        """Dismiss the loading spinner on a pressed button."""
        self._call("answerCallbackQuery", {"callback_query_id": callback_query_id, "text": text}, timeout=10.0)

    def _get_file_path(self, file_id: str) -> str | None:
        url = f"{self._base_url()}/getFile"
        try:
            with self._client(10.0) as client:
                resp = client.get(url, params={"file_id": file_id})
        except httpx.HTTPError as exc:
            raise TransportError(f"Telegram getFile failed: {exc}") from exc
        if resp.status_code != 200:
            logger.error("Telegram getFile failed: %s %s", resp.status_code, resp.text[:300])
            return None
        try:
            data = resp.json()
        except ValueError as exc:
            raise TransportError(f"Telegram getFile returned invalid JSON: {exc}") from exc
        if not isinstance(data, dict) or not data.get("ok"):
            logger.error("Telegram getFile not ok: %s", data)
            return None
        result = data.get("result") or {}
        file_path = result.get("file_path")
        if not file_path:
            logger.error("Telegram getFile missing file_path: %s", result)
            return None
        return file_path

    def file_url(self, file_id: str) -> str | None:
        """Resolve a file reference to a downloadable URL."""
        file_path = self._get_file_path(file_id)
        if not file_path:
            return None
        return f"https://api.telegram.org/file/bot{self.token}/{file_path}"

    def set_webhook(self, url: str, secret_token: Optional[str] = None) -> None:
        payload: dict[str, Any] = {"url": url, "allowed_updates": ALLOWED_UPDATES}
        if secret_token:
            payload["secret_token"] = secret_token
        self._call("setWebhook", payload, timeout=10.0)
        logger.info("setWebhook: %s", url)

    def delete_webhook(self, drop_pending: bool = True) -> None:
        """Remove any existing webhook so polling works."""
        url = f"{self._base_url()}/deleteWebhook"
        with self._client(10.0) as client:
            resp = client.post(url, json={"drop_pending_updates": drop_pending})
            logger.info("deleteWebhook (drop_pending=%s): %s %s", drop_pending, resp.status_code, resp.text[:200])

    def get_updates(self, offset: int = 0, timeout: int = 30) -> list[dict[str, Any]]:
        """Long-poll Telegram for updates."""
        url = f"{self._base_url()}/getUpdates"
        params: dict[str, Any] = {"timeout": timeout, "allowed_updates": ALLOWED_UPDATES}
        if offset:
            params["offset"] = offset
        with self._client(timeout + 10) as client:
            resp = client.get(url, params=params)
            if resp.status_code != 200:
                logger.error("getUpdates failed: %s %s", resp.status_code, resp.text[:300])
                return []
            data = resp.json()
            if not data.get("ok"):
                logger.error("getUpdates not ok: %s", data)
                return []
            return data.get("result", [])

    def start_polling(self, on_update: Callable[[dict[str, Any]], None]) -> None:
        """Start a background thread that polls Telegram for updates."""
        self.delete_webhook()

        def _poll_loop() -> None:
            offset = 0
            logger.info("Telegram polling started")
            while not self._stop_event.is_set():
                try:
                    updates = self.get_updates(offset=offset, timeout=25)
                    for update in updates:
                        update_id = update.get("update_id", 0)
                        offset = update_id + 1
                        try:
                            on_update(update)
                        except Exception as exc:  # noqa: BLE001
                            logger.error("Error processing Telegram update %s: %s", update_id, exc)
                except Exception as exc:  # noqa: BLE001
                    logger.error("Telegram polling error: %s", exc)
                    time.sleep(5)  # back off on errors

        self._polling_thread = threading.Thread(target=_poll_loop, daemon=True, name="telegram-poller")
        self._polling_thread.start()

    def stop_polling(self) -> None:
        self._stop_event.set()

from __future__ import annotations

from logging import getLogger
from pathlib import Path
from typing import Any

import requests

from .core import GkiGuardError

log = getLogger(__name__)

API_BASE = "https://api.telegram.org"
DEFAULT_TIMEOUT = 60


class NotificationError(GkiGuardError):
    pass


class TelegramNotifier:
    def __init__(self, token: str, chat_id: str, session: requests.Session | None = None, timeout: int = DEFAULT_TIMEOUT) -> None:
        self.token = token
        self.chat_id = chat_id
        self.session = session or requests.Session()
        self.timeout = timeout

    def _call(self, method: str, data: dict[str, Any], files: dict[str, Any] | None = None) -> dict[str, Any]:
        url = f"{API_BASE}/bot{self.token}/{method}"
        try:
            response = self.session.post(url, data=data, files=files, timeout=self.timeout)
            response.raise_for_status()
            payload = response.json()
        except requests.exceptions.RequestException as exc:
            raise NotificationError(f"Telegram {method} failed: {exc}") from exc
        except ValueError as exc:
            raise NotificationError(f"Telegram {method} returned a non-JSON response") from exc

        if not payload.get("ok"):
            raise NotificationError(f"Telegram {method} rejected: {payload.get('description', 'unknown error')}")
        return payload.get("result") or {}

    def send_message(self, text: str, reply_to: int | None = None, parse_mode: str | None = "Markdown") -> int | None:
        """Send ``text`` to the chat; pass ``parse_mode=None`` for text that is not Markdown-safe."""
        data: dict[str, Any] = {
            "chat_id": self.chat_id,
            "text": text,
            "disable_web_page_preview": "true",
        }
        if parse_mode is not None:
            data["parse_mode"] = parse_mode
        if reply_to is not None:
            data["reply_to_message_id"] = reply_to
        result = self._call("sendMessage", data)
        return result.get("message_id")

    def send_document(self, path: Path, caption: str | None = None, reply_to: int | None = None) -> int | None:
        data: dict[str, Any] = {"chat_id": self.chat_id}
        if caption:
            data["caption"] = caption
            data["parse_mode"] = "Markdown"
        if reply_to is not None:
            data["reply_to_message_id"] = reply_to
        log.debug("Uploading %s to Telegram", path)
        try:
            with path.open("rb") as handle:
                result = self._call("sendDocument", data, files={"document": (path.name, handle)})
        except OSError as exc:
            raise NotificationError(f"Unable to read '{path}' for upload: {exc}") from exc
        return result.get("message_id")

    def reply_document(self, message_id: int | None, path: Path) -> int | None:
        return self.send_document(path, reply_to=message_id)

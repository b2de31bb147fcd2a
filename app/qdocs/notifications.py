"""
Outbound notifications (Telegram bot).

Delivery is best-effort: callers go through ``deliver()`` which logs and
swallows any failure, so a flaky bot API can never undo a committed workflow
change.
"""

from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from app.qdocs.models import User
    from app.qdocs.modules.documents.models import Document, Task

logger = logging.getLogger(__name__)


class NotificationError(RuntimeError):
    pass


class Notifier:
    def task_assigned(self, user: User, document: Document, task: Task) -> None:
        raise NotImplementedError

    def document_status(self, user: User, document: Document, status: str, comment: str | None = None) -> None:
        raise NotImplementedError


class NullNotifier(Notifier):
    """Used when no bot token is configured."""

    def task_assigned(self, user: User, document: Document, task: Task) -> None:
        logger.debug("Notifications disabled; skip task_assigned doc=%s task=%s", document.id, task.id)

    def document_status(self, user: User, document: Document, status: str, comment: str | None = None) -> None:
        logger.debug("Notifications disabled; skip document_status doc=%s status=%s", document.id, status)


_STATUS_LABELS = {
    "approved": "Approved",
    "rejected": "Rejected",
    "in_progress": "In approval",
    "in_execution": "In execution",
    "executed": "Executed",
}


@dataclass(frozen=True)
class TelegramNotifier(Notifier):
    bot_token: str
    base_url: str
    api_url: str = "https://api.telegram.org"
    timeout_seconds: int = 10

    def _send(self, chat_id: int, text: str) -> None:
        url = f"{self.api_url.rstrip('/')}/bot{self.bot_token}/sendMessage"
        body = json.dumps({"chat_id": str(chat_id), "text": text, "parse_mode": "Markdown"}).encode("utf-8")
        req = urllib.request.Request(url, data=body, method="POST")
        req.add_header("Content-Type", "application/json")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                resp.read()
        except urllib.error.HTTPError as e:
            try:
                detail = e.read().decode("utf-8", errors="ignore")
            except OSError:
                detail = ""
            raise NotificationError(f"HTTP {e.code} from Telegram: {detail[:300]}") from e
        except urllib.error.URLError as e:
            raise NotificationError(f"Telegram unreachable: {e.reason}") from e

    def _doc_url(self, document: Document) -> str:
        return f"{self.base_url.rstrip('/')}/documents/{document.id}"

    def task_assigned(self, user: User, document: Document, task: Task) -> None:
        if not user.telegram_chat_id:
            logger.info("User %s has no Telegram chat bound; skip task notification", user.id)
            return
        text = (
            f"*New task*\n\n*Document:* {document.title}\n*Step:* {task.step}\n\n"
            f"[Open document]({self._doc_url(document)})"
        )
        self._send(user.telegram_chat_id, text)

    def document_status(self, user: User, document: Document, status: str, comment: str | None = None) -> None:
        if not user.telegram_chat_id:
            return
        text = f"*Document update*\n\n*Title:* {document.title}\n*Status:* {_STATUS_LABELS.get(status, status)}"
        if comment:
            text += f"\n*Comment:* {comment}"
        self._send(user.telegram_chat_id, text)


def notifier_from_config(config: dict) -> Notifier:
    token = (config.get("TELEGRAM_BOT_TOKEN") or "").strip()
    if not token:
        return NullNotifier()
    return TelegramNotifier(bot_token=token, base_url=(config.get("APP_BASE_URL") or "").strip())


def deliver(send: Callable[..., Any], *args: Any, **kwargs: Any) -> bool:
    """Run one notification call; failures are logged and reported as False."""
    try:
        send(*args, **kwargs)
        return True
    except Exception:
        logger.exception("Notification delivery failed (%s)", getattr(send, "__name__", send))
        return False
